#!/usr/bin/env python3
"""
Command line interface for the task runner.

Usage:
    taskrunner list-jobs
    taskrunner run-now backup
    taskrunner history backup --since 2026-10-01T00:00 --limit 20
    taskrunner serve --http-port 8080
    taskrunner validate

Exit codes for run-now: 0 success, 1 failure or timeout, 2 unknown job.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from taskrunner import __version__
from taskrunner.config import JobRegistry, Settings, load_config, load_settings
from taskrunner.errors import ConfigError, OutcomeLogError, UnknownJobError
from taskrunner.runner.alerts import build_notifier
from taskrunner.runner.db import OutcomeLog
from taskrunner.runner.executor import JobExecutor
from taskrunner.utils import format_duration


logger = logging.getLogger("taskrunner.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_UNKNOWN_JOB = 2

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Context:
    """Everything a command needs, built once from settings and config."""

    def __init__(self, settings: Settings, registry: JobRegistry):
        self.settings = settings
        self.registry = registry
        self.outcome_log = OutcomeLog(settings.db_path)
        self.executor = JobExecutor(
            self.outcome_log,
            notifier=build_notifier(settings),
            max_retries=settings.max_retries,
            notify_on=settings.notify_on
        )


def setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='taskrunner',
        description='Run named jobs on schedules or on demand'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', '-c', type=Path,
                        help='Job config file (default: $TASKRUNNER_CONFIG or taskrunner.json)')
    parser.add_argument('--db', type=Path,
                        help='Run history database (default: $TASKRUNNER_DB or data/taskrunner.db)')
    parser.add_argument('--env-file', type=Path, help='.env file to load (default: ./.env)')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: $TASKRUNNER_LOG_LEVEL or INFO)')

    sub = parser.add_subparsers(dest='command', metavar='COMMAND')
    sub.required = True

    sub.add_parser('list-jobs', help='List registered jobs and their schedules')

    run_now = sub.add_parser('run-now', help='Run a job immediately')
    run_now.add_argument('job_name')

    history = sub.add_parser('history', help='Show run history for a job')
    history.add_argument('job_name')
    history.add_argument('--since', help='Only runs started at or after this ISO timestamp')
    history.add_argument('--limit', type=int, help='Show at most this many runs')
    history.add_argument('--json', action='store_true', help='Print one JSON object per run')

    serve = sub.add_parser('serve', help='Run the scheduling loop')
    serve.add_argument('--http-port', type=int, help='Also serve the status API on this port')
    serve.add_argument('--http-host', default='127.0.0.1', help='Status API bind address')

    sub.add_parser('validate', help='Check the config file and exit')

    return parser


def build_context(args) -> Context:
    settings = load_settings(env_file=args.env_file)
    overrides = {}
    if args.config:
        overrides['config_path'] = args.config
    if args.db:
        overrides['db_path'] = args.db
    if args.log_level:
        overrides['log_level'] = args.log_level
    settings = replace(settings, **overrides)

    setup_logging(settings.log_level)
    registry, settings = load_config(settings.config_path, settings)
    return Context(settings, registry)


def cmd_list_jobs(ctx: Context, args) -> int:
    if not ctx.registry.jobs:
        print("No jobs registered.")
        return EXIT_OK

    for job in ctx.registry.jobs.values():
        schedules = ctx.registry.schedules_for(job.name)
        schedule_text = ', '.join(s.describe() for s in schedules) or 'on demand only'
        print(f"{job.name}")
        if job.description:
            print(f"  {job.description}")
        print(f"  Action:   {job.action.describe()}")
        print(f"  Schedule: {schedule_text}")
        print(f"  Timeout:  {format_duration(job.timeout)}")
        last = ctx.outcome_log.last_run(job.name)
        if last:
            print(f"  Last run: {last.status.value} at {last.started_at:%Y-%m-%d %H:%M:%S}")
    return EXIT_OK


def cmd_run_now(ctx: Context, args) -> int:
    job = ctx.registry.get(args.job_name)
    record = ctx.executor.run(job, trigger_type='manual')
    ctx.executor.shutdown()

    duration = record.duration_ms / 1000
    print(f"{record.job_name}: {record.status.value} after {record.attempt_count} attempt(s) in {duration:.2f}s")
    if record.error_message:
        print(f"Error: {record.error_message}", file=sys.stderr)
    return EXIT_OK if record.succeeded else EXIT_FAILURE


def cmd_history(ctx: Context, args) -> int:
    since = None
    if args.since:
        try:
            since = datetime.fromisoformat(args.since)
        except ValueError:
            print(f"Error: invalid --since timestamp: {args.since}", file=sys.stderr)
            return EXIT_FAILURE
    if args.limit is not None and args.limit < 1:
        print("Error: --limit must be at least 1", file=sys.stderr)
        return EXIT_FAILURE

    records = ctx.outcome_log.query(args.job_name, since=since, limit=args.limit)

    count = 0
    for record in records:
        count += 1
        if args.json:
            print(json.dumps(record.to_dict()))
            continue
        line = (
            f"{record.started_at:%Y-%m-%d %H:%M:%S}  {record.status.value:<15} "
            f"attempts={record.attempt_count}  {record.duration_ms / 1000:.2f}s  [{record.trigger_type}]"
        )
        if record.error_message:
            line += f"  {record.error_message}"
        print(line)

    if count == 0:
        if args.job_name not in ctx.registry.jobs:
            raise UnknownJobError(args.job_name)
        if not args.json:
            print(f"No runs recorded for '{args.job_name}'.")
    return EXIT_OK


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _handler(signum, frame):
        logger.info(f"Received signal {signum}; stopping")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def cmd_serve(ctx: Context, args) -> int:
    from taskrunner.runner.scheduler import Scheduler

    scheduler = Scheduler(
        ctx.registry,
        ctx.executor,
        ctx.outcome_log,
        poll_interval=ctx.settings.poll_interval,
        max_workers=ctx.settings.max_workers
    )

    if args.http_port:
        from taskrunner.web import create_app

        app = create_app(ctx.registry, ctx.executor, ctx.outcome_log)
        server = threading.Thread(
            target=app.run,
            kwargs={'host': args.http_host, 'port': args.http_port, 'use_reloader': False, 'threaded': True},
            name='taskrunner-http',
            daemon=True
        )
        server.start()
        logger.info(f"Status API listening on http://{args.http_host}:{args.http_port}")

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    scheduler.run_forever(stop_event)
    return EXIT_OK


def cmd_validate(ctx: Context, args) -> int:
    print(
        f"{ctx.settings.config_path}: OK "
        f"({len(ctx.registry)} job(s), {len(ctx.registry.schedules)} schedule(s))"
    )
    return EXIT_OK


COMMANDS = {
    'list-jobs': cmd_list_jobs,
    'run-now': cmd_run_now,
    'history': cmd_history,
    'serve': cmd_serve,
    'validate': cmd_validate,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        ctx = build_context(args)
        return COMMANDS[args.command](ctx, args)
    except UnknownJobError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_UNKNOWN_JOB
    except ConfigError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except OutcomeLogError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
