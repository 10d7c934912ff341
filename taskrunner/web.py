"""
HTTP status API for the task runner.

Read-only views of jobs and run history, plus a manual trigger. Served by
`taskrunner serve --http-port N` next to the scheduling loop so manual and
scheduled runs share one executor and its overlap protection.
"""

import logging
from datetime import datetime

from flask import Flask, jsonify, request

from taskrunner.config import JobRegistry
from taskrunner.errors import UnknownJobError
from taskrunner.runner.db import OutcomeLog
from taskrunner.runner.executor import JobExecutor


logger = logging.getLogger("taskrunner.web")

MAX_RUNS_LIMIT = 1000


def job_summary(registry: JobRegistry, executor: JobExecutor, outcome_log: OutcomeLog, name: str) -> dict:
    job = registry.get(name)
    last = outcome_log.last_run(name)
    return {
        'name': job.name,
        'description': job.description,
        'action': job.action.describe(),
        'timeout_seconds': job.timeout,
        'max_retries': job.max_retries or executor.max_retries,
        'schedules': [s.describe() for s in registry.schedules_for(name)],
        'running': executor.is_running(name),
        'last_run': last.to_dict() if last else None,
    }


def create_app(registry: JobRegistry, executor: JobExecutor, outcome_log: OutcomeLog) -> Flask:
    """Build the Flask app bound to a loaded registry and executor."""
    app = Flask(__name__)

    @app.errorhandler(UnknownJobError)
    def handle_unknown_job(e):
        return jsonify({'error': str(e)}), 404

    @app.route('/api/jobs')
    def api_jobs():
        """Get all jobs with their last run."""
        jobs = [job_summary(registry, executor, outcome_log, name) for name in registry.jobs]
        return jsonify({'jobs': jobs})

    @app.route('/api/jobs/<name>')
    def api_job(name):
        """Get a single job with its stats."""
        summary = job_summary(registry, executor, outcome_log, name)
        summary['stats'] = outcome_log.stats(name)
        return jsonify(summary)

    @app.route('/api/jobs/<name>/runs')
    def api_job_runs(name):
        """Get run history for a job, oldest first."""
        registry.get(name)

        since = request.args.get('since')
        if since:
            try:
                since = datetime.fromisoformat(since)
            except ValueError:
                return jsonify({'error': f"Invalid 'since' timestamp: {since}"}), 400

        limit = request.args.get('limit', 100, type=int)
        if limit < 1 or limit > MAX_RUNS_LIMIT:
            return jsonify({'error': f"'limit' must be between 1 and {MAX_RUNS_LIMIT}"}), 400

        runs = outcome_log.query(name, since=since or None, limit=limit)
        return jsonify({'runs': [r.to_dict() for r in runs]})

    @app.route('/api/jobs/<name>/trigger', methods=['POST'])
    def api_job_trigger(name):
        """Run a job now and wait for its record."""
        job = registry.get(name)
        logger.info(f"Manual trigger of '{name}' via HTTP")
        record = executor.run(job, trigger_type='manual')
        return jsonify(record.to_dict())

    @app.route('/api/stats')
    def api_stats():
        """Get run statistics across all jobs."""
        stats = outcome_log.stats()
        stats['total_jobs'] = len(registry)
        stats['scheduled_jobs'] = len({s.job_name for s in registry.schedules})
        return jsonify(stats)

    return app
