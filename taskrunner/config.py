"""
Configuration for the task runner.

Process settings come from environment variables (optionally from a .env
file). Jobs and schedules come from a JSON file, whose `settings` block
overrides the environment:

    {
        "settings": {"max_retries": 3, "notify_on": "failure"},
        "jobs": [
            {
                "name": "backup",
                "timeout": "5m",
                "action": {"kind": "command", "command": "rsync -a /srv/data /mnt/backup"},
                "schedules": [{"cadence": "daily_at", "at": "02:00"}]
            }
        ]
    }

Everything is validated on load; any problem is a ConfigError.
"""

import json
import os
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from taskrunner.errors import ConfigError, UnknownJobError
from taskrunner.jobs.actions import build_action
from taskrunner.jobs.base import Job
from taskrunner.models import Cadence, Schedule
from taskrunner.runner.executor import NOTIFY_POLICIES
from taskrunner.utils import parse_duration, parse_time_of_day, parse_weekday


logger = logging.getLogger("taskrunner.config")

DEFAULT_CONFIG_PATH = Path("taskrunner.json")
DEFAULT_TIMEOUT_SECONDS = 3600.0


@dataclass
class Settings:
    """Process-wide settings."""
    config_path: Path = DEFAULT_CONFIG_PATH
    db_path: Path = Path("data/taskrunner.db")
    poll_interval: float = 30.0
    max_retries: int = 3
    notify_on: str = 'failure'
    max_workers: int = 4
    log_level: str = 'INFO'
    webhook_url: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    alert_email_recipient: Optional[str] = None
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = field(default=None, repr=False)
    smtp_host: str = 'smtp.gmail.com'
    smtp_port: int = 465

    def validate(self) -> 'Settings':
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be > 0")
        if self.max_retries < 1:
            raise ConfigError("max_retries must be at least 1")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if self.notify_on not in NOTIFY_POLICIES:
            raise ConfigError(f"notify_on must be one of: {', '.join(NOTIFY_POLICIES)}")
        if self.log_level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigError(f"Invalid log level: {self.log_level}")
        return self


# Environment variable -> (settings field, converter)
ENV_SETTINGS = {
    'TASKRUNNER_CONFIG': ('config_path', Path),
    'TASKRUNNER_DB': ('db_path', Path),
    'TASKRUNNER_POLL_INTERVAL': ('poll_interval', parse_duration),
    'TASKRUNNER_MAX_RETRIES': ('max_retries', int),
    'TASKRUNNER_NOTIFY_ON': ('notify_on', str),
    'TASKRUNNER_MAX_WORKERS': ('max_workers', int),
    'TASKRUNNER_LOG_LEVEL': ('log_level', str),
    'TASKRUNNER_WEBHOOK_URL': ('webhook_url', str),
    'SLACK_WEBHOOK_URL': ('slack_webhook_url', str),
    'ALERT_EMAIL_RECIPIENT': ('alert_email_recipient', str),
    'SMTP_USER': ('smtp_user', str),
    'SMTP_PASSWORD': ('smtp_password', str),
    'SMTP_HOST': ('smtp_host', str),
    'SMTP_PORT': ('smtp_port', int),
}

# Keys allowed in the config file's "settings" block
FILE_SETTINGS = {
    'poll_interval': parse_duration,
    'max_retries': int,
    'notify_on': str,
    'max_workers': int,
    'webhook_url': str,
}


def load_settings(env_file: Path = None, environ: Dict[str, str] = None) -> Settings:
    """
    Build settings from the environment.

    Args:
        env_file: .env file to load first (defaults to ./.env when present)
        environ: Mapping to read instead of os.environ
    """
    if environ is None:
        env_path = env_file or Path('.env')
        if env_path.exists():
            load_dotenv(env_path)
        environ = os.environ

    values = {}
    for var, (name, convert) in ENV_SETTINGS.items():
        raw = environ.get(var)
        if raw is None or raw == '':
            continue
        try:
            values[name] = convert(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {var}: {e}")

    return Settings(**values).validate()


@dataclass
class JobRegistry:
    """Jobs and schedules loaded from the config file, in registration order."""
    jobs: Dict[str, Job] = field(default_factory=dict)
    schedules: List[Schedule] = field(default_factory=list)

    def get(self, name: str) -> Job:
        try:
            return self.jobs[name]
        except KeyError:
            raise UnknownJobError(name)

    def schedules_for(self, name: str) -> List[Schedule]:
        return [s for s in self.schedules if s.job_name == name]

    def __len__(self) -> int:
        return len(self.jobs)


def parse_schedule(spec: Any, job_name: str, order: int) -> Schedule:
    """Build a Schedule from its config object."""
    if not isinstance(spec, dict):
        raise ConfigError(f"Job '{job_name}': each schedule must be an object")

    try:
        cadence = Cadence(spec.get('cadence'))
    except ValueError:
        raise ConfigError(
            f"Job '{job_name}': unknown cadence {spec.get('cadence')!r} "
            f"(expected one of: {', '.join(c.value for c in Cadence)})"
        )

    try:
        if cadence is Cadence.INTERVAL:
            if 'every' not in spec:
                raise ValueError("interval schedule requires 'every'")
            return Schedule(job_name, cadence, order=order, every=parse_duration(spec['every']))

        if 'at' not in spec:
            raise ValueError(f"{cadence.value} schedule requires 'at'")
        at = parse_time_of_day(spec['at'])

        if cadence is Cadence.DAILY_AT:
            return Schedule(job_name, cadence, order=order, at=at)

        if 'day' not in spec:
            raise ValueError("weekly_at schedule requires 'day'")
        return Schedule(job_name, cadence, order=order, at=at, weekday=parse_weekday(spec['day']))
    except ValueError as e:
        raise ConfigError(f"Job '{job_name}': {e}")


def parse_job(spec: Any) -> Job:
    """Build a Job from its config object."""
    if not isinstance(spec, dict):
        raise ConfigError("Each job must be an object")

    name = spec.get('name')
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("Every job needs a non-empty 'name'")

    try:
        timeout = parse_duration(spec.get('timeout', DEFAULT_TIMEOUT_SECONDS))
    except ValueError as e:
        raise ConfigError(f"Job '{name}': invalid timeout: {e}")

    max_retries = spec.get('max_retries')
    if max_retries is not None and (
        isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 1
    ):
        raise ConfigError(f"Job '{name}': max_retries must be a positive integer")

    if 'action' not in spec:
        raise ConfigError(f"Job '{name}': missing 'action'")
    try:
        action = build_action(spec['action'])
    except ConfigError as e:
        raise ConfigError(f"Job '{name}': {e}")

    return Job(
        name=name,
        action=action,
        timeout=timeout,
        max_retries=max_retries,
        description=spec.get('description', ''),
    )


def parse_config(data: Any, settings: Settings = None) -> Tuple[JobRegistry, Settings]:
    """
    Validate a decoded config document.

    Returns:
        (registry, settings with the file's overrides applied)
    """
    settings = settings or Settings()

    if not isinstance(data, dict):
        raise ConfigError("Config must be a JSON object")

    overrides = data.get('settings') or {}
    if not isinstance(overrides, dict):
        raise ConfigError("'settings' must be an object")
    unknown = set(overrides) - set(FILE_SETTINGS)
    if unknown:
        raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")
    try:
        converted = {k: FILE_SETTINGS[k](v) for k, v in overrides.items()}
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid settings: {e}")
    settings = replace(settings, **converted).validate()

    jobs = data.get('jobs')
    if not isinstance(jobs, list):
        raise ConfigError("'jobs' must be a list")

    registry = JobRegistry()
    order = 0
    for job_spec in jobs:
        job = parse_job(job_spec)
        if job.name in registry.jobs:
            raise ConfigError(f"Duplicate job name: {job.name!r}")
        registry.jobs[job.name] = job

        schedules = job_spec.get('schedules') or []
        if not isinstance(schedules, list):
            raise ConfigError(f"Job '{job.name}': 'schedules' must be a list")
        for schedule_spec in schedules:
            registry.schedules.append(parse_schedule(schedule_spec, job.name, order))
            order += 1

    logger.debug(f"Loaded {len(registry.jobs)} job(s), {len(registry.schedules)} schedule(s)")
    return registry, settings


def load_config(path: Path, settings: Settings = None) -> Tuple[JobRegistry, Settings]:
    """
    Load and validate the JSON config file.

    Raises:
        ConfigError: if the file is missing, unreadable or invalid
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")

    return parse_config(data, settings)