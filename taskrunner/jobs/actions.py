"""
Action kinds a job can run.

The set is closed: every action in the config file must be one of
`command`, `python`, `http` or `pipeline`, and is validated when the config
is loaded, not when the job first runs.

Actions signal failure by raising ActionError and a blown deadline by
raising ActionTimeout. Actions that own a child process (`command`,
`pipeline`) enforce the deadline themselves by killing the child; the
runner runs the others in a worker thread it can abandon.
"""

import importlib
import inspect
import logging
import os
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from taskrunner.errors import ActionError, ActionTimeout, ConfigError
from taskrunner.jobs.base import BaseJob


logger = logging.getLogger("taskrunner.actions")

# Output tail kept in error messages
OUTPUT_TAIL_CHARS = 500


def _tail(text: str) -> str:
    text = (text or '').strip()
    if len(text) > OUTPUT_TAIL_CHARS:
        return '...' + text[-OUTPUT_TAIL_CHARS:]
    return text


class Action(ABC):
    """Base class for action kinds."""

    kind: str = ''
    # True when run() enforces its own deadline by killing a child process
    kills_on_timeout: bool = False

    @abstractmethod
    def run(self, timeout: Optional[float] = None) -> None:
        """Raise ActionError on failure and ActionTimeout past `timeout`."""

    def describe(self) -> str:
        return self.kind


@dataclass(frozen=True)
class CommandAction(Action):
    """Run an external command (no shell). Success is exit code 0."""
    command: str
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    kind = 'command'
    kills_on_timeout = True

    @property
    def argv(self):
        return shlex.split(self.command)

    def run(self, timeout: Optional[float] = None) -> None:
        env = dict(os.environ, **self.env) if self.env else None
        try:
            result = subprocess.run(
                self.argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=self.cwd,
                env=env
            )
        except subprocess.TimeoutExpired:
            raise ActionTimeout(timeout, f"Command timed out after {timeout:g}s: {self.command}")
        except OSError as e:
            raise ActionError(f"Failed to start command '{self.command}': {e}") from e

        if result.stdout:
            logger.debug(f"[{self.command}] stdout: {_tail(result.stdout)}")
        if result.returncode != 0:
            detail = _tail(result.stderr) or _tail(result.stdout)
            message = f"Command exited with code {result.returncode}"
            if detail:
                message += f": {detail}"
            raise ActionError(message)

    def describe(self) -> str:
        return f"command: {self.command}"

    @classmethod
    def from_config(cls, spec: Dict[str, Any]) -> 'CommandAction':
        command = spec.get('command')
        if not isinstance(command, str) or not command.strip():
            raise ConfigError("command action requires a non-empty 'command' string")
        try:
            if not shlex.split(command):
                raise ConfigError("command action requires a non-empty 'command' string")
        except ValueError as e:
            raise ConfigError(f"Cannot parse command {command!r}: {e}")
        env = spec.get('env') or {}
        if not isinstance(env, dict):
            raise ConfigError("command action 'env' must be an object")
        return cls(
            command=command,
            cwd=spec.get('cwd'),
            env={str(k): str(v) for k, v in env.items()}
        )


@dataclass(frozen=True)
class PipelineAction(Action):
    """
    Run named command stages in order, stopping at the first failure.

    The job timeout covers the whole pipeline; each stage gets whatever
    is left of it.
    """
    stages: Tuple[Tuple[str, CommandAction], ...]

    kind = 'pipeline'
    kills_on_timeout = True

    def run(self, timeout: Optional[float] = None) -> None:
        deadline = time.monotonic() + timeout if timeout else None

        for stage_name, stage in self.stages:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ActionTimeout(timeout, f"Pipeline timed out before stage '{stage_name}'")

            logger.info(f"Pipeline stage '{stage_name}': {stage.command}")
            try:
                stage.run(timeout=remaining)
            except ActionTimeout:
                raise ActionTimeout(timeout, f"Pipeline timed out in stage '{stage_name}'")
            except ActionError as e:
                raise ActionError(f"Stage '{stage_name}' failed: {e}") from e

    def describe(self) -> str:
        return "pipeline: " + " -> ".join(name for name, _ in self.stages)

    @classmethod
    def from_config(cls, spec: Dict[str, Any]) -> 'PipelineAction':
        stages = spec.get('stages')
        if not isinstance(stages, list) or not stages:
            raise ConfigError("pipeline action requires a non-empty 'stages' list")

        built = []
        seen = set()
        for i, stage in enumerate(stages):
            if not isinstance(stage, dict):
                raise ConfigError(f"pipeline stage #{i + 1} must be an object")
            name = stage.get('name') or f"stage-{i + 1}"
            if name in seen:
                raise ConfigError(f"Duplicate pipeline stage name: {name!r}")
            seen.add(name)
            built.append((name, CommandAction.from_config(stage)))
        return cls(stages=tuple(built))


@dataclass(frozen=True)
class PythonAction(Action):
    """
    Call Python code: a BaseJob subclass or a plain callable.

    A BaseJob fails when its JobResult is unsuccessful; a callable fails
    when it raises.
    """
    target: str
    func: Callable = field(compare=False, repr=False)
    config: Dict[str, Any] = field(default_factory=dict, compare=False)

    kind = 'python'

    def run(self, timeout: Optional[float] = None) -> None:
        if inspect.isclass(self.func) and issubclass(self.func, BaseJob):
            job = self.func(config=dict(self.config))
            result = job.execute()
            if not result.success:
                raise ActionError(result.error_message or f"{self.target} reported failure")
            return

        try:
            self.func(**self.config)
        except ActionError:
            raise
        except Exception as e:
            raise ActionError(f"{e.__class__.__name__}: {e}") from e

    def describe(self) -> str:
        return f"python: {self.target}"

    @classmethod
    def from_config(cls, spec: Dict[str, Any]) -> 'PythonAction':
        target = spec.get('target')
        if not isinstance(target, str) or '.' not in target:
            raise ConfigError("python action requires a dotted 'target' path")
        config = spec.get('config') or {}
        if not isinstance(config, dict):
            raise ConfigError("python action 'config' must be an object")
        return cls(target=target, func=load_target(target), config=config)


@dataclass(frozen=True)
class HttpAction(Action):
    """Make an HTTP request. Success is a 2xx status, or `expect_status` when set."""
    url: str
    method: str = 'GET'
    expect_status: Optional[int] = None
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    kind = 'http'

    def run(self, timeout: Optional[float] = None) -> None:
        try:
            response = requests.request(
                self.method,
                self.url,
                json=self.body,
                headers=self.headers or None,
                timeout=timeout or 30
            )
        except requests.RequestException as e:
            raise ActionError(f"{self.method} {self.url} failed: {e}") from e

        if self.expect_status is not None:
            ok = response.status_code == self.expect_status
        else:
            ok = 200 <= response.status_code < 300
        if not ok:
            raise ActionError(
                f"{self.method} {self.url} returned {response.status_code}: {_tail(response.text)}"
            )

    def describe(self) -> str:
        return f"http: {self.method} {self.url}"

    @classmethod
    def from_config(cls, spec: Dict[str, Any]) -> 'HttpAction':
        url = spec.get('url')
        if not isinstance(url, str) or not url.startswith(('http://', 'https://')):
            raise ConfigError("http action requires an http(s) 'url'")
        method = str(spec.get('method', 'GET')).upper()
        if method not in ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD'):
            raise ConfigError(f"Unsupported HTTP method: {method}")
        expect_status = spec.get('expect_status')
        if expect_status is not None and not isinstance(expect_status, int):
            raise ConfigError("http action 'expect_status' must be an integer")
        return cls(
            url=url,
            method=method,
            expect_status=expect_status,
            body=spec.get('body'),
            headers=spec.get('headers') or {}
        )


ACTION_KINDS = {
    'command': CommandAction,
    'python': PythonAction,
    'http': HttpAction,
    'pipeline': PipelineAction,
}


def build_action(spec: Dict[str, Any]) -> Action:
    """
    Build an action from its config object.

    Raises:
        ConfigError: for an unknown kind or invalid params
    """
    if not isinstance(spec, dict):
        raise ConfigError("'action' must be an object")
    kind = spec.get('kind')
    action_class = ACTION_KINDS.get(kind)
    if action_class is None:
        raise ConfigError(
            f"Unknown action kind {kind!r} (expected one of: {', '.join(sorted(ACTION_KINDS))})"
        )
    return action_class.from_config(spec)


def load_target(path: str) -> Callable:
    """
    Import a callable or BaseJob subclass from its dotted path.

    Args:
        path: Full path like 'taskrunner.jobs.backup.BackupJob'

    Raises:
        ConfigError: if the module or attribute can't be loaded
    """
    module_path, attr = path.rsplit('.', 1)
    try:
        module = importlib.import_module(module_path)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Failed to load python target '{path}': {e}")

    if not callable(target):
        raise ConfigError(f"{path} is not callable")
    if inspect.isclass(target) and not issubclass(target, BaseJob):
        raise ConfigError(f"{path} is a class but not a BaseJob subclass")
    return target
