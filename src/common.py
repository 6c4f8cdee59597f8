"""Common utilities and types for deployment orchestration."""

import getpass
import logging
import os
import socket
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Workload health as reported by a runtime for one rollout
HEALTH_HEALTHY = 'healthy'
HEALTH_PENDING = 'pending'
HEALTH_FAILED = 'failed'


@dataclass
class ActionResult:
    """Result returned by an action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)


class DeployError(Exception):
    """Base class for orchestration errors.

    Carries enough context (stage, node, underlying cause) for a
    DeploymentRecord to be diagnosed without re-running.
    """
    kind = 'DeployError'

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        node: Optional[str] = None,
        cause: Optional[str] = None,
    ):
        self.message = message
        self.stage = stage
        self.node = node
        self.cause = cause
        super().__init__(message)

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls.kind = cls.__name__

    def to_dict(self) -> dict:
        d = {'kind': self.kind, 'message': self.message}
        if self.stage is not None:
            d['stage'] = self.stage
        if self.node is not None:
            d['node'] = self.node
        if self.cause is not None:
            d['cause'] = self.cause
        return d


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: Optional[int] = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except Exception as e:
        return -1, '', str(e)


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int,
    retry_on: tuple[type[BaseException], ...],
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    description: str = 'operation',
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call func until it succeeds or attempts are exhausted.

    Only exceptions in retry_on are retried; the last one is re-raised.
    Delay doubles after each failed attempt, capped at max_delay.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == attempts:
                logger.warning(f"{description} failed after {attempts} attempt(s): {e}")
                raise
            logger.info(f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                        f"retrying in {delay:.1f}s")
            sleep(delay)
            delay = min(delay * 2, max_delay)
    raise AssertionError("unreachable")


def holder_identity() -> str:
    """Identity recorded on lock records and credential audit lines."""
    try:
        user = getpass.getuser()
    except (OSError, KeyError):
        user = os.getenv('USER', 'unknown')
    return f'{user}@{socket.gethostname()}:{os.getpid()}'
