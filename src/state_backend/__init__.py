"""Remote, lockable storage of per-stage provisioning state."""

from config import ConfigError, DriverConfig
from state_backend.base import (
    LockContention,
    LockHandle,
    ObservationUnavailable,
    StaleLock,
    StateBackend,
)
from state_backend.http import HttpStateBackend
from state_backend.local import LocalStateBackend

BACKENDS = {
    'local': LocalStateBackend,
    'http': HttpStateBackend,
}


def create_backend(config: DriverConfig, **kwargs) -> StateBackend:
    """Instantiate the backend named by config.state.backend."""
    try:
        backend_cls = BACKENDS[config.state.backend]
    except KeyError:
        raise ConfigError(f"Unsupported state backend '{config.state.backend}'")
    return backend_cls(config, **kwargs)


__all__ = [
    'BACKENDS',
    'HttpStateBackend',
    'LocalStateBackend',
    'LockContention',
    'LockHandle',
    'ObservationUnavailable',
    'StaleLock',
    'StateBackend',
    'create_backend',
]
