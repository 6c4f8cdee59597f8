"""Lockable, versioned state storage shared by all backends.

Each stage's state lives under its own location key. A write is only
accepted from the holder of a current (unexpired, unbroken) lock and bumps
the stored version by exactly one.
"""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from common import DeployError, holder_identity, retry_with_backoff
from config import DriverConfig
from credentials import STATE_LOCK, STATE_READ, STATE_WRITE, CredentialScope, ScopeDenied
from resource_graph import GraphError, ResourceGraph

logger = logging.getLogger(__name__)

MAX_LOCK_BACKOFF = 30.0


class LockContention(DeployError):
    """Another holder owns the stage lock."""


class StaleLock(DeployError):
    """Lock expired, was released, or was broken by another holder."""


class ObservationUnavailable(DeployError):
    """Stage state could not be read (I/O error, corrupt blob, unreachable)."""


@dataclass(frozen=True)
class LockHandle:
    """Lock record for one stage.

    Attributes:
        stage: Stage the lock guards
        key: Backend location key of the stage
        lock_id: Random identifier of this acquisition
        holder: Identity of the holder (user@host:pid)
        created_at: Acquisition timestamp
        expires_at: Timestamp after which the lock may be broken
    """
    stage: str
    key: str
    lock_id: str
    holder: str
    created_at: float
    expires_at: float

    def expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def to_dict(self) -> dict:
        return {
            'stage': self.stage,
            'key': self.key,
            'id': self.lock_id,
            'holder': self.holder,
            'created_at': self.created_at,
            'expires_at': self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LockHandle':
        return cls(
            stage=data['stage'],
            key=data['key'],
            lock_id=data['id'],
            holder=data.get('holder', 'unknown'),
            created_at=float(data.get('created_at', 0)),
            expires_at=float(data['expires_at']),
        )


class StateBackend(ABC):
    """Base class for stage state storage.

    Subclasses implement the raw blob and lock primitives; locking policy
    (retry, expiry breaking), scope checks, and versioning live here.
    """

    name = 'base'

    def __init__(
        self,
        config: DriverConfig,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.clock = clock
        self.sleep = sleep

    # -- primitives -------------------------------------------------------

    @abstractmethod
    def _read_blob(self, key: str) -> Optional[dict]:
        """Return the stored blob, or None if the stage was never applied.

        Raises:
            ObservationUnavailable: If the blob exists but cannot be read
        """

    @abstractmethod
    def _write_blob(self, key: str, data: dict, lock: LockHandle, expected_version: int) -> None:
        """Atomically replace the blob.

        Raises:
            StaleLock: If lock is no longer the current lock for key
        """

    @abstractmethod
    def _read_engine_blob(self, key: str) -> Optional[str]:
        """Return the stored IaC engine state, or None if there is none.

        Raises:
            ObservationUnavailable: If the engine state cannot be read
        """

    @abstractmethod
    def _write_engine_blob(self, key: str, text: str, lock: LockHandle) -> None:
        """Atomically replace the IaC engine state.

        Raises:
            StaleLock: If lock is no longer the current lock for key
        """

    @abstractmethod
    def _try_lock(self, key: str, handle: LockHandle) -> Optional[LockHandle]:
        """Create the lock record. Returns None on success, else the current holder."""

    @abstractmethod
    def _current_lock(self, key: str) -> Optional[LockHandle]:
        """Return the current lock record, or None if unlocked."""

    @abstractmethod
    def _break_lock(self, key: str, holder: LockHandle) -> bool:
        """Remove holder's lock record if it is still current. Returns True if removed."""

    @abstractmethod
    def _delete_lock(self, key: str, lock_id: str) -> bool:
        """Remove the lock record if its id matches. Returns True if removed."""

    # -- operations -------------------------------------------------------

    def _key(self, stage: str) -> str:
        return self.config.get_stage(stage).key

    def _require(self, scope: Optional[CredentialScope], action: str, stage: str) -> str:
        """Check scope grants action on stage and return the stage key.

        Raises:
            ScopeDenied: If scope was issued for another stage or lacks action
        """
        key = self._key(stage)
        if scope is None:
            return key
        if scope.stage != stage:
            raise ScopeDenied(
                f"Scope {scope.scope_id} was issued for stage '{scope.stage}', not '{stage}'",
                stage=stage,
            )
        scope.require(action, key)
        return key

    def acquire_lock(self, stage: str, scope: Optional[CredentialScope] = None) -> LockHandle:
        """Acquire the stage lock, retrying with backoff.

        Raises:
            LockContention: If the lock is still held after all attempts
            ScopeDenied: If scope does not grant state:lock on the stage
        """
        key = self._require(scope, STATE_LOCK, stage)

        def _attempt() -> LockHandle:
            now = self.clock()
            handle = LockHandle(
                stage=stage,
                key=key,
                lock_id=secrets.token_hex(8),
                holder=holder_identity(),
                created_at=now,
                expires_at=now + self.config.state.lock_ttl,
            )
            holder = self._try_lock(key, handle)
            if holder is None:
                return handle
            if holder.expired(now):
                logger.warning(
                    f"[state] Breaking expired lock {holder.lock_id} on '{stage}' "
                    f"(held by {holder.holder})"
                )
                self._break_lock(key, holder)
                holder = self._try_lock(key, handle)
                if holder is None:
                    return handle
            raise LockContention(
                f"Stage '{stage}' is locked by {holder.holder} (lock {holder.lock_id})",
                stage=stage,
            )

        handle = retry_with_backoff(
            _attempt,
            attempts=self.config.state.lock_attempts,
            retry_on=(LockContention,),
            base_delay=self.config.state.lock_backoff,
            max_delay=MAX_LOCK_BACKOFF,
            description=f"[state] Lock '{stage}'",
            sleep=self.sleep,
        )
        logger.info(f"[state] Acquired lock {handle.lock_id} on '{stage}'")
        return handle

    def _load_graph(self, stage: str) -> ResourceGraph:
        key = self._key(stage)
        data = self._read_blob(key)
        if data is None:
            return ResourceGraph.empty(stage)
        try:
            return ResourceGraph.from_dict(data, stage=stage)
        except (GraphError, KeyError, TypeError, ValueError) as e:
            raise ObservationUnavailable(
                f"State for stage '{stage}' at '{key}' is unreadable: {e}",
                stage=stage,
                cause=str(e),
            )

    def read_state(self, stage: str, scope: Optional[CredentialScope] = None) -> ResourceGraph:
        """Read the last-applied graph of a stage.

        A stage that was never applied reads as an empty graph at version 0.

        Raises:
            ObservationUnavailable: If stored state exists but cannot be read
        """
        self._require(scope, STATE_READ, stage)
        return self._load_graph(stage)

    def write_state(
        self,
        stage: str,
        graph: ResourceGraph,
        lock: LockHandle,
        scope: Optional[CredentialScope] = None,
    ) -> int:
        """Persist graph as the stage's new state and return the new version.

        Raises:
            StaleLock: If lock expired, was released, or was broken
        """
        key = self._require(scope, STATE_WRITE, stage)
        if graph.stage != stage:
            raise ValueError(f"Graph is for stage '{graph.stage}', not '{stage}'")
        self._check_lock(stage, key, lock)

        current = self._load_graph(stage)
        new_version = current.version + 1
        stored = graph.with_state(new_version, graph.outputs)
        self._write_blob(key, stored.to_dict(), lock, current.version)
        logger.info(f"[state] Wrote '{stage}' state version {new_version}")
        return new_version

    def _check_lock(self, stage: str, key: str, lock: LockHandle) -> None:
        if lock.stage != stage or lock.key != key:
            raise StaleLock(f"Lock {lock.lock_id} does not guard stage '{stage}'", stage=stage)
        if lock.expired(self.clock()):
            raise StaleLock(f"Lock {lock.lock_id} on '{stage}' has expired", stage=stage)

    def read_engine_state(self, stage: str, scope: Optional[CredentialScope] = None) -> Optional[str]:
        """Read the IaC engine's own state file for a stage (None before the first apply)."""
        return self._read_engine_blob(self._require(scope, STATE_READ, stage))

    def write_engine_state(
        self,
        stage: str,
        text: str,
        lock: LockHandle,
        scope: Optional[CredentialScope] = None,
    ) -> None:
        """Store the IaC engine's state file next to the stage state.

        Raises:
            StaleLock: If lock expired, was released, or was broken
        """
        key = self._require(scope, STATE_WRITE, stage)
        self._check_lock(stage, key, lock)
        self._write_engine_blob(key, text, lock)
        logger.debug(f"[state] Wrote '{stage}' engine state ({len(text)} bytes)")

    def release(self, lock: LockHandle) -> None:
        """Release a lock. Releasing a lock that is no longer held is a no-op."""
        if self._delete_lock(lock.key, lock.lock_id):
            logger.info(f"[state] Released lock {lock.lock_id} on '{lock.stage}'")
        else:
            logger.debug(f"[state] Lock {lock.lock_id} on '{lock.stage}' was no longer held")

    def force_unlock(self, stage: str, lock_id: str) -> bool:
        """Operator escape hatch: remove a stuck lock by id."""
        removed = self._delete_lock(self._key(stage), lock_id)
        if removed:
            logger.warning(f"[state] Force-unlocked '{stage}' (lock {lock_id})")
        return removed

    def lock_info(self, stage: str) -> Optional[LockHandle]:
        return self._current_lock(self._key(stage))

    @contextmanager
    def locked(self, stage: str, scope: Optional[CredentialScope] = None) -> Iterator[LockHandle]:
        """Hold the stage lock for the duration of a with-block."""
        lock = self.acquire_lock(stage, scope=scope)
        try:
            yield lock
        finally:
            self.release(lock)
