"""Filesystem state backend.

Layout under state.path (default .states/):
    <key>/state.json      versioned resource graph blob
    <key>/engine.tfstate  IaC engine state (tofu), written under the stage lock
    <key>/lock.json       lock record, created exclusively (link of a private file)
    <key>/lock.stale-<id> broken lock records (kept for diagnosis)
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from state_backend.base import LockHandle, ObservationUnavailable, StaleLock, StateBackend

logger = logging.getLogger(__name__)

STATE_FILE = 'state.json'
LOCK_FILE = 'lock.json'
ENGINE_FILE = 'engine.tfstate'


class LocalStateBackend(StateBackend):
    """State stored as JSON files with exclusive lock files."""

    name = 'local'

    @property
    def root(self) -> Path:
        return Path(self.config.state.path)

    def _stage_dir(self, key: str) -> Path:
        return self.root / key

    def _read_lock_file(self, path: Path) -> Optional[LockHandle]:
        try:
            with open(path, encoding='utf-8') as f:
                return LockHandle.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as e:
            raise ObservationUnavailable(f"Lock record {path} is unreadable: {e}", cause=str(e))

    def _read_blob(self, key: str) -> Optional[dict]:
        path = self._stage_dir(key) / STATE_FILE
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise ObservationUnavailable(f"State file {path} is unreadable: {e}", cause=str(e))
        if not isinstance(data, dict):
            raise ObservationUnavailable(f"State file {path} is not a JSON object")
        return data

    def _check_held(self, key: str, lock: LockHandle) -> None:
        current = self._current_lock(key)
        if current is None or current.lock_id != lock.lock_id:
            raise StaleLock(
                f"Lock {lock.lock_id} on '{lock.stage}' is no longer held"
                + (f" (now held by {current.holder})" if current else ""),
                stage=lock.stage,
            )

    def _replace(self, key: str, name: str, text: str, lock: LockHandle) -> Path:
        stage_dir = self._stage_dir(key)
        stage_dir.mkdir(parents=True, exist_ok=True)
        path = stage_dir / name
        tmp = stage_dir / f'.{name}.{lock.lock_id}.tmp'
        with open(tmp, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        return path

    def _write_blob(self, key: str, data: dict, lock: LockHandle, expected_version: int) -> None:
        self._check_held(key, lock)
        path = self._replace(key, STATE_FILE, json.dumps(data, indent=2, sort_keys=True), lock)
        logger.debug(f"Saved state to {path}")

    def _read_engine_blob(self, key: str) -> Optional[str]:
        path = self._stage_dir(key) / ENGINE_FILE
        try:
            return path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ObservationUnavailable(f"Engine state {path} is unreadable: {e}", cause=str(e))

    def _write_engine_blob(self, key: str, text: str, lock: LockHandle) -> None:
        self._check_held(key, lock)
        path = self._replace(key, ENGINE_FILE, text, lock)
        logger.debug(f"Saved engine state to {path}")

    def _try_lock(self, key: str, handle: LockHandle) -> Optional[LockHandle]:
        stage_dir = self._stage_dir(key)
        stage_dir.mkdir(parents=True, exist_ok=True)
        path = stage_dir / LOCK_FILE

        # Record is written in full under a private name, then linked into
        # place; link() fails if a lock file already exists.
        tmp = stage_dir / f'.lock.{handle.lock_id}.tmp'
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(handle.to_dict(), f, indent=2)
        try:
            os.link(tmp, path)
        except FileExistsError:
            holder = self._read_lock_file(path)
            if holder is None:
                # Released between link and read; report as contended, retry picks it up
                return LockHandle(
                    stage=handle.stage, key=key, lock_id='?', holder='unknown',
                    created_at=handle.created_at, expires_at=handle.expires_at,
                )
            return holder
        finally:
            os.unlink(tmp)
        return None

    def _current_lock(self, key: str) -> Optional[LockHandle]:
        return self._read_lock_file(self._stage_dir(key) / LOCK_FILE)

    def _break_lock(self, key: str, holder: LockHandle) -> bool:
        path = self._stage_dir(key) / LOCK_FILE
        stale = self._stage_dir(key) / f'lock.stale-{holder.lock_id}'
        try:
            os.rename(path, stale)
        except FileNotFoundError:
            return False

        # Another acquirer may have broken and replaced it first; put theirs back.
        moved = self._read_lock_file(stale)
        if moved is not None and moved.lock_id != holder.lock_id:
            try:
                os.link(stale, path)
            except FileExistsError:
                logger.warning(f"[state] Lock {moved.lock_id} on '{key}' lost during break")
            os.unlink(stale)
            return False
        return True

    def _delete_lock(self, key: str, lock_id: str) -> bool:
        path = self._stage_dir(key) / LOCK_FILE
        current = self._read_lock_file(path)
        if current is None or current.lock_id != lock_id:
            return False
        try:
            os.unlink(path)
        except FileNotFoundError:
            return False
        return True
