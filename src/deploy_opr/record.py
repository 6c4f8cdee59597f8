"""Deployment records.

A DeploymentRecord is the outcome of one run: state history, stage plans,
applied stage versions, artifacts, rollout health and error context. It is
created at run start and finalized at run end; after finalization any
mutation raises RecordFinalized.

Records are persisted to .states/records/{run_id}.json.
"""

import json
import logging
import os
import secrets
import time
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any, Optional

from common import DeployError

logger = logging.getLogger(__name__)


class RecordFinalized(DeployError):
    """Attempt to mutate a finalized DeploymentRecord."""


def new_run_id() -> str:
    return time.strftime('%Y%m%d-%H%M%S') + '-' + secrets.token_hex(3)


def _freeze(value: Any) -> Any:
    """Read-only deep copy: mappings become MappingProxyType, lists tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    """Plain JSON-serializable copy of a (possibly frozen) value."""
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(v) for v in value]
    return value


class DeploymentRecord:
    """Outcome of one deployment run."""

    def __init__(self, run_id: str, operation: str = 'deploy', source_ref: Optional[str] = None,
                 tag: Optional[str] = None):
        self.run_id = run_id
        self.operation = operation
        self.source_ref = source_ref
        self.tag = tag
        self.started_at = time.time()
        self.completed_at: Optional[float] = None
        self.history: list[dict] = []
        self.plans: dict[str, dict] = {}
        self.applied_stages: list[str] = []
        self.stage_versions: dict[str, int] = {}
        self.artifact: Optional[dict] = None
        self.previous_artifact: Optional[str] = None
        self.rollout_id: Optional[str] = None
        self.health: list[dict] = []
        self.error: Optional[dict] = None
        self.outcome: Optional[str] = None
        self._finalized = False

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, '_finalized', False):
            raise RecordFinalized(f"Record {self.run_id} is finalized; cannot set '{name}'")
        super().__setattr__(name, value)

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def state(self) -> Optional[str]:
        return self.history[-1]['state'] if self.history else None

    def _check_mutable(self) -> None:
        if self._finalized:
            raise RecordFinalized(f"Record {self.run_id} is finalized")

    def transition(self, state: str) -> None:
        self._check_mutable()
        self.history.append({'state': state, 'at': time.time()})

    def add_plan(self, stage: str, plan: dict) -> None:
        self._check_mutable()
        self.plans[stage] = plan

    def mark_applied(self, stage: str, version: int) -> None:
        self._check_mutable()
        if stage not in self.applied_stages:
            self.applied_stages.append(stage)
        self.stage_versions[stage] = version

    def observe_health(self, status: str) -> None:
        self._check_mutable()
        self.health.append({'status': status, 'at': time.time()})

    def set_error(self, error: DeployError) -> None:
        self.error = error.to_dict()

    def finalize(self, outcome: str) -> None:
        """Close the record. Containers become read-only copies, all the way down."""
        self._check_mutable()
        self.outcome = outcome
        self.completed_at = time.time()
        for name in ('history', 'plans', 'applied_stages', 'stage_versions', 'health',
                     'artifact', 'error'):
            setattr(self, name, _freeze(getattr(self, name)))
        self._finalized = True

    @property
    def duration(self) -> Optional[float]:
        if self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'run_id': self.run_id,
            'operation': self.operation,
            'outcome': self.outcome,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'history': _thaw(self.history),
            'plans': _thaw(self.plans),
            'applied_stages': _thaw(self.applied_stages),
            'stage_versions': _thaw(self.stage_versions),
            'health': _thaw(self.health),
        }
        for key in ('source_ref', 'tag', 'artifact', 'previous_artifact', 'rollout_id', 'error'):
            value = getattr(self, key)
            if value is not None:
                d[key] = _thaw(value)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'DeploymentRecord':
        record = cls(
            run_id=data['run_id'],
            operation=data.get('operation', 'deploy'),
            source_ref=data.get('source_ref'),
            tag=data.get('tag'),
        )
        record.started_at = data.get('started_at', 0.0)
        record.history = list(data.get('history', []))
        record.plans = dict(data.get('plans', {}))
        record.applied_stages = list(data.get('applied_stages', []))
        record.stage_versions = dict(data.get('stage_versions', {}))
        record.artifact = data.get('artifact')
        record.previous_artifact = data.get('previous_artifact')
        record.rollout_id = data.get('rollout_id')
        record.health = list(data.get('health', []))
        record.error = data.get('error')
        if data.get('outcome'):
            record.finalize(data['outcome'])
            object.__setattr__(record, 'completed_at', data.get('completed_at'))
        return record


class RecordStore:
    """JSON file store for DeploymentRecords."""

    def __init__(self, state_dir: Path):
        self.root = Path(state_dir) / 'records'

    def save(self, record: DeploymentRecord) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f'{record.run_id}.json'
        # Readers glob *.json; the temp name keeps partial writes out of sight.
        tmp = self.root / f'.{record.run_id}.json.tmp'
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(record.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        logger.debug(f"Saved deployment record to {path}")
        return path

    def load(self, run_id: str) -> DeploymentRecord:
        """Load a record by run id.

        Raises:
            FileNotFoundError: If no record exists
        """
        with open(self.root / f'{run_id}.json', encoding='utf-8') as f:
            return DeploymentRecord.from_dict(json.load(f))

    def list_records(self) -> list[DeploymentRecord]:
        """All readable records, oldest first."""
        if not self.root.exists():
            return []
        records = []
        for path in self.root.glob('*.json'):
            try:
                with open(path, encoding='utf-8') as f:
                    records.append(DeploymentRecord.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable record {path}: {e}")
        return sorted(records, key=lambda r: r.started_at)

    def latest(self, outcome: Optional[str] = None,
               operation: Optional[str] = None) -> Optional[DeploymentRecord]:
        for record in reversed(self.list_records()):
            if outcome is not None and record.outcome != outcome:
                continue
            if operation is not None and record.operation != operation:
                continue
            return record
        return None
