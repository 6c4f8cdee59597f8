"""Tests for deployment records and the record store."""

import json

import pytest

from common import DeployError
from deploy_opr.record import DeploymentRecord, RecordFinalized, RecordStore, new_run_id


def _record(run_id='r1', operation='deploy'):
    record = DeploymentRecord(run_id, operation, source_ref='abc', tag='v1')
    record.transition('planning')
    return record


class TestDeploymentRecord:
    """Test DeploymentRecord."""

    def test_state_follows_history(self):
        record = _record()
        record.transition('applying_setup')
        assert record.state == 'applying_setup'
        assert [h['state'] for h in record.history] == ['planning', 'applying_setup']

    def test_mark_applied_once_per_stage(self):
        record = _record()
        record.mark_applied('setup', 1)
        record.mark_applied('setup', 2)
        assert record.applied_stages == ['setup']
        assert record.stage_versions == {'setup': 2}

    def test_set_error(self):
        record = _record()
        record.set_error(DeployError('boom', stage='deploy', node='service', cause='x'))
        assert record.error == {
            'kind': 'DeployError', 'message': 'boom',
            'stage': 'deploy', 'node': 'service', 'cause': 'x',
        }

    def test_finalize_freezes(self):
        record = _record()
        record.add_plan('setup', {'summary': 's'})
        record.finalize('succeeded')

        assert record.finalized
        assert record.duration is not None
        for mutate in (
            lambda: record.transition('failed'),
            lambda: record.add_plan('deploy', {}),
            lambda: record.mark_applied('deploy', 1),
            lambda: record.observe_health('healthy'),
            lambda: record.finalize('failed'),
            lambda: setattr(record, 'rollout_id', 'x'),
        ):
            with pytest.raises(RecordFinalized):
                mutate()
        with pytest.raises(TypeError):
            record.plans['deploy'] = {}
        with pytest.raises(AttributeError):
            record.history.append({})

    def test_finalize_freezes_nested_values(self):
        record = _record()
        record.add_plan('setup', {'actions': [{'node': 'network', 'action': 'create'}]})
        record.artifact = {'ref': 'r@sha256:1'}
        record.set_error(DeployError('boom', stage='deploy'))
        record.finalize('failed')

        with pytest.raises(TypeError):
            record.artifact['ref'] = 'r@sha256:2'
        with pytest.raises(TypeError):
            record.error['kind'] = 'Other'
        with pytest.raises(TypeError):
            record.history[0]['state'] = 'succeeded'
        with pytest.raises(TypeError):
            record.plans['setup']['actions'][0]['action'] = 'destroy'
        assert record.to_dict()['plans']['setup']['actions'] == [
            {'node': 'network', 'action': 'create'},
        ]
        json.dumps(record.to_dict())

    def test_finalize_copies_caller_values(self):
        plan = {'summary': 's'}
        record = _record()
        record.add_plan('setup', plan)
        record.finalize('succeeded')

        plan['summary'] = 'changed'
        assert record.plans['setup']['summary'] == 's'

    def test_dict_roundtrip(self):
        record = _record()
        record.artifact = {'ref': 'r@sha256:1'}
        record.previous_artifact = 'r@sha256:0'
        record.mark_applied('setup', 3)
        record.finalize('rolled_back')

        restored = DeploymentRecord.from_dict(json.loads(json.dumps(record.to_dict())))
        assert restored.finalized
        assert restored.outcome == 'rolled_back'
        assert restored.completed_at == record.completed_at
        assert restored.to_dict() == record.to_dict()

    def test_run_ids_unique(self):
        assert len({new_run_id() for _ in range(50)}) == 50


class TestRecordStore:
    """Test RecordStore."""

    def test_save_and_load(self, tmp_path):
        store = RecordStore(tmp_path)
        record = _record()
        record.finalize('succeeded')
        path = store.save(record)

        assert path == tmp_path / 'records' / 'r1.json'
        assert store.load('r1').outcome == 'succeeded'

    def test_save_replaces_atomically(self, tmp_path):
        store = RecordStore(tmp_path)
        record = _record()
        record.finalize('succeeded')
        store.save(record)
        store.save(record)

        assert sorted(p.name for p in (tmp_path / 'records').iterdir()) == ['r1.json']

    def test_interrupted_save_keeps_previous_record(self, tmp_path, monkeypatch):
        store = RecordStore(tmp_path)
        first = _record()
        first.finalize('failed')
        store.save(first)

        def crash(*args, **kwargs):
            raise OSError('disk full')

        monkeypatch.setattr('deploy_opr.record.json.dump', crash)
        second = _record()
        second.finalize('succeeded')
        with pytest.raises(OSError):
            store.save(second)

        assert store.load('r1').outcome == 'failed'

    def test_latest_filters(self, tmp_path):
        store = RecordStore(tmp_path)
        for i, (operation, outcome) in enumerate([
            ('deploy', 'succeeded'), ('deploy', 'failed'), ('rollback', 'succeeded'),
        ]):
            record = _record(f'r{i}', operation)
            object.__setattr__(record, 'started_at', 100.0 + i)
            record.finalize(outcome)
            store.save(record)

        assert store.latest().run_id == 'r2'
        assert store.latest(outcome='succeeded', operation='deploy').run_id == 'r0'
        assert store.latest(outcome='cancelled') is None

    def test_unreadable_record_skipped(self, tmp_path):
        store = RecordStore(tmp_path)
        record = _record()
        record.finalize('succeeded')
        store.save(record)
        (tmp_path / 'records' / 'broken.json').write_text('{')

        assert [r.run_id for r in store.list_records()] == ['r1']

    def test_empty_store(self, tmp_path):
        assert RecordStore(tmp_path).list_records() == []
        assert RecordStore(tmp_path).latest() is None
