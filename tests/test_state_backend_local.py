"""Tests for the filesystem state backend and shared locking policy."""

import json
import threading
import time

import pytest

from credentials import ScopeDenied
from resource_graph import ResourceGraph, ResourceNode
from state_backend import (
    LocalStateBackend,
    LockContention,
    LockHandle,
    ObservationUnavailable,
    StaleLock,
    create_backend,
)


def _graph(*names):
    return ResourceGraph('setup', [ResourceNode(n, 'network') for n in names])


class TestReadWrite:
    """Versioned reads and writes."""

    def test_never_applied_reads_empty(self, backend):
        graph = backend.read_state('setup')
        assert graph.version == 0
        assert len(graph) == 0

    def test_write_bumps_version(self, backend):
        with backend.locked('setup') as lock:
            assert backend.write_state('setup', _graph('a'), lock) == 1
            assert backend.write_state('setup', _graph('a', 'b'), lock) == 2

        graph = backend.read_state('setup')
        assert graph.version == 2
        assert graph.names == ['a', 'b']

    def test_stages_are_isolated(self, backend, driver_config):
        with backend.locked('setup') as lock:
            backend.write_state('setup', _graph('a'), lock)

        assert backend.read_state('deploy').version == 0
        assert (driver_config.state.path / 'shop' / 'setup' / 'state.json').exists()
        assert not (driver_config.state.path / 'shop' / 'deploy' / 'state.json').exists()

    def test_outputs_persisted(self, backend):
        with backend.locked('setup') as lock:
            backend.write_state('setup', _graph('a').with_state(0, {'url': 'x'}), lock)
        assert backend.read_state('setup').outputs == {'url': 'x'}

    def test_corrupt_state_is_unavailable(self, backend, driver_config):
        state_dir = driver_config.state.path / 'shop' / 'setup'
        state_dir.mkdir(parents=True)
        (state_dir / 'state.json').write_text('[1, 2')

        with pytest.raises(ObservationUnavailable):
            backend.read_state('setup')

    def test_invalid_graph_in_state_is_unavailable(self, backend, driver_config):
        state_dir = driver_config.state.path / 'shop' / 'setup'
        state_dir.mkdir(parents=True)
        (state_dir / 'state.json').write_text(json.dumps({
            'stage': 'setup',
            'resources': [{'name': 'a', 'type': 't', 'depends_on': ['missing']}],
        }))

        with pytest.raises(ObservationUnavailable):
            backend.read_state('setup')

    def test_write_wrong_stage_graph(self, backend):
        with backend.locked('deploy') as lock:
            with pytest.raises(ValueError):
                backend.write_state('deploy', _graph('a'), lock)


class TestLocking:
    """Exclusive stage locks."""

    def test_second_acquire_contends(self, backend):
        lock = backend.acquire_lock('setup')
        with pytest.raises(LockContention, match=lock.lock_id):
            backend.acquire_lock('setup')

    def test_release_allows_reacquire(self, backend):
        lock = backend.acquire_lock('setup')
        backend.release(lock)
        assert backend.acquire_lock('setup').lock_id != lock.lock_id

    def test_release_twice_is_noop(self, backend):
        lock = backend.acquire_lock('setup')
        backend.release(lock)
        backend.release(lock)
        assert backend.lock_info('setup') is None

    def test_lock_info_reports_holder(self, backend):
        lock = backend.acquire_lock('deploy')
        info = backend.lock_info('deploy')
        assert info == lock
        assert '@' in info.holder

    def test_write_after_release_is_stale(self, backend):
        lock = backend.acquire_lock('setup')
        backend.release(lock)
        with pytest.raises(StaleLock):
            backend.write_state('setup', _graph('a'), lock)

    def test_expired_lock_is_broken(self, driver_config):
        now = [1000.0]
        backend = LocalStateBackend(driver_config, clock=lambda: now[0], sleep=lambda s: None)
        old = backend.acquire_lock('setup')

        now[0] += driver_config.state.lock_ttl + 1
        new = backend.acquire_lock('setup')

        assert new.lock_id != old.lock_id
        with pytest.raises(StaleLock):
            backend.write_state('setup', _graph('a'), old)
        assert backend.write_state('setup', _graph('a'), new) == 1
        stale = driver_config.state.path / 'shop' / 'setup' / f'lock.stale-{old.lock_id}'
        assert stale.exists()

    def test_lock_not_breakable_during_apply(self, driver_config):
        now = [1000.0]
        first = LocalStateBackend(driver_config, clock=lambda: now[0], sleep=lambda s: None)
        second = LocalStateBackend(driver_config, clock=lambda: now[0], sleep=lambda s: None)
        lock = first.acquire_lock('setup')

        now[0] += driver_config.get_stage('setup').hold_seconds - 1
        with pytest.raises(LockContention):
            second.acquire_lock('setup')
        assert first.write_state('setup', _graph('a'), lock) == 1

    def test_write_with_expired_lock_is_stale(self, driver_config):
        now = [1000.0]
        backend = LocalStateBackend(driver_config, clock=lambda: now[0], sleep=lambda s: None)
        lock = backend.acquire_lock('setup')
        now[0] += driver_config.state.lock_ttl
        with pytest.raises(StaleLock, match='expired'):
            backend.write_state('setup', _graph('a'), lock)

    def test_lock_for_other_stage_rejected(self, backend):
        lock = backend.acquire_lock('deploy')
        with pytest.raises(StaleLock):
            backend.write_state('setup', _graph('a'), lock)

    def test_retries_with_backoff(self, driver_config):
        delays = []
        driver_config.state.lock_attempts = 3
        driver_config.state.lock_backoff = 0.5
        backend = LocalStateBackend(driver_config, sleep=delays.append)
        backend.acquire_lock('setup')

        with pytest.raises(LockContention):
            backend.acquire_lock('setup')
        assert delays == [0.5, 1.0]

    def test_force_unlock(self, backend):
        lock = backend.acquire_lock('setup')
        assert backend.force_unlock('setup', 'wrong-id') is False
        assert backend.force_unlock('setup', lock.lock_id) is True
        assert backend.lock_info('setup') is None

    def test_locked_releases_on_error(self, backend):
        with pytest.raises(RuntimeError):
            with backend.locked('setup'):
                raise RuntimeError("boom")
        assert backend.lock_info('setup') is None

    def test_concurrent_acquire_is_exclusive(self, driver_config):
        driver_config.state.lock_attempts = 1
        winners = []
        losers = []
        barrier = threading.Barrier(8)

        def worker():
            backend = LocalStateBackend(driver_config, sleep=lambda s: None)
            barrier.wait()
            try:
                winners.append(backend.acquire_lock('setup'))
            except LockContention:
                losers.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(winners) == 1
        assert len(losers) == 7


class TestScopes:
    """Scope checks on backend operations."""

    def test_read_requires_state_read(self, backend, resolver):
        with resolver.scoped('setup', ('state:lock',)) as scope:
            with pytest.raises(ScopeDenied, match='state:read'):
                backend.read_state('setup', scope=scope)

    def test_scope_of_other_stage_rejected(self, backend, resolver):
        with resolver.scoped('deploy', ('state:read',)) as scope:
            with pytest.raises(ScopeDenied, match="issued for stage 'deploy'"):
                backend.read_state('setup', scope=scope)

    def test_scope_of_other_stage_cannot_lock_or_write(self, backend, resolver):
        with resolver.scoped('setup', ('state:lock', 'state:read', 'state:write')) as scope:
            with pytest.raises(ScopeDenied, match="issued for stage 'setup'"):
                backend.acquire_lock('deploy', scope=scope)
            with backend.locked('deploy') as lock:
                with pytest.raises(ScopeDenied):
                    backend.write_state('deploy', ResourceGraph('deploy'), lock, scope=scope)
                with pytest.raises(ScopeDenied):
                    backend.write_engine_state('deploy', '{}', lock, scope=scope)
        assert backend.read_state('deploy').version == 0

    def test_revoked_scope_rejected(self, backend, resolver):
        scope = resolver.resolve('setup', ('state:read',))
        resolver.release(scope)
        with pytest.raises(ScopeDenied, match='revoked'):
            backend.read_state('setup', scope=scope)

    def test_write_requires_state_write(self, backend, resolver):
        with resolver.scoped('setup', ('state:lock', 'state:read')) as scope:
            with backend.locked('setup', scope=scope) as lock:
                with pytest.raises(ScopeDenied):
                    backend.write_state('setup', _graph('a'), lock, scope=scope)


class TestEngineState:
    """IaC engine state blob stored beside the stage graph."""

    def test_none_before_first_write(self, backend):
        assert backend.read_engine_state('setup') is None

    def test_write_under_lock(self, backend, driver_config):
        with backend.locked('setup') as lock:
            backend.write_engine_state('setup', '{"serial": 1}', lock)

        assert backend.read_engine_state('setup') == '{"serial": 1}'
        assert backend.read_engine_state('deploy') is None
        stage_dir = driver_config.state.path / 'shop' / 'setup'
        assert (stage_dir / 'engine.tfstate').exists()
        assert not list(stage_dir.glob('.*.tmp'))

    def test_write_after_release_is_stale(self, backend):
        lock = backend.acquire_lock('setup')
        backend.release(lock)
        with pytest.raises(StaleLock):
            backend.write_engine_state('setup', '{}', lock)
        assert backend.read_engine_state('setup') is None

    def test_write_with_other_stage_lock(self, backend):
        with backend.locked('deploy') as lock:
            with pytest.raises(StaleLock):
                backend.write_engine_state('setup', '{}', lock)

    def test_read_requires_state_read(self, backend, resolver):
        with resolver.scoped('setup', ('state:lock',)) as scope:
            with pytest.raises(ScopeDenied, match='state:read'):
                backend.read_engine_state('setup', scope=scope)


class TestLockHandle:
    """LockHandle serialization."""

    def test_roundtrip(self):
        handle = LockHandle('setup', 'shop/setup', 'abc', 'me@host:1', 1.0, 2.0)
        assert LockHandle.from_dict(handle.to_dict()) == handle
        assert handle.to_dict()['id'] == 'abc'

    def test_expired(self):
        handle = LockHandle('setup', 'shop/setup', 'abc', 'me', 0.0, time.time() - 1)
        assert handle.expired()


class TestCreateBackend:
    """Test create_backend()."""

    def test_local(self, driver_config):
        assert isinstance(create_backend(driver_config), LocalStateBackend)

    def test_unknown(self, driver_config):
        from config import ConfigError
        driver_config.state.backend = 'gcs'
        with pytest.raises(ConfigError):
            create_backend(driver_config)
