"""Tests for the operational shell bridge."""

from unittest.mock import patch

import pytest

from actions.ecs import EcsWorkloadRuntime
from credentials import CredentialResolver, ScopeDenied
from deploy_opr.shell import ShellBridge, WorkloadUnavailable


@pytest.fixture
def bridge(driver_config, runtime, resolver):
    return ShellBridge(driver_config, runtime, resolver)


class TestShellBridge:
    """Test ShellBridge.open_shell()."""

    def test_open_default_workload(self, bridge):
        session = bridge.open_shell()

        assert session.workload_ref == 'prod/web'
        assert session.instance == 'task-1'
        assert session.container == 'web'
        assert session.argv == ['fake-exec', 'prod/web', 'task-1', 'web', '/bin/sh']
        assert session.scope.actions == frozenset({'workload:read', 'workload:exec'})
        session.close()
        assert session.scope.revoked

    def test_run_attaches_and_releases(self, bridge):
        session = bridge.open_shell('prod/api', command='bash', container='api')
        with patch('deploy_opr.shell.run_command', return_value=(0, '', '')) as m:
            assert session.run() == 0

        assert m.call_args[0][0] == ['fake-exec', 'prod/api', 'task-1', 'api', 'bash']
        assert m.call_args[1]['capture'] is False
        assert m.call_args[1]['timeout'] is None
        assert session.scope.revoked

    def test_remote_exit_code_returned(self, bridge):
        session = bridge.open_shell()
        with patch('deploy_opr.shell.run_command', return_value=(130, '', '')):
            assert session.run() == 130

    def test_no_instances(self, bridge, runtime, resolver, monkeypatch):
        issued = []
        original = resolver.resolve
        monkeypatch.setattr(resolver, 'resolve',
                            lambda *a, **k: issued.append(original(*a, **k)) or issued[-1])
        runtime.instances = []

        with pytest.raises(WorkloadUnavailable, match='prod/web'):
            bridge.open_shell()
        assert issued[0].revoked

    def test_unknown_service_is_unavailable(self, driver_config, resolver):
        stderr = 'An error occurred (ServiceNotFoundException) when calling the ListTasks operation'
        bridge = ShellBridge(driver_config, EcsWorkloadRuntime(driver_config), resolver)

        with patch('actions.ecs.run_command', return_value=(254, '', stderr)):
            with pytest.raises(WorkloadUnavailable, match='prod/nope'):
                bridge.open_shell('prod/nope')

    def test_exec_not_allowed(self, driver_config, runtime):
        driver_config.stages['deploy'].actions = ['state:*', 'workload:read']
        bridge = ShellBridge(driver_config, runtime, CredentialResolver(driver_config))

        with pytest.raises(ScopeDenied, match='workload:exec'):
            bridge.open_shell()

    def test_no_state_lock_taken(self, bridge, backend):
        session = bridge.open_shell()
        assert backend.lock_info('deploy') is None
        session.close()
