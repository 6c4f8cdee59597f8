#!/usr/bin/env python3
"""Tests for readiness checks."""

from unittest.mock import patch

import requests

from readiness import (
    format_preflight_results,
    run_preflight_checks,
    validate_base_credential,
    validate_registry,
    validate_state_backend,
    validate_tool,
)


class TestValidateTool:
    """Test executable lookup."""

    def test_found(self):
        with patch('readiness.shutil.which', return_value='/usr/bin/tofu'):
            ok, message = validate_tool('tofu')
        assert ok is True
        assert '/usr/bin/tofu' in message

    def test_missing(self):
        with patch('readiness.shutil.which', return_value=None):
            ok, message = validate_tool('tofu')
        assert ok is False
        assert "'tofu' not found" in message


class TestValidateBaseCredential:
    """Test base credential presence."""

    def test_present(self, driver_config):
        assert validate_base_credential(driver_config)[0] is True

    def test_missing_has_remediation(self, driver_config):
        driver_config.set_base_credential('')
        ok, message = validate_base_credential(driver_config)
        assert ok is False
        assert 'DEPLOY_DRIVER_BASE_CREDENTIAL' in message


class TestValidateStateBackend:
    """Test state backend reachability."""

    def test_local_writable(self, driver_config):
        ok, message = validate_state_backend(driver_config)
        assert ok is True
        assert 'writable' in message

    def test_http_reachable(self, driver_config):
        driver_config.state.backend = 'http'
        driver_config.state.address = 'https://state.example.test/'
        with patch('readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 404
            ok, message = validate_state_backend(driver_config)
        assert ok is True
        assert mock_get.call_args[1]['verify'] is True

    def test_http_server_error(self, driver_config):
        driver_config.state.backend = 'http'
        driver_config.state.address = 'https://state.example.test/'
        with patch('readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 503
            mock_get.return_value.text = 'unavailable'
            ok, message = validate_state_backend(driver_config)
        assert ok is False
        assert '503' in message

    def test_http_connection_error(self, driver_config):
        driver_config.state.backend = 'http'
        driver_config.state.address = 'https://state.example.test/'
        with patch('readiness.requests.get',
                   side_effect=requests.exceptions.ConnectionError('refused')):
            ok, message = validate_state_backend(driver_config)
        assert ok is False
        assert 'Cannot connect' in message

    def test_http_timeout(self, driver_config):
        driver_config.state.backend = 'http'
        driver_config.state.address = 'https://state.example.test/'
        with patch('readiness.requests.get', side_effect=requests.exceptions.Timeout()):
            ok, message = validate_state_backend(driver_config)
        assert ok is False
        assert 'Timeout' in message


class TestValidateRegistry:
    """Test registry check."""

    def test_no_url(self, driver_config):
        driver_config.registry.url = ''
        ok, message = validate_registry(driver_config)
        assert ok is False
        assert 'registry.url' in message

    def test_delegates_to_client(self, driver_config):
        with patch('readiness.RegistryClient') as client:
            client.return_value.ping.return_value = (True, 'Registry reachable')
            assert validate_registry(driver_config) == (True, 'Registry reachable')
        client.assert_called_once_with(driver_config.registry)


class TestRunPreflightChecks:
    """Test check selection per command."""

    def test_deploy_checks_everything(self, driver_config):
        with patch('readiness.shutil.which', return_value='/bin/x'), \
             patch('readiness.validate_registry', return_value=(True, 'ok')):
            results = run_preflight_checks(driver_config, 'deploy')

        names = [name for name, _, _ in results]
        assert names == ['tool:tofu', 'tool:docker', 'tool:aws', 'credential', 'state', 'registry']
        assert all(ok for _, ok, _ in results)

    def test_plan_needs_no_tools_or_registry(self, driver_config):
        with patch('readiness.validate_registry') as registry:
            results = run_preflight_checks(driver_config, 'plan')

        assert [name for name, _, _ in results] == ['credential', 'state']
        registry.assert_not_called()

    def test_reports_failures(self, driver_config):
        with patch('readiness.shutil.which', return_value=None):
            results = run_preflight_checks(driver_config, 'rollback')
        assert results[0] == ('tool:aws', False, "'aws' not found on PATH")


def test_format_preflight_results():
    text = format_preflight_results([('state', True, 'fine'), ('tool:aws', False, 'missing')])
    assert text.splitlines() == ['  ✓ state: fine', '  ✗ tool:aws: missing']
