"""Tests for docker CLI actions."""

from unittest.mock import patch

from actions.docker import (
    REVISION_LABEL,
    DockerBuildAction,
    DockerLoginAction,
    DockerPushAction,
    parse_push_digest,
)

DIGEST = 'sha256:' + 'f' * 64


class TestDockerLoginAction:
    """Test DockerLoginAction."""

    def test_password_via_stdin(self, driver_config):
        with patch('actions.docker.run_command', return_value=(0, 'Login Succeeded', '')) as m:
            result = DockerLoginAction(name='login').run(driver_config, {})

        assert result.success is True
        cmd = m.call_args[0][0]
        assert '--password-stdin' in cmd
        assert 'hunter2' not in cmd
        assert m.call_args[1]['input'] == 'hunter2'

    def test_no_credentials_skips(self, driver_config):
        driver_config.registry.username = ''
        with patch('actions.docker.run_command') as m:
            result = DockerLoginAction(name='login').run(driver_config, {})

        assert result.success is True
        m.assert_not_called()

    def test_failure(self, driver_config):
        with patch('actions.docker.run_command', return_value=(1, '', 'unauthorized')):
            result = DockerLoginAction(name='login').run(driver_config, {})
        assert result.success is False
        assert 'unauthorized' in result.message


class TestDockerBuildAction:
    """Test DockerBuildAction."""

    def _action(self, context_dir):
        return DockerBuildAction(
            name='build',
            image_ref='registry.example.test/shop/web:v1',
            source_ref='abc123',
            context_dir=context_dir,
        )

    def test_build_labels_revision(self, driver_config):
        with patch('actions.docker.run_command',
                   side_effect=[(0, '', ''), (0, 'sha256:local\n', '')]) as m:
            result = self._action(driver_config.build.context).run(driver_config, {})

        assert result.success is True
        assert result.context_updates == {'image_id': 'sha256:local'}
        build_cmd = m.call_args_list[0][0][0]
        assert f'{REVISION_LABEL}=abc123' in build_cmd
        assert build_cmd[-1] == str(driver_config.build.context)

    def test_build_failure(self, driver_config):
        with patch('actions.docker.run_command', return_value=(1, '', 'COPY failed')):
            result = self._action(driver_config.build.context).run(driver_config, {})
        assert result.success is False
        assert 'COPY failed' in result.message

    def test_missing_context(self, driver_config, tmp_path):
        result = self._action(tmp_path / 'nope').run(driver_config, {})
        assert result.success is False
        assert 'not found' in result.message


class TestDockerPushAction:
    """Test DockerPushAction."""

    def test_push_reports_digest(self, driver_config):
        out = f'v1: digest: {DIGEST} size: 1570\n'
        with patch('actions.docker.run_command', return_value=(0, out, '')):
            result = DockerPushAction(name='push', image_ref='r/x:v1').run(driver_config, {})

        assert result.success is True
        assert result.context_updates == {'pushed_digest': DIGEST}

    def test_push_failure(self, driver_config):
        with patch('actions.docker.run_command', return_value=(1, '', 'denied')):
            result = DockerPushAction(name='push', image_ref='r/x:v1').run(driver_config, {})
        assert result.success is False


class TestParsePushDigest:
    def test_parse(self):
        assert parse_push_digest(f'latest: digest: {DIGEST} size: 1') == DIGEST
        assert parse_push_digest('no digest here') is None
