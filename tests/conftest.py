"""Shared pytest fixtures for deploy-driver tests."""

import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import ActionResult, HEALTH_HEALTHY  # noqa: E402
from credentials import INFRA_APPLY, REGISTRY_PUSH  # noqa: E402

TEST_BASE_CREDENTIAL = 'test-base-credential-0123456789abcdef'
OLD_ARTIFACT = 'registry.example.test/shop/web@sha256:' + '0' * 64
NEW_DIGEST = 'sha256:' + 'a' * 64
NEW_ARTIFACT = f'registry.example.test/shop/web@{NEW_DIGEST}'

DEPLOY_YAML = """
project: shop
credentials:
  default_ttl: 600
state:
  backend: local
  path: .states
  lock_ttl: 330
  lock_attempts: 2
  lock_backoff: 0
stages:
  setup:
    key: shop/setup
    timeout_apply: 30
    actions: ['state:*', 'infra:apply']
  deploy:
    key: shop/deploy
    timeout_apply: 30
    actions: ['state:*', 'infra:apply', 'registry:push', 'workload:*']
registry:
  url: https://registry.example.test
  repository: shop/web
build:
  context: app
  push_attempts: 2
  push_backoff: 0
workload:
  cluster: prod
  service: web
  container: web
  region: us-east-1
rollout:
  health_timeout: 30
  poll_interval: 1
  stable_checks: 2
"""

SETUP_GRAPH = """
stage: setup
resources:
  - name: network
    type: network
    attributes:
      cidr: 10.0.0.0/16
  - name: registry
    type: registry
    attributes:
      name: shop
    depends_on: [network]
  - name: cluster
    type: cluster
    attributes:
      name: prod
    depends_on: [network]
"""

DEPLOY_GRAPH = """
stage: deploy
resources:
  - name: database
    type: database
    attributes:
      engine: postgres
      size: small
    replace_on: [engine]
    depends_on: ['setup:network']
  - name: service
    type: service
    attributes:
      desired_count: 2
    depends_on: [database, 'setup:cluster', 'setup:registry']
"""


@pytest.fixture
def site_config_dir(tmp_path):
    """Create temporary site-config directory structure.

    Creates minimal site-config with:
    - deploy.yaml (local state backend, both stages)
    - secrets.yaml (base credential, registry login)
    - graphs/setup.yaml, graphs/deploy.yaml
    - infra/setup, infra/deploy (IaC workdirs)
    - app/Dockerfile (build context)
    """
    for d in ['graphs', 'infra/setup', 'infra/deploy', 'app']:
        (tmp_path / d).mkdir(parents=True, exist_ok=True)

    (tmp_path / 'deploy.yaml').write_text(DEPLOY_YAML)
    (tmp_path / 'secrets.yaml').write_text(f"""
auth:
  signing_key: "{TEST_BASE_CREDENTIAL}"
registry:
  username: ci
  password: hunter2
""")
    (tmp_path / 'graphs' / 'setup.yaml').write_text(SETUP_GRAPH)
    (tmp_path / 'graphs' / 'deploy.yaml').write_text(DEPLOY_GRAPH)
    (tmp_path / 'app' / 'Dockerfile').write_text("FROM scratch\n")
    return tmp_path


@pytest.fixture
def driver_config(site_config_dir, monkeypatch):
    """DriverConfig loaded from the temporary site-config."""
    from config import load_config
    monkeypatch.delenv('DEPLOY_DRIVER_BASE_CREDENTIAL', raising=False)
    return load_config(site_config_dir)


@pytest.fixture
def backend(driver_config):
    from state_backend import LocalStateBackend
    return LocalStateBackend(driver_config, sleep=lambda s: None)


@pytest.fixture
def resolver(driver_config):
    from credentials import CredentialResolver
    return CredentialResolver(driver_config)


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeStageRunner:
    engine: 'FakeEngine'
    stage: str

    def run(self, config, context):
        scope = context.get('scope')
        if scope is not None:
            scope.require(INFRA_APPLY)
        self.engine.calls.append({
            'stage': self.stage,
            'nodes': context['graph'].names,
            'upstream': context.get('upstream_outputs', {}),
            'scope_ttl': scope.expires_at - scope.issued_at if scope is not None else None,
            'lock': context.get('lock'),
        })
        if self.stage in self.engine.failures:
            message, node = self.engine.failures[self.stage]
            updates = {'failed_node': node} if node else {}
            return ActionResult(success=False, message=message, context_updates=updates)
        return ActionResult(
            success=True,
            message=f"applied {self.stage}",
            context_updates={'outputs': dict(self.engine.outputs.get(self.stage, {}))},
        )


class FakeEngine:
    """Stands in for the IaC engine: records applies, returns canned outputs."""

    def __init__(self):
        self.outputs = {
            'setup': {'registry_url': 'registry.example.test', 'cluster_arn': 'arn:cluster/prod'},
            'deploy': {'service_url': 'https://shop.example.test'},
        }
        self.failures: dict = {}
        self.calls: list = []

    def __call__(self, stage):
        return FakeStageRunner(self, stage)

    @property
    def stages(self):
        return [c['stage'] for c in self.calls]


class FakePublisher:
    """Publishes instantly to an imaginary registry."""

    def __init__(self):
        self.calls: list = []
        self.error = None

    def publish(self, source_ref, tag, scope):
        from deploy_opr.publisher import Artifact
        scope.require(REGISTRY_PUSH)
        self.calls.append((source_ref, tag))
        if self.error is not None:
            raise self.error
        return Artifact(
            registry='registry.example.test',
            repository='shop/web',
            tag=tag,
            digest=NEW_DIGEST,
            source_ref=source_ref,
        )


class FakeRuntime:
    """Workload runtime with scripted health per artifact."""

    def __init__(self, current=OLD_ARTIFACT):
        self.current = current
        self.health_scripts: dict = {}
        self.updates: list = []
        self.instances = ['task-1']
        self._rollouts: dict = {}

    def current_artifact(self, workload_ref=None):
        return self.current

    def update_service(self, workload_ref, artifact_ref):
        self.updates.append(artifact_ref)
        self.current = artifact_ref
        rollout_id = f'rollout-{len(self.updates)}'
        self._rollouts[rollout_id] = list(self.health_scripts.get(artifact_ref, []))
        return rollout_id

    def get_health(self, rollout_id):
        script = self._rollouts[rollout_id]
        if script:
            return script.pop(0)
        return HEALTH_HEALTHY

    def running_instances(self, workload_ref=None):
        return list(self.instances)

    def exec_argv(self, workload_ref, instance, container, command):
        return ['fake-exec', workload_ref, instance, container, command]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def make_controller(driver_config, backend, resolver, engine, publisher, runtime, clock):
    """Factory for DeploymentController wired to fakes. Keyword args override."""
    from deploy_opr.controller import DeploymentController

    def _make(**overrides):
        kwargs = dict(
            config=driver_config,
            backend=backend,
            resolver=resolver,
            publisher=publisher,
            runtime=runtime,
            engine_factory=engine,
            clock=clock,
            sleep=clock.sleep,
        )
        kwargs.update(overrides)
        return DeploymentController(**kwargs)

    return _make
