"""Driver configuration management.

Configuration is loaded from a site-config directory:
- deploy.yaml: Project, state backend, stages, registry, build, workload, rollout
- secrets.yaml: Base credential and registry credentials (decrypted)
- graphs/*.yaml: Desired resource graph per stage

Resolution order for the site-config directory:
1. $DEPLOY_DRIVER_CONFIG environment variable
2. ./deploy/ under the current working directory
3. ../site-config/ sibling directory (dev workspace)
4. /usr/local/etc/deploy-driver/ (FHS-compliant install)

Relative paths in deploy.yaml are resolved against the site-config directory.
"""

import os
from dataclasses import dataclass, field
from itertools import combinations
from pathlib import Path
from typing import Optional

import yaml

# Stages are applied in this order; later stages may reference earlier ones.
STAGE_ORDER = ('setup', 'deploy')

CONFIG_FILE = 'deploy.yaml'
SECRETS_FILE = 'secrets.yaml'

# Upper bound on any credential scope lifetime (seconds)
MAX_SCOPE_TTL = 3600

# Time an apply holds its lock beyond timeout_apply: tofu init and output,
# plus the state read and write around the engine run
APPLY_MARGIN = 300


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class StageConfig:
    """Configuration for one provisioning stage.

    Attributes:
        name: Stage name (setup, deploy)
        key: Backend location key for the stage's state blob
        graph_file: Desired resource graph for the stage
        workdir: IaC working directory handed to tofu
        actions: Allowed credential actions (patterns like 'state:*')
        timeout_apply: Seconds allowed for a single apply
    """
    name: str
    key: str
    graph_file: Path
    workdir: Path
    actions: list[str] = field(default_factory=list)
    timeout_apply: int = 1800

    @property
    def hold_seconds(self) -> int:
        """Longest time an apply of this stage holds its lock and scope."""
        return self.timeout_apply + APPLY_MARGIN


@dataclass
class StateConfig:
    """Remote state backend settings.

    lock_ttl defaults to the longest stage hold_seconds, so a lock held by a
    running apply never expires underneath it.
    """
    backend: str = 'local'
    path: Path = Path('.states')
    address: str = ''
    insecure: bool = False
    lock_ttl: int = 1800 + APPLY_MARGIN
    lock_attempts: int = 5
    lock_backoff: float = 2.0


@dataclass
class RegistryConfig:
    """Container registry settings."""
    url: str = ''
    repository: str = ''
    insecure: bool = False
    username: str = ''
    password: str = field(default='', repr=False)

    @property
    def host(self) -> str:
        return self.url.split('://', 1)[-1].rstrip('/')

    @property
    def image_name(self) -> str:
        return f'{self.host}/{self.repository}'


@dataclass
class BuildConfig:
    """Image build settings."""
    context: Path = Path('.')
    dockerfile: str = 'Dockerfile'
    push_attempts: int = 3
    push_backoff: float = 2.0
    timeout_build: int = 1800
    timeout_push: int = 600


@dataclass
class WorkloadConfig:
    """Running workload (service on the orchestration cluster)."""
    cluster: str = ''
    service: str = ''
    container: str = ''
    region: str = ''

    @property
    def ref(self) -> str:
        return f'{self.cluster}/{self.service}'


@dataclass
class RolloutConfig:
    """Health-gated rollout settings."""
    health_timeout: int = 600
    poll_interval: int = 10
    stable_checks: int = 3


@dataclass
class DriverConfig:
    """Complete driver configuration loaded from deploy.yaml + secrets.yaml."""
    project: str
    config_dir: Path
    stages: dict[str, StageConfig]
    state: StateConfig = field(default_factory=StateConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    rollout: RolloutConfig = field(default_factory=RolloutConfig)
    default_ttl: int = 900

    # Base credential (resolved from secrets.yaml or environment at load time)
    _base_credential: str = field(default='', init=False, repr=False)

    def get_stage(self, name: str) -> StageConfig:
        if name not in self.stages:
            raise ConfigError(
                f"Unknown stage '{name}'. Available: {', '.join(self.stage_names())}"
            )
        return self.stages[name]

    def stage_names(self) -> list[str]:
        return [s for s in STAGE_ORDER if s in self.stages]

    def get_base_credential(self) -> str:
        return self._base_credential

    def set_base_credential(self, value: str) -> None:
        self._base_credential = value


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _load_secrets(config_dir: Path) -> Optional[dict]:
    """Load decrypted secrets from secrets.yaml."""
    secrets_file = config_dir / SECRETS_FILE
    if not secrets_file.exists():
        return None
    return _parse_yaml(secrets_file)


def _resolve_path(config_dir: Path, value) -> Path:
    path = Path(value)
    return path if path.is_absolute() else config_dir / path


def get_base_dir() -> Path:
    """Get the deploy-driver directory."""
    return Path(__file__).parent.parent  # src/ -> deploy-driver/


def get_site_config_dir() -> Path:
    """Discover the site-config directory (see module docstring for order)."""
    # 1. Environment variable (highest priority)
    if env_path := os.environ.get('DEPLOY_DRIVER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"DEPLOY_DRIVER_CONFIG={env_path} does not exist")

    # 2. Project-local directory
    local = Path.cwd() / 'deploy'
    if (local / CONFIG_FILE).exists():
        return local

    # 3. Sibling directory (dev workspace)
    sibling = get_base_dir().parent / 'site-config'
    if (sibling / CONFIG_FILE).exists():
        return sibling

    # 4. FHS-compliant path
    fhs_path = Path('/usr/local/etc/deploy-driver')
    if fhs_path.exists():
        return fhs_path

    raise ConfigError(
        "site-config not found. "
        "Set DEPLOY_DRIVER_CONFIG or create ./deploy/deploy.yaml."
    )


def _load_stages(config_dir: Path, data: dict, config_file: Path) -> dict[str, StageConfig]:
    stages_data = data.get('stages') or {}
    if not isinstance(stages_data, dict):
        raise ConfigError(f"{config_file}: 'stages' must be a mapping")

    unknown = set(stages_data) - set(STAGE_ORDER)
    if unknown:
        raise ConfigError(
            f"{config_file}: unknown stage(s) {sorted(unknown)}. "
            f"Supported: {', '.join(STAGE_ORDER)}"
        )

    stages: dict[str, StageConfig] = {}
    for name in STAGE_ORDER:
        if name not in stages_data:
            raise ConfigError(f"{config_file}: missing stage '{name}'")
        stage = stages_data[name] or {}
        if 'key' not in stage:
            raise ConfigError(f"{config_file}: stage '{name}' missing required field: key")
        stages[name] = StageConfig(
            name=name,
            key=str(stage['key']).strip('/'),
            graph_file=_resolve_path(config_dir, stage.get('graph', f'graphs/{name}.yaml')),
            workdir=_resolve_path(config_dir, stage.get('workdir', f'infra/{name}')),
            actions=list(stage.get('actions', [])),
            timeout_apply=int(stage.get('timeout_apply', 1800)),
        )
        if stages[name].timeout_apply < 1:
            raise ConfigError(f"{config_file}: stage '{name}' timeout_apply must be >= 1")
        if stages[name].hold_seconds > MAX_SCOPE_TTL:
            raise ConfigError(
                f"{config_file}: stage '{name}' timeout_apply {stages[name].timeout_apply}s "
                f"plus {APPLY_MARGIN}s margin exceeds the {MAX_SCOPE_TTL}s scope limit"
            )

    # Scopes cover a key and everything below it; overlapping keys would let
    # one stage's scope reach the other stage's state.
    for a, b in combinations(stages.values(), 2):
        if a.key == b.key or b.key.startswith(a.key + '/') or a.key.startswith(b.key + '/'):
            raise ConfigError(
                f"{config_file}: stage keys must not overlap "
                f"({a.name}: '{a.key}', {b.name}: '{b.key}')"
            )
    return stages


def load_config(config_dir: Optional[Path] = None) -> DriverConfig:
    """Load driver configuration.

    Args:
        config_dir: Site-config directory. If None, uses auto-discovery.

    Raises:
        ConfigError: If deploy.yaml is missing or invalid
    """
    if config_dir is None:
        config_dir = get_site_config_dir()
    config_dir = Path(config_dir)

    config_file = config_dir / CONFIG_FILE
    if not config_file.exists():
        raise ConfigError(f"Config file not found: {config_file}")

    data = _parse_yaml(config_file)
    if 'project' not in data:
        raise ConfigError(f"{config_file}: missing required field: project")

    stages = _load_stages(config_dir, data, config_file)
    hold = max(stage.hold_seconds for stage in stages.values())

    state_data = data.get('state') or {}
    state = StateConfig(
        backend=state_data.get('backend', 'local'),
        path=_resolve_path(config_dir, state_data.get('path', '.states')),
        address=state_data.get('address', ''),
        insecure=bool(state_data.get('insecure', False)),
        lock_ttl=int(state_data.get('lock_ttl', hold)),
        lock_attempts=int(state_data.get('lock_attempts', 5)),
        lock_backoff=float(state_data.get('lock_backoff', 2.0)),
    )
    if state.lock_ttl < hold:
        raise ConfigError(
            f"{config_file}: state.lock_ttl {state.lock_ttl}s is shorter than the longest "
            f"apply hold ({hold}s = timeout_apply + {APPLY_MARGIN}s)"
        )
    if state.backend not in ('local', 'http'):
        raise ConfigError(f"{config_file}: unsupported state backend '{state.backend}'")
    if state.backend == 'http' and not state.address:
        raise ConfigError(f"{config_file}: http state backend requires state.address")

    registry_data = data.get('registry') or {}
    registry = RegistryConfig(
        url=registry_data.get('url', ''),
        repository=registry_data.get('repository', data['project']),
        insecure=bool(registry_data.get('insecure', False)),
    )

    build_data = data.get('build') or {}
    build = BuildConfig(
        context=_resolve_path(config_dir, build_data.get('context', '.')),
        dockerfile=build_data.get('dockerfile', 'Dockerfile'),
        push_attempts=int(build_data.get('push_attempts', 3)),
        push_backoff=float(build_data.get('push_backoff', 2.0)),
        timeout_build=int(build_data.get('timeout_build', 1800)),
        timeout_push=int(build_data.get('timeout_push', 600)),
    )

    workload_data = data.get('workload') or {}
    workload = WorkloadConfig(
        cluster=workload_data.get('cluster', ''),
        service=workload_data.get('service', data['project']),
        container=workload_data.get('container', data['project']),
        region=workload_data.get('region', ''),
    )

    rollout_data = data.get('rollout') or {}
    rollout = RolloutConfig(
        health_timeout=int(rollout_data.get('health_timeout', 600)),
        poll_interval=int(rollout_data.get('poll_interval', 10)),
        stable_checks=int(rollout_data.get('stable_checks', 3)),
    )
    if rollout.stable_checks < 1:
        raise ConfigError(f"{config_file}: rollout.stable_checks must be >= 1")

    config = DriverConfig(
        project=data['project'],
        config_dir=config_dir,
        stages=stages,
        state=state,
        registry=registry,
        build=build,
        workload=workload,
        rollout=rollout,
        default_ttl=int((data.get('credentials') or {}).get('default_ttl', 900)),
    )

    # Secrets: base credential for scope tokens, registry login
    secrets = _load_secrets(config_dir) or {}
    if signing_key := (secrets.get('auth') or {}).get('signing_key'):
        config.set_base_credential(str(signing_key))
    if registry_secrets := secrets.get('registry'):
        config.registry.username = registry_secrets.get('username', '')
        config.registry.password = registry_secrets.get('password', '')

    # Environment wins over secrets.yaml (CI runners inject it)
    if env_credential := os.environ.get('DEPLOY_DRIVER_BASE_CREDENTIAL'):
        config.set_base_credential(env_credential)

    return config
