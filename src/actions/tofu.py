"""OpenTofu stage apply.

The resource graph of a stage is rendered to a tfvars JSON file and applied
against the stage's IaC working directory. Tofu's own state file lives in
the configured state backend next to the stage graph: it is restored into a
scratch directory before apply and written back under the held stage lock
(orchestrator owns state, tofu is a dumb executor).
"""

import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import ActionResult, run_command
from config import DriverConfig
from credentials import INFRA_APPLY, ScopeDenied
from resource_graph import ResourceGraph
from state_backend import LockHandle, StateBackend

logger = logging.getLogger(__name__)

SCOPE_TOKEN_ENV = 'DEPLOY_DRIVER_SCOPE_TOKEN'

# "with aws_ecs_service.app," in tofu diagnostics names the failing resource
_FAILED_RESOURCE_RE = re.compile(r'with [\w-]+\.([\w-]+)')


def create_temp_tfvars(stage: str) -> Path:
    """Create a unique temporary file for tfvars.

    Caller is responsible for cleanup.
    """
    fd, path = tempfile.mkstemp(prefix=f'tfvars-{stage}-', suffix='.json')
    os.close(fd)
    return Path(path)


def render_tfvars(config: DriverConfig, graph: ResourceGraph, upstream: dict) -> dict:
    """Variables handed to the stage's IaC module."""
    return {
        'project': config.project,
        'stage': graph.stage,
        'resources': {
            node.name: {
                'type': node.type,
                'attributes': node.attributes,
                'depends_on': node.depends_on,
            }
            for node in graph.nodes
        },
        'upstream': upstream,
    }


def parse_outputs(raw: str) -> dict:
    """Flatten `tofu output -json` to {name: value}."""
    data = json.loads(raw or '{}')
    return {name: item.get('value') for name, item in data.items()}


def failed_resource(stderr: str) -> Optional[str]:
    match = _FAILED_RESOURCE_RE.search(stderr or '')
    return match.group(1) if match else None


@dataclass
class TofuStageApplyAction:
    """Run tofu init, apply and output for one stage's resource graph.

    Context keys:
        graph: Desired ResourceGraph of the stage (required)
        backend: StateBackend holding the stage's engine state (required)
        lock: LockHandle held on the stage for the whole run (required)
        upstream_outputs: Outputs of earlier stages (optional)
        scope: CredentialScope granting infra:apply on the stage (optional)

    Context updates on success:
        outputs: Stage outputs from `tofu output -json`
    On failure, failed_node names the resource tofu reported, when known.
    """
    name: str
    stage: str
    timeout_init: int = 120
    timeout_apply: int = 1800
    timeout_output: int = 60

    def run(self, config: DriverConfig, context: dict) -> ActionResult:
        """Execute tofu init + apply + output for the stage."""
        start = time.time()
        stage_config = config.get_stage(self.stage)
        backend: StateBackend = context['backend']
        lock: LockHandle = context['lock']

        scope = context.get('scope')
        if scope is not None:
            if scope.stage != self.stage:
                raise ScopeDenied(
                    f"Scope {scope.scope_id} was issued for stage '{scope.stage}', "
                    f"not '{self.stage}'",
                    stage=self.stage,
                )
            scope.require(INFRA_APPLY, stage_config.key)

        tofu_dir = stage_config.workdir
        if not tofu_dir.exists():
            return ActionResult(
                success=False,
                message=f"Tofu directory not found: {tofu_dir}",
                duration=time.time() - start
            )

        # TF_DATA_DIR is a provider/module cache only; it must NOT contain
        # terraform.tfstate, otherwise OpenTofu's legacy code path reads it.
        data_dir = Path(config.state.path) / stage_config.key / 'tofu-data'
        data_dir.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, 'TF_DATA_DIR': str(data_dir)}
        if scope is not None:
            env[SCOPE_TOKEN_ENV] = scope.token

        with tempfile.TemporaryDirectory(prefix=f'tofu-{self.stage}-') as work:
            state_file = Path(work) / 'terraform.tfstate'
            previous = backend.read_engine_state(self.stage, scope=scope)
            if previous is not None:
                state_file.write_text(previous, encoding='utf-8')

            try:
                result = self._run_tofu(config, context, tofu_dir, state_file, env)
            finally:
                # A failed apply still records what it created; keep it.
                if state_file.exists():
                    current = state_file.read_text(encoding='utf-8')
                    if current != previous:
                        backend.write_engine_state(self.stage, current, lock, scope=scope)
                        logger.info(f"[{self.name}] Stored engine state via {backend.name} backend")

        result.duration = time.time() - start
        return result

    def _run_tofu(self, config: DriverConfig, context: dict, tofu_dir: Path,
                  state_file: Path, env: dict) -> ActionResult:
        graph: ResourceGraph = context['graph']
        tfvars_path = create_temp_tfvars(self.stage)
        try:
            with open(tfvars_path, 'w', encoding='utf-8') as f:
                json.dump(render_tfvars(config, graph, context.get('upstream_outputs', {})), f,
                          indent=2)
            logger.debug(f"[{self.name}] Generated tfvars: {tfvars_path}")

            logger.info(f"[{self.name}] Running tofu init...")
            rc, out, err = run_command(['tofu', 'init', '-input=false'], cwd=tofu_dir,
                                       timeout=self.timeout_init, env=env)
            if rc != 0:
                return ActionResult(success=False, message=f"tofu init failed: {err}")

            logger.info(f"[{self.name}] Running tofu apply...")
            cmd = ['tofu', 'apply', '-auto-approve', '-input=false',
                   f'-state={state_file}', f'-var-file={tfvars_path}']
            rc, out, err = run_command(cmd, cwd=tofu_dir, timeout=self.timeout_apply, env=env)
            if rc != 0:
                updates = {}
                if node := failed_resource(err):
                    updates['failed_node'] = node
                return ActionResult(
                    success=False,
                    message=f"tofu apply failed: {err}",
                    context_updates=updates,
                )
        finally:
            if tfvars_path.exists():
                tfvars_path.unlink()
                logger.debug(f"[{self.name}] Cleaned up temp tfvars: {tfvars_path}")

        rc, out, err = run_command(['tofu', 'output', '-json', f'-state={state_file}'],
                                   cwd=tofu_dir, timeout=self.timeout_output, env=env)
        if rc != 0:
            return ActionResult(success=False, message=f"tofu output failed: {err}")
        try:
            outputs = parse_outputs(out)
        except (ValueError, AttributeError) as e:
            return ActionResult(success=False, message=f"tofu output returned invalid JSON: {e}")

        return ActionResult(
            success=True,
            message=f"Tofu apply completed for stage {self.stage} ({len(graph)} resources)",
            context_updates={'outputs': outputs},
        )
