"""Workload runtime backed by the ECS control plane (aws CLI).

A rollout registers a new revision of the service's task definition with
the container image replaced, then points the service at it. ECS performs
the rolling (zero-downtime) replacement; rolloutState of the service
deployment reports its progress.
"""

import json
import logging
from typing import Optional

from common import (
    HEALTH_FAILED,
    HEALTH_HEALTHY,
    HEALTH_PENDING,
    DeployError,
    run_command,
)
from config import DriverConfig

logger = logging.getLogger(__name__)

# Fields describe-task-definition returns that register-task-definition rejects
_READ_ONLY_TASKDEF_FIELDS = (
    'taskDefinitionArn', 'revision', 'status', 'requiresAttributes', 'compatibilities',
    'registeredAt', 'registeredBy', 'deregisteredAt',
)

_ROLLOUT_STATES = {
    'COMPLETED': HEALTH_HEALTHY,
    'IN_PROGRESS': HEALTH_PENDING,
    'FAILED': HEALTH_FAILED,
}

# aws CLI error codes for a workload ref that names nothing
_NOT_FOUND_ERRORS = ('ServiceNotFoundException', 'ClusterNotFoundException')


class WorkloadRuntimeError(DeployError):
    """Runtime control plane call failed."""


class EcsWorkloadRuntime:
    """update_service / get_health / current_artifact over `aws ecs`."""

    def __init__(self, config: DriverConfig, timeout: int = 120):
        self.config = config
        self.timeout = timeout
        # rollout id -> (cluster, service)
        self._rollouts: dict[str, tuple[str, str]] = {}

    def split_ref(self, workload_ref: Optional[str]) -> tuple[str, str]:
        """'cluster/service' -> (cluster, service); a bare name uses the configured cluster."""
        ref = workload_ref or self.config.workload.ref
        if '/' in ref:
            cluster, service = ref.split('/', 1)
            return cluster, service
        return self.config.workload.cluster, ref

    def _aws(self, *args: str) -> dict:
        cmd = ['aws', 'ecs', *args, '--output', 'json']
        if self.config.workload.region:
            cmd += ['--region', self.config.workload.region]
        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            raise WorkloadRuntimeError(f"aws ecs {args[0]} failed: {err.strip()}", cause=err.strip())
        try:
            return json.loads(out or '{}')
        except ValueError as e:
            raise WorkloadRuntimeError(f"aws ecs {args[0]} returned invalid JSON: {e}")

    def _describe_service(self, cluster: str, service: str) -> dict:
        data = self._aws('describe-services', '--cluster', cluster, '--services', service)
        services = data.get('services') or []
        if not services:
            raise WorkloadRuntimeError(f"Service {cluster}/{service} not found")
        return services[0]

    def _task_definition(self, arn: str) -> dict:
        data = self._aws('describe-task-definition', '--task-definition', arn)
        return data['taskDefinition']

    def _container(self, taskdef: dict) -> dict:
        containers = taskdef.get('containerDefinitions') or []
        wanted = self.config.workload.container
        for container in containers:
            if container.get('name') == wanted:
                return container
        if len(containers) == 1:
            return containers[0]
        raise WorkloadRuntimeError(
            f"Container '{wanted}' not found in task definition {taskdef.get('family')}"
        )

    def current_artifact(self, workload_ref: Optional[str] = None) -> str:
        """Image reference the service currently runs."""
        cluster, service = self.split_ref(workload_ref)
        svc = self._describe_service(cluster, service)
        return self._container(self._task_definition(svc['taskDefinition']))['image']

    def update_service(self, workload_ref: Optional[str], artifact_ref: str) -> str:
        """Roll the service to artifact_ref. Returns the rollout (deployment) id."""
        cluster, service = self.split_ref(workload_ref)
        svc = self._describe_service(cluster, service)
        taskdef = self._task_definition(svc['taskDefinition'])
        self._container(taskdef)['image'] = artifact_ref
        for key in _READ_ONLY_TASKDEF_FIELDS:
            taskdef.pop(key, None)

        registered = self._aws('register-task-definition', '--cli-input-json', json.dumps(taskdef))
        new_arn = registered['taskDefinition']['taskDefinitionArn']
        logger.info(f"[ecs] Registered {new_arn} with image {artifact_ref}")

        updated = self._aws('update-service', '--cluster', cluster, '--service', service,
                            '--task-definition', new_arn)
        deployments = updated['service'].get('deployments') or []
        primary = next((d for d in deployments if d.get('status') == 'PRIMARY'), None)
        if primary is None:
            raise WorkloadRuntimeError(f"No primary deployment after updating {cluster}/{service}")
        rollout_id = primary['id']
        self._rollouts[rollout_id] = (cluster, service)
        logger.info(f"[ecs] Rollout {rollout_id} started on {cluster}/{service}")
        return rollout_id

    def get_health(self, rollout_id: str) -> str:
        """healthy, pending or failed for a rollout started by update_service."""
        cluster, service = self._rollouts.get(rollout_id, self.split_ref(None))
        svc = self._describe_service(cluster, service)
        for deployment in svc.get('deployments') or []:
            if deployment.get('id') == rollout_id:
                state = deployment.get('rolloutState', 'IN_PROGRESS')
                return _ROLLOUT_STATES.get(state, HEALTH_PENDING)
        # Superseded by another deployment before completing
        return HEALTH_FAILED

    def running_instances(self, workload_ref: Optional[str] = None) -> list[str]:
        """Task ARNs currently RUNNING for the service; empty if the service does not exist."""
        cluster, service = self.split_ref(workload_ref)
        try:
            data = self._aws('list-tasks', '--cluster', cluster, '--service-name', service,
                             '--desired-status', 'RUNNING')
        except WorkloadRuntimeError as e:
            if any(name in (e.cause or '') for name in _NOT_FOUND_ERRORS):
                logger.debug(f"[ecs] {cluster}/{service} not found: {e.cause}")
                return []
            raise
        return list(data.get('taskArns') or [])

    def exec_argv(self, workload_ref: Optional[str], instance: str, container: str,
                  command: str) -> list[str]:
        """argv that attaches an interactive command to a running task."""
        cluster, _ = self.split_ref(workload_ref)
        argv = ['aws', 'ecs', 'execute-command', '--cluster', cluster, '--task', instance,
                '--container', container, '--command', command, '--interactive']
        if self.config.workload.region:
            argv += ['--region', self.config.workload.region]
        return argv
