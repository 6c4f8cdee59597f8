"""External tool bindings: IaC engine, container runtime, registry, workload runtime."""

from actions.tofu import TofuStageApplyAction
from actions.docker import DockerBuildAction, DockerLoginAction, DockerPushAction
from actions.registry import RegistryClient, RegistryError
from actions.ecs import EcsWorkloadRuntime, WorkloadRuntimeError

__all__ = [
    'TofuStageApplyAction',
    'DockerBuildAction',
    'DockerLoginAction',
    'DockerPushAction',
    'RegistryClient',
    'RegistryError',
    'EcsWorkloadRuntime',
    'WorkloadRuntimeError',
]
