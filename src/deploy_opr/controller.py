"""Deployment controller.

Drives one run through an explicit state machine:

    planning -> [awaiting_approval] -> applying_setup -> publishing
        -> [awaiting_approval] -> applying_deploy -> rolling_out -> succeeded

failed is reachable from every non-terminal state, rolled_back from
applying_deploy and rolling_out, cancelled from planning and
awaiting_approval while nothing has been applied yet.

The deploy-stage diff is computed once setup has committed its outputs, so a
destructive deploy diff passes through awaiting_approval a second time.
Every terminal state finalizes and persists the DeploymentRecord.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional, Protocol, runtime_checkable

from actions.tofu import TofuStageApplyAction
from common import HEALTH_FAILED, HEALTH_HEALTHY, ActionResult, DeployError
from config import STAGE_ORDER, ConfigError, DriverConfig
from credentials import (
    INFRA_APPLY,
    REGISTRY_PUSH,
    STATE_LOCK,
    STATE_READ,
    STATE_WRITE,
    WORKLOAD_READ,
    WORKLOAD_UPDATE,
    CredentialResolver,
    CredentialScope,
)
from deploy_opr.planner import PlanDiff, plan_stage
from deploy_opr.publisher import Artifact, ArtifactPublisher
from deploy_opr.record import DeploymentRecord, RecordStore, new_run_id
from resource_graph import ResourceGraph, load_graph
from state_backend import LockHandle, StateBackend

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PLANNING = 'planning'
    AWAITING_APPROVAL = 'awaiting_approval'
    APPLYING_SETUP = 'applying_setup'
    PUBLISHING = 'publishing'
    APPLYING_DEPLOY = 'applying_deploy'
    ROLLING_OUT = 'rolling_out'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    ROLLED_BACK = 'rolled_back'
    CANCELLED = 'cancelled'


TERMINAL_STATES = frozenset({
    RunState.SUCCEEDED, RunState.FAILED, RunState.ROLLED_BACK, RunState.CANCELLED,
})

# Single-stage runs (apply_stage, rollback) use the direct edges
# planning -> applying_deploy / rolling_out and applying_* -> succeeded.
VALID_TRANSITIONS: dict[RunState, frozenset] = {
    RunState.PLANNING: frozenset({
        RunState.AWAITING_APPROVAL, RunState.APPLYING_SETUP, RunState.APPLYING_DEPLOY,
        RunState.ROLLING_OUT, RunState.CANCELLED, RunState.FAILED,
    }),
    RunState.AWAITING_APPROVAL: frozenset({
        RunState.APPLYING_SETUP, RunState.APPLYING_DEPLOY, RunState.CANCELLED, RunState.FAILED,
    }),
    RunState.APPLYING_SETUP: frozenset({
        RunState.PUBLISHING, RunState.SUCCEEDED, RunState.FAILED,
    }),
    RunState.PUBLISHING: frozenset({
        RunState.AWAITING_APPROVAL, RunState.APPLYING_DEPLOY, RunState.FAILED,
    }),
    RunState.APPLYING_DEPLOY: frozenset({
        RunState.ROLLING_OUT, RunState.SUCCEEDED, RunState.ROLLED_BACK, RunState.FAILED,
    }),
    RunState.ROLLING_OUT: frozenset({
        RunState.SUCCEEDED, RunState.ROLLED_BACK, RunState.FAILED,
    }),
}

# Exit codes for terminal states; 2 is reserved for usage errors
EXIT_CODES = {
    RunState.SUCCEEDED: 0,
    RunState.FAILED: 1,
    RunState.ROLLED_BACK: 3,
    RunState.CANCELLED: 4,
}
EXIT_USAGE = 2

PLAN_ACTIONS = (STATE_LOCK, STATE_READ)
APPLY_ACTIONS = (STATE_LOCK, STATE_READ, STATE_WRITE, INFRA_APPLY)
PUBLISH_ACTIONS = (REGISTRY_PUSH,)
ROLLOUT_ACTIONS = (WORKLOAD_READ, WORKLOAD_UPDATE)

_STATE_STAGE = {
    RunState.APPLYING_SETUP: 'setup',
    RunState.PUBLISHING: 'deploy',
    RunState.APPLYING_DEPLOY: 'deploy',
    RunState.ROLLING_OUT: 'deploy',
}


class ApplyFailure(DeployError):
    """Stage apply failed; later stages were not attempted."""


class HealthCheckTimeout(DeployError):
    """Rollout did not report stable health within health_timeout."""


class RolloutFailed(DeployError):
    """Runtime reported the rollout as failed."""


class ApprovalRejected(DeployError):
    """Operator rejected a destructive plan."""


class RunCancelled(DeployError):
    """Operator cancelled the run before anything was applied."""


class InvalidTransition(DeployError):
    """State machine transition not permitted."""


@runtime_checkable
class ActionRunner(Protocol):
    """Protocol for action classes that implement run()."""

    def run(self, config: DriverConfig, context: dict) -> ActionResult:
        """Execute the action."""


@runtime_checkable
class WorkloadRuntime(Protocol):
    """Control plane of the running workload."""

    def update_service(self, workload_ref: Optional[str], artifact_ref: str) -> str: ...

    def get_health(self, rollout_id: str) -> str: ...

    def current_artifact(self, workload_ref: Optional[str] = None) -> str: ...


Approver = Callable[[PlanDiff], bool]


def reject_all(diff: PlanDiff) -> bool:
    """Default approver: destructive plans are never auto-approved."""
    return False


def default_engine(config: DriverConfig, stage: str) -> ActionRunner:
    return TofuStageApplyAction(
        name=f'apply-{stage}',
        stage=stage,
        timeout_apply=config.get_stage(stage).timeout_apply,
    )


class DeploymentController:
    """Orchestrates plan, approval, stage applies, publish and rollout."""

    def __init__(
        self,
        config: DriverConfig,
        backend: StateBackend,
        resolver: CredentialResolver,
        publisher: Optional[ArtifactPublisher] = None,
        runtime: Optional[WorkloadRuntime] = None,
        records: Optional[RecordStore] = None,
        engine_factory: Optional[Callable[[str], ActionRunner]] = None,
        approver: Approver = reject_all,
        desired_graphs: Optional[dict[str, ResourceGraph]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.backend = backend
        self.resolver = resolver
        self.publisher = publisher or ArtifactPublisher(config)
        self.runtime = runtime
        self.records = records or RecordStore(config.state.path)
        self.engine_factory = engine_factory or (lambda stage: default_engine(config, stage))
        self.approver = approver
        self.desired_graphs = desired_graphs
        self.clock = clock
        self.sleep = sleep

        self.state: Optional[RunState] = None
        self.record: Optional[DeploymentRecord] = None
        self._cancel_requested = False
        self._mutated = False

    # -- state machine ----------------------------------------------------

    def _begin(self, operation: str, source_ref: Optional[str] = None,
               tag: Optional[str] = None) -> DeploymentRecord:
        self.record = DeploymentRecord(new_run_id(), operation, source_ref=source_ref, tag=tag)
        self.state = None
        self._cancel_requested = False
        self._mutated = False
        logger.info(f"[controller] Run {self.record.run_id} ({operation}) started")
        self._enter(RunState.PLANNING)
        return self.record

    def _enter(self, new: RunState) -> None:
        if self.state is not None and new not in VALID_TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransition(f"Invalid transition {self.state.value} -> {new.value}")
        logger.info(f"[controller] {self.state.value if self.state else 'start'} -> {new.value}")
        self.state = new
        if new in (RunState.APPLYING_SETUP, RunState.APPLYING_DEPLOY, RunState.ROLLING_OUT):
            self._mutated = True
        self.record.transition(new.value)

    def _as_deploy_error(self, error: Exception) -> DeployError:
        if not isinstance(error, DeployError):
            error = DeployError(str(error), cause=type(error).__name__)
        if error.stage is None:
            error.stage = _STATE_STAGE.get(self.state)
        return error

    def _finish(self, outcome: RunState, error: Optional[Exception] = None) -> DeploymentRecord:
        record = self.record
        if error is not None:
            err = self._as_deploy_error(error)
            record.set_error(err)
            log = logger.warning if outcome == RunState.CANCELLED else logger.error
            log(f"[controller] {self.state.value}: {err.kind}: {err.message}")
        self._enter(outcome)
        record.finalize(outcome.value)
        path = self.records.save(record)
        logger.info(f"[controller] Run {record.run_id} {outcome.value} (record: {path})")
        return record

    def request_cancel(self) -> bool:
        """Ask the run to stop. Honoured only before anything is applied."""
        if self.state in (RunState.PLANNING, RunState.AWAITING_APPROVAL) and not self._mutated:
            self._cancel_requested = True
            logger.warning("[controller] Cancellation requested")
            return True
        logger.warning(
            f"[controller] Cancellation refused in state "
            f"{self.state.value if self.state else 'idle'}"
        )
        return False

    def _check_cancel(self) -> None:
        if self._cancel_requested:
            raise RunCancelled("Run cancelled by operator")

    # -- building blocks --------------------------------------------------

    def _desired(self, stage: str) -> ResourceGraph:
        if self.desired_graphs is not None:
            return self.desired_graphs[stage]
        return load_graph(self.config.get_stage(stage).graph_file, stage=stage)

    def _observed(self, stage: str) -> ResourceGraph:
        with self.resolver.scoped(stage, (STATE_READ,)) as scope:
            return self.backend.read_state(stage, scope=scope)

    def _plan(self, stage: str) -> PlanDiff:
        desired = self._desired(stage)
        later = [self._observed(s) for s in STAGE_ORDER[STAGE_ORDER.index(stage) + 1:]]
        with self.resolver.scoped(stage, PLAN_ACTIONS) as scope:
            diff = plan_stage(self.backend, desired, scope=scope, later_graphs=later)
        if self.record is not None and not self.record.finalized:
            self.record.add_plan(stage, diff.to_dict())
        return diff

    def _approve(self, diff: PlanDiff, pre_approved: bool) -> None:
        """Gate destructive diffs on operator approval."""
        if not diff.destructive:
            return
        self._enter(RunState.AWAITING_APPROVAL)
        destructive = [f"{a.action} {a.node}" for a in diff.actions if a.destructive]
        logger.warning(f"[controller] Plan for '{diff.stage}' is destructive: {', '.join(destructive)}")
        self._check_cancel()
        if pre_approved:
            logger.info(f"[controller] Destructive plan for '{diff.stage}' approved by flag")
        elif not self.approver(diff):
            raise ApprovalRejected(f"Destructive plan for '{diff.stage}' was rejected",
                                   stage=diff.stage)
        self._check_cancel()

    def _apply(self, stage: str, diff: PlanDiff, upstream: Optional[dict] = None) -> dict:
        """Apply desired graph of stage and commit it. Returns the stage outputs."""
        desired = self._desired(stage)
        hold = self.config.get_stage(stage).hold_seconds
        with self.resolver.scoped(stage, APPLY_ACTIONS, ttl=hold) as scope:
            with self.backend.locked(stage, scope=scope) as lock:
                observed = self.backend.read_state(stage, scope=scope)
                if observed.version != diff.base_version:
                    raise ApplyFailure(
                        f"State of '{stage}' moved from version {diff.base_version} to "
                        f"{observed.version} since planning; re-plan required",
                        stage=stage,
                        cause='stale-plan',
                    )

                if not diff.has_changes and observed.version > 0:
                    logger.info(f"[controller] No changes for '{stage}'")
                    self.record.mark_applied(stage, observed.version)
                    return dict(observed.outputs)

                outputs = self._run_engine(stage, desired, upstream or {}, scope, lock)
                version = self.backend.write_state(
                    stage, desired.with_state(0, outputs), lock, scope=scope
                )
        self.record.mark_applied(stage, version)
        return outputs

    def _run_engine(self, stage: str, desired: ResourceGraph, upstream: dict,
                    scope: CredentialScope, lock: LockHandle) -> dict:
        engine = self.engine_factory(stage)
        result = engine.run(self.config, {
            'graph': desired,
            'upstream_outputs': upstream,
            'scope': scope,
            'backend': self.backend,
            'lock': lock,
        })
        if not result.success:
            raise ApplyFailure(
                result.message,
                stage=stage,
                node=result.context_updates.get('failed_node'),
                cause=result.message,
            )
        logger.info(f"[controller] Applied '{stage}' in {result.duration:.1f}s")
        return dict(result.context_updates.get('outputs', {}))

    def _publish(self, source_ref: str, tag: str) -> Artifact:
        with self.resolver.scoped('deploy', PUBLISH_ACTIONS) as scope:
            artifact = self.publisher.publish(source_ref, tag, scope)
        if self.record is not None and not self.record.finalized:
            self.record.artifact = artifact.to_dict()
        return artifact

    def _require_runtime(self) -> WorkloadRuntime:
        if self.runtime is None:
            raise DeployError("No workload runtime configured")
        return self.runtime

    def _current_artifact(self) -> str:
        with self.resolver.scoped('deploy', (WORKLOAD_READ,)) as scope:
            scope.require(WORKLOAD_READ)
            return self._require_runtime().current_artifact(self.config.workload.ref)

    def _wait_healthy(self, rollout_id: str, scope: CredentialScope) -> None:
        """Poll until stable_checks consecutive healthy reports.

        Raises:
            RolloutFailed: If the runtime reports the rollout failed
            HealthCheckTimeout: If health_timeout elapses first
        """
        rollout = self.config.rollout
        runtime = self._require_runtime()
        deadline = self.clock() + rollout.health_timeout
        consecutive = 0
        while True:
            scope.require(WORKLOAD_READ)
            status = runtime.get_health(rollout_id)
            self.record.observe_health(status)
            if status == HEALTH_HEALTHY:
                consecutive += 1
                logger.info(f"[rollout] {rollout_id} healthy "
                            f"({consecutive}/{rollout.stable_checks})")
                if consecutive >= rollout.stable_checks:
                    return
            elif status == HEALTH_FAILED:
                raise RolloutFailed(f"Rollout {rollout_id} failed", stage='deploy')
            else:
                consecutive = 0
                logger.info(f"[rollout] {rollout_id} {status}")

            if self.clock() >= deadline:
                raise HealthCheckTimeout(
                    f"Rollout {rollout_id} not stable after {rollout.health_timeout}s",
                    stage='deploy',
                )
            self.sleep(rollout.poll_interval)

    def _rollout(self, artifact_ref: str) -> None:
        runtime = self._require_runtime()
        with self.resolver.scoped('deploy', ROLLOUT_ACTIONS) as scope:
            scope.require(WORKLOAD_UPDATE)
            rollout_id = runtime.update_service(self.config.workload.ref, artifact_ref)
            self.record.rollout_id = rollout_id
            logger.info(f"[rollout] Rolling {self.config.workload.ref} to {artifact_ref} "
                        f"(rollout {rollout_id})")
            self._wait_healthy(rollout_id, scope)

    def _revert(self, previous: Optional[str]) -> bool:
        """Roll the workload back to previous. Returns True once it is stable."""
        if previous is None:
            logger.error("[rollout] No previous artifact recorded; cannot revert")
            return False
        logger.warning(f"[rollout] Reverting {self.config.workload.ref} to {previous}")
        try:
            with self.resolver.scoped('deploy', ROLLOUT_ACTIONS) as scope:
                scope.require(WORKLOAD_UPDATE)
                rollout_id = self._require_runtime().update_service(
                    self.config.workload.ref, previous
                )
                self._wait_healthy(rollout_id, scope)
        except DeployError as e:
            logger.error(f"[rollout] Revert failed: {e}")
            return False
        return True

    def _recover(self, error: Exception, previous: Optional[str]) -> DeploymentRecord:
        """Terminal handling for failures after the deploy stage started."""
        if self.state == RunState.APPLYING_DEPLOY:
            try:
                changed = previous is None or self._current_artifact() != previous
            except DeployError as e:
                logger.warning(f"[controller] Cannot read current artifact: {e}")
                changed = True
            if not changed:
                return self._finish(RunState.FAILED, error)
        if self._revert(previous):
            return self._finish(RunState.ROLLED_BACK, error)
        return self._finish(RunState.FAILED, error)

    # -- operations -------------------------------------------------------

    def run(self, source_ref: str, tag: str, approve: bool = False) -> DeploymentRecord:
        """Full pipeline: setup, publish, deploy, rollout."""
        record = self._begin('deploy', source_ref=source_ref, tag=tag)
        previous: Optional[str] = None
        try:
            setup_diff = self._plan('setup')
            setup_diff.raise_for_conflicts()
            self._check_cancel()
            self._approve(setup_diff, approve)

            self._enter(RunState.APPLYING_SETUP)
            setup_outputs = self._apply('setup', setup_diff)

            self._enter(RunState.PUBLISHING)
            artifact = self._publish(source_ref, tag)

            deploy_diff = self._plan('deploy')
            deploy_diff.raise_for_conflicts()
            self._approve(deploy_diff, approve)

            self._enter(RunState.APPLYING_DEPLOY)
            previous = self._current_artifact()
            record.previous_artifact = previous
            self._apply('deploy', deploy_diff,
                        upstream={'setup': setup_outputs, 'artifact': artifact.ref})

            self._enter(RunState.ROLLING_OUT)
            self._rollout(artifact.ref)
        except (RunCancelled, ApprovalRejected) as e:
            return self._finish(RunState.FAILED if self._mutated else RunState.CANCELLED, e)
        except (DeployError, ConfigError) as e:
            if self.state in (RunState.APPLYING_DEPLOY, RunState.ROLLING_OUT):
                return self._recover(e, previous)
            return self._finish(RunState.FAILED, e)
        except Exception as e:
            self._finish(RunState.FAILED, e)
            raise
        return self._finish(RunState.SUCCEEDED)

    def plan_only(self, stage: str) -> PlanDiff:
        """Compute a stage's PlanDiff without applying or recording it."""
        self.config.get_stage(stage)
        return self._plan(stage)

    def apply_stage(self, stage: str, approve: bool = False) -> DeploymentRecord:
        """Plan and apply a single stage."""
        self.config.get_stage(stage)
        record = self._begin(f'apply-{stage}')
        previous: Optional[str] = None
        try:
            diff = self._plan(stage)
            diff.raise_for_conflicts()
            self._check_cancel()
            self._approve(diff, approve)

            if stage == 'setup':
                self._enter(RunState.APPLYING_SETUP)
                self._apply('setup', diff)
            else:
                setup = self._observed('setup')
                if setup.version == 0:
                    raise ApplyFailure("Stage 'setup' has never been applied", stage=stage)
                upstream = {'setup': dict(setup.outputs)}
                if self.runtime is not None:
                    previous = self._current_artifact()
                    record.previous_artifact = previous
                    upstream['artifact'] = previous
                self._enter(RunState.APPLYING_DEPLOY)
                self._apply(stage, diff, upstream=upstream)
        except (RunCancelled, ApprovalRejected) as e:
            return self._finish(RunState.FAILED if self._mutated else RunState.CANCELLED, e)
        except (DeployError, ConfigError) as e:
            if self.state == RunState.APPLYING_DEPLOY and self.runtime is not None:
                return self._recover(e, previous)
            return self._finish(RunState.FAILED, e)
        except Exception as e:
            self._finish(RunState.FAILED, e)
            raise
        return self._finish(RunState.SUCCEEDED)

    def publish_only(self, source_ref: str, tag: str) -> Artifact:
        """Build and publish an image without touching infrastructure."""
        return self._publish(source_ref, tag)

    def rollback_target(self) -> Optional[str]:
        """Artifact the last successful deploy replaced."""
        last = self.records.latest(outcome=RunState.SUCCEEDED.value, operation='deploy')
        return last.previous_artifact if last else None

    def rollback(self, to: Optional[str] = None) -> DeploymentRecord:
        """Roll the workload to `to`, or to the artifact the last deploy replaced.

        Raises:
            DeployError: If no target is given and none is recorded
        """
        target = to or self.rollback_target()
        if not target:
            raise DeployError("No previous artifact recorded; specify one with --to")

        record = self._begin('rollback')
        record.artifact = {'ref': target}
        try:
            record.previous_artifact = self._current_artifact()
            self._enter(RunState.ROLLING_OUT)
            self._rollout(target)
        except (DeployError, ConfigError) as e:
            return self._finish(RunState.FAILED, e)
        except Exception as e:
            self._finish(RunState.FAILED, e)
            raise
        return self._finish(RunState.SUCCEEDED)
