"""Operational shell bridge.

Opens an interactive command channel into a running instance of the
workload. Read-only with respect to deployment state: no state lock is
taken and no record is written.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from common import DeployError, run_command
from config import DriverConfig
from credentials import WORKLOAD_EXEC, WORKLOAD_READ, CredentialResolver, CredentialScope

logger = logging.getLogger(__name__)

SHELL_ACTIONS = (WORKLOAD_READ, WORKLOAD_EXEC)


class WorkloadUnavailable(DeployError):
    """No running instance matches the workload reference."""


@dataclass
class InteractiveSession:
    """A prepared interactive channel to one workload instance.

    The session owns its credential scope; run() and close() revoke it.
    """
    workload_ref: str
    instance: str
    container: str
    command: str
    argv: list[str]
    scope: CredentialScope = field(repr=False)
    resolver: CredentialResolver = field(repr=False)

    def run(self) -> int:
        """Attach the operator's terminal. Returns the remote exit code."""
        try:
            self.scope.require(WORKLOAD_EXEC)
            logger.info(f"[shell] Attaching to {self.instance} ({self.container}) in "
                        f"{self.workload_ref}")
            rc, _, err = run_command(self.argv, timeout=None, capture=False)
            if rc == -1 and err:
                logger.error(f"[shell] {err}")
            return rc
        finally:
            self.close()

    def close(self) -> None:
        self.resolver.release(self.scope)


class ShellBridge:
    """Resolves a workload reference to a running instance and prepares a session."""

    def __init__(self, config: DriverConfig, runtime, resolver: CredentialResolver):
        self.config = config
        self.runtime = runtime
        self.resolver = resolver

    def open_shell(
        self,
        workload_ref: Optional[str] = None,
        command: str = '/bin/sh',
        container: Optional[str] = None,
    ) -> InteractiveSession:
        """Prepare an interactive session into workload_ref.

        Raises:
            WorkloadUnavailable: If no running instance matches
            ScopeDenied: If the deploy stage may not exec into workloads
        """
        ref = workload_ref or self.config.workload.ref
        scope = self.resolver.resolve('deploy', SHELL_ACTIONS)
        try:
            scope.require(WORKLOAD_READ)
            instances = self.runtime.running_instances(ref)
            if not instances:
                raise WorkloadUnavailable(f"No running instances of {ref}")
            container = container or self.config.workload.container
            argv = self.runtime.exec_argv(ref, instances[0], container, command)
        except BaseException:
            self.resolver.release(scope)
            raise

        return InteractiveSession(
            workload_ref=ref,
            instance=instances[0],
            container=container,
            command=command,
            argv=argv,
            scope=scope,
            resolver=self.resolver,
        )
