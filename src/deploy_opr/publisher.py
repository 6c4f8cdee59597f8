"""Artifact publisher: build, push and confirm container images.

Publishing is idempotent per (source_ref, tag): a tag the registry already
holds for the same source revision is returned as-is. A tag bound to a
different revision is never overwritten.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from actions.docker import REVISION_LABEL, DockerBuildAction, DockerLoginAction, DockerPushAction
from actions.registry import RegistryClient, RegistryError
from common import DeployError, retry_with_backoff
from config import DriverConfig
from credentials import REGISTRY_PUSH, CredentialScope

logger = logging.getLogger(__name__)


class BuildFailure(DeployError):
    """Image build failed; nothing was pushed."""


class PushFailure(DeployError):
    """Image could not be pushed, confirmed, or would overwrite another artifact."""


@dataclass(frozen=True)
class Artifact:
    """Immutable, content-addressed build output."""
    registry: str
    repository: str
    tag: str
    digest: str
    source_ref: str
    published_at: float = 0.0

    @property
    def image(self) -> str:
        return f'{self.registry}/{self.repository}'

    @property
    def tag_ref(self) -> str:
        return f'{self.image}:{self.tag}'

    @property
    def ref(self) -> str:
        """Digest-pinned reference handed to the workload runtime."""
        return f'{self.image}@{self.digest}'

    def to_dict(self) -> dict:
        return {
            'registry': self.registry,
            'repository': self.repository,
            'tag': self.tag,
            'digest': self.digest,
            'source_ref': self.source_ref,
            'published_at': self.published_at,
            'ref': self.ref,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Artifact':
        return cls(
            registry=data['registry'],
            repository=data['repository'],
            tag=data['tag'],
            digest=data['digest'],
            source_ref=data['source_ref'],
            published_at=float(data.get('published_at', 0.0)),
        )


class ArtifactPublisher:
    """Builds and publishes images with the docker CLI, confirming via the registry API."""

    def __init__(
        self,
        config: DriverConfig,
        registry_client: Optional[RegistryClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.registry = registry_client or RegistryClient(config.registry)
        self.sleep = sleep

    def _existing(self, tag: str, source_ref: str) -> Optional[str]:
        """Digest of an existing tag built from source_ref, else None.

        Registry errors are retried like pushes.

        Raises:
            PushFailure: If tag exists but was built from another revision,
                or the registry cannot be inspected after retries
        """
        repository = self.config.registry.repository
        build = self.config.build

        def _lookup() -> tuple[Optional[str], Optional[str]]:
            digest = self.registry.manifest_digest(repository, tag)
            if digest is None:
                return None, None
            return digest, self.registry.image_labels(repository, tag).get(REVISION_LABEL)

        try:
            digest, revision = retry_with_backoff(
                _lookup,
                attempts=build.push_attempts,
                retry_on=(RegistryError,),
                base_delay=build.push_backoff,
                description=f"[publish] Inspect {repository}:{tag}",
                sleep=self.sleep,
            )
        except RegistryError as e:
            raise PushFailure(f"Cannot inspect {repository}:{tag} in registry: {e}", cause=e.cause)
        if digest is None:
            return None

        if revision != source_ref:
            raise PushFailure(
                f"Tag {repository}:{tag} already exists for revision {revision or 'unknown'} "
                f"({digest}); refusing to overwrite with {source_ref}"
            )
        return digest

    def publish(self, source_ref: str, tag: str, scope: CredentialScope) -> Artifact:
        """Build and push source_ref as tag; return the confirmed Artifact.

        Raises:
            BuildFailure: If the build fails (nothing is pushed)
            PushFailure: If the push cannot be confirmed after retries, or the
                tag is already bound to another revision
            ScopeDenied: If scope lacks registry:push
        """
        scope.require(REGISTRY_PUSH)
        registry = self.config.registry
        build = self.config.build

        existing = self._existing(tag, source_ref)
        if existing is not None:
            logger.info(f"[publish] {registry.repository}:{tag} already published from "
                        f"{source_ref} ({existing}), skipping build")
            return Artifact(
                registry=registry.host,
                repository=registry.repository,
                tag=tag,
                digest=existing,
                source_ref=source_ref,
                published_at=time.time(),
            )

        image_ref = f'{registry.image_name}:{tag}'
        result = DockerBuildAction(
            name='build',
            image_ref=image_ref,
            source_ref=source_ref,
            context_dir=build.context,
            dockerfile=build.dockerfile,
            timeout=build.timeout_build,
        ).run(self.config, {})
        if not result.success:
            raise BuildFailure(result.message, cause=result.message)

        login = DockerLoginAction(name='login').run(self.config, {})
        if not login.success:
            raise PushFailure(login.message, cause=login.message)

        def _push_and_confirm() -> str:
            scope.require(REGISTRY_PUSH)
            pushed = DockerPushAction(name='push', image_ref=image_ref,
                                      timeout=build.timeout_push).run(self.config, {})
            if not pushed.success:
                raise PushFailure(pushed.message, cause=pushed.message)
            try:
                confirmed = self.registry.manifest_digest(registry.repository, tag)
            except RegistryError as e:
                raise PushFailure(f"Push of {image_ref} not confirmed: {e}", cause=e.cause)
            expected = pushed.context_updates.get('pushed_digest')
            if confirmed is None or (expected and confirmed != expected):
                raise PushFailure(
                    f"Registry does not hold {image_ref} at pushed digest "
                    f"{expected or '?'} (registry has {confirmed or 'nothing'})"
                )
            return confirmed

        digest = retry_with_backoff(
            _push_and_confirm,
            attempts=build.push_attempts,
            retry_on=(PushFailure,),
            base_delay=build.push_backoff,
            description=f"[publish] Push {image_ref}",
            sleep=self.sleep,
        )
        logger.info(f"[publish] Published {image_ref} ({digest})")
        return Artifact(
            registry=registry.host,
            repository=registry.repository,
            tag=tag,
            digest=digest,
            source_ref=source_ref,
            published_at=time.time(),
        )
