"""Container image actions (docker CLI)."""

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import ActionResult, run_command
from config import DriverConfig

logger = logging.getLogger(__name__)

REVISION_LABEL = 'org.opencontainers.image.revision'

# "latest: digest: sha256:abc... size: 1234"
_PUSH_DIGEST_RE = re.compile(r'digest:\s*(sha256:[0-9a-f]{64})')


def parse_push_digest(output: str) -> Optional[str]:
    match = _PUSH_DIGEST_RE.search(output or '')
    return match.group(1) if match else None


@dataclass
class DockerLoginAction:
    """Log the docker CLI into the registry (password via stdin)."""
    name: str
    timeout: int = 60

    def run(self, config: DriverConfig, context: dict) -> ActionResult:
        start = time.time()
        registry = config.registry
        if not registry.username:
            return ActionResult(
                success=True,
                message="No registry credentials configured, skipping login",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Logging in to {registry.host} as {registry.username}...")
        rc, out, err = run_command(
            ['docker', 'login', '--username', registry.username, '--password-stdin', registry.host],
            timeout=self.timeout,
            input=registry.password,
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"docker login failed: {err.strip()}",
                duration=time.time() - start
            )
        return ActionResult(
            success=True,
            message=f"Logged in to {registry.host}",
            duration=time.time() - start
        )


@dataclass
class DockerBuildAction:
    """Build an image and label it with the source revision.

    Context updates on success:
        image_id: Local image id (sha256:...)
    """
    name: str
    image_ref: str       # repository:tag to build
    source_ref: str      # commit the image is built from
    context_dir: Path = Path('.')
    dockerfile: str = 'Dockerfile'
    timeout: int = 1800

    def run(self, config: DriverConfig, context: dict) -> ActionResult:
        """Execute docker build."""
        start = time.time()

        if not Path(self.context_dir).exists():
            return ActionResult(
                success=False,
                message=f"Build context not found: {self.context_dir}",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Building {self.image_ref} from {self.source_ref}...")
        cmd = [
            'docker', 'build',
            '--tag', self.image_ref,
            '--label', f'{REVISION_LABEL}={self.source_ref}',
            '--file', str(Path(self.context_dir) / self.dockerfile),
            str(self.context_dir),
        ]
        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"docker build failed: {err.strip()[-500:]}",
                duration=time.time() - start
            )

        rc, out, err = run_command(
            ['docker', 'image', 'inspect', '--format', '{{.Id}}', self.image_ref], timeout=60
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"Built image {self.image_ref} not found locally: {err.strip()}",
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"Built {self.image_ref}",
            duration=time.time() - start,
            context_updates={'image_id': out.strip()}
        )


@dataclass
class DockerPushAction:
    """Push an image tag to its registry.

    Context updates on success:
        pushed_digest: Manifest digest reported by docker push (if printed)
    """
    name: str
    image_ref: str
    timeout: int = 600

    def run(self, config: DriverConfig, context: dict) -> ActionResult:
        """Execute docker push."""
        start = time.time()

        logger.info(f"[{self.name}] Pushing {self.image_ref}...")
        rc, out, err = run_command(['docker', 'push', self.image_ref], timeout=self.timeout)
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"docker push failed: {err.strip()[-500:]}",
                duration=time.time() - start
            )

        context_updates = {}
        if digest := parse_push_digest(out):
            context_updates['pushed_digest'] = digest

        return ActionResult(
            success=True,
            message=f"Pushed {self.image_ref}",
            duration=time.time() - start,
            context_updates=context_updates
        )
