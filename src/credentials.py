"""Credential scopes: least-privilege, time-boxed capabilities per stage.

A scope is derived from the base credential for exactly one stage and a
fixed action set. Scopes are never persisted, never extended, and are
revoked by their requester on every exit path (see CredentialResolver.scoped).

Scope tokens use the same format as provisioning tokens:
    base64url(payload).base64url(hmac-sha256(base_credential, payload_b64))

Payload claims:
    v    token version (1)
    sid  scope id
    st   stage
    a    granted actions
    r    resource patterns (exact stage key and its prefix)
    iat  issued-at (epoch seconds)
    exp  expiry (epoch seconds)
    sub  requester identity
"""

import base64
import hashlib
import hmac as hmac_mod
import json
import logging
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Callable, Iterable, Iterator, Optional

from common import DeployError, holder_identity
from config import MAX_SCOPE_TTL, DriverConfig

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('credentials.audit')

TOKEN_VERSION = 1
MAX_TTL = MAX_SCOPE_TTL
KNOWN_CLAIMS = frozenset({'v', 'sid', 'st', 'a', 'r', 'iat', 'exp', 'sub'})

# Action vocabulary
STATE_READ = 'state:read'
STATE_LOCK = 'state:lock'
STATE_WRITE = 'state:write'
INFRA_APPLY = 'infra:apply'
REGISTRY_PUSH = 'registry:push'
REGISTRY_PULL = 'registry:pull'
WORKLOAD_READ = 'workload:read'
WORKLOAD_UPDATE = 'workload:update'
WORKLOAD_EXEC = 'workload:exec'


class ScopeDenied(DeployError):
    """Requested actions exceed the stage's allowed set, or scope is unusable."""


def _base64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode()


def _base64url_decode(s: str) -> bytes:
    """Decode base64url string (padding-free)."""
    s += '=' * (4 - len(s) % 4) if len(s) % 4 else ''
    return base64.urlsafe_b64decode(s)


def _sign(payload_b64: str, base_credential: str) -> bytes:
    return hmac_mod.new(
        base_credential.encode(),
        payload_b64.encode(),
        hashlib.sha256,
    ).digest()


def encode_scope_token(claims: dict, base_credential: str) -> str:
    """Sign claims into a scope token."""
    payload_b64 = _base64url_encode(json.dumps(claims, sort_keys=True).encode())
    return f"{payload_b64}.{_base64url_encode(_sign(payload_b64, base_credential))}"


def decode_scope_claims(token: str) -> dict:
    """Decode token claims WITHOUT verifying the signature.

    Raises:
        ScopeDenied: If the token is malformed
    """
    parts = token.split('.')
    if len(parts) != 2:
        raise ScopeDenied("Malformed token: expected 2 dot-separated segments")
    try:
        return json.loads(_base64url_decode(parts[0]))
    except (ValueError, TypeError) as e:
        raise ScopeDenied(f"Malformed token: invalid payload encoding ({e})")


def verify_scope_token(token: str, base_credential: str, now: Optional[float] = None) -> dict:
    """Verify a scope token and return its claims.

    Raises:
        ScopeDenied: On any verification failure (signature, version, expiry)
    """
    parts = token.split('.')
    if len(parts) != 2:
        raise ScopeDenied("Malformed token: expected 2 dot-separated segments")
    payload_b64, sig_b64 = parts

    try:
        actual_sig = _base64url_decode(sig_b64)
    except ValueError:
        raise ScopeDenied("Malformed token: invalid signature encoding")

    # Constant-time comparison
    if not hmac_mod.compare_digest(_sign(payload_b64, base_credential), actual_sig):
        raise ScopeDenied("Invalid token signature")

    claims = decode_scope_claims(token)
    if claims.get('v') != TOKEN_VERSION:
        raise ScopeDenied(f"Unsupported token version: {claims.get('v')}")
    for required in ('sid', 'st', 'a', 'exp'):
        if required not in claims:
            raise ScopeDenied(f"Malformed token: missing claim '{required}'")

    now = time.time() if now is None else now
    if now >= claims['exp']:
        raise ScopeDenied(f"Scope {claims['sid']} expired", stage=claims['st'])
    return claims


def action_allowed(action: str, patterns: Iterable[str]) -> bool:
    """True if action matches any allowed pattern (e.g. 'state:*')."""
    return any(fnmatchcase(action, pattern) for pattern in patterns)


def resource_patterns(stage_key: str) -> tuple[str, ...]:
    """Resource patterns granted to a stage scope: exact key and prefix."""
    key = stage_key.strip('/')
    return (key, f'{key}/*')


@dataclass
class CredentialScope:
    """A time-boxed, action-limited capability for one stage.

    Held only in memory. Every guarded operation calls require(), so expiry
    and revocation take effect even in the middle of a long operation.
    """
    scope_id: str
    stage: str
    actions: frozenset
    resources: tuple
    issued_at: float
    expires_at: float
    requester: str
    token: str = field(repr=False)
    clock: Callable[[], float] = field(default=time.time, repr=False, compare=False)
    _revoked: bool = field(default=False, init=False, repr=False)

    @property
    def revoked(self) -> bool:
        return self._revoked

    @property
    def expired(self) -> bool:
        return self.clock() >= self.expires_at

    @property
    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    def covers(self, resource: str) -> bool:
        return any(fnmatchcase(resource.strip('/'), pattern) for pattern in self.resources)

    def allows(self, action: str, resource: Optional[str] = None) -> bool:
        if self._revoked or self.expired:
            return False
        if action not in self.actions:
            return False
        return resource is None or self.covers(resource)

    def require(self, action: str, resource: Optional[str] = None) -> None:
        """Check the scope permits action (on resource).

        Raises:
            ScopeDenied: If revoked, expired, or not granted
        """
        if self._revoked:
            raise ScopeDenied(f"Scope {self.scope_id} was revoked", stage=self.stage)
        if self.expired:
            raise ScopeDenied(
                f"Scope {self.scope_id} expired at {self.expires_at:.0f}", stage=self.stage
            )
        if action not in self.actions:
            raise ScopeDenied(
                f"Scope {self.scope_id} does not grant '{action}' "
                f"(granted: {', '.join(sorted(self.actions))})",
                stage=self.stage,
            )
        if resource is not None and not self.covers(resource):
            raise ScopeDenied(
                f"Scope {self.scope_id} does not cover resource '{resource}'",
                stage=self.stage,
            )

    def revoke(self) -> None:
        self._revoked = True


class CredentialResolver:
    """Derives stage-scoped credentials from the base credential.

    Each stage's allowed action set comes from its own config entry, so a
    setup scope can never carry deploy-stage mutation rights and vice versa.
    """

    def __init__(self, config: DriverConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self.clock = clock
        # scope id -> expiry; entries past expiry are pruned, the token fails on exp anyway
        self._revoked_ids: dict[str, float] = {}

    def allowed_actions(self, stage: str) -> list[str]:
        if stage not in self.config.stages:
            raise ScopeDenied(f"Unknown stage '{stage}'", stage=stage)
        return list(self.config.stages[stage].actions)

    def resolve(
        self,
        stage: str,
        requested_actions: Iterable[str],
        ttl: Optional[int] = None,
        requester: Optional[str] = None,
    ) -> CredentialScope:
        """Issue a scope for stage with exactly the requested actions.

        Raises:
            ScopeDenied: If any action exceeds the stage's allowed set, the
                ttl is out of range, or no base credential is configured
        """
        requested = frozenset(requested_actions)
        if not requested:
            raise ScopeDenied("At least one action must be requested", stage=stage)

        allowed = self.allowed_actions(stage)
        denied = sorted(a for a in requested if not action_allowed(a, allowed))
        if denied:
            audit_logger.warning(
                f"[scope] DENIED stage={stage} actions={','.join(denied)} "
                f"requester={requester or holder_identity()}"
            )
            raise ScopeDenied(
                f"Stage '{stage}' does not allow: {', '.join(denied)}", stage=stage
            )

        ttl = self.config.default_ttl if ttl is None else int(ttl)
        if ttl <= 0 or ttl > MAX_TTL:
            raise ScopeDenied(f"Scope ttl must be between 1 and {MAX_TTL}s, got {ttl}", stage=stage)

        base_credential = self.config.get_base_credential()
        if not base_credential:
            raise ScopeDenied(
                "No base credential configured "
                "(secrets.yaml auth.signing_key or DEPLOY_DRIVER_BASE_CREDENTIAL)",
                stage=stage,
            )

        requester = requester or holder_identity()
        now = self.clock()
        scope_id = secrets.token_hex(8)
        resources = resource_patterns(self.config.stages[stage].key)
        claims = {
            'v': TOKEN_VERSION,
            'sid': scope_id,
            'st': stage,
            'a': sorted(requested),
            'r': list(resources),
            'iat': int(now),
            'exp': int(now + ttl),
            'sub': requester,
        }
        scope = CredentialScope(
            scope_id=scope_id,
            stage=stage,
            actions=requested,
            resources=resources,
            issued_at=now,
            expires_at=now + ttl,
            requester=requester,
            token=encode_scope_token(claims, base_credential),
            clock=self.clock,
        )
        audit_logger.info(
            f"[scope] ISSUED id={scope_id} stage={stage} actions={','.join(sorted(requested))} "
            f"ttl={ttl}s requester={requester}"
        )
        return scope

    def _prune_revoked(self) -> None:
        now = self.clock()
        for scope_id in [s for s, expires_at in self._revoked_ids.items() if now >= expires_at]:
            del self._revoked_ids[scope_id]

    def release(self, scope: CredentialScope) -> None:
        """Revoke a scope. Safe to call more than once."""
        if scope.revoked:
            return
        scope.revoke()
        self._prune_revoked()
        self._revoked_ids[scope.scope_id] = scope.expires_at
        audit_logger.info(f"[scope] RELEASED id={scope.scope_id} stage={scope.stage}")

    @contextmanager
    def scoped(
        self,
        stage: str,
        requested_actions: Iterable[str],
        ttl: Optional[int] = None,
        requester: Optional[str] = None,
    ) -> Iterator[CredentialScope]:
        """Issue a scope for the duration of a with-block, revoking it on exit."""
        scope = self.resolve(stage, requested_actions, ttl=ttl, requester=requester)
        try:
            yield scope
        finally:
            self.release(scope)

    def verify(self, token: str) -> dict:
        """Verify a token issued by this resolver (signature, expiry, revocation)."""
        self._prune_revoked()
        claims = verify_scope_token(token, self.config.get_base_credential(), now=self.clock())
        if claims['sid'] in self._revoked_ids:
            raise ScopeDenied(f"Scope {claims['sid']} was revoked", stage=claims['st'])
        return claims
