"""Docker Registry HTTP API v2 client.

Used to confirm pushes (manifest digest by tag) and to find out which
source revision an existing tag was built from, without pulling it.
"""

import logging
import re
from typing import Optional

import requests
import urllib3

from common import DeployError
from config import RegistryConfig

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30

MANIFEST_TYPES = ', '.join([
    'application/vnd.oci.image.index.v1+json',
    'application/vnd.oci.image.manifest.v1+json',
    'application/vnd.docker.distribution.manifest.list.v2+json',
    'application/vnd.docker.distribution.manifest.v2+json',
])

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(DeployError):
    """Registry request failed or returned an unexpected response."""


class RegistryClient:
    """Minimal registry v2 client over requests."""

    def __init__(self, registry: RegistryConfig, session: Optional[requests.Session] = None):
        self.registry = registry
        self.session = session or requests.Session()
        if registry.insecure:
            self.session.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        self._bearer: Optional[str] = None

    @property
    def base_url(self) -> str:
        url = self.registry.url.rstrip('/')
        if '://' not in url:
            url = f'https://{url}'
        return url

    def _auth(self) -> Optional[tuple[str, str]]:
        if self.registry.username:
            return (self.registry.username, self.registry.password)
        return None

    def _fetch_bearer(self, challenge: str) -> Optional[str]:
        """Exchange a 'WWW-Authenticate: Bearer ...' challenge for a token."""
        params = dict(_CHALLENGE_PARAM_RE.findall(challenge))
        realm = params.pop('realm', None)
        if not realm:
            return None
        resp = self.session.get(realm, params=params, auth=self._auth(), timeout=REQUEST_TIMEOUT)
        if resp.status_code != 200:
            raise RegistryError(f"Registry token request failed: HTTP {resp.status_code}")
        body = resp.json()
        return body.get('token') or body.get('access_token')

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f'{self.base_url}{path}'
        headers = dict(kwargs.pop('headers', {}))
        try:
            if self._bearer:
                headers['Authorization'] = f'Bearer {self._bearer}'
                resp = self.session.request(method, url, headers=headers,
                                            timeout=REQUEST_TIMEOUT, **kwargs)
            else:
                resp = self.session.request(method, url, headers=headers, auth=self._auth(),
                                            timeout=REQUEST_TIMEOUT, **kwargs)
            challenge = resp.headers.get('WWW-Authenticate', '')
            if resp.status_code == 401 and challenge.lower().startswith('bearer'):
                self._bearer = self._fetch_bearer(challenge)
                if self._bearer:
                    headers['Authorization'] = f'Bearer {self._bearer}'
                    resp = self.session.request(method, url, headers=headers,
                                                timeout=REQUEST_TIMEOUT, **kwargs)
            return resp
        except requests.exceptions.RequestException as e:
            raise RegistryError(f"Registry request failed ({method} {url}): {e}", cause=str(e))

    def ping(self) -> tuple[bool, str]:
        """Check the registry API is reachable (GET /v2/)."""
        try:
            resp = self._request('GET', '/v2/')
        except RegistryError as e:
            return False, f"Cannot reach registry {self.base_url}: {e.cause or e}"
        if resp.status_code == 200:
            return True, f"Registry {self.registry.host} reachable"
        if resp.status_code == 401:
            return False, f"Registry {self.registry.host} rejected credentials (HTTP 401)"
        return False, f"Unexpected registry response: {resp.status_code} - {resp.text[:100]}"

    def manifest_digest(self, repository: str, reference: str) -> Optional[str]:
        """Digest the registry holds for repository:reference, or None if absent."""
        resp = self._request('HEAD', f'/v2/{repository}/manifests/{reference}',
                             headers={'Accept': MANIFEST_TYPES})
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise RegistryError(
                f"Manifest lookup for {repository}:{reference} failed: HTTP {resp.status_code}"
            )
        digest = resp.headers.get('Docker-Content-Digest')
        if not digest:
            raise RegistryError(f"Registry returned no digest for {repository}:{reference}")
        return digest

    def _get_json(self, path: str, accept: Optional[str] = None) -> dict:
        headers = {'Accept': accept} if accept else {}
        resp = self._request('GET', path, headers=headers)
        if resp.status_code != 200:
            raise RegistryError(f"GET {path} failed: HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise RegistryError(f"GET {path} returned invalid JSON: {e}", cause=str(e))

    def image_labels(self, repository: str, reference: str) -> dict:
        """Labels of the image config behind repository:reference.

        For a multi-platform index, the first listed manifest is used.
        """
        manifest = self._get_json(f'/v2/{repository}/manifests/{reference}', MANIFEST_TYPES)
        if 'manifests' in manifest:
            if not manifest['manifests']:
                return {}
            child = manifest['manifests'][0]['digest']
            manifest = self._get_json(f'/v2/{repository}/manifests/{child}', MANIFEST_TYPES)

        config_digest = (manifest.get('config') or {}).get('digest')
        if not config_digest:
            return {}
        blob = self._get_json(f'/v2/{repository}/blobs/{config_digest}')
        return (blob.get('config') or {}).get('Labels') or {}
