"""REST state backend.

Speaks the lock/state protocol of HTTP state servers:
    GET    <address>/<key>              current blob (404 = never applied)
    POST   <address>/<key>?ID=<lock>    conditional write (If-Match: <version>)
    GET    <address>/<key>/engine       IaC engine state (404 = none yet)
    POST   <address>/<key>/engine?ID=<lock> replace IaC engine state
    POST   <address>/<key>/lock         acquire (409 = held, body = holder)
    GET    <address>/<key>/lock         current lock record (404 = unlocked)
    DELETE <address>/<key>/lock?ID=<id> release (404/409 = not held by id)

Write responses 409, 412 and 423 mean the lock or version moved underneath
the caller and are reported as StaleLock.
"""

import logging
from typing import Optional

import requests
import urllib3

from state_backend.base import LockHandle, ObservationUnavailable, StaleLock, StateBackend

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


class HttpStateBackend(StateBackend):
    """State stored behind an HTTP state server."""

    name = 'http'

    def __init__(self, *args, session: Optional[requests.Session] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.session = session or requests.Session()
        if self.config.state.insecure:
            self.session.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _url(self, key: str, suffix: str = '') -> str:
        return f"{self.config.state.address.rstrip('/')}/{key}{suffix}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ObservationUnavailable(f"State backend unreachable ({method} {url}): {e}",
                                         cause=str(e))

    def _read_blob(self, key: str) -> Optional[dict]:
        resp = self._request('GET', self._url(key))
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ObservationUnavailable(
                f"State read for '{key}' failed: HTTP {resp.status_code} {resp.text[:100]}"
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ObservationUnavailable(f"State for '{key}' is not valid JSON: {e}", cause=str(e))
        if not isinstance(data, dict):
            raise ObservationUnavailable(f"State for '{key}' is not a JSON object")
        return data

    def _write_blob(self, key: str, data: dict, lock: LockHandle, expected_version: int) -> None:
        resp = self._request(
            'POST',
            self._url(key),
            params={'ID': lock.lock_id},
            headers={'If-Match': str(expected_version)},
            json=data,
        )
        if resp.status_code in (409, 412, 423):
            raise StaleLock(
                f"State write for '{lock.stage}' rejected (HTTP {resp.status_code}): "
                f"lock {lock.lock_id} no longer current",
                stage=lock.stage,
            )
        if resp.status_code not in (200, 201, 204):
            raise ObservationUnavailable(
                f"State write for '{key}' failed: HTTP {resp.status_code} {resp.text[:100]}",
                stage=lock.stage,
            )

    def _read_engine_blob(self, key: str) -> Optional[str]:
        resp = self._request('GET', self._url(key, '/engine'))
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ObservationUnavailable(
                f"Engine state read for '{key}' failed: HTTP {resp.status_code} {resp.text[:100]}"
            )
        return resp.text

    def _write_engine_blob(self, key: str, text: str, lock: LockHandle) -> None:
        resp = self._request(
            'POST',
            self._url(key, '/engine'),
            params={'ID': lock.lock_id},
            data=text.encode('utf-8'),
            headers={'Content-Type': 'application/json'},
        )
        if resp.status_code in (409, 423):
            raise StaleLock(
                f"Engine state write for '{lock.stage}' rejected (HTTP {resp.status_code}): "
                f"lock {lock.lock_id} no longer current",
                stage=lock.stage,
            )
        if resp.status_code not in (200, 201, 204):
            raise ObservationUnavailable(
                f"Engine state write for '{key}' failed: HTTP {resp.status_code} {resp.text[:100]}",
                stage=lock.stage,
            )

    def _parse_holder(self, resp: requests.Response) -> Optional[LockHandle]:
        try:
            return LockHandle.from_dict(resp.json())
        except (ValueError, KeyError, TypeError) as e:
            raise ObservationUnavailable(f"Lock record from {resp.url} is unreadable: {e}",
                                         cause=str(e))

    def _try_lock(self, key: str, handle: LockHandle) -> Optional[LockHandle]:
        resp = self._request('POST', self._url(key, '/lock'), json=handle.to_dict())
        if resp.status_code in (200, 201):
            return None
        if resp.status_code in (409, 423):
            return self._parse_holder(resp)
        raise ObservationUnavailable(
            f"Lock request for '{key}' failed: HTTP {resp.status_code} {resp.text[:100]}",
            stage=handle.stage,
        )

    def _current_lock(self, key: str) -> Optional[LockHandle]:
        resp = self._request('GET', self._url(key, '/lock'))
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ObservationUnavailable(f"Lock lookup for '{key}' failed: HTTP {resp.status_code}")
        return self._parse_holder(resp)

    def _break_lock(self, key: str, holder: LockHandle) -> bool:
        return self._delete_lock(key, holder.lock_id)

    def _delete_lock(self, key: str, lock_id: str) -> bool:
        resp = self._request('DELETE', self._url(key, '/lock'), params={'ID': lock_id})
        if resp.status_code in (200, 204):
            return True
        if resp.status_code in (404, 409):
            return False
        raise ObservationUnavailable(f"Unlock of '{key}' failed: HTTP {resp.status_code}")
