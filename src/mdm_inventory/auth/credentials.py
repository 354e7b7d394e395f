from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from ..logging import get_logger
from ..util.errors import AuthenticationError, truncate

LOG = get_logger(__name__)

DEFAULT_AUTHORITY = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
DEFAULT_REFRESH_MARGIN_S = 120.0
DEFAULT_TOKEN_TIMEOUT_S = 30.0


@dataclass
class Credential:
    """
    Client-credentials identity of one tenant plus its cached bearer token.
    """

    tenant_id: str
    client_id: str
    client_secret: str = field(repr=False)
    token: str = field(default="", repr=False)
    expires_at: float = 0.0


class CredentialCache:
    """
    Caches a bearer token for one tenant and refreshes it shortly before expiry.

    A single lock serializes refreshes so that concurrent callers never start
    more than one exchange; callers that queued behind the refresh observe the
    new token once they acquire the lock.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        *,
        session: Optional[requests.Session] = None,
        authority: str = DEFAULT_AUTHORITY,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cred = Credential(tenant_id=tenant_id, client_id=client_id, client_secret=client_secret)
        self._session = session or requests.Session()
        self._authority = authority.rstrip("/")
        self._margin = float(refresh_margin)
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def tenant_id(self) -> str:
        return self._cred.tenant_id

    @property
    def token_url(self) -> str:
        return f"{self._authority}/{self._cred.tenant_id}/oauth2/v2.0/token"

    def _valid(self) -> bool:
        return bool(self._cred.token) and self._clock() < self._cred.expires_at - self._margin

    def get_token(self, timeout: Optional[float] = None) -> str:
        with self._lock:
            if self._valid():
                return self._cred.token
            token, expires_in = self._exchange(timeout)
            self._cred.token = token
            self._cred.expires_at = self._clock() + expires_in
            LOG.debug(
                "Acquired access token",
                extra={"tenant_id": self._cred.tenant_id, "expires_in_s": expires_in},
            )
            return token

    def invalidate(self) -> None:
        with self._lock:
            self._cred.token = ""
            self._cred.expires_at = 0.0

    def _exchange(self, timeout: Optional[float]) -> tuple[str, float]:
        data = {
            "grant_type": "client_credentials",
            "client_id": self._cred.client_id,
            "client_secret": self._cred.client_secret,
            "scope": GRAPH_SCOPE,
        }
        try:
            resp = self._session.post(self.token_url, data=data, timeout=timeout or DEFAULT_TOKEN_TIMEOUT_S)
        except requests.RequestException as e:
            raise AuthenticationError(f"Token request failed for tenant {self._cred.tenant_id}: {e}") from e

        if resp.status_code != 200:
            raise AuthenticationError(
                f"Token request for tenant {self._cred.tenant_id} returned {resp.status_code}: {truncate(resp.text or '')}"
            )
        try:
            body: Dict[str, Any] = resp.json()
        except ValueError as e:
            raise AuthenticationError(f"Token response for tenant {self._cred.tenant_id} is not JSON") from e
        if not isinstance(body, dict):
            raise AuthenticationError(f"Token response for tenant {self._cred.tenant_id} is not an object")

        token = body.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthenticationError(f"Token response for tenant {self._cred.tenant_id} has no access_token")
        try:
            expires_in = float(body.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0.0
        return token, expires_in
