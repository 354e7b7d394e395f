from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from ..auth.credentials import CredentialCache
from ..logging import get_logger
from ..util.errors import TransportError, map_http_error, truncate

LOG = get_logger(__name__)

GRAPH_ROOT = "https://graph.microsoft.com"
DEFAULT_REQUEST_TIMEOUT_S = 30.0


def graph_url(path: str, *, beta: bool = False, root: str = GRAPH_ROOT) -> str:
    """
    Build an absolute Graph URL. Absolute inputs (next links) pass through unchanged.
    """
    if path.startswith("http://") or path.startswith("https://"):
        return path
    version = "beta" if beta else "v1.0"
    return f"{root.rstrip('/')}/{version}/{path.lstrip('/')}"


class GraphClient:
    """
    Authenticated JSON transport over a requests.Session.

    Every request acquires a token from the tenant's CredentialCache. Non-2xx
    responses raise TransportError carrying the status code and a truncated body.
    """

    def __init__(
        self,
        credentials: CredentialCache,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        self.credentials = credentials
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.get_token()}",
            "Accept": "application/json",
        }

    def request(self, method: str, url: str, *, json_body: Any = None, timeout: Optional[float] = None) -> requests.Response:
        headers = self._headers()
        if json_body is not None:
            headers["Content-Type"] = "application/json"
        try:
            resp = self.session.request(
                method,
                url,
                headers=headers,
                json=json_body,
                timeout=timeout or self.timeout,
            )
        except Exception as e:
            mapped = map_http_error(e, f"{method} {url} failed")
            if mapped:
                raise mapped from e
            raise
        if resp.status_code < 200 or resp.status_code >= 300:
            body = truncate(resp.text or "")
            raise TransportError(
                f"{method} {url} returned {resp.status_code}: {body}",
                status_code=resp.status_code,
                body=body,
            )
        return resp

    def get_json(self, url: str, *, timeout: Optional[float] = None) -> Any:
        resp = self.request("GET", url, timeout=timeout)
        return _decode(resp, url)

    def post_json(self, url: str, body: Any, *, timeout: Optional[float] = None) -> Any:
        resp = self.request("POST", url, json_body=body, timeout=timeout)
        if not resp.content:
            return {}
        return _decode(resp, url)

    def delete(self, url: str, *, timeout: Optional[float] = None) -> None:
        self.request("DELETE", url, timeout=timeout)


def _decode(resp: requests.Response, url: str) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise TransportError(f"Response from {url} is not valid JSON", status_code=resp.status_code) from e
