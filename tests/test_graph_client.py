from __future__ import annotations

import types

import pytest
import requests

from mdm_inventory.graph.client import GraphClient, graph_url
from mdm_inventory.util.errors import TransportError


class _Creds:
    def __init__(self) -> None:
        self.calls = 0

    def get_token(self, timeout=None):
        self.calls += 1
        return "tok"


def _response(status_code=200, body=None, text="", content=b"x"):
    def _json():
        if body is None:
            raise ValueError("not json")
        return body

    return types.SimpleNamespace(status_code=status_code, json=_json, text=text, content=content)


class _Session:
    def __init__(self, result) -> None:
        self.result = result
        self.requests = []

    def request(self, method, url, headers=None, json=None, timeout=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "json": json, "timeout": timeout})
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def test_graph_url_versions_and_passthrough() -> None:
    assert graph_url("deviceManagement/x") == "https://graph.microsoft.com/v1.0/deviceManagement/x"
    assert graph_url("/deviceManagement/x", beta=True) == "https://graph.microsoft.com/beta/deviceManagement/x"
    link = "https://graph.microsoft.com/v1.0/deviceManagement/managedDevices?$skiptoken=abc"
    assert graph_url(link) == link


def test_get_json_sends_bearer_token() -> None:
    session = _Session(_response(body={"value": []}))
    client = GraphClient(_Creds(), session=session, timeout=7)

    assert client.get_json("https://example.test/a") == {"value": []}
    req = session.requests[0]
    assert req["headers"]["Authorization"] == "Bearer tok"
    assert req["timeout"] == 7


def test_non_2xx_raises_transport_error_with_status() -> None:
    session = _Session(_response(status_code=403, text="Forbidden"))
    client = GraphClient(_Creds(), session=session)

    with pytest.raises(TransportError) as exc:
        client.get_json("https://example.test/a")
    assert exc.value.status_code == 403
    assert exc.value.body == "Forbidden"


def test_requests_exception_is_mapped() -> None:
    session = _Session(requests.Timeout("read timed out"))
    client = GraphClient(_Creds(), session=session)

    with pytest.raises(TransportError) as exc:
        client.delete("https://example.test/a")
    assert isinstance(exc.value.__cause__, requests.Timeout)


def test_post_json_with_no_content_returns_empty_dict() -> None:
    session = _Session(_response(status_code=204, content=b""))
    client = GraphClient(_Creds(), session=session)

    assert client.post_json("https://example.test/a", None) == {}
    assert "Content-Type" not in session.requests[0]["headers"]


def test_invalid_json_raises_transport_error() -> None:
    session = _Session(_response(body=None, text="<html>"))
    client = GraphClient(_Creds(), session=session)

    with pytest.raises(TransportError):
        client.get_json("https://example.test/a")
