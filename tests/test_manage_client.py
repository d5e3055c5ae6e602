"""Tests for the management API client."""
from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from portalctl.config import ApiConfig
from portalctl.manage import ErrorCode, ManageClient, ManageError


def _run(handler, call, *, token: str | None = None):
    async def scenario():
        client = ManageClient(
            "http://manage.test/api/",
            token=token,
            transport=httpx.MockTransport(handler),
        )
        async with client:
            return await call(client)

    return asyncio.run(scenario())


def test_read_sends_query_document() -> None:
    """Reads encode their arguments in the ``d`` query parameter."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"status": "ok"}})

    data = _run(handler, lambda client: client.read("portal/build", {"name": "main"}))

    assert data == {"status": "ok"}
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/api/portal/build"
    assert json.loads(request.url.params["d"]) == {"name": "main"}


def test_create_sends_json_body() -> None:
    """Creates send their arguments as a JSON body."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"commands": "", "output": ""}})

    _run(
        handler,
        lambda client: client.create("portal/restore", {"name": "main", "backup": "b1"}),
        token="secret",
    )

    request = seen[0]
    assert request.method == "POST"
    assert json.loads(request.content) == {"name": "main", "backup": "b1"}
    assert request.headers["Authorization"] == "Bearer secret"


def test_update_and_delete_methods() -> None:
    """Updates use PUT with a body and deletes use DELETE with a query."""
    methods: list[tuple[str, bool]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append((request.method, "d" in request.url.params))
        return httpx.Response(200, json={"data": True})

    async def calls(client: ManageClient) -> None:
        await client.update("portal", {"name": "main"})
        await client.delete("portal", {"name": "main"})

    _run(handler, calls)

    assert methods == [("PUT", False), ("DELETE", True)]


def test_error_envelope_raises() -> None:
    """An ``error`` member becomes a :class:`ManageError`."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"error": {"code": 1001, "msg": [["path", "invalid"]]}}
        )

    with pytest.raises(ManageError) as excinfo:
        _run(handler, lambda client: client.read("portal/build", {"name": "main"}))

    assert excinfo.value.code == ErrorCode.DATA_FIELDS
    assert excinfo.value.msg == [["path", "invalid"]]
    assert excinfo.value.to_dict() == {"code": 1001, "msg": [["path", "invalid"]]}


def test_error_envelope_on_http_error_status() -> None:
    """The service error wins over the HTTP status when both are present."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"error": {"code": "1101", "msg": "duplicate"}})

    with pytest.raises(ManageError) as excinfo:
        _run(handler, lambda client: client.create("portal", {"name": "main"}))

    assert excinfo.value.code == ErrorCode.DB_DUPLICATE


def test_http_error_without_envelope() -> None:
    """A bare HTTP failure maps to an unknown error."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={})

    with pytest.raises(ManageError) as excinfo:
        _run(handler, lambda client: client.read("portal/backups", {"name": "main"}))

    assert excinfo.value.code == ErrorCode.UNKNOWN
    assert "502" in str(excinfo.value)


def test_invalid_json_raises() -> None:
    """Non-JSON bodies are reported as failures."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(ManageError, match="invalid JSON"):
        _run(handler, lambda client: client.read("portal/backups", {"name": "main"}))


def test_missing_data_raises() -> None:
    """A success envelope without ``data`` is malformed."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    with pytest.raises(ManageError, match="no data"):
        _run(handler, lambda client: client.read("portal/backups", {"name": "main"}))


def test_transport_failure_raises() -> None:
    """Connection problems surface as :class:`ManageError`."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ManageError) as excinfo:
        _run(handler, lambda client: client.read("portal/build", {"name": "main"}))

    assert excinfo.value.code == ErrorCode.UNKNOWN
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


def test_from_config_uses_api_section() -> None:
    """The client honours the configured base URL and token."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": []})

    api = ApiConfig(base_url="https://host.example/manage", timeout=5.0, token="t0k")

    async def scenario() -> object:
        async with ManageClient.from_config(api, transport=httpx.MockTransport(handler)) as client:
            return await client.read("portal/backups", {"name": "main"})

    assert asyncio.run(scenario()) == []
    assert str(seen[0].url).startswith("https://host.example/manage/portal/backups")
    assert seen[0].headers["Authorization"] == "Bearer t0k"
