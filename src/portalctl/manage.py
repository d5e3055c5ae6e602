"""Asynchronous client for the remote management API.

The management service exposes resource-oriented endpoints that accept and
return JSON. Every response uses the same envelope::

    {"data": ...}                                   # success
    {"error": {"code": 1001, "msg": [["path", "invalid"]]}}   # failure

Reads and deletes carry their arguments as a JSON document in the ``d`` query
parameter; creates and updates send them as the request body. Any failure,
whether reported by the service or raised by the transport, surfaces as a
:class:`ManageError`.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from enum import IntEnum
from types import TracebackType
from typing import Protocol

import httpx

from .config import ApiConfig

LOGGER = logging.getLogger(__name__)


class ErrorCode(IntEnum):
    """Error codes the management API reports that portalctl understands."""

    UNKNOWN = 0
    DATA_FIELDS = 1001
    DB_DUPLICATE = 1101


class ManageError(RuntimeError):
    """Structured failure returned by (or on the way to) the management API."""

    def __init__(self, code: int, msg: object = None) -> None:
        """Store the machine-readable *code* and the service supplied *msg*."""
        self.code = int(code)
        self.msg = msg
        super().__init__(f"[{self.code}] {msg}" if msg not in (None, "") else f"[{self.code}]")

    def to_dict(self) -> dict[str, object]:
        """Return the error in its wire form."""
        return {"code": self.code, "msg": self.msg}


class ManageApi(Protocol):
    """Management API operations used by sessions and the portal store."""

    async def read(self, resource: str, data: Mapping[str, object]) -> object:
        """Fetch *resource*."""
        ...

    async def create(self, resource: str, data: Mapping[str, object]) -> object:
        """Create (trigger) *resource*."""
        ...

    async def update(self, resource: str, data: Mapping[str, object]) -> object:
        """Replace *resource*."""
        ...

    async def delete(self, resource: str, data: Mapping[str, object]) -> object:
        """Remove *resource*."""
        ...


class ManageClient:
    """``httpx`` backed implementation of the management API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 300.0,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create a client rooted at *base_url*."""
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        api: ApiConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ManageClient:
        """Build a client from the ``api`` configuration section."""
        return cls(api.base_url, timeout=api.timeout, token=api.token, transport=transport)

    async def __aenter__(self) -> ManageClient:
        """Return the client for use in ``async with`` blocks."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the underlying connection pool."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def read(self, resource: str, data: Mapping[str, object]) -> object:
        """Return the ``data`` member of a read on *resource*."""
        return await self._request("GET", resource, data)

    async def create(self, resource: str, data: Mapping[str, object]) -> object:
        """Return the ``data`` member of a create on *resource*."""
        return await self._request("POST", resource, data)

    async def update(self, resource: str, data: Mapping[str, object]) -> object:
        """Return the ``data`` member of an update on *resource*."""
        return await self._request("PUT", resource, data)

    async def delete(self, resource: str, data: Mapping[str, object]) -> object:
        """Return the ``data`` member of a delete on *resource*."""
        return await self._request("DELETE", resource, data)

    async def _request(
        self,
        method: str,
        resource: str,
        data: Mapping[str, object],
    ) -> object:
        url = "/" + resource.strip("/")
        LOGGER.debug("%s %s %s", method, url, data)
        try:
            if method in {"GET", "DELETE"}:
                response = await self._client.request(
                    method, url, params={"d": json.dumps(dict(data))}
                )
            else:
                response = await self._client.request(method, url, json=dict(data))
        except httpx.HTTPError as exc:
            raise ManageError(ErrorCode.UNKNOWN, f"{method} {url} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ManageError(
                ErrorCode.UNKNOWN,
                f"{method} {url} returned invalid JSON (HTTP {response.status_code}).",
            ) from exc

        if isinstance(payload, Mapping) and payload.get("error"):
            error = payload["error"]
            if isinstance(error, Mapping):
                raise ManageError(_coerce_code(error.get("code")), error.get("msg"))
            raise ManageError(ErrorCode.UNKNOWN, error)

        if response.is_error:
            raise ManageError(
                ErrorCode.UNKNOWN,
                f"{method} {url} failed with HTTP {response.status_code}.",
            )

        if not isinstance(payload, Mapping) or "data" not in payload:
            raise ManageError(ErrorCode.UNKNOWN, f"{method} {url} returned no data.")
        return payload["data"]


def _coerce_code(value: object) -> int:
    if isinstance(value, bool):
        return ErrorCode.UNKNOWN
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return ErrorCode.UNKNOWN
    return ErrorCode.UNKNOWN


__all__ = ["ErrorCode", "ManageApi", "ManageClient", "ManageError"]
