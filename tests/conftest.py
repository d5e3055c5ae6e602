"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from copy import deepcopy

import pytest

from portalctl.descriptor import GitOptions, InstanceDescriptor, NodeOptions


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class Replies:
    """Successive replies for repeated calls to the same resource."""

    def __init__(self, *values: object) -> None:
        self.values = list(values)


class FakeManage:
    """In-memory stand-in for the management API.

    ``responses`` maps ``(method, resource)`` to a payload, an exception to
    raise, or :class:`Replies`. Keys listed in ``gated`` block until
    :meth:`release` is called, which lets tests interleave close/reopen with
    an outstanding request.
    """

    def __init__(
        self,
        responses: Mapping[tuple[str, str], object],
        *,
        gated: set[tuple[str, str]] | None = None,
    ) -> None:
        self.responses = dict(responses)
        self.calls: list[tuple[str, str, dict[str, object]]] = []
        self._gates = {key: asyncio.Event() for key in gated or set()}

    def release(self, method: str, resource: str) -> None:
        self._gates[(method, resource)].set()

    async def __aenter__(self) -> FakeManage:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def read(self, resource: str, data: Mapping[str, object]) -> object:
        return await self._respond("read", resource, data)

    async def create(self, resource: str, data: Mapping[str, object]) -> object:
        return await self._respond("create", resource, data)

    async def update(self, resource: str, data: Mapping[str, object]) -> object:
        return await self._respond("update", resource, data)

    async def delete(self, resource: str, data: Mapping[str, object]) -> object:
        return await self._respond("delete", resource, data)

    async def _respond(self, method: str, resource: str, data: Mapping[str, object]) -> object:
        key = (method, resource)
        self.calls.append((method, resource, dict(data)))
        reply = self.responses[key]
        if isinstance(reply, Replies):
            reply = reply.values.pop(0)
        gate = self._gates.get(key)
        if gate is not None:
            await gate.wait()
        if isinstance(reply, BaseException):
            raise reply
        return deepcopy(reply)


@pytest.fixture
def fake_manage() -> type[FakeManage]:
    """Return the fake management API class."""
    return FakeManage


@pytest.fixture
def replies() -> type[Replies]:
    """Return the helper used to queue successive replies."""
    return Replies


@pytest.fixture
def descriptor() -> InstanceDescriptor:
    """Plain portal: no submodules, no nvm, no backups."""
    return InstanceDescriptor(
        name="app",
        path="/srv/app",
        web_root="/var/www/app",
        git=GitOptions(checkout_allowed=True, submodules_required=False),
        node=NodeOptions(force_install=False, script="build"),
    )


@pytest.fixture
def backup_descriptor(descriptor: InstanceDescriptor) -> InstanceDescriptor:
    """Portal with submodules, nvm, forced install and a backups folder."""
    return InstanceDescriptor(
        name=descriptor.name,
        path=descriptor.path,
        web_root=descriptor.web_root,
        backups_dir="/srv/backups",
        git=GitOptions(checkout_allowed=True, submodules_required=True),
        node=NodeOptions(force_install=True, nvm_alias="16", script="build"),
    )
