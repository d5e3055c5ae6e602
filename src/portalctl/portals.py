"""Instance descriptors held by the management API.

The service owns the descriptor set. ``portals`` reads every record keyed by
instance name; ``portal`` creates, updates and deletes one record::

    read   portals  {}                              -> {"main": {...}, ...}
    create portal   {"name": "main", "record": {...}}
    update portal   {"name": "main", "record": {...}}
    delete portal   {"name": "main"}

Records travel without their ``name`` key. Field validation failures
(:attr:`~portalctl.manage.ErrorCode.DATA_FIELDS`) come back as
``[["record.node.nvm", "invalid"], ...]`` and are raised as
:class:`~portalctl.descriptor.DescriptorError`; a name clash
(:attr:`~portalctl.manage.ErrorCode.DB_DUPLICATE`) is raised as
:class:`DuplicateInstanceError`.

When a :class:`~portalctl.state.StateRegistry` is supplied it is kept in step
with every read and write so ``portalctl instance plan --offline`` can work
without the service.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping

from .descriptor import DescriptorError, InstanceDescriptor
from .manage import ErrorCode, ManageApi, ManageError
from .state import StateRegistry

LOGGER = logging.getLogger(__name__)

PORTALS_RESOURCE = "portals"
PORTAL_RESOURCE = "portal"


class PortalStoreError(RuntimeError):
    """Raised when the service returns something other than a usable record."""


class UnknownInstanceError(PortalStoreError):
    """Raised when the service holds no instance of the requested name."""


class DuplicateInstanceError(PortalStoreError):
    """Raised when creating an instance whose name is already in use."""


class PortalStore:
    """Create, read, update and delete descriptors through the management API."""

    def __init__(self, client: ManageApi, cache: StateRegistry | None = None) -> None:
        """Wrap *client*; *cache* mirrors what the service reports."""
        self._client = client
        self._cache = cache

    async def list_all(self) -> list[InstanceDescriptor]:
        """Return every descriptor sorted by name and refresh the cache."""
        payload = await self._client.read(PORTALS_RESOURCE, {})
        if not isinstance(payload, Mapping):
            raise PortalStoreError("Portal list response must be a mapping of records.")
        descriptors = sorted(
            (_from_record(str(name), record) for name, record in payload.items()),
            key=lambda descriptor: descriptor.name,
        )
        if self._cache is not None:
            self._cache.replace_all(descriptors)
        return descriptors

    async def get(self, name: str) -> InstanceDescriptor:
        """Return the descriptor called *name*."""
        for descriptor in await self.list_all():
            if descriptor.name == name:
                return descriptor
        raise UnknownInstanceError(f"Instance '{name}' not found")

    async def create(self, descriptor: InstanceDescriptor) -> None:
        """Register *descriptor* with the service."""
        try:
            applied = await self._client.create(PORTAL_RESOURCE, _payload(descriptor))
        except ManageError as exc:
            if exc.code == ErrorCode.DB_DUPLICATE:
                raise DuplicateInstanceError(
                    f"Instance '{descriptor.name}' already exists"
                ) from exc
            if exc.code != ErrorCode.DATA_FIELDS:
                raise
            raise _field_errors(exc) from exc
        _check_applied(applied, "create", descriptor.name)
        if self._cache is not None:
            self._cache.put_descriptor(descriptor)

    async def update(self, descriptor: InstanceDescriptor) -> None:
        """Replace the stored record of *descriptor* with its current values."""
        try:
            applied = await self._client.update(PORTAL_RESOURCE, _payload(descriptor))
        except ManageError as exc:
            if exc.code != ErrorCode.DATA_FIELDS:
                raise
            raise _field_errors(exc) from exc
        _check_applied(applied, "update", descriptor.name)
        if self._cache is not None:
            self._cache.put_descriptor(descriptor)

    async def delete(self, name: str) -> None:
        """Remove the instance called *name*."""
        applied = await self._client.delete(PORTAL_RESOURCE, {"name": name})
        _check_applied(applied, "delete", name)
        if self._cache is not None:
            self._cache.discard(name)


def _payload(descriptor: InstanceDescriptor) -> dict[str, object]:
    record = descriptor.to_dict()
    del record["name"]
    return {"name": descriptor.name, "record": record}


def _from_record(name: str, record: object) -> InstanceDescriptor:
    if not isinstance(record, Mapping):
        raise PortalStoreError(f"Record for instance '{name}' must be a mapping.")
    try:
        return InstanceDescriptor.from_mapping({**record, "name": name})
    except DescriptorError as exc:
        raise PortalStoreError(f"Record for instance '{name}' is invalid: {exc}") from exc


def _check_applied(applied: object, action: str, name: str) -> None:
    if not applied:
        raise PortalStoreError(f"Management API did not apply the {action} of '{name}'.")
    LOGGER.debug("portal %s applied for %s", action, name)


def _field_errors(exc: ManageError) -> DescriptorError:
    pairs = exc.msg if isinstance(exc.msg, list) else []
    fields: list[tuple[str, str]] = []
    for pair in pairs:
        if isinstance(pair, (list, tuple)) and len(pair) == 2:
            path = str(pair[0]).removeprefix("record.")
            fields.append((path, str(pair[1])))
    return DescriptorError(fields or [("record", str(exc.msg))])


__all__ = [
    "DuplicateInstanceError",
    "PORTALS_RESOURCE",
    "PORTAL_RESOURCE",
    "PortalStore",
    "PortalStoreError",
    "UnknownInstanceError",
]
