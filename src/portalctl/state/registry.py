"""Local cache of the instance descriptors held by the management API.

``<registry_dir>/instances.yml`` mirrors the last descriptor set read from or
written to the service, in record form::

    instances:
      - name: main
        path: /srv/portal
        web_root: /var/www/portal
        git: {checkout: true, submodules: false}
        node: {force_install: false}

Saves go through a temporary file in the same directory followed by
``os.replace`` so readers never observe a partially written registry.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ..descriptor import DescriptorError, InstanceDescriptor

INSTANCES_FILE = "instances.yml"


class StateRegistryError(RuntimeError):
    """Raised when the cache cannot be read or holds no such instance."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and refresh the cached instance descriptors."""

    root: Path

    @property
    def instances_path(self) -> Path:
        """Return the location of ``instances.yml``."""
        return Path(self.root).expanduser() / INSTANCES_FILE

    # Raw records ------------------------------------------------------
    def load_entries(self) -> list[dict[str, Any]]:
        """Return the stored records; an absent or empty file holds none."""
        path = self.instances_path
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        if document is None:
            return []
        entries = document.get("instances", []) if isinstance(document, Mapping) else None
        if not isinstance(entries, list):
            raise StateRegistryError(f"Registry file {path} must hold an 'instances' list.")
        return [dict(entry) for entry in entries if isinstance(entry, Mapping)]

    def save_entries(self, entries: Iterable[Mapping[str, object]]) -> None:
        """Atomically replace the stored records with *entries*."""
        path = self.instances_path
        path.parent.mkdir(parents=True, exist_ok=True)
        document = {"instances": [dict(entry) for entry in entries]}

        handle = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            delete=False,
        )
        staged = Path(handle.name)
        try:
            with handle:
                yaml.safe_dump(document, handle, sort_keys=False)
            staged.chmod(0o640)
            os.replace(staged, path)
        finally:
            staged.unlink(missing_ok=True)

    # Descriptors ------------------------------------------------------
    def list_descriptors(self) -> list[InstanceDescriptor]:
        """Return every cached descriptor, sorted by name."""
        descriptors = [_parse_entry(entry) for entry in self.load_entries()]
        return sorted(descriptors, key=lambda descriptor: descriptor.name)

    def find_descriptor(self, name: str) -> InstanceDescriptor | None:
        """Return the descriptor called *name*, or ``None``."""
        entries = self.load_entries()
        index = _index_of(entries, name)
        return None if index is None else _parse_entry(entries[index])

    def get_descriptor(self, name: str) -> InstanceDescriptor:
        """Return the descriptor called *name* or raise :class:`StateRegistryError`."""
        descriptor = self.find_descriptor(name)
        if descriptor is None:
            raise StateRegistryError(
                f"Instance '{name}' is not in the local cache; run 'portalctl instance list'"
            )
        return descriptor

    def replace_all(self, descriptors: Iterable[InstanceDescriptor]) -> None:
        """Replace the whole cache with *descriptors*."""
        self.save_entries(descriptor.to_dict() for descriptor in descriptors)

    def put_descriptor(self, descriptor: InstanceDescriptor) -> None:
        """Insert or replace the cached record of *descriptor*."""
        entries = self.load_entries()
        index = _index_of(entries, descriptor.name)
        if index is None:
            entries.append(descriptor.to_dict())
        else:
            entries[index] = descriptor.to_dict()
        self.save_entries(entries)

    def discard(self, name: str) -> None:
        """Drop *name* from the cache if it is there."""
        entries = self.load_entries()
        index = _index_of(entries, name)
        if index is not None:
            del entries[index]
            self.save_entries(entries)


def _index_of(entries: list[dict[str, Any]], name: str) -> int | None:
    for index, entry in enumerate(entries):
        if entry.get("name") == name:
            return index
    return None


def _parse_entry(entry: Mapping[str, object]) -> InstanceDescriptor:
    try:
        return InstanceDescriptor.from_mapping(entry)
    except DescriptorError as exc:
        raise StateRegistryError(
            f"Registry entry '{entry.get('name', '?')}' is invalid: {exc}"
        ) from exc


__all__ = ["StateRegistry", "StateRegistryError"]
