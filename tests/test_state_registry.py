"""Local descriptor cache tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from portalctl.descriptor import InstanceDescriptor
from portalctl.state import StateRegistry, StateRegistryError


def _descriptor(name: str = "main", **overrides: object) -> InstanceDescriptor:
    record: dict[str, object] = {
        "name": name,
        "path": f"/srv/{name}",
        "web_root": f"/var/www/{name}",
    }
    record.update(overrides)
    return InstanceDescriptor.from_mapping(record)


def test_missing_file_holds_no_instances(tmp_path: Path) -> None:
    """A registry that was never written is empty."""
    registry = StateRegistry(tmp_path)

    assert registry.load_entries() == []
    assert registry.find_descriptor("main") is None
    assert registry.list_descriptors() == []


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path / "registry")
    entries = [{"name": "primary"}]

    registry.save_entries(entries)

    path = tmp_path / "registry" / "instances.yml"
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.load_entries() == entries
    assert [p.name for p in path.parent.iterdir()] == ["instances.yml"]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "instances.yml").write_text("::: not yaml :::\n")

    with pytest.raises(StateRegistryError):
        registry.load_entries()


def test_replace_and_get_descriptor(tmp_path: Path) -> None:
    """Replaced descriptors are stored in record form and read back."""
    registry = StateRegistry(tmp_path)
    descriptor = _descriptor(backups="/srv/backups/main", node={"nvm": "18"})

    registry.replace_all([descriptor])

    assert registry.get_descriptor("main") == descriptor
    assert registry.load_entries() == [descriptor.to_dict()]
    assert registry.find_descriptor("missing") is None


def test_replace_all_drops_stale_entries(tmp_path: Path) -> None:
    """A full refresh forgets instances the service no longer reports."""
    registry = StateRegistry(tmp_path)
    registry.replace_all([_descriptor("old"), _descriptor("kept")])

    registry.replace_all([_descriptor("kept")])

    assert [d.name for d in registry.list_descriptors()] == ["kept"]


def test_list_descriptors_sorted(tmp_path: Path) -> None:
    """Descriptors are listed by name."""
    registry = StateRegistry(tmp_path)
    for name in ("zeta", "alpha", "mid"):
        registry.put_descriptor(_descriptor(name))

    assert [d.name for d in registry.list_descriptors()] == ["alpha", "mid", "zeta"]


def test_put_descriptor_replaces_existing(tmp_path: Path) -> None:
    """Putting a known name overwrites its record in place."""
    registry = StateRegistry(tmp_path)
    registry.put_descriptor(_descriptor(node={"script": "build"}))

    updated = _descriptor(node={"script": "build", "force_install": True})
    registry.put_descriptor(updated)

    assert registry.get_descriptor("main") == updated
    assert len(registry.load_entries()) == 1


def test_missing_instance_raises(tmp_path: Path) -> None:
    """Unknown instances raise StateRegistryError naming the refresh command."""
    registry = StateRegistry(tmp_path)

    with pytest.raises(StateRegistryError, match="instance list"):
        registry.get_descriptor("ghost")


def test_discard(tmp_path: Path) -> None:
    """Discarding leaves the others in place and ignores unknown names."""
    registry = StateRegistry(tmp_path)
    registry.replace_all([_descriptor("one"), _descriptor("two")])

    registry.discard("one")
    registry.discard("ghost")

    assert [d.name for d in registry.list_descriptors()] == ["two"]


def test_cached_nvm_number_accepted(tmp_path: Path) -> None:
    """A hand-edited unquoted nvm alias is read as text."""
    registry = StateRegistry(tmp_path)
    registry.instances_path.write_text(
        "instances:\n"
        "  - name: main\n"
        "    path: /srv/main\n"
        "    web_root: /var/www/main\n"
        "    node: {nvm: 18.2}\n",
        encoding="utf-8",
    )

    assert registry.get_descriptor("main").node.nvm_alias == "18.2"


def test_invalid_entry_reported(tmp_path: Path) -> None:
    """Hand-edited entries that fail validation surface as registry errors."""
    registry = StateRegistry(tmp_path)
    registry.save_entries([{"name": "broken", "path": "/srv/broken"}])

    with pytest.raises(StateRegistryError, match="broken"):
        registry.list_descriptors()


def test_instances_must_be_list(tmp_path: Path) -> None:
    """A scalar ``instances`` value is rejected."""
    registry = StateRegistry(tmp_path)
    registry.instances_path.write_text("instances: nope\n", encoding="utf-8")

    with pytest.raises(StateRegistryError):
        registry.list_descriptors()
