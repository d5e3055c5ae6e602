"""Instance descriptors: the persisted configuration of one deployable unit.

Descriptors are stored in the registry (and exchanged with the management API)
using the record layout below; :class:`InstanceDescriptor` is the typed,
validated view used by the plan compiler and the build/restore sessions::

    name: main
    path: /srv/portal
    build: /srv/portal/build        # optional, defaults to <path>/dist
    web_root: /var/www/portal
    backups: /srv/backups/portal    # optional
    git:
      checkout: true
      submodules: false
    node:
      force_install: false
      nvm: "16"                     # optional
      script: build                 # optional, defaults to the instance name
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import cast

NAME_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9_-]{0,62})$")

TOP_LEVEL_KEYS = {"name", "path", "build", "web_root", "backups", "git", "node"}
GIT_KEYS = {"checkout", "submodules"}
NODE_KEYS = {"force_install", "nvm", "script"}
FLAG_FIELDS = frozenset({"git.checkout", "git.submodules", "node.force_install"})


class DescriptorError(ValueError):
    """Raised when an instance descriptor fails validation.

    ``fields`` holds ``(dotted.path, message)`` pairs so callers can report
    every problem at once.
    """

    def __init__(self, fields: list[tuple[str, str]]) -> None:
        """Store the failing *fields* and build a readable message."""
        self.fields = list(fields)
        summary = "; ".join(f"{path}: {message}" for path, message in self.fields)
        super().__init__(f"Invalid instance descriptor ({summary}).")


@dataclass(frozen=True, slots=True)
class GitOptions:
    """Repository handling for an instance."""

    checkout_allowed: bool = False
    submodules_required: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return the record form."""
        return {"checkout": self.checkout_allowed, "submodules": self.submodules_required}


@dataclass(frozen=True, slots=True)
class NodeOptions:
    """Node.js install/build handling for an instance."""

    force_install: bool = False
    nvm_alias: str | None = None
    script: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the record form, omitting absent optionals."""
        payload: dict[str, object] = {"force_install": self.force_install}
        if self.nvm_alias is not None:
            payload["nvm"] = self.nvm_alias
        if self.script is not None:
            payload["script"] = self.script
        return payload


@dataclass(frozen=True, slots=True)
class InstanceDescriptor:
    """Validated configuration of a single portal instance."""

    name: str
    path: str
    web_root: str
    build_output_dir: str | None = None
    backups_dir: str | None = None
    git: GitOptions = field(default_factory=GitOptions)
    node: NodeOptions = field(default_factory=NodeOptions)

    @property
    def has_backups(self) -> bool:
        """Return ``True`` when backup-related options apply."""
        return self.backups_dir is not None

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> InstanceDescriptor:
        """Parse and validate the record form of a descriptor."""
        if not isinstance(data, Mapping):
            raise DescriptorError([("record", "must be a mapping")])

        errors: list[tuple[str, str]] = []
        for key in sorted(set(data) - TOP_LEVEL_KEYS):
            errors.append((str(key), "unknown field"))

        name = _required_str(data, "name", errors)
        if name is not None and not NAME_PATTERN.match(name):
            errors.append(
                ("name", "must be lowercase letters, digits, '-' or '_' (max 63 chars)")
            )
        path = _required_str(data, "path", errors)
        web_root = _required_str(data, "web_root", errors)
        build = _optional_str(data, "build", errors)
        backups = _optional_str(data, "backups", errors)

        git_raw = _section(data, "git", GIT_KEYS, errors)
        git = GitOptions(
            checkout_allowed=_flag(git_raw, "checkout", "git.checkout", errors),
            submodules_required=_flag(git_raw, "submodules", "git.submodules", errors),
        )

        node_raw = _section(data, "node", NODE_KEYS, errors)
        node = NodeOptions(
            force_install=_flag(node_raw, "force_install", "node.force_install", errors),
            nvm_alias=_optional_str(node_raw, "nvm", errors, label="node.nvm"),
            script=_optional_str(node_raw, "script", errors, label="node.script"),
        )

        if errors:
            raise DescriptorError(errors)

        return cls(
            name=cast(str, name),
            path=cast(str, path),
            web_root=cast(str, web_root),
            build_output_dir=build,
            backups_dir=backups,
            git=git,
            node=node,
        )

    def to_dict(self) -> dict[str, object]:
        """Return the record form, omitting absent optionals."""
        payload: dict[str, object] = {"name": self.name, "path": self.path}
        if self.build_output_dir is not None:
            payload["build"] = self.build_output_dir
        payload["web_root"] = self.web_root
        if self.backups_dir is not None:
            payload["backups"] = self.backups_dir
        payload["git"] = self.git.to_dict()
        payload["node"] = self.node.to_dict()
        return payload


def _required_str(
    data: Mapping[str, object],
    key: str,
    errors: list[tuple[str, str]],
) -> str | None:
    value = data.get(key)
    if value is None:
        errors.append((key, "is required"))
        return None
    if not isinstance(value, str):
        errors.append((key, "must be a string"))
        return None
    text = value.strip()
    if not text:
        errors.append((key, "must not be empty"))
        return None
    return text


def _optional_str(
    data: Mapping[str, object],
    key: str,
    errors: list[tuple[str, str]],
    *,
    label: str | None = None,
) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        errors.append((label or key, "must be a string"))
        return None
    # unquoted nvm aliases such as 16 or 18.20 arrive as numbers from YAML
    text = str(value).strip()
    return text or None


def _flag(
    data: Mapping[str, object],
    key: str,
    label: str,
    errors: list[tuple[str, str]],
) -> bool:
    value = data.get(key, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        errors.append((label, "must be a boolean"))
        return False
    return value


def _section(
    data: Mapping[str, object],
    key: str,
    allowed: set[str],
    errors: list[tuple[str, str]],
) -> Mapping[str, object]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        errors.append((key, "must be a mapping"))
        return {}
    for unknown in sorted(set(value) - allowed):
        errors.append((f"{key}.{unknown}", "unknown field"))
    return value


__all__ = [
    "FLAG_FIELDS",
    "DescriptorError",
    "GitOptions",
    "InstanceDescriptor",
    "NodeOptions",
]
