"""Build plan compiler.

:func:`compile_build_plan` turns an :class:`InstanceDescriptor` plus the
operator's :class:`BuildOptions` into the exact, ordered list of shell commands
the remote worker runs for a build. The order is fixed:

1. ``cd <path>`` and ``git fetch``
2. ``git checkout .`` (clear) then ``git checkout <branch>`` (override)
3. ``git pull`` (with ``--recurse-submodules`` when required)
4. ``nvm use``, ``npm install`` and ``npm run``
5. the optional backup move of the current web root
6. ``mkdir -p`` and ``cp -r`` into the web root

The compiler is pure: the only moving part, the backup stamp, is derived from
the ``now`` argument when given.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from .descriptor import InstanceDescriptor

COMMAND_SEPARATOR = " && "
BACKUP_STAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Ephemeral choices for a single build.

    ``checkout`` and ``backup`` use ``None`` for "absent".
    """

    clear: bool = False
    checkout: str | None = None
    backup: bool | None = None

    def to_payload(self) -> dict[str, object]:
        """Return the request body fragment for the build trigger."""
        payload: dict[str, object] = {"clear": self.clear}
        if self.checkout:
            payload["checkout"] = self.checkout
        if self.backup is not None:
            payload["backup"] = self.backup
        return payload


def backup_stamp(now: datetime | None = None) -> str:
    """Return the ISO-8601 directory name used for web root backups."""
    moment = now if now is not None else datetime.now(UTC)
    return moment.strftime(BACKUP_STAMP_FORMAT)


def compile_build_plan(
    descriptor: InstanceDescriptor,
    options: BuildOptions,
    *,
    now: datetime | None = None,
) -> list[str]:
    """Return the ordered build commands for *descriptor* under *options*."""
    commands = [f"cd {descriptor.path}", "git fetch"]

    if options.clear:
        commands.append("git checkout .")
    if options.checkout:
        commands.append(f"git checkout {options.checkout}")
    commands.append(
        "git pull --recurse-submodules" if descriptor.git.submodules_required else "git pull"
    )

    node = descriptor.node
    if node.nvm_alias:
        commands.append(f"nvm use {node.nvm_alias}")
    commands.append("npm install --force" if node.force_install else "npm install")
    commands.append(f"npm run {node.script or descriptor.name}")

    if descriptor.backups_dir and options.backup:
        commands.append(
            f"mv {descriptor.web_root} {descriptor.backups_dir}/{backup_stamp(now)}"
        )

    source = descriptor.build_output_dir or f"{descriptor.path}/dist"
    commands.append(f"mkdir -p {descriptor.web_root}")
    commands.append(f"cp -r {source}/* {descriptor.web_root}/.")
    return commands


def join_plan(commands: Sequence[str]) -> str:
    """Return *commands* as the single ``&&``-chained shell line."""
    return COMMAND_SEPARATOR.join(commands)


def render_plan(commands: Sequence[str]) -> str:
    """Return *commands* chained with ``&&`` one per line for display."""
    return " &&\n".join(commands)


__all__ = [
    "BuildOptions",
    "backup_stamp",
    "compile_build_plan",
    "join_plan",
    "render_plan",
]
