"""Restore session: list backups, pick one, submit.

Unlike builds, restores have no local preview; the commands only become
known once the remote worker has run them and reported back.
"""
from __future__ import annotations

from dataclasses import dataclass, replace

from ..manage import ErrorCode, ManageApi, ManageError
from .base import ErrorCallback, JobResult, Session, SessionState

BACKUPS_RESOURCE = "portal/backups"
RESTORE_RESOURCE = "portal/restore"


@dataclass(frozen=True, slots=True)
class RestoreOptions:
    """Ephemeral choices for a single restore."""

    backup: str = ""
    backup_current: bool | None = None

    def to_payload(self) -> dict[str, object]:
        """Return the request body fragment for the restore trigger."""
        payload: dict[str, object] = {"backup": self.backup}
        if self.backup_current is not None:
            payload["backup_current"] = self.backup_current
        return payload


def _parse_backups(payload: object) -> tuple[str, ...]:
    if not isinstance(payload, list) or not all(isinstance(item, str) for item in payload):
        raise ManageError(ErrorCode.UNKNOWN, "Backup list response must be a list of strings.")
    return tuple(payload)


class RestoreSession(Session):
    """Coordinates one restore of a portal instance from a backup."""

    def __init__(
        self,
        name: str,
        client: ManageApi,
        *,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Create an idle restore session for instance *name*."""
        super().__init__(name, client, on_error=on_error)
        self.backups: tuple[str, ...] | None = None
        self.options = RestoreOptions()

    async def open(self) -> None:
        """Reset the session and fetch the available backups."""
        self._reset()
        self.backups = None
        self.options = RestoreOptions()
        backups = await self._fetch(BACKUPS_RESOURCE, _parse_backups)
        if backups is None:
            return
        self.backups = backups
        self.state = SessionState.READY

    def close(self) -> None:
        """Discard all transient state; valid from any state."""
        super().close()
        self.backups = None
        self.options = RestoreOptions()

    @property
    def can_submit(self) -> bool:
        """Return ``True`` once a backup has been selected."""
        return super().can_submit and self.options.backup != ""

    def select_backup(self, backup_id: str) -> None:
        """Select the backup to restore; an empty string clears the selection."""
        self._require(SessionState.READY, action="select a backup")
        if backup_id and backup_id not in (self.backups or ()):
            raise ValueError(f"Unknown backup '{backup_id}' for instance '{self.name}'.")
        self.options = replace(self.options, backup=backup_id)

    def set_backup_current(self, backup_current: bool) -> None:
        """Toggle backing up the current code before restoring."""
        self._require(SessionState.READY, action="change options")
        self.options = replace(self.options, backup_current=True if backup_current else None)

    async def submit(self) -> JobResult | None:
        """Trigger the restore; returns the result or ``None`` on failure."""
        payload: dict[str, object] = {"name": self.name, **self.options.to_payload()}
        return await self._submit(RESTORE_RESOURCE, payload)


__all__ = ["BACKUPS_RESOURCE", "RESTORE_RESOURCE", "RestoreOptions", "RestoreSession"]
