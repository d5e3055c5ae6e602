"""Build session: fetch status, edit options, preview, submit."""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from typing import cast

from ..descriptor import InstanceDescriptor
from ..manage import ErrorCode, ManageApi, ManageError
from ..plan import BuildOptions, compile_build_plan
from .base import ErrorCallback, JobResult, Session, SessionState, SessionStateError

BUILD_RESOURCE = "portal/build"


@dataclass(frozen=True, slots=True)
class BuildStatus:
    """Repository status reported by the remote host before a build."""

    status: str
    current_branch: str
    available_branches: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: object) -> BuildStatus:
        """Parse the ``{status, branch, branches}`` status response."""
        if not isinstance(payload, Mapping):
            raise ManageError(ErrorCode.UNKNOWN, "Build status response must be an object.")
        branches = payload.get("branches") or []
        if not isinstance(branches, list) or not all(isinstance(b, str) for b in branches):
            raise ManageError(ErrorCode.UNKNOWN, "Build status 'branches' must be a list of strings.")
        return cls(
            status=str(payload.get("status") or ""),
            current_branch=str(payload.get("branch") or ""),
            available_branches=tuple(branches),
        )


class BuildSession(Session):
    """Coordinates one build of a portal instance."""

    def __init__(
        self,
        descriptor: InstanceDescriptor,
        client: ManageApi,
        *,
        on_error: ErrorCallback | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Create an idle build session for *descriptor*."""
        super().__init__(descriptor.name, client, on_error=on_error)
        self.descriptor = descriptor
        self.details: BuildStatus | None = None
        self.options = BuildOptions()
        self.preview: list[str] = []
        self._clock = clock

    async def open(self) -> None:
        """Reset the session and fetch the remote status of the instance."""
        self._reset()
        self.details = None
        self.options = BuildOptions(backup=True if self.descriptor.has_backups else None)
        self.preview = []
        details = await self._fetch(BUILD_RESOURCE, BuildStatus.from_payload)
        if details is None:
            return
        self.details = details
        self.state = SessionState.READY
        self._refresh_preview()

    def close(self) -> None:
        """Discard all transient state; valid from any state."""
        super().close()
        self.details = None
        self.options = BuildOptions()
        self.preview = []

    @property
    def selected_branch(self) -> str:
        """Return the branch the build will pull."""
        if self.options.checkout:
            return self.options.checkout
        return self.details.current_branch if self.details else ""

    def set_checkout_branch(self, branch: str) -> None:
        """Choose the branch to pull, clearing the override for the current one."""
        self._require(SessionState.READY, action="change branch")
        if not self.descriptor.git.checkout_allowed:
            raise SessionStateError(f"Instance '{self.name}' does not allow switching branches.")
        details = cast(BuildStatus, self.details)
        branch = branch.strip()
        if branch and details.available_branches and branch not in details.available_branches:
            raise ValueError(f"Unknown branch '{branch}' for instance '{self.name}'.")
        if not branch or branch == details.current_branch:
            self.options = replace(self.options, checkout=None)
        else:
            self.options = replace(self.options, checkout=branch)
        self._refresh_preview()

    def set_clear(self, clear: bool) -> None:
        """Toggle discarding local changes before pulling."""
        self._require(SessionState.READY, action="change options")
        self.options = replace(self.options, clear=bool(clear))
        self._refresh_preview()

    def set_backup(self, backup: bool) -> None:
        """Toggle moving the current web root to the backups folder."""
        self._require(SessionState.READY, action="change options")
        if not self.descriptor.has_backups:
            raise SessionStateError(f"Instance '{self.name}' has no backups folder.")
        self.options = replace(self.options, backup=bool(backup))
        self._refresh_preview()

    async def submit(self) -> JobResult | None:
        """Trigger the build; returns the result or ``None`` on failure."""
        payload: dict[str, object] = {"name": self.name, **self.options.to_payload()}
        return await self._submit(BUILD_RESOURCE, payload)

    def _refresh_preview(self) -> None:
        now = self._clock() if self._clock is not None else None
        self.preview = compile_build_plan(self.descriptor, self.options, now=now)


__all__ = ["BUILD_RESOURCE", "BuildSession", "BuildStatus"]
