"""Build and restore sessions driving the remote management API."""
from __future__ import annotations

from .base import (
    ErrorCallback,
    JobResult,
    MissingHandlerFault,
    ResultTab,
    Session,
    SessionState,
    SessionStateError,
)
from .build import BUILD_RESOURCE, BuildSession, BuildStatus
from .restore import BACKUPS_RESOURCE, RESTORE_RESOURCE, RestoreOptions, RestoreSession

__all__ = [
    "BACKUPS_RESOURCE",
    "BUILD_RESOURCE",
    "RESTORE_RESOURCE",
    "BuildSession",
    "BuildStatus",
    "ErrorCallback",
    "JobResult",
    "MissingHandlerFault",
    "RestoreOptions",
    "RestoreSession",
    "ResultTab",
    "Session",
    "SessionState",
    "SessionStateError",
]
