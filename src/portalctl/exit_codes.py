"""Process exit codes returned by ``portalctl`` commands."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes shared by every command.

    ``VALIDATION`` covers operator input: bad flags, invalid descriptors, and
    unknown instances, branches or backups. ``PROVIDER`` is reserved for
    failures reported by (or on the way to) the management API.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3  # configuration could not be loaded
    PROVIDER = 4
