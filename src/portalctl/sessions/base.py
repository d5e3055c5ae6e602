"""Shared machinery for build and restore sessions.

A session covers one open build or restore dialog for one instance. It moves
through :class:`SessionState`::

    IDLE -> FETCHING -> READY -> SUBMITTING -> COMPLETED
                 \\-> FAILED        \\-> READY (submission failed)

Every :meth:`Session.open` and :meth:`Session.close` bumps ``generation``. A
response that arrives for an older generation belongs to a session that has
since been closed or reopened and is dropped without touching state or calling
the error handler.

Remote failures are handed to the ``on_error`` callback. A session created
without one treats a remote failure as a programming error and raises
:class:`MissingHandlerFault`.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import TypeVar, cast

from ..manage import ErrorCode, ManageApi, ManageError
from ..plan import COMMAND_SEPARATOR

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ErrorCallback = Callable[[ManageError], None]


class SessionState(str, Enum):
    """Lifecycle of a build or restore session."""

    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    FAILED = "failed"


class ResultTab(IntEnum):
    """Views available once a job has completed."""

    COMMANDS = 0
    OUTPUT = 1


class SessionStateError(RuntimeError):
    """Raised when an operation is invoked outside the state that allows it."""


class MissingHandlerFault(RuntimeError):
    """Raised when a remote failure occurs and no error handler was supplied."""


@dataclass(frozen=True, slots=True)
class JobResult:
    """Commands and captured output reported by the remote worker."""

    commands: str
    output: str

    @classmethod
    def from_payload(cls, payload: object) -> JobResult:
        """Parse the ``{commands, output}`` response of a build or restore."""
        if not isinstance(payload, Mapping):
            raise ManageError(ErrorCode.UNKNOWN, "Job response must be an object.")
        commands = payload.get("commands")
        output = payload.get("output")
        if not isinstance(commands, str) or not isinstance(output, str):
            raise ManageError(
                ErrorCode.UNKNOWN, "Job response must contain 'commands' and 'output' strings."
            )
        return cls(commands=commands, output=output)

    def command_lines(self) -> list[str]:
        """Return the individual commands the worker ran."""
        if not self.commands:
            return []
        return self.commands.split(COMMAND_SEPARATOR)

    def commands_view(self) -> str:
        """Return the commands one per line."""
        return "\n".join(self.command_lines())

    def view(self, tab: ResultTab) -> str:
        """Return the text shown for *tab*."""
        if tab is ResultTab.COMMANDS:
            return self.commands_view()
        return self.output


class Session:
    """Base class holding the transient state common to both sessions."""

    def __init__(
        self,
        name: str,
        client: ManageApi,
        *,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Create an idle session for instance *name*."""
        self.name = name
        self.client = client
        self.on_error = on_error
        self.state = SessionState.IDLE
        self.generation = 0
        self.error: ManageError | None = None
        self.result: JobResult | None = None
        self.tab = ResultTab.OUTPUT
        self._inflight: int | None = None

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    @property
    def can_submit(self) -> bool:
        """Return ``True`` when a submission may be started."""
        return self.state is SessionState.READY and self._inflight is None

    @property
    def submitting(self) -> bool:
        """Return ``True`` while a submission is in flight."""
        return self._inflight is not None

    def close(self) -> None:
        """Discard all transient state; valid from any state."""
        self._reset()
        self.state = SessionState.IDLE

    def select_tab(self, tab: ResultTab) -> None:
        """Switch between the commands and output views of the result."""
        self._require(SessionState.COMPLETED, action="select a result tab")
        self.tab = ResultTab(tab)

    def result_view(self) -> str:
        """Return the text of the currently selected result tab."""
        self._require(SessionState.COMPLETED, action="view the result")
        return cast(JobResult, self.result).view(self.tab)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _reset(self) -> int:
        self.generation += 1
        self.error = None
        self.result = None
        self.tab = ResultTab.OUTPUT
        self._inflight = None
        return self.generation

    def _is_current(self, generation: int) -> bool:
        return generation == self.generation

    def _require(self, *states: SessionState, action: str) -> None:
        if self.state not in states:
            allowed = ", ".join(state.value for state in states)
            raise SessionStateError(
                f"Cannot {action} for '{self.name}' while {self.state.value} "
                f"(requires {allowed})."
            )

    def _report(self, error: ManageError) -> None:
        self.error = error
        if self.on_error is None:
            raise MissingHandlerFault(
                f"Remote failure for '{self.name}' with no error handler: {error}"
            ) from error
        self.on_error(error)

    async def _fetch(
        self,
        resource: str,
        parse: Callable[[object], T],
    ) -> T | None:
        """Run the initial fetch of an :meth:`open` for the current generation."""
        generation = self.generation
        self.state = SessionState.FETCHING
        try:
            value = parse(await self.client.read(resource, {"name": self.name}))
        except ManageError as exc:
            if not self._is_current(generation):
                LOGGER.debug("Dropping stale %s failure for %s: %s", resource, self.name, exc)
                return None
            self.state = SessionState.FAILED
            self._report(exc)
            return None
        if not self._is_current(generation):
            LOGGER.debug("Dropping stale %s response for %s", resource, self.name)
            return None
        return value

    async def _submit(self, resource: str, payload: Mapping[str, object]) -> JobResult | None:
        if not self.can_submit:
            raise SessionStateError(
                f"Cannot submit for '{self.name}' while {self.state.value}"
                + (" (request in flight)." if self.submitting else ".")
            )
        generation = self.generation
        self._inflight = generation
        self.state = SessionState.SUBMITTING
        self.error = None
        try:
            result = JobResult.from_payload(await self.client.create(resource, dict(payload)))
        except ManageError as exc:
            if not self._is_current(generation):
                LOGGER.debug("Dropping stale %s failure for %s: %s", resource, self.name, exc)
                return None
            self._inflight = None
            self.state = SessionState.READY
            self._report(exc)
            return None
        if not self._is_current(generation):
            LOGGER.debug("Dropping stale %s response for %s", resource, self.name)
            return None
        self._inflight = None
        self.result = result
        self.tab = ResultTab.OUTPUT
        self.state = SessionState.COMPLETED
        return result


__all__ = [
    "ErrorCallback",
    "JobResult",
    "MissingHandlerFault",
    "ResultTab",
    "Session",
    "SessionState",
    "SessionStateError",
]
