"""Live build-plan preview for descriptors with unsaved edits.

While an instance is being edited, the build plan shown next to it reflects the
edited values. :class:`LivePreview` keeps the persisted descriptor and the
pending edit delta apart; the delta is folded in only when the preview is
computed, is dropped on cancel, and is replaced wholesale on save.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping, MutableMapping
from datetime import datetime

from .descriptor import DescriptorError, InstanceDescriptor
from .plan import BuildOptions, compile_build_plan


def merge(
    persisted: InstanceDescriptor,
    edit_delta: Mapping[str, object],
) -> InstanceDescriptor:
    """Return *persisted* with every field present in *edit_delta* overridden."""
    if "name" in edit_delta and edit_delta["name"] != persisted.name:
        raise DescriptorError([("name", "cannot be changed after creation")])
    merged = persisted.to_dict()
    _deep_merge(merged, edit_delta)
    return InstanceDescriptor.from_mapping(merged)


class LivePreview:
    """Build plan preview for one instance and its pending edits."""

    def __init__(
        self,
        persisted: InstanceDescriptor,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Start a preview of *persisted* with no pending edits."""
        self.persisted = persisted
        self._delta: dict[str, object] = {}
        self._clock = clock

    @property
    def dirty(self) -> bool:
        """Return ``True`` while unsaved edits are pending."""
        return bool(self._delta)

    @property
    def delta(self) -> dict[str, object]:
        """Return a copy of the pending edits."""
        return _deep_copy(self._delta)

    @property
    def effective(self) -> InstanceDescriptor:
        """Return the descriptor the preview is computed from."""
        if not self._delta:
            return self.persisted
        return merge(self.persisted, self._delta)

    @property
    def commands(self) -> list[str]:
        """Return the build plan for the effective descriptor."""
        now = self._clock() if self._clock is not None else None
        return compile_build_plan(self.effective, BuildOptions(), now=now)

    def edit(self, change: Mapping[str, object]) -> None:
        """Fold a form change into the pending edits."""
        _deep_merge(self._delta, change)

    def cancel(self) -> None:
        """Drop the pending edits; the preview reverts to the persisted values."""
        self._delta = {}

    def saved(self, descriptor: InstanceDescriptor) -> None:
        """Adopt *descriptor* as the persisted value and drop the pending edits."""
        if descriptor.name != self.persisted.name:
            raise DescriptorError([("name", "cannot be changed after creation")])
        self.persisted = descriptor
        self._delta = {}


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, value)
            continue
        target[key] = _deep_copy(value) if isinstance(value, Mapping) else value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    return {
        key: _deep_copy(value) if isinstance(value, Mapping) else value
        for key, value in source.items()
    }


__all__ = ["LivePreview", "merge"]
