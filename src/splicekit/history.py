"""Undo/redo history built on reversible edit commands.

Every mutating Timeline operation returns one command (or None when the
call changed nothing). A command captures the state before and after the
edit, so undo and redo are plain state swaps rather than re-running the
original operation.

Command variants:
  ClipEdit            clips added, removed or replaced on one or more tracks
  KeyframeChange      a keyframe inserted, updated or removed
  TrackFlagChange     name/muted/locked changed on one or more tracks
  TrackAdded          a track appended to the timeline
  TrackRemoved        a track (and its relationships) removed
  RelationshipChange  a relationship added or removed
  CompoundCommand     several commands undone as one step (transactions)
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from .errors import HistoryError

logger = logging.getLogger(__name__)


# ── Commands ───────────────────────────────────────────────────────

class EditCommand:
    """A reversible timeline edit."""

    label = "edit"

    def apply(self, timeline) -> None:
        raise NotImplementedError

    def revert(self, timeline) -> None:
        raise NotImplementedError


@dataclass
class ClipChange:
    """One clip's state before and after an edit. None means absent."""

    track_id: str
    before: Any = None
    after: Any = None


@dataclass
class ClipEdit(EditCommand):
    label: str
    changes: list[ClipChange] = field(default_factory=list)

    def _swap(self, timeline, old_attr: str, new_attr: str) -> None:
        # Remove everything first so clips may trade places across tracks.
        for change in self.changes:
            old = getattr(change, old_attr)
            if old is not None:
                timeline.take_clip(change.track_id, old.id)
        for change in self.changes:
            new = getattr(change, new_attr)
            if new is not None:
                timeline.place_clip(change.track_id, new.copy())

    def apply(self, timeline) -> None:
        self._swap(timeline, "before", "after")

    def revert(self, timeline) -> None:
        self._swap(timeline, "after", "before")


@dataclass
class KeyframeChange(EditCommand):
    """A keyframe edit on a track parameter, or on a clip parameter when clip_id is set."""

    track_id: str
    clip_id: str | None
    parameter: str
    before: Any = None
    after: Any = None
    label: str = "keyframe"

    def _set(self, timeline, old, new) -> None:
        if old is not None:
            timeline.keyframe_remove(self.track_id, self.clip_id, self.parameter, old.time)
        if new is not None:
            timeline.keyframe_put(self.track_id, self.clip_id, self.parameter, new)

    def apply(self, timeline) -> None:
        self._set(timeline, self.before, self.after)

    def revert(self, timeline) -> None:
        self._set(timeline, self.after, self.before)


@dataclass
class FlagChange:
    track_id: str
    name: str
    before: Any
    after: Any


@dataclass
class TrackFlagChange(EditCommand):
    label: str
    changes: list[FlagChange] = field(default_factory=list)

    def apply(self, timeline) -> None:
        for change in self.changes:
            timeline.set_flag(change.track_id, change.name, change.after)

    def revert(self, timeline) -> None:
        for change in self.changes:
            timeline.set_flag(change.track_id, change.name, change.before)


@dataclass
class TrackAdded(EditCommand):
    track: Any
    index: int
    label: str = "add track"

    @property
    def track_id(self) -> str:
        return self.track.id

    def apply(self, timeline) -> None:
        timeline.insert_track(self.track.copy(), self.index)

    def revert(self, timeline) -> None:
        timeline.detach_track(self.track.id)


@dataclass
class TrackRemoved(EditCommand):
    track: Any
    index: int
    relationships: list = field(default_factory=list)
    label: str = "remove track"

    def apply(self, timeline) -> None:
        timeline.detach_track(self.track.id)

    def revert(self, timeline) -> None:
        timeline.insert_track(self.track.copy(), self.index)
        for rel in self.relationships:
            timeline.relationships.restore(rel)


@dataclass
class RelationshipChange(EditCommand):
    relationship: Any
    added: bool
    label: str = "relationship"

    def apply(self, timeline) -> None:
        if self.added:
            timeline.relationships.restore(self.relationship)
        else:
            timeline.relationships.discard(self.relationship)

    def revert(self, timeline) -> None:
        if self.added:
            timeline.relationships.discard(self.relationship)
        else:
            timeline.relationships.restore(self.relationship)


@dataclass
class CompoundCommand(EditCommand):
    label: str
    commands: list[EditCommand] = field(default_factory=list)

    def apply(self, timeline) -> None:
        for command in self.commands:
            command.apply(timeline)

    def revert(self, timeline) -> None:
        for command in reversed(self.commands):
            command.revert(timeline)


# ── History ────────────────────────────────────────────────────────

class EditHistory:
    """Two-stack undo/redo history with optional capacity and transactions.

    Args:
        capacity: Maximum undo depth. The oldest entries are dropped once
            exceeded. None means unbounded.
    """

    def __init__(self, capacity: int | None = None):
        if capacity is not None and capacity < 1:
            raise ValueError(f"History capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.undo_stack: list[EditCommand] = []
        self.redo_stack: list[EditCommand] = []
        self._pending: list[EditCommand] | None = None
        self._pending_label = ""

    def __eq__(self, other) -> bool:
        if not isinstance(other, EditHistory):
            return NotImplemented
        return (self.undo_stack == other.undo_stack
                and self.redo_stack == other.redo_stack)

    @property
    def can_undo(self) -> bool:
        return bool(self.undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self.redo_stack)

    @property
    def in_transaction(self) -> bool:
        return self._pending is not None

    def push(self, command: EditCommand | None) -> None:
        """Record an already applied command. None (a no-op edit) is ignored."""
        if command is None:
            return
        if self._pending is not None:
            self._pending.append(command)
            return
        self.redo_stack.clear()
        self.undo_stack.append(command)
        if self.capacity is not None and len(self.undo_stack) > self.capacity:
            del self.undo_stack[: len(self.undo_stack) - self.capacity]
        logger.debug("Recorded %s (undo depth %d)", command.label, len(self.undo_stack))

    def undo(self, timeline) -> bool:
        """Revert the most recent command. Returns False if there was nothing to undo."""
        self._require_idle("undo")
        if not self.undo_stack:
            return False
        command = self.undo_stack.pop()
        command.revert(timeline)
        self.redo_stack.append(command)
        logger.debug("Undid %s", command.label)
        return True

    def redo(self, timeline) -> bool:
        """Re-apply the most recently undone command. False if there was none."""
        self._require_idle("redo")
        if not self.redo_stack:
            return False
        command = self.redo_stack.pop()
        command.apply(timeline)
        self.undo_stack.append(command)
        logger.debug("Redid %s", command.label)
        return True

    def clear(self) -> None:
        self._require_idle("clear")
        self.undo_stack.clear()
        self.redo_stack.clear()

    # ── Transactions ──────────────────────────────────────────────

    def begin(self, label: str = "transaction") -> None:
        if self._pending is not None:
            raise HistoryError(
                f"Transaction '{self._pending_label}' is already open"
            )
        self._pending = []
        self._pending_label = label

    def commit(self) -> CompoundCommand | None:
        """Close the open transaction and record it as a single undo step."""
        if self._pending is None:
            raise HistoryError("No open transaction to commit")
        commands, self._pending = self._pending, None
        if not commands:
            return None
        compound = CompoundCommand(self._pending_label, commands)
        self.push(compound)
        return compound

    def rollback(self, timeline) -> None:
        """Revert every command applied inside the open transaction."""
        if self._pending is None:
            raise HistoryError("No open transaction to roll back")
        commands, self._pending = self._pending, None
        for command in reversed(commands):
            command.revert(timeline)
        logger.debug("Rolled back %d commands of '%s'", len(commands), self._pending_label)

    @contextmanager
    def transaction(self, timeline, label: str = "transaction"):
        """Group edits into one undo step; any exception rolls them back."""
        self.begin(label)
        try:
            yield self
        except BaseException:
            self.rollback(timeline)
            raise
        self.commit()

    def _require_idle(self, action: str) -> None:
        if self._pending is not None:
            raise HistoryError(
                f"Cannot {action} while transaction '{self._pending_label}' is open"
            )

