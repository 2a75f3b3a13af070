"""Exception taxonomy for splicekit.

Editing errors derive from TimelineError (a ValueError): the caller is
expected to correct the input and retry. Render errors derive from
RenderError (a RuntimeError) and abort the render as a whole.
"""


# ── Editing ───────────────────────────────────────────────────────

class TimelineError(ValueError):
    """Base class for rejected timeline edits."""


class OverlapError(TimelineError):
    """A clip placement collides with an existing clip on the same track."""

    def __init__(self, message: str, position: float):
        super().__init__(message)
        self.position = position


class TrackLockedError(TimelineError):
    """A structural edit targeted a locked track."""


class UnknownTrackError(TimelineError):
    """A track id does not exist in the timeline."""


class UnknownClipError(TimelineError):
    """A clip id does not exist on the given track."""


class UnknownAssetError(TimelineError):
    """An asset id does not exist in the registry."""


class InvalidRangeError(TimelineError):
    """A time range is malformed (in >= out, negative start, ...)."""


class SyncError(TimelineError):
    """An edit could not be mirrored onto a locked partner track."""


class KeyframeError(TimelineError):
    """A keyframe lookup by time found nothing."""


class HistoryError(RuntimeError):
    """Transactions were begun, committed or rolled back out of order."""


class SerializationError(ValueError):
    """A project file is unreadable or written by an incompatible version."""


# ── Rendering ─────────────────────────────────────────────────────

class RenderError(RuntimeError):
    """Base class for render failures."""


class CompositionError(RenderError):
    """The timeline failed planner-level validation."""


class MissingAssetError(CompositionError):
    """A clip references an asset that is no longer registered."""


class RenderCancelled(RenderError):
    """The caller cancelled the render between plan steps."""


class ProcessingFailed(RenderError):
    """The encoder process exited with an error."""

    def __init__(self, message: str, returncode: int | None = None,
                 stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
