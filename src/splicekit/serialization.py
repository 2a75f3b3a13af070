"""Project files: versioned YAML/JSON round trip of the whole project.

The file holds project metadata, the asset registry, the timeline (tracks,
clips, keyframes, relationships) and the undo/redo history, so undo and
redo keep working across save/load.

File layout:
  format_version: "1.0.0"
  project:  {id, name, description, tags, created_at, modified_at}
  assets:   [{id, path, metadata}]
  timeline: {tracks: [...], relationships: [...]}
  history:  {capacity, undo: [command...], redo: [command...]}

YAML is the default format; a `.json` suffix selects JSON. Only files
whose major version is 1 are accepted.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from .errors import SerializationError
from .history import (
    ClipChange, ClipEdit, CompoundCommand, EditCommand, EditHistory,
    FlagChange, KeyframeChange, RelationshipChange, TrackAdded,
    TrackFlagChange, TrackRemoved,
)
from .keyframes import Keyframe
from .multitrack import Relationship
from .timeline import Clip, Track

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0.0"
SUPPORTED_MAJOR = 1


# ── Commands ───────────────────────────────────────────────────────

def _opt(value, encode):
    return encode(value) if value is not None else None


def encode_command(command: EditCommand) -> dict[str, Any]:
    """Plain-dict form of a history command."""
    if isinstance(command, ClipEdit):
        return {
            "type": "clip_edit",
            "label": command.label,
            "changes": [
                {
                    "track_id": c.track_id,
                    "before": _opt(c.before, Clip.to_dict),
                    "after": _opt(c.after, Clip.to_dict),
                }
                for c in command.changes
            ],
        }
    if isinstance(command, KeyframeChange):
        return {
            "type": "keyframe",
            "label": command.label,
            "track_id": command.track_id,
            "clip_id": command.clip_id,
            "parameter": command.parameter,
            "before": _opt(command.before, Keyframe.to_dict),
            "after": _opt(command.after, Keyframe.to_dict),
        }
    if isinstance(command, TrackFlagChange):
        return {
            "type": "track_flags",
            "label": command.label,
            "changes": [
                {"track_id": c.track_id, "name": c.name,
                 "before": c.before, "after": c.after}
                for c in command.changes
            ],
        }
    if isinstance(command, TrackAdded):
        return {"type": "track_added", "label": command.label,
                "track": command.track.to_dict(), "index": command.index}
    if isinstance(command, TrackRemoved):
        return {
            "type": "track_removed",
            "label": command.label,
            "track": command.track.to_dict(),
            "index": command.index,
            "relationships": [r.to_dict() for r in command.relationships],
        }
    if isinstance(command, RelationshipChange):
        return {"type": "relationship", "label": command.label,
                "relationship": command.relationship.to_dict(),
                "added": command.added}
    if isinstance(command, CompoundCommand):
        return {"type": "compound", "label": command.label,
                "commands": [encode_command(c) for c in command.commands]}
    raise SerializationError(f"Cannot serialize command {type(command).__name__}")


def decode_command(data: dict[str, Any]) -> EditCommand:
    """Inverse of encode_command."""
    kind = data.get("type")
    label = data.get("label", "edit")
    if kind == "clip_edit":
        return ClipEdit(label, [
            ClipChange(
                c["track_id"],
                _opt(c.get("before"), Clip.from_dict),
                _opt(c.get("after"), Clip.from_dict),
            )
            for c in data["changes"]
        ])
    if kind == "keyframe":
        return KeyframeChange(
            data["track_id"], data.get("clip_id"), data["parameter"],
            _opt(data.get("before"), Keyframe.from_dict),
            _opt(data.get("after"), Keyframe.from_dict),
            label,
        )
    if kind == "track_flags":
        return TrackFlagChange(label, [
            FlagChange(c["track_id"], c["name"], c["before"], c["after"])
            for c in data["changes"]
        ])
    if kind == "track_added":
        return TrackAdded(Track.from_dict(data["track"]), int(data["index"]), label)
    if kind == "track_removed":
        return TrackRemoved(
            Track.from_dict(data["track"]), int(data["index"]),
            [Relationship.from_dict(r) for r in data.get("relationships") or []],
            label,
        )
    if kind == "relationship":
        return RelationshipChange(
            Relationship.from_dict(data["relationship"]), bool(data["added"]), label,
        )
    if kind == "compound":
        return CompoundCommand(label, [decode_command(c) for c in data["commands"]])
    raise SerializationError(f"Unknown history command type: {kind!r}")


def encode_history(history: EditHistory) -> dict[str, Any]:
    return {
        "capacity": history.capacity,
        "undo": [encode_command(c) for c in history.undo_stack],
        "redo": [encode_command(c) for c in history.redo_stack],
    }


def decode_history(data: dict[str, Any]) -> EditHistory:
    history = EditHistory(capacity=data.get("capacity"))
    history.undo_stack = [decode_command(c) for c in data.get("undo") or []]
    history.redo_stack = [decode_command(c) for c in data.get("redo") or []]
    return history


# ── Versioning ─────────────────────────────────────────────────────

def check_version(version: Any) -> None:
    """Accept any 1.x.y format version.

    Raises:
        SerializationError: Missing, malformed or unsupported version.
    """
    if version is None:
        raise SerializationError("Project file has no format_version")
    try:
        major = int(str(version).split(".")[0])
    except ValueError:
        raise SerializationError(f"Malformed format_version: {version!r}") from None
    if major != SUPPORTED_MAJOR:
        raise SerializationError(
            f"Unsupported project format version {version} "
            f"(this build reads {SUPPORTED_MAJOR}.x)"
        )


# ── Files ──────────────────────────────────────────────────────────

def _is_json(path: Path) -> bool:
    return path.suffix.lower() == ".json"


def write_document(data: dict[str, Any], path: str | Path) -> Path:
    """Write a project document as YAML, or JSON for a .json suffix."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        if _is_json(path):
            json.dump(data, f, indent=2)
        else:
            yaml.safe_dump(data, f, sort_keys=False)
    logger.debug("Wrote project file %s", path)
    return path


def read_document(path: str | Path) -> dict[str, Any]:
    """Read and version-check a project document.

    Raises:
        FileNotFoundError: Missing file.
        SerializationError: Unparseable content or unsupported version.
    """
    path = Path(path)
    with open(path) as f:
        try:
            data = json.load(f) if _is_json(path) else yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise SerializationError(f"Cannot parse project file {path}: {e}") from e
    if not isinstance(data, dict):
        raise SerializationError(f"Project file {path} does not contain a mapping")
    check_version(data.get("format_version"))
    return data
