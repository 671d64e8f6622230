"""Merge request fields embedded in a free-text issue description.

A description holds one ``key: value`` line per field, mixed with free-form
notes. Keys are matched loosely (case, ``_`` and ``-`` are ignored, so
``source_issue``, ``Source-Issue`` and ``sourceissue`` are the same field).
Lines that are not recognized fields are notes and are kept verbatim.

Example::

    branch: worker/nix/gt-42
    target: main
    source_issue: gt-42
    worker: nix

    Free-form notes follow.
"""

from typing import Any

from pydantic import BaseModel, Field

# Canonical order used when encoding
FIELD_ORDER = (
    "branch",
    "target",
    "source_issue",
    "worker",
    "rig",
    "merge_commit",
    "close_reason",
    "error",
)

_SYNONYMS = {name.replace("_", ""): name for name in FIELD_ORDER}

# Issue metadata some trackers write into descriptions; neither a field nor a note
_IGNORED = {"type"}


class MRFields(BaseModel):
    """Structured merge request metadata carried in the description."""

    branch: str | None = Field(default=None, description="Source branch")
    target: str | None = Field(default=None, description="Destination branch (main or integration/<epic>)")
    source_issue: str | None = Field(default=None, description="Issue this merge request fulfills")
    worker: str | None = Field(default=None, description="Author of the branch")
    rig: str | None = Field(default=None, description="Originating workspace")
    merge_commit: str | None = Field(default=None, description="Commit created by a successful merge")
    close_reason: str | None = Field(default=None, description="merged or rejected")
    error: str | None = Field(default=None, description="Failure detail of the last attempt")

    model_config = {"extra": "forbid"}


def _normalize_key(key: str) -> str:
    return key.strip().lower().replace("_", "").replace("-", "")


def _flatten(value: Any) -> str:
    """Single-line string form of a field value ("" for empty)."""
    if value is None:
        return ""
    return " ".join(str(value).splitlines()).strip()


def _line_key(line: str) -> str | None:
    stripped = line.strip()
    if ":" not in stripped:
        return None
    return _normalize_key(stripped.split(":", 1)[0])


def _match_line(line: str) -> tuple[str, str] | None:
    """Return (field name, value) if the line is a recognized field."""
    key = _line_key(line)
    name = _SYNONYMS.get(key) if key else None
    if name is None:
        return None
    return name, line.split(":", 1)[1].strip()


def _trim_blank_edges(lines: list[str]) -> str:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return "\n".join(lines[start:end])


def encode(fields: MRFields | dict[str, Any]) -> str:
    """Serialize fields as ``key: value`` lines, skipping empty values."""
    data = fields.model_dump() if isinstance(fields, MRFields) else dict(fields)
    lines = []
    for name in FIELD_ORDER:
        value = _flatten(data.get(name))
        if value:
            lines.append(f"{name}: {value}")
    return "\n".join(lines)


def decode(text: str | None) -> tuple[MRFields | None, str]:
    """Split a description into (fields, notes).

    Fields is None when no recognized key is present. For duplicate keys the
    last occurrence wins. Notes keep the original order and whitespace of the
    unrecognized lines; only leading and trailing blank lines are dropped.
    ``type:`` lines are tracker metadata and end up in neither.
    """
    values: dict[str, str | None] = {}
    notes: list[str] = []
    for line in (text or "").split("\n"):
        match = _match_line(line)
        if match is None:
            if _line_key(line) not in _IGNORED:
                notes.append(line)
            continue
        name, value = match
        values[name] = value or None
    fields = MRFields(**values) if values else None
    return fields, _trim_blank_edges(notes)


def parse_fields(text: str | None) -> MRFields | None:
    """Recognized fields of a description, or None."""
    return decode(text)[0]


def extract_notes(text: str | None) -> str:
    """Description with recognized field lines removed."""
    return decode(text)[1]


def update(text: str | None, **changes: Any) -> str:
    """Rewrite the given fields in place, leaving every other line untouched.

    A value of None or "" removes the field. Fields not yet present are
    inserted after the last field line (or at the top).
    """
    unknown = set(changes) - set(FIELD_ORDER)
    if unknown:
        raise ValueError(f"Unknown merge request fields: {sorted(unknown)}")
    lines = text.split("\n") if text else []
    out: list[str] = []
    written: set[str] = set()
    insert_at = 0
    for line in lines:
        match = _match_line(line)
        if match is None:
            out.append(line)
            continue
        name = match[0]
        if name in changes:
            if name in written:
                continue
            written.add(name)
            value = _flatten(changes[name])
            if not value:
                continue
            out.append(f"{name}: {value}")
        else:
            out.append(line)
        insert_at = len(out)
    missing = [
        f"{name}: {_flatten(changes[name])}"
        for name in FIELD_ORDER
        if name in changes and name not in written and _flatten(changes[name])
    ]
    out[insert_at:insert_at] = missing
    return "\n".join(out)


def append_note(text: str | None, note: str) -> str:
    """Append ``note`` as one line at the end of the description.

    Line breaks in the note are folded into spaces, so text such as a
    multi-line rejection reason cannot add field lines.

    Raises:
        ValueError: The folded note itself reads as a field line.
    """
    note = _flatten(note)
    if _line_key(note) in _IGNORED or _match_line(note) is not None:
        raise ValueError(f"Note would be read as a field: {note!r}")
    base = (text or "").rstrip("\n")
    if not base:
        return note
    return f"{base}\n{note}"
