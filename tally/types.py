"""
Record types and their JSON codec.

A record is one of three kinds (Project, Issue, Comment). Each kind lives
in its own category blob: a JSON object mapping record id to record,
stored as a single git note under a well-known notes ref.
"""

import json
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, ClassVar, Optional, Union

from .errors import DecodeError, TimestampParseError

logger = logging.getLogger(__name__)


# All category blobs live under this notes namespace
NOTES_NAMESPACE = "refs/notes/tally"

PROJECTS_PATH = f"{NOTES_NAMESPACE}/projects"
ISSUES_PATH = f"{NOTES_NAMESPACE}/issues"
COMMENTS_PATH = f"{NOTES_NAMESPACE}/comments"

CATEGORY_PATHS = {
    "projects": PROJECTS_PATH,
    "issues": ISSUES_PATH,
    "comments": COMMENTS_PATH,
}

TIMESTAMP_FIELDS = ("created_at", "updated_at", "deleted_at")


def utc_now() -> datetime:
    """Current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime in the canonical RFC 3339 form, UTC with a 'Z' suffix.

    Sub-second precision is kept when present so that encoding is lossless.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(ts: Any) -> datetime:
    """Parse an ISO 8601 timestamp to a timezone-aware UTC datetime.

    Naive timestamps are taken to be UTC.

    Raises:
        TimestampParseError: If ts is not a string or not ISO 8601.
    """
    if not isinstance(ts, str) or not ts:
        raise TimestampParseError(f"Not a timestamp: {ts!r}")
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError as e:
        raise TimestampParseError(f"Not an ISO 8601 timestamp: {ts!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _normalize(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(kw_only=True)
class Record:
    """
    Fields common to every record kind.

    Attributes:
        id: Globally unique identifier (UUID4), assigned at creation, immutable
        author: Committer identity resolved when the record was created
        refpath: Notes ref of the category blob holding this record
        created_at: Set once by touch()
        updated_at: Set by every touch(); drives last-writer-wins merges
        deleted_at: Tombstone; set by soft delete, cleared by restore
    """
    category: ClassVar[str] = ""

    id: str = ""
    author: str = ""
    refpath: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.refpath:
            self.refpath = CATEGORY_PATHS[self.category]
        self.created_at = _normalize(self.created_at)
        self.updated_at = _normalize(self.updated_at)
        self.deleted_at = _normalize(self.deleted_at)

    @property
    def is_persisted(self) -> bool:
        return self.id != ""

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def touch(self, now: Optional[datetime] = None) -> None:
        """Stamp the record: created_at on first touch, updated_at always."""
        timestamp = now or utc_now()
        if self.created_at is None:
            self.created_at = timestamp
        self.updated_at = timestamp

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-ready dict."""
        d: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in TIMESTAMP_FIELDS:
                value = format_timestamp(value) if value is not None else None
            d[f.name] = value
        return d

    @classmethod
    def from_dict(cls, data: Any) -> "Record":
        """
        Deserialize from a decoded JSON object.

        Non-conforming timestamp strings are treated as unset rather than
        failing the whole record; a timestamp of the wrong JSON type is an
        error like any other mistyped field.

        Raises:
            DecodeError: If data is not an object, `id` is missing, a field
                has the wrong type, or the record belongs to another category.
        """
        if not isinstance(data, dict):
            raise DecodeError(f"{cls.__name__} must be a JSON object, got {type(data).__name__}")
        record_id = data.get("id")
        if not isinstance(record_id, str) or not record_id:
            raise DecodeError(f"{cls.__name__} is missing required field 'id'")

        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            value = data[f.name]
            if f.name in TIMESTAMP_FIELDS:
                if not isinstance(value, str):
                    raise DecodeError(f"{cls.__name__} {record_id}: {f.name} must be a string")
                if not value:
                    continue
                try:
                    kwargs[f.name] = parse_timestamp(value)
                except TimestampParseError:
                    logger.warning("Ignoring malformed %s on %s: %r", f.name, record_id, value)
                continue
            if not isinstance(value, str):
                raise DecodeError(f"{cls.__name__} {record_id}: {f.name} must be a string")
            kwargs[f.name] = value

        record = cls(**kwargs)
        if record.refpath != CATEGORY_PATHS[cls.category]:
            raise DecodeError(
                f"{cls.__name__} {record_id} belongs to {record.refpath}, "
                f"not {CATEGORY_PATHS[cls.category]}"
            )
        return record


@dataclass(kw_only=True)
class Project(Record):
    """A project groups issues. `closed` is carried as text: "true"/"false"."""
    category: ClassVar[str] = "projects"

    title: str = ""
    description: str = ""
    closed: str = "false"
    shortcode: str = ""

    @property
    def is_closed(self) -> bool:
        return self.closed == "true"


@dataclass(kw_only=True)
class Issue(Record):
    """An issue, optionally owned (by weak reference) by a project."""
    category: ClassVar[str] = "issues"

    title: str = ""
    description: str = ""
    closed: str = "false"
    parent_type: str = ""
    parent_id: str = ""
    shortcode: str = ""

    @property
    def is_closed(self) -> bool:
        return self.closed == "true"


@dataclass(kw_only=True)
class Comment(Record):
    """A comment on a project or issue. Uses `content` instead of title/description."""
    category: ClassVar[str] = "comments"

    content: str = ""
    parent_type: str = ""
    parent_id: str = ""


RECORD_KINDS: dict[str, type[Record]] = {
    "projects": Project,
    "issues": Issue,
    "comments": Comment,
}

# Singular names as used in parent_type
PARENT_TYPES = {"project": Project, "issue": Issue}

Kind = Union[str, type[Record]]


def record_class(kind: Kind) -> type[Record]:
    """Resolve a category name ("issues"), refpath, or record class to the class."""
    if isinstance(kind, type) and issubclass(kind, Record):
        return kind
    for category, path in CATEGORY_PATHS.items():
        if kind in (category, path):
            return RECORD_KINDS[category]
    raise ValueError(f"Unknown record kind: {kind!r}. Use one of: {', '.join(RECORD_KINDS)}")


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def encode(record: Record) -> bytes:
    """Encode one record as canonical JSON (sorted keys, compact, UTF-8)."""
    return _dumps(record.to_dict())


def decode(data: Union[bytes, str], kind: Kind) -> Record:
    """
    Decode one record of the given kind.

    Raises:
        DecodeError: On malformed JSON or missing/mistyped fields
    """
    return record_class(kind).from_dict(_loads(data))


def _loads(data: Union[bytes, str]) -> Any:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(f"Malformed JSON: {e}") from e


def load_blob(data: Union[bytes, str]) -> dict[str, Any]:
    """Parse a category blob into its raw id -> object mapping.

    Raises:
        DecodeError: If the payload is not a JSON object
    """
    obj = _loads(data)
    if not isinstance(obj, dict):
        raise DecodeError(f"Category blob must be a JSON object, got {type(obj).__name__}")
    return obj


def dump_blob(mapping: dict[str, Any]) -> bytes:
    """Encode a raw id -> object mapping as a category blob."""
    return _dumps(mapping)


def encode_blob(records: dict[str, Record]) -> bytes:
    """Encode an id -> Record mapping as a category blob."""
    return dump_blob({record_id: record.to_dict() for record_id, record in records.items()})


def decode_blob(data: Union[bytes, str], kind: Kind) -> dict[str, Record]:
    """
    Decode a category blob into an id -> Record mapping.

    Raises:
        DecodeError: If the blob or any record in it is malformed, or a
            record is filed under a key other than its own id
    """
    cls = record_class(kind)
    records: dict[str, Record] = {}
    for key, value in load_blob(data).items():
        record = cls.from_dict(value)
        if record.id != key:
            raise DecodeError(f"Record {record.id!r} is filed under key {key!r}")
        records[key] = record
    return records
