"""Database models for NARs, chunks and the references binding them."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import ServerError
from .storage import RemoteFile, remote_file_from_json

_OFFSET_SPACE = re.compile(r"\s+([+-]\d{2}:?\d{2})$")
_FRACTION = re.compile(r"\.(\d+)")


class NarState(enum.Enum):
    """The state of a NAR."""

    VALID = "V"
    PENDING_UPLOAD = "P"
    CONFIRMED_DEDUPLICATED = "C"
    DELETED = "D"


class ChunkState(enum.Enum):
    """The state of a chunk."""

    VALID = "V"
    PENDING_UPLOAD = "P"
    CONFIRMED_DEDUPLICATED = "C"
    DELETED = "D"


def _get(row: Mapping[str, Any], prefix: str, column: str) -> Any:
    key = prefix + column
    try:
        return row[key]
    except (KeyError, IndexError) as e:
        raise ServerError.database_error(f"no column {key!r} in query result") from e


def _required(row: Mapping[str, Any], prefix: str, column: str) -> Any:
    value = _get(row, prefix, column)
    if value is None:
        raise ServerError.database_error(f"column {prefix + column!r} is null")
    return value


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _OFFSET_SPACE.sub(r"\1", text)
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ServerError.database_error(f"invalid timestamp {value!r}") from e
    else:
        raise ServerError.database_error(f"invalid timestamp {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _enum(enum_type: type[enum.Enum], value: Any) -> Any:
    try:
        return enum_type(value)
    except ValueError as e:
        raise ServerError.database_error(
            f"invalid {enum_type.__name__} value {value!r}"
        ) from e


def _remote_file(value: Any) -> RemoteFile:
    if not isinstance(value, str):
        return value
    try:
        return remote_file_from_json(value)
    except ValueError as e:
        raise ServerError.database_error(e) from e


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


@dataclass
class NarModel:
    """A content-addressed NAR in the global cache."""

    id: int
    state: NarState
    nar_hash: str
    nar_size: int
    compression: str
    num_chunks: int
    completeness_hint: bool
    holders_count: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any], prefix: str = "") -> NarModel:
        """Builds a model from a result row whose columns carry ``prefix``."""
        return cls(
            id=int(_required(row, prefix, "id")),
            state=_enum(NarState, _required(row, prefix, "state")),
            nar_hash=_required(row, prefix, "nar_hash"),
            nar_size=int(_required(row, prefix, "nar_size")),
            compression=_required(row, prefix, "compression"),
            num_chunks=int(_required(row, prefix, "num_chunks")),
            completeness_hint=bool(_required(row, prefix, "completeness_hint")),
            holders_count=int(_required(row, prefix, "holders_count")),
            created_at=_parse_timestamp(_required(row, prefix, "created_at")),
        )


@dataclass
class ChunkModel:
    """A content-addressed chunk in the global chunk store."""

    id: int
    state: ChunkState
    chunk_hash: str
    chunk_size: int
    file_hash: str | None
    file_size: int | None
    compression: str
    remote_file: RemoteFile
    remote_file_id: str
    holders_count: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any], prefix: str = "") -> ChunkModel:
        """Builds a model from a result row whose columns carry ``prefix``."""
        return cls(
            id=int(_required(row, prefix, "id")),
            state=_enum(ChunkState, _required(row, prefix, "state")),
            chunk_hash=_required(row, prefix, "chunk_hash"),
            chunk_size=int(_required(row, prefix, "chunk_size")),
            file_hash=_get(row, prefix, "file_hash"),
            file_size=_optional_int(_get(row, prefix, "file_size")),
            compression=_required(row, prefix, "compression"),
            remote_file=_remote_file(_required(row, prefix, "remote_file")),
            remote_file_id=_required(row, prefix, "remote_file_id"),
            holders_count=int(_required(row, prefix, "holders_count")),
            created_at=_parse_timestamp(_required(row, prefix, "created_at")),
        )


@dataclass
class ChunkRefModel:
    """A reference binding a NAR to one of its chunks.

    ``chunk_id`` is ``None`` when the chunk is missing from the database.
    """

    id: int
    nar_id: int
    seq: int
    chunk_id: int | None
    chunk_hash: str
    compression: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any], prefix: str = "") -> ChunkRefModel:
        """Builds a model from a result row whose columns carry ``prefix``."""
        return cls(
            id=int(_required(row, prefix, "id")),
            nar_id=int(_required(row, prefix, "nar_id")),
            seq=int(_required(row, prefix, "seq")),
            chunk_id=_optional_int(_get(row, prefix, "chunk_id")),
            chunk_hash=_required(row, prefix, "chunk_hash"),
            compression=_required(row, prefix, "compression"),
        )