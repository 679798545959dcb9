"""Database models for binary caches and the objects they hold."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Mapping

from .errors import ServerError
from .models import NarModel, _get, _parse_timestamp, _required
from .narinfo import Compression, NarInfo, to_typed_base32


def _string_list(value: Any, column: str) -> list[str]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ServerError.database_error(
                f"invalid JSON in column {column!r}: {e}"
            ) from e
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ServerError.database_error(
            f"column {column!r} does not hold a list of strings"
        )
    return list(value)


def _optional_timestamp(value: Any) -> datetime | None:
    return None if value is None else _parse_timestamp(value)


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


@dataclass
class CacheModel:
    """A binary cache.

    ``priority`` follows Nix: a lower number is a higher priority.
    ``retention_period`` is in seconds; ``None`` means the server default.
    """

    id: int
    name: str
    keypair: str
    is_public: bool
    store_dir: str
    priority: int
    created_at: datetime
    upstream_cache_key_names: list[str] = field(default_factory=list)
    deleted_at: datetime | None = None
    retention_period: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], prefix: str = "") -> CacheModel:
        """Builds a model from a result row whose columns carry ``prefix``."""
        return cls(
            id=int(_required(row, prefix, "id")),
            name=_required(row, prefix, "name"),
            keypair=_required(row, prefix, "keypair"),
            is_public=bool(_required(row, prefix, "is_public")),
            store_dir=_required(row, prefix, "store_dir"),
            priority=int(_required(row, prefix, "priority")),
            upstream_cache_key_names=_string_list(
                _required(row, prefix, "upstream_cache_key_names"),
                prefix + "upstream_cache_key_names",
            ),
            created_at=_parse_timestamp(_required(row, prefix, "created_at")),
            deleted_at=_optional_timestamp(_get(row, prefix, "deleted_at")),
            retention_period=_optional_int(_get(row, prefix, "retention_period")),
        )


@dataclass
class ObjectModel:
    """An object in a binary cache, backed by a NAR in the global cache."""

    id: int
    cache_id: int
    nar_id: int
    store_path_hash: str
    store_path: str
    created_at: datetime
    references: list[str] = field(default_factory=list)
    sigs: list[str] = field(default_factory=list)
    system: str | None = None
    deriver: str | None = None
    ca: str | None = None
    last_accessed_at: datetime | None = None
    created_by: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], prefix: str = "") -> ObjectModel:
        """Builds a model from a result row whose columns carry ``prefix``."""
        return cls(
            id=int(_required(row, prefix, "id")),
            cache_id=int(_required(row, prefix, "cache_id")),
            nar_id=int(_required(row, prefix, "nar_id")),
            store_path_hash=_required(row, prefix, "store_path_hash"),
            store_path=_required(row, prefix, "store_path"),
            references=_string_list(
                _required(row, prefix, "references"), prefix + "references"
            ),
            system=_get(row, prefix, "system"),
            deriver=_get(row, prefix, "deriver"),
            sigs=_string_list(_required(row, prefix, "sigs"), prefix + "sigs"),
            ca=_get(row, prefix, "ca"),
            created_at=_parse_timestamp(_required(row, prefix, "created_at")),
            last_accessed_at=_optional_timestamp(_get(row, prefix, "last_accessed_at")),
            created_by=_get(row, prefix, "created_by"),
        )

    def to_nar_info(self, nar: NarModel) -> NarInfo:
        """Converts this object and its NAR into a narinfo."""
        if nar.nar_size < 0:
            raise ServerError.database_error(
                f"NAR size {nar.nar_size} is out of range"
            )
        compression = Compression.from_str(nar.compression)
        try:
            nar_hash = to_typed_base32(nar.nar_hash)
        except ValueError as e:
            raise ServerError.binix_error(e) from e
        return NarInfo(
            store_path=PurePosixPath(self.store_path),
            url=f"nar/{self.store_path_hash}.nar",
            compression=compression,
            nar_hash=nar_hash,
            nar_size=nar.nar_size,
            references=list(self.references),
            system=self.system,
            deriver=self.deriver,
            ca=self.ca,
        )