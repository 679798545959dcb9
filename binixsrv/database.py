"""Queries against the server database."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from .errors import ErrorKind, ServerError
from .models import ChunkModel, ChunkState, NarModel, NarState
from .narinfo import Compression, parse_typed_hash
from .records import CacheModel, ObjectModel

_log = logging.getLogger(__name__)

_SELECT_OBJECT = "O_"
_SELECT_CACHE = "C_"
_SELECT_NAR = "N_"
_SELECT_CHUNK = "CH_"
_SELECT_CHUNKREF = "CHR_"

_COLUMNS = {
    "object": (
        "id",
        "cache_id",
        "nar_id",
        "store_path_hash",
        "store_path",
        "references",
        "system",
        "deriver",
        "sigs",
        "ca",
        "created_at",
        "last_accessed_at",
        "created_by",
    ),
    "cache": (
        "id",
        "name",
        "keypair",
        "is_public",
        "store_dir",
        "priority",
        "upstream_cache_key_names",
        "created_at",
        "deleted_at",
        "retention_period",
    ),
    "nar": (
        "id",
        "state",
        "nar_hash",
        "nar_size",
        "compression",
        "num_chunks",
        "completeness_hint",
        "holders_count",
        "created_at",
    ),
    "chunk": (
        "id",
        "state",
        "chunk_hash",
        "chunk_size",
        "file_hash",
        "file_size",
        "compression",
        "remote_file",
        "remote_file_id",
        "holders_count",
        "created_at",
    ),
    "chunkref": ("id", "nar_id", "seq", "chunk_id", "chunk_hash", "compression"),
}

_SQLITE_PRAGMAS = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = normal",
    "PRAGMA temp_store = memory",
    "PRAGMA mmap_size = 30000000000",
)


def _prefixed(table: str, prefix: str) -> str:
    return ", ".join(
        f'"{table}"."{column}" AS "{prefix}{column}"' for column in _COLUMNS[table]
    )


def _build_cache_object_nar_query(include_chunks: bool) -> str:
    selected = [
        _prefixed("object", _SELECT_OBJECT),
        _prefixed("cache", _SELECT_CACHE),
        _prefixed("nar", _SELECT_NAR),
    ]
    joins = [
        'INNER JOIN "cache" ON "object"."cache_id" = "cache"."id"',
        'INNER JOIN "nar" ON "object"."nar_id" = "nar"."id"',
    ]
    conditions = [
        '"cache"."name" = ?',
        '"cache"."deleted_at" IS NULL',
        '"object"."store_path_hash" = ?',
        '"nar"."state" = ?',
    ]
    order = ""
    if include_chunks:
        selected.append(_prefixed("chunk", _SELECT_CHUNK))
        selected.append(_prefixed("chunkref", _SELECT_CHUNKREF))
        joins.append('INNER JOIN "chunkref" ON "chunkref"."nar_id" = "nar"."id"')
        joins.append('LEFT JOIN "chunk" ON "chunkref"."chunk_id" = "chunk"."id"')
        conditions.append('("chunk"."state" = ? OR "chunk"."state" IS NULL)')
        order = ' ORDER BY "chunkref"."seq" ASC'
    return (
        f'SELECT {", ".join(selected)} FROM "object" {" ".join(joins)} '
        f'WHERE {" AND ".join(conditions)}{order}'
    )


def _typed_base16(typed_hash: str) -> str:
    try:
        algorithm, digest = parse_typed_hash(typed_hash)
    except ValueError as e:
        raise ServerError.binix_error(e) from e
    return f"{algorithm}:{digest.hex()}"


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


class Database:
    """A handle to the server database."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        connection.row_factory = sqlite3.Row
        self.connection = connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self.connection
            self.connection.commit()
        except sqlite3.Error as e:
            self.connection.rollback()
            raise ServerError.database_error(e) from e
        except BaseException:
            self.connection.rollback()
            raise

    def find_object_and_chunks_by_store_path_hash(
        self, cache: str, store_path_hash: str, include_chunks: bool
    ) -> tuple[ObjectModel, CacheModel, NarModel, list[ChunkModel | None]]:
        """Finds an object in a cache by its store path hash, with its chunks.

        A missing chunk shows up as ``None`` in the chunk list.
        """
        params: list[Any] = [str(cache), str(store_path_hash), NarState.VALID.value]
        if include_chunks:
            params.append(ChunkState.VALID.value)
        sql = _build_cache_object_nar_query(include_chunks)
        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()

        if not rows:
            raise ServerError(ErrorKind.NO_SUCH_OBJECT)

        first = rows[0]
        obj = ObjectModel.from_row(first, _SELECT_OBJECT)
        cache_model = CacheModel.from_row(first, _SELECT_CACHE)
        nar = NarModel.from_row(first, _SELECT_NAR)

        chunks: list[ChunkModel | None] = []
        if include_chunks:
            if len(rows) != nar.num_chunks:
                raise ServerError.database_error(
                    "Database returned the wrong number of chunks: "
                    f"Expected {nar.num_chunks}, got {len(rows)}"
                )
            chunks = [
                None
                if row[_SELECT_CHUNK + "id"] is None
                else ChunkModel.from_row(row, _SELECT_CHUNK)
                for row in rows
            ]

        return obj, cache_model, nar, chunks

    def find_cache(self, cache: str) -> CacheModel:
        """Finds a binary cache that has not been deleted."""
        with self._transaction() as conn:
            row = conn.execute(
                'SELECT * FROM "cache" WHERE "name" = ? AND "deleted_at" IS NULL',
                (str(cache),),
            ).fetchone()
        if row is None:
            raise ServerError(ErrorKind.NO_SUCH_CACHE)
        return CacheModel.from_row(row)

    def find_and_lock_nar(self, nar_hash: str) -> NarGuard | None:
        """Finds a valid NAR with the given hash and holds it."""
        wanted = _typed_base16(nar_hash)
        with self._transaction() as conn:
            found = conn.execute(
                'SELECT "id" FROM "nar" WHERE "nar_hash" = ? AND "state" = ? LIMIT 1',
                (wanted, NarState.VALID.value),
            ).fetchone()
            if found is None:
                return None
            conn.execute(
                'UPDATE "nar" SET "holders_count" = "holders_count" + 1 WHERE "id" = ?',
                (found["id"],),
            )
            row = conn.execute(
                'SELECT * FROM "nar" WHERE "id" = ?', (found["id"],)
            ).fetchone()
            nar = NarModel.from_row(row)
        return NarGuard(self, nar)

    def find_and_lock_chunk(
        self, chunk_hash: str, compression: Compression | str
    ) -> ChunkGuard | None:
        """Finds a valid chunk with the given hash and compression and holds it."""
        wanted = _typed_base16(chunk_hash)
        compression_name = Compression.from_str(str(compression)).as_str()
        with self._transaction() as conn:
            found = conn.execute(
                'SELECT "id" FROM "chunk" WHERE "chunk_hash" = ? AND "state" = ? '
                'AND "compression" = ? LIMIT 1',
                (wanted, ChunkState.VALID.value, compression_name),
            ).fetchone()
            if found is None:
                return None
            conn.execute(
                'UPDATE "chunk" SET "holders_count" = "holders_count" + 1 '
                'WHERE "id" = ?',
                (found["id"],),
            )
            row = conn.execute(
                'SELECT * FROM "chunk" WHERE "id" = ?', (found["id"],)
            ).fetchone()
            chunk = ChunkModel.from_row(row)
        return ChunkGuard(self, chunk)

    def bump_object_last_accessed(self, object_id: int) -> None:
        """Sets the last accessed timestamp of an object to now."""
        now = datetime.now(timezone.utc)
        with self._transaction() as conn:
            cursor = conn.execute(
                'UPDATE "object" SET "last_accessed_at" = ? WHERE "id" = ?',
                (_format_timestamp(now), object_id),
            )
            if cursor.rowcount == 0:
                raise ServerError.database_error(
                    f"No object with ID {object_id} was updated"
                )


class _Held:
    """A row whose holders count this process has incremented."""

    _table = ""

    def __init__(self, database: Database, model: Any) -> None:
        self._database = database
        self._model = model
        self._released = False

    def __getattr__(self, name: str) -> Any:
        model = self.__dict__.get("_model")
        if model is None:
            raise AttributeError(name)
        return getattr(model, name)

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        _log.debug("Unlocking %s", self._table)
        try:
            with self._database._transaction() as conn:
                conn.execute(
                    f'UPDATE "{self._table}" '
                    'SET "holders_count" = "holders_count" - 1 WHERE "id" = ?',
                    (self._model.id,),
                )
        except ServerError as e:
            _log.warning("Failed to decrement holders count: %s", e)

    def __enter__(self) -> Any:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._release()


class NarGuard(_Held):
    """A held NAR; it is protected from garbage collection until released."""

    _table = "nar"

    @property
    def nar(self) -> NarModel:
        return self._model

    def release(self) -> None:
        """Drops the hold on the NAR. Releasing twice has no further effect."""
        self._release()


class ChunkGuard(_Held):
    """A held chunk; it is protected from garbage collection until released."""

    _table = "chunk"

    @property
    def chunk(self) -> ChunkModel:
        return self._model

    @classmethod
    def from_locked(cls, database: Database, chunk: ChunkModel) -> ChunkGuard:
        """Wraps a chunk whose holders count was already incremented."""
        return cls(database, chunk)

    def release(self) -> None:
        """Drops the hold on the chunk. Releasing twice has no further effect."""
        self._release()


def connect(url: str) -> Database:
    """Opens the database named by a ``sqlite:`` URL."""
    scheme, sep, rest = url.partition(":")
    if scheme != "sqlite" or not sep:
        raise ServerError.database_error(f"Unsupported database URL: {url}")
    path = rest[2:] if rest.startswith("//") else rest
    path = path.split("?", 1)[0]
    if not path:
        raise ServerError.database_error(f"Database URL has no path: {url}")
    try:
        connection = sqlite3.connect(path)
    except sqlite3.Error as e:
        raise ServerError.database_error(e) from e
    # Performance settings only; failures are tolerated.
    for pragma in _SQLITE_PRAGMAS:
        try:
            connection.execute(pragma)
        except sqlite3.Error:
            pass
    return Database(connection)