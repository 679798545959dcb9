"""Garbage collection of expired objects, orphan NARs and orphan chunks."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Union

from .database import Database
from .models import ChunkModel, ChunkState, NarState, _parse_timestamp
from .storage import StorageBackend

_log = logging.getLogger(__name__)

# SQLite's default limit on statement variables.
_ORPHAN_CHUNK_LIMIT = 500
_DELETE_CONCURRENCY = 20

Period = Union[timedelta, int, float]


def _seconds(period: Period) -> float:
    if isinstance(period, timedelta):
        return period.total_seconds()
    return float(period)


def run_garbage_collection(
    database: Database,
    storage: StorageBackend,
    interval: Period,
    default_retention_period: Period,
) -> None:
    """Runs garbage collection every ``interval``; a zero interval disables it."""
    seconds = _seconds(interval)
    if seconds == 0:
        return
    while True:
        try:
            run_garbage_collection_once(database, storage, default_retention_period)
        except Exception as e:
            _log.warning("Garbage collection failed: %s", e)
        time.sleep(seconds)


def run_garbage_collection_once(
    database: Database, storage: StorageBackend, default_retention_period: Period
) -> None:
    """Runs every garbage collection step once."""
    _log.info("Running garbage collection...")
    run_time_based_garbage_collection(database, default_retention_period)
    reap_orphan_nars(database)
    reap_orphan_chunks(database, storage)


def run_time_based_garbage_collection(
    database: Database,
    default_retention_period: Period,
    now: datetime | None = None,
) -> int:
    """Deletes objects older than their cache's retention period.

    An object is kept if it was accessed within the period. Caches
    without their own period use ``default_retention_period``; a period
    of zero disables collection. Returns the number of objects deleted.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    default = int(_seconds(default_retention_period))

    total = 0
    with database._transaction() as conn:
        caches = conn.execute(
            'SELECT "id", "name", COALESCE("retention_period", ?) AS "retention_period" '
            'FROM "cache" WHERE COALESCE("retention_period", ?) != 0',
            (default, default),
        ).fetchall()
        _log.info(
            "Found %d caches subject to time-based garbage collection", len(caches)
        )

        for cache in caches:
            try:
                cutoff = now - timedelta(seconds=int(cache["retention_period"]))
            except OverflowError as e:
                raise OverflowError(
                    "Somehow subtracting retention period for cache "
                    f"{cache['name']} underflowed"
                ) from e

            objects = conn.execute(
                'SELECT "id", "created_at", "last_accessed_at" FROM "object" '
                'WHERE "cache_id" = ?',
                (cache["id"],),
            ).fetchall()
            expired = [
                (row["id"],)
                for row in objects
                if _parse_timestamp(row["created_at"]) < cutoff
                and (
                    row["last_accessed_at"] is None
                    or _parse_timestamp(row["last_accessed_at"]) < cutoff
                )
            ]
            if expired:
                conn.executemany('DELETE FROM "object" WHERE "id" = ?', expired)
            _log.info(
                "Deleted %d objects from %s (ID %d)",
                len(expired),
                cache["name"],
                cache["id"],
            )
            total += len(expired)

    _log.info("Deleted %d objects in total", total)
    return total


def reap_orphan_nars(database: Database) -> int:
    """Deletes valid, unheld NARs that no object refers to. Returns the count."""
    with database._transaction() as conn:
        cursor = conn.execute(
            'DELETE FROM "nar" WHERE "id" IN ('
            'SELECT "nar"."id" FROM "nar" '
            'LEFT JOIN "object" ON "object"."nar_id" = "nar"."id" '
            'WHERE "object"."id" IS NULL AND "nar"."state" = ? '
            'AND "nar"."holders_count" = 0)',
            (NarState.VALID.value,),
        )
        deleted = cursor.rowcount
    _log.info("Deleted %d orphan NARs", deleted)
    return deleted


def reap_orphan_chunks(database: Database, storage: StorageBackend) -> int:
    """Deletes valid, unheld chunks that no NAR refers to, from storage and database.

    Chunks whose files cannot be deleted stay in the Deleted state.
    Returns the number of chunks removed from the database.
    """
    with database._transaction() as conn:
        conn.execute(
            'UPDATE "chunk" SET "state" = ? WHERE "id" IN ('
            'SELECT "chunk"."id" FROM "chunk" '
            'LEFT JOIN "chunkref" ON "chunkref"."chunk_id" = "chunk"."id" '
            'WHERE "chunkref"."id" IS NULL AND "chunk"."state" = ? '
            'AND "chunk"."holders_count" = 0)',
            (ChunkState.DELETED.value, ChunkState.VALID.value),
        )
        rows = conn.execute(
            'SELECT * FROM "chunk" WHERE "state" = ? LIMIT ?',
            (ChunkState.DELETED.value, _ORPHAN_CHUNK_LIMIT),
        ).fetchall()
        orphans = [ChunkModel.from_row(row) for row in rows]

    if not orphans:
        return 0

    def delete(chunk: ChunkModel) -> int:
        storage.delete_file_db(chunk.remote_file)
        return chunk.id

    with ThreadPoolExecutor(max_workers=min(_DELETE_CONCURRENCY, len(orphans))) as pool:
        futures = [pool.submit(delete, chunk) for chunk in orphans]

    deleted_ids = []
    for future in futures:
        try:
            deleted_ids.append(future.result())
        except Exception as e:
            _log.warning("Deletion failed: %s", e)

    if not deleted_ids:
        _log.info("Deleted 0 orphan chunks")
        return 0

    with database._transaction() as conn:
        conn.executemany(
            'DELETE FROM "chunk" WHERE "id" = ?', [(chunk_id,) for chunk_id in deleted_ids]
        )
    _log.info("Deleted %d orphan chunks", len(deleted_ids))
    return len(deleted_ids)