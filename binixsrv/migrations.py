"""Database migrations and the migrator that applies them.

The later migrations move NAR storage into content-addressed chunks:
they add the ``chunk`` and ``chunkref`` tables, move every NAR's
remote file into a chunk, drop the obsolete NAR columns and add the
NAR completeness hint.

Applied migrations are recorded by name in a tracking table, so
running the migrator again applies only what is still pending.
"""

from __future__ import annotations

import sqlite3
import sys
import time
from typing import Any

from .errors import ServerError
from .migrations_initial import Migration, initial_migrations

_TRACKING_TABLE = "seaql_migrations"
_TEMP_NAR_TABLE = "nar_new"
_OLD_NAR_COLUMNS = ("file_hash", "file_size", "remote_file", "remote_file_id")

_ADD_CHUNK_TABLE = Migration(
    "m20230112_000001_add_chunk_table",
    (
        'CREATE TABLE "chunk" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"state" char(1) NOT NULL, '
        '"chunk_hash" varchar NOT NULL, '
        '"chunk_size" bigint NOT NULL, '
        '"file_hash" varchar NULL, '
        '"file_size" bigint NULL, '
        '"compression" varchar NOT NULL, '
        '"remote_file" varchar NOT NULL, '
        '"remote_file_id" varchar NOT NULL UNIQUE, '
        '"holders_count" integer NOT NULL DEFAULT 0, '
        '"created_at" timestamp_with_timezone_text NOT NULL)',
        'CREATE INDEX "idx-chunk-chunk-hash" ON "chunk" ("chunk_hash")',
    ),
)

_ADD_CHUNKREF_TABLE = Migration(
    "m20230112_000002_add_chunkref_table",
    (
        'CREATE TABLE "chunkref" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"nar_id" bigint NOT NULL, '
        '"seq" integer NOT NULL, '
        '"chunk_id" bigint NULL, '
        '"chunk_hash" varchar NOT NULL, '
        '"compression" varchar NOT NULL, '
        'CONSTRAINT "fk_chunkref_chunk" FOREIGN KEY ("chunk_id") '
        'REFERENCES "chunk" ("id") ON DELETE SET NULL, '
        'CONSTRAINT "fk_chunkref_nar" FOREIGN KEY ("nar_id") '
        'REFERENCES "nar" ("id") ON DELETE CASCADE)',
        'CREATE INDEX "idx-chunk-nar-id" ON "chunkref" ("nar_id")',
        'CREATE INDEX "idx-chunk-chunk-id" ON "chunkref" ("chunk_id")',
    ),
)

_ADD_NAR_NUM_CHUNKS = Migration(
    "m20230112_000003_add_nar_num_chunks",
    ('ALTER TABLE "nar" ADD COLUMN "num_chunks" integer NOT NULL DEFAULT 1',),
)


def _migrate_nar_remote_files_to_chunks(connection: Any) -> None:
    """Turns the remote file of every NAR into a single chunk bound to it."""
    print("* Migrating NARs to chunks...", file=sys.stderr)

    nars = connection.execute(
        'SELECT "id", "remote_file", "remote_file_id", "nar_hash", "nar_size", '
        '"file_hash", "file_size", "compression", "created_at" FROM "nar"'
    ).fetchall()

    for (
        nar_id,
        remote_file,
        remote_file_id,
        nar_hash,
        nar_size,
        file_hash,
        file_size,
        compression,
        created_at,
    ) in nars:
        cursor = connection.execute(
            'INSERT INTO "chunk" ("remote_file", "remote_file_id", "chunk_hash", '
            '"chunk_size", "file_hash", "file_size", "compression", "created_at", '
            '"state") VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)',
            (
                remote_file,
                remote_file_id,
                nar_hash,
                nar_size,
                file_hash,
                file_size,
                compression,
                created_at,
                "V",
            ),
        )
        connection.execute(
            'INSERT INTO "chunkref" ("chunk_id", "nar_id", "chunk_hash", '
            '"compression", "seq") VALUES (?, ?, ?, ?, 0)',
            (cursor.lastrowid, nar_id, nar_hash, compression),
        )


_MIGRATE_NAR_REMOTE_FILES_TO_CHUNKS = Migration(
    "m20230112_000004_migrate_nar_remote_files_to_chunks",
    (_migrate_nar_remote_files_to_chunks,),
)

_NAR_COLUMNS = (
    "id",
    "state",
    "nar_hash",
    "nar_size",
    "compression",
    "num_chunks",
    "holders_count",
    "created_at",
)


def _drop_old_nar_columns(connection: Any) -> None:
    """Removes the storage columns that moved from NARs to chunks."""
    print("* Migrating NAR schema...", file=sys.stderr)

    if not isinstance(connection, sqlite3.Connection):
        for column in _OLD_NAR_COLUMNS:
            connection.execute(f'ALTER TABLE "nar" DROP COLUMN "{column}"')
        return

    # Pragmas have no effect inside a transaction.
    connection.commit()
    connection.execute("PRAGMA foreign_keys = OFF")

    connection.execute(
        f'CREATE TABLE IF NOT EXISTS "{_TEMP_NAR_TABLE}" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"state" char(1) NOT NULL, '
        '"nar_hash" varchar NOT NULL, '
        '"nar_size" bigint NOT NULL, '
        '"compression" varchar NOT NULL, '
        '"num_chunks" integer NOT NULL DEFAULT 1, '
        '"holders_count" integer NOT NULL DEFAULT 0, '
        '"created_at" timestamp_with_timezone_text NOT NULL)'
    )
    columns = ", ".join(f'"{column}"' for column in _NAR_COLUMNS)
    connection.execute(
        f'INSERT INTO "{_TEMP_NAR_TABLE}" ({columns}) SELECT {columns} FROM "nar"'
    )
    connection.execute('DROP TABLE "nar"')
    connection.execute(f'ALTER TABLE "{_TEMP_NAR_TABLE}" RENAME TO "nar"')

    connection.commit()
    connection.execute("PRAGMA foreign_keys = ON")


_DROP_OLD_NAR_COLUMNS = Migration(
    "m20230112_000005_drop_old_nar_columns",
    (_drop_old_nar_columns,),
)

_ADD_NAR_COMPLETENESS_HINT = Migration(
    "m20230112_000006_add_nar_completeness_hint",
    (
        'ALTER TABLE "nar" ADD COLUMN "completeness_hint" boolean NOT NULL DEFAULT 1',
    ),
)


def migrations() -> list[Migration]:
    """Returns every migration in the order it is applied."""
    return [
        *initial_migrations(),
        _ADD_CHUNK_TABLE,
        _ADD_CHUNKREF_TABLE,
        _ADD_NAR_NUM_CHUNKS,
        _MIGRATE_NAR_REMOTE_FILES_TO_CHUNKS,
        _DROP_OLD_NAR_COLUMNS,
        _ADD_NAR_COMPLETENESS_HINT,
    ]


def _ensure_tracking_table(connection: Any) -> None:
    connection.execute(
        f'CREATE TABLE IF NOT EXISTS "{_TRACKING_TABLE}" ('
        '"version" varchar NOT NULL PRIMARY KEY, '
        '"applied_at" bigint NOT NULL)'
    )


def applied_migrations(connection: Any) -> list[str]:
    """Returns the names of the migrations already applied, in order."""
    try:
        _ensure_tracking_table(connection)
        rows = connection.execute(
            f'SELECT "version" FROM "{_TRACKING_TABLE}" ORDER BY rowid'
        ).fetchall()
    except sqlite3.Error as e:
        raise ServerError.database_error(e) from e
    return [row[0] for row in rows]


def run_migrations(connection: Any) -> list[str]:
    """Applies every pending migration and returns the names applied."""
    applied = applied_migrations(connection)
    known = {migration.name for migration in migrations()}
    for name in applied:
        if name not in known:
            raise ServerError.database_error(
                f"Migration file of version '{name}' is missing"
            )

    done = []
    for migration in migrations():
        if migration.name in applied:
            continue
        try:
            migration.up(connection)
            connection.execute(
                f'INSERT INTO "{_TRACKING_TABLE}" ("version", "applied_at") '
                "VALUES (?, ?)",
                (migration.name, int(time.time())),
            )
            connection.commit()
        except sqlite3.Error as e:
            connection.rollback()
            raise ServerError.database_error(e) from e
        except BaseException:
            connection.rollback()
            raise
        done.append(migration.name)
    return done