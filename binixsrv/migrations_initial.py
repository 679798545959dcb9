"""The first database migrations: caches, NARs and objects."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Union

Step = Union[str, Callable[[Any], None]]


@dataclass(frozen=True)
class Migration:
    """A named schema migration.

    Each step is either an SQL statement or a callable that receives the
    connection and performs its own work.
    """

    name: str
    steps: Sequence[Step]

    def up(self, connection: Any) -> None:
        """Applies this migration on a DB-API connection."""
        for step in self.steps:
            if isinstance(step, str):
                connection.execute(step)
            else:
                step(connection)


_CREATE_CACHE_TABLE = Migration(
    "m20221227_000001_create_cache_table",
    (
        'CREATE TABLE IF NOT EXISTS "cache" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"name" varchar(50) NOT NULL UNIQUE, '
        '"keypair" varchar NOT NULL, '
        '"is_public" boolean NOT NULL, '
        '"store_dir" varchar NOT NULL, '
        '"priority" integer NOT NULL, '
        '"upstream_cache_key_names" varchar NOT NULL, '
        '"created_at" timestamp_with_timezone_text NOT NULL, '
        '"deleted_at" timestamp_with_timezone_text NULL)',
        'CREATE INDEX "idx-cache-name" ON "cache" ("name")',
    ),
)

_CREATE_NAR_TABLE = Migration(
    "m20221227_000003_create_nar_table",
    (
        'CREATE TABLE IF NOT EXISTS "nar" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"state" char(1) NOT NULL, '
        '"nar_hash" varchar NOT NULL, '
        '"nar_size" bigint NOT NULL, '
        '"file_hash" varchar NULL, '
        '"file_size" bigint NULL, '
        '"compression" varchar NOT NULL, '
        '"remote_file" varchar NOT NULL, '
        '"remote_file_id" varchar NOT NULL UNIQUE, '
        '"holders_count" integer NOT NULL DEFAULT 0, '
        '"created_at" timestamp_with_timezone_text NOT NULL)',
        'CREATE INDEX "idx-nar-nar-hash" ON "nar" ("nar_hash")',
    ),
)

_CREATE_OBJECT_TABLE = Migration(
    "m20221227_000002_create_object_table",
    (
        'CREATE TABLE IF NOT EXISTS "object" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"cache_id" bigint NOT NULL, '
        '"nar_id" bigint NOT NULL, '
        '"store_path_hash" varchar(32) NOT NULL, '
        '"store_path" varchar NOT NULL, '
        '"references" varchar NOT NULL, '
        '"system" varchar, '
        '"deriver" varchar, '
        '"sigs" varchar NOT NULL, '
        '"ca" varchar, '
        '"created_at" timestamp_with_timezone_text NOT NULL, '
        'CONSTRAINT "fk_object_cache" FOREIGN KEY ("cache_id") '
        'REFERENCES "cache" ("id") ON DELETE CASCADE, '
        'CONSTRAINT "fk_object_nar" FOREIGN KEY ("nar_id") '
        'REFERENCES "nar" ("id") ON DELETE CASCADE)',
        'CREATE UNIQUE INDEX "idx-object-cache-hash" '
        'ON "object" ("cache_id", "store_path_hash")',
    ),
)

_ADD_OBJECT_LAST_ACCESSED = Migration(
    "m20221227_000004_add_object_last_accessed",
    (
        'ALTER TABLE "object" ADD COLUMN "last_accessed_at" '
        "timestamp_with_timezone_text NULL",
    ),
)

_ADD_CACHE_RETENTION_PERIOD = Migration(
    "m20221227_000005_add_cache_retention_period",
    ('ALTER TABLE "cache" ADD COLUMN "retention_period" integer NULL',),
)

_ADD_OBJECT_CREATED_BY = Migration(
    "m20230103_000001_add_object_created_by",
    ('ALTER TABLE "object" ADD COLUMN "created_by" varchar NULL',),
)


def initial_migrations() -> list[Migration]:
    """Returns the initial migrations in the order they are applied."""
    return [
        _CREATE_CACHE_TABLE,
        _CREATE_NAR_TABLE,
        _CREATE_OBJECT_TABLE,
        _ADD_OBJECT_LAST_ACCESSED,
        _ADD_CACHE_RETENTION_PERIOD,
        _ADD_OBJECT_CREATED_BY,
    ]