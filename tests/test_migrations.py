import sqlite3

import pytest

from binixsrv.errors import ErrorKind, ServerError
from binixsrv.migrations import applied_migrations, migrations, run_migrations
from binixsrv.migrations_initial import initial_migrations
from binixsrv.models import ChunkModel, ChunkRefModel, ChunkState, NarModel, NarState
from binixsrv.storage import LocalRemoteFile, remote_file_to_json

ALL_NAMES = [
    "m20221227_000001_create_cache_table",
    "m20221227_000003_create_nar_table",
    "m20221227_000002_create_object_table",
    "m20221227_000004_add_object_last_accessed",
    "m20221227_000005_add_cache_retention_period",
    "m20230103_000001_add_object_created_by",
    "m20230112_000001_add_chunk_table",
    "m20230112_000002_add_chunkref_table",
    "m20230112_000003_add_nar_num_chunks",
    "m20230112_000004_migrate_nar_remote_files_to_chunks",
    "m20230112_000005_drop_old_nar_columns",
    "m20230112_000006_add_nar_completeness_hint",
]

CREATED_AT = "2023-01-01T00:00:00+00:00"


@pytest.fixture
def connection():
    conn = sqlite3.connect(":memory:")
    yield conn
    conn.close()


def _columns(conn, table):
    return [row[1] for row in conn.execute(f'PRAGMA table_info("{table}")')]


def _prepare_with_nar(conn):
    all_migrations = migrations()
    for migration in all_migrations[:9]:
        migration.up(conn)
    conn.execute(
        'INSERT INTO "nar" ("state", "nar_hash", "nar_size", "file_hash", "file_size", '
        '"compression", "remote_file", "remote_file_id", "holders_count", "created_at") '
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            "V",
            "sha256:abcd",
            1234,
            "sha256:ef01",
            567,
            "xz",
            remote_file_to_json(LocalRemoteFile("abcdef")),
            "local:abcdef",
            0,
            CREATED_AT,
        ),
    )
    for migration in all_migrations[9:]:
        migration.up(conn)
    conn.commit()


def test_migration_order():
    assert [m.name for m in migrations()] == ALL_NAMES


def test_initial_migrations_come_first():
    names = [m.name for m in migrations()]
    assert names[: len(initial_migrations())] == [m.name for m in initial_migrations()]


def test_fresh_database_has_nothing_applied(connection):
    assert applied_migrations(connection) == []


def test_run_applies_everything(connection):
    done = run_migrations(connection)
    assert done == ALL_NAMES
    assert applied_migrations(connection) == ALL_NAMES


def test_run_twice_applies_nothing_more(connection):
    run_migrations(connection)
    assert run_migrations(connection) == []
    assert applied_migrations(connection) == ALL_NAMES


def test_nar_schema_after_migrations(connection):
    run_migrations(connection)
    assert _columns(connection, "nar") == [
        "id",
        "state",
        "nar_hash",
        "nar_size",
        "compression",
        "num_chunks",
        "holders_count",
        "created_at",
        "completeness_hint",
    ]


def test_chunk_schema_after_migrations(connection):
    run_migrations(connection)
    assert _columns(connection, "chunk") == [
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
    ]
    assert _columns(connection, "chunkref") == [
        "id",
        "nar_id",
        "seq",
        "chunk_id",
        "chunk_hash",
        "compression",
    ]


def test_nar_remote_file_becomes_chunk(connection):
    _prepare_with_nar(connection)
    connection.row_factory = sqlite3.Row

    nar = NarModel.from_row(dict(connection.execute('SELECT * FROM "nar"').fetchone()))
    assert nar.state is NarState.VALID
    assert nar.nar_hash == "sha256:abcd"
    assert nar.nar_size == 1234
    assert nar.num_chunks == 1
    assert nar.completeness_hint is True

    chunks = connection.execute('SELECT * FROM "chunk"').fetchall()
    assert len(chunks) == 1
    chunk = ChunkModel.from_row(dict(chunks[0]))
    assert chunk.state is ChunkState.VALID
    assert chunk.chunk_hash == "sha256:abcd"
    assert chunk.chunk_size == 1234
    assert chunk.file_hash == "sha256:ef01"
    assert chunk.file_size == 567
    assert chunk.compression == "xz"
    assert chunk.remote_file == LocalRemoteFile("abcdef")
    assert chunk.remote_file_id == "local:abcdef"
    assert chunk.holders_count == 0

    refs = connection.execute('SELECT * FROM "chunkref"').fetchall()
    assert len(refs) == 1
    ref = ChunkRefModel.from_row(dict(refs[0]))
    assert ref.nar_id == nar.id
    assert ref.chunk_id == chunk.id
    assert ref.seq == 0
    assert ref.chunk_hash == "sha256:abcd"
    assert ref.compression == "xz"


def test_deleting_chunk_nulls_chunkref(connection):
    _prepare_with_nar(connection)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    connection.execute('DELETE FROM "chunk"')
    refs = [
        ChunkRefModel.from_row(dict(row))
        for row in connection.execute('SELECT * FROM "chunkref"').fetchall()
    ]
    assert len(refs) == 1
    assert refs[0].chunk_id is None
    assert refs[0].chunk_hash == "sha256:abcd"
    assert refs[0].compression == "xz"


def test_deleting_nar_cascades_to_chunkref(connection):
    _prepare_with_nar(connection)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    before = [
        ChunkRefModel.from_row(dict(row))
        for row in connection.execute('SELECT * FROM "chunkref"').fetchall()
    ]
    assert [ref.seq for ref in before] == [0]
    connection.execute('DELETE FROM "nar"')
    after = [
        ChunkRefModel.from_row(dict(row))
        for row in connection.execute('SELECT * FROM "chunkref"').fetchall()
    ]
    assert after == []


def test_remote_file_id_is_unique(connection):
    run_migrations(connection)
    insert = (
        'INSERT INTO "chunk" ("state", "chunk_hash", "chunk_size", "compression", '
        '"remote_file", "remote_file_id", "created_at") VALUES (?, ?, ?, ?, ?, ?, ?)'
    )
    values = ("V", "sha256:abcd", 1, "none", "{}", "local:same", CREATED_AT)
    connection.execute(insert, values)
    with pytest.raises(sqlite3.IntegrityError):
        connection.execute(insert, values)


def test_failed_migration_is_not_recorded(connection):
    # A table in the way of the chunk table makes that migration fail.
    connection.execute('CREATE TABLE "chunk" ("id" integer)')
    connection.commit()
    with pytest.raises(ServerError) as info:
        run_migrations(connection)
    assert info.value.kind is ErrorKind.DATABASE_ERROR
    applied = applied_migrations(connection)
    assert "m20230112_000001_add_chunk_table" not in applied
    assert applied == ALL_NAMES[:6]