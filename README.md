# binixsrv

The server-side core of a Nix binary cache, as a Python library with no
dependencies outside the standard library.

## Modules

- `binixsrv.manifest_parser`: the low-level reader for the flat `Key: value`
  manifest format: `parse_pairs(text)`, `parse_unsigned(value)` and
  `parse_bool(value)`.
- `binixsrv.manifest`: `from_str(text, fields)` and `to_string(values, fields)`,
  where a manifest layout is a sequence of `Field` objects, each with a
  `FieldKind` (`STRING`, `PATH`, `UNSIGNED`, `BOOL`, `SPACE_LIST`). Unknown keys
  are ignored when reading; optional fields set to `None` are left out when
  writing.
- `binixsrv.narinfo`: the `NarInfo` dataclass (`from_str`, `to_string`,
  `store_dir`, `fingerprint`), the `Compression` enum, and the hash helpers
  `parse_typed_hash(s)` and `to_typed_base32(s)`, which accept digests in
  base16, Nix base32 or base64. A `Deriver` of `unknown-deriver` reads as `None`.
- `binixsrv.storage`: the remote file references `S3RemoteFile`,
  `LocalRemoteFile` and `HttpRemoteFile`, with `remote_file_id`,
  `remote_file_to_json` and `remote_file_from_json`; the abstract
  `StorageBackend`; and `LocalBackend`, which keeps files under
  `LocalStorageConfig.path` in `<first char>/<first two chars>/<name>`
  directories, moving files from a flat, unversioned directory into that
  layout and writing a `VERSION` file.
- `binixsrv.models`: `NarModel`, `ChunkModel` and `ChunkRefModel`, with the
  `NarState` and `ChunkState` enums; each model has `from_row(row, prefix)`.
- `binixsrv.records`: `CacheModel` and `ObjectModel`, with
  `ObjectModel.to_nar_info(nar)`.
- `binixsrv.migrations_initial` and `binixsrv.migrations`: the schema as a list
  of `Migration` objects. `run_migrations(connection)` applies those not yet
  recorded and returns their names; `applied_migrations(connection)` lists the
  recorded ones.
- `binixsrv.database`: `connect(url)` opens a `sqlite:` URL and returns a
  `Database` with `find_object_and_chunks_by_store_path_hash`, `find_cache`,
  `find_and_lock_nar`, `find_and_lock_chunk` and `bump_object_last_accessed`.
  The lock methods return a `NarGuard` or `ChunkGuard` that increments the
  row's holders count; `release()` or leaving a `with` block decrements it.
- `binixsrv.gc`: `run_time_based_garbage_collection`, `reap_orphan_nars`,
  `reap_orphan_chunks`, `run_garbage_collection_once` and the looping
  `run_garbage_collection`.
- `binixsrv.errors`: `ServerError`, `ErrorKind` and `ManifestError`.
  `ServerError.to_response()` returns the HTTP status and the JSON body a
  client is shown, with internal errors hidden and, without the discovery
  permission, missing caches and objects reported as unauthorized.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from binixsrv.narinfo import NarInfo

text = """\
StorePath: /nix/store/xcp9cav49dmsjbwdjlmkjxj10gkpx553-hello-2.10
URL: nar/0nqgf15qfiacfxrgm2wkw0gwwncjqqzzalj8rs14w9srkydkjsk9.nar.xz
Compression: xz
NarHash: sha256:16mvl7v0ylzcg2n3xzjn41qhzbmgcn5iyarx16nn5l2r36n2kqci
NarSize: 206104
References: 563528481rvhc5kxwipjmg6rqrl95mdx-glibc-2.33-56
"""

info = NarInfo.from_str(text)
print(info.store_dir())
print(info.fingerprint())
print(info.to_string())
```

Garbage collection runs over a database opened with `connect(url)` and a
storage backend:

```python
from binixsrv.database import connect
from binixsrv.gc import run_garbage_collection_once
from binixsrv.migrations import run_migrations
from binixsrv.storage import LocalBackend, LocalStorageConfig

database = connect("sqlite:///var/lib/binix/binix.db")
run_migrations(database.connection)
storage = LocalBackend(LocalStorageConfig(path="/var/lib/binix/storage"))
run_garbage_collection_once(database, storage, default_retention_period=0)
```

A retention period of zero leaves objects alone; orphan NARs and chunks are
still reaped.

## What it does not do

- There is no HTTP server and no command-line program: the library builds
  error responses and narinfo text but serves nothing.
- Only SQLite databases are supported by `connect`.
- Only local storage has a backend; `S3RemoteFile` and `HttpRemoteFile` are
  references only, and `LocalBackend` rejects them.
- `NarInfo` computes fingerprints but does not sign or verify signatures.
- There is no configuration file loading, authentication or access control.