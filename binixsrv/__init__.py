"""Server-side core of a Nix binary cache: manifests, narinfo, local storage,
SQLite schema and queries, and garbage collection."""

__version__ = "0.2.31"