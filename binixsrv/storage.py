"""File storage backends and references to stored files."""

from __future__ import annotations

import abc
import json
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Union

from .errors import ServerError

_VERSION_FILE = "VERSION"
_CURRENT_VERSION = 1
_UNDERSTOOD = "Does not understand the remote file reference"


@dataclass(frozen=True)
class S3RemoteFile:
    """A file in an S3-compatible storage bucket."""

    region: str
    bucket: str
    key: str


@dataclass(frozen=True)
class LocalRemoteFile:
    """A file in local storage."""

    name: str


@dataclass(frozen=True)
class HttpRemoteFile:
    """A direct HTTP link to a file."""

    url: str


RemoteFile = Union[S3RemoteFile, LocalRemoteFile, HttpRemoteFile]

_TAGS = {S3RemoteFile: "S3", LocalRemoteFile: "Local", HttpRemoteFile: "Http"}
_TYPES = {tag: cls for cls, tag in _TAGS.items()}


def remote_file_id(file: RemoteFile) -> str:
    """Returns the string that uniquely identifies a remote file."""
    if isinstance(file, S3RemoteFile):
        return f"s3:{file.region}/{file.bucket}/{file.key}"
    if isinstance(file, HttpRemoteFile):
        return f"http:{file.url}"
    if isinstance(file, LocalRemoteFile):
        return f"local:{file.name}"
    raise TypeError(f"not a remote file: {file!r}")


def remote_file_to_json(file: RemoteFile) -> str:
    """Serializes a remote file reference as stored in the database."""
    tag = _TAGS.get(type(file))
    if tag is None:
        raise TypeError(f"not a remote file: {file!r}")
    return json.dumps({tag: vars(file)}, separators=(",", ":"))


def remote_file_from_json(data: str) -> RemoteFile:
    """Parses a remote file reference as stored in the database."""
    try:
        decoded = json.loads(data)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid remote file reference: {e}") from e
    if not isinstance(decoded, dict) or len(decoded) != 1:
        raise ValueError("remote file reference must have exactly one variant")
    ((tag, fields),) = decoded.items()
    cls = _TYPES.get(tag)
    if cls is None:
        raise ValueError(f"unknown remote file variant {tag!r}")
    if not isinstance(fields, dict):
        raise ValueError(f"invalid fields for remote file variant {tag!r}")
    try:
        return cls(**fields)
    except TypeError as e:
        raise ValueError(f"invalid fields for remote file variant {tag!r}: {e}") from e


@dataclass
class Download:
    """A way to download a file: either a URL or an open binary stream."""

    url: str | None = None
    stream: BinaryIO | None = None


class StorageBackend(abc.ABC):
    """A place where files are kept."""

    @abc.abstractmethod
    def upload_file(self, name: str, stream: BinaryIO) -> RemoteFile:
        """Uploads a file."""

    @abc.abstractmethod
    def delete_file(self, name: str) -> None:
        """Deletes a file."""

    @abc.abstractmethod
    def delete_file_db(self, file: RemoteFile) -> None:
        """Deletes a file using a database reference."""

    @abc.abstractmethod
    def download_file(self, name: str, prefer_stream: bool) -> Download:
        """Downloads a file using the current configuration."""

    @abc.abstractmethod
    def download_file_db(self, file: RemoteFile, prefer_stream: bool) -> Download:
        """Downloads a file using a database reference."""

    @abc.abstractmethod
    def make_db_reference(self, name: str) -> RemoteFile:
        """Creates a database reference for a file."""


@dataclass(frozen=True)
class LocalStorageConfig:
    """Local storage configuration."""

    path: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))


def _read_version(storage_path: Path) -> int:
    try:
        text = (storage_path / _VERSION_FILE).read_text()
    except FileNotFoundError:
        return 0
    except OSError as e:
        raise ServerError.storage_error(f"Failed to read version file: {e}") from e
    text = text.strip()
    if not re.fullmatch(r"\+?[0-9]+", text) or int(text) >= 2**32:
        raise ServerError.storage_error("Invalid version file")
    return int(text)


def _write_version(storage_path: Path, version: int) -> None:
    try:
        (storage_path / _VERSION_FILE).write_text(str(version))
    except OSError as e:
        raise ServerError.storage_error(e) from e


def _sharded_dir(root: Path, name: str) -> Path:
    if len(name) < 2:
        raise ServerError.storage_error(f"File name too short: {name!r}")
    return root / name[:1] / name[:2]


def _upgrade_0_to_1(storage_path: Path) -> None:
    """Moves every file into subdirectories named after its first characters."""
    try:
        entries = list(os.scandir(storage_path))
    except OSError as e:
        raise ServerError.storage_error(e) from e
    for entry in entries:
        try:
            is_file = entry.is_file(follow_symlinks=False)
        except OSError as e:
            raise ServerError.storage_error(e) from e
        if not is_file:
            continue
        parents = _sharded_dir(storage_path, entry.name)
        new_path = parents / entry.name
        try:
            parents.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ServerError.storage_error(f"Failed to create directory {e}") from e
        try:
            os.rename(entry.path, new_path)
        except OSError as e:
            raise ServerError.storage_error(
                f"Failed to move file {entry.path} to {new_path}: {e}"
            ) from e


class LocalBackend(StorageBackend):
    """Stores files in a local directory, sharded by name prefix."""

    def __init__(self, config: LocalStorageConfig) -> None:
        self.config = config
        path = config.path
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ServerError.storage_error(
                f"Failed to create storage directory {path}: {e}"
            ) from e
        if _read_version(path) == 0:
            _upgrade_0_to_1(path)
        _write_version(path, _CURRENT_VERSION)

    def _get_path(self, name: str) -> Path:
        return _sharded_dir(self.config.path, name) / name

    @staticmethod
    def _local_file(file: RemoteFile) -> LocalRemoteFile:
        if not isinstance(file, LocalRemoteFile):
            raise ServerError.storage_error(_UNDERSTOOD)
        return file

    def upload_file(self, name: str, stream: BinaryIO) -> RemoteFile:
        path = self._get_path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ServerError.storage_error(
                f"Failed to create directory {path.parent}: {e}"
            ) from e
        try:
            target = open(path, "wb")
        except OSError as e:
            raise ServerError.storage_error(f"Failed to create file {path}: {e}") from e
        with target:
            try:
                shutil.copyfileobj(stream, target)
            except OSError as e:
                raise ServerError.storage_error(e) from e
        return LocalRemoteFile(name)

    def delete_file(self, name: str) -> None:
        try:
            self._get_path(name).unlink()
        except OSError as e:
            raise ServerError.storage_error(e) from e

    def delete_file_db(self, file: RemoteFile) -> None:
        self.delete_file(self._local_file(file).name)

    def download_file(self, name: str, prefer_stream: bool) -> Download:
        try:
            stream = open(self._get_path(name), "rb")
        except OSError as e:
            raise ServerError.storage_error(e) from e
        return Download(stream=stream)

    def download_file_db(self, file: RemoteFile, prefer_stream: bool) -> Download:
        return self.download_file(self._local_file(file).name, prefer_stream)

    def make_db_reference(self, name: str) -> RemoteFile:
        return LocalRemoteFile(name)