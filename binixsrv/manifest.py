"""Reading and writing the flat ``Key: value`` Nix manifest format.

Nix uses this format for binary cache manifests such as ``.narinfo``
files and ``/nix-cache-info``. A manifest is a single flat map with a
colon as the delimiter, for example::

    StoreDir: /nix/store
    WantMassQuery: 1
    Priority: 40

A manifest layout is described by a sequence of :class:`Field` objects.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from .errors import ManifestError, ServerError
from .manifest_parser import parse_bool, parse_pairs, parse_unsigned


class FieldKind(enum.Enum):
    """How a field's value is read and written."""

    STRING = "string"
    PATH = "path"
    UNSIGNED = "unsigned"
    BOOL = "bool"
    SPACE_LIST = "space_list"


@dataclass(frozen=True)
class Field:
    """One key of a manifest.

    ``name`` is the key in the mapping handed to and returned by this
    module, ``key`` the key written in the manifest. Optional fields are
    left out of the output when their value is ``None`` and read as
    ``None`` when absent. ``parser`` and ``formatter`` replace the
    conversions of ``kind`` when given.
    """

    name: str
    key: str
    kind: FieldKind = FieldKind.STRING
    optional: bool = False
    parser: Callable[[str], Any] | None = None
    formatter: Callable[[Any], str] | None = None

    def parse(self, raw: str) -> Any:
        """Converts a raw manifest value into a Python value."""
        if self.parser is not None:
            return self.parser(raw)
        if self.kind is FieldKind.STRING:
            return raw
        if self.kind is FieldKind.PATH:
            return PurePosixPath(raw)
        if self.kind is FieldKind.UNSIGNED:
            return parse_unsigned(raw)
        if self.kind is FieldKind.BOOL:
            return parse_bool(raw)
        if not raw:
            return []
        return raw.split(" ")

    def format(self, value: Any) -> str:
        """Converts a Python value into its manifest representation."""
        if value is None:
            raise ManifestError.none_unsupported()
        if self.formatter is not None:
            return self.formatter(value)
        if self.kind is FieldKind.BOOL:
            if not isinstance(value, bool):
                raise ManifestError.expected_boolean()
            return "1" if value else "0"
        if self.kind is FieldKind.UNSIGNED:
            if isinstance(value, float):
                raise ManifestError.float_unsupported()
            if isinstance(value, bool) or not isinstance(value, int):
                raise ManifestError.expected_integer()
            return str(value)
        if self.kind is FieldKind.SPACE_LIST:
            if isinstance(value, (str, bytes)):
                raise ManifestError.unsupported("String as list")
            return " ".join(str(item) for item in value)
        if isinstance(value, bytes):
            raise ManifestError.unsupported("Byte sequence")
        return str(value)


def _parse(text: str, fields: Sequence[Field]) -> dict[str, Any]:
    by_key = {field.key: field for field in fields}
    values: dict[str, Any] = {}
    for key, raw in parse_pairs(text):
        field = by_key.get(key)
        if field is None:
            continue
        if field.name in values:
            raise ManifestError.custom(f"duplicate field `{key}`")
        try:
            values[field.name] = field.parse(raw)
        except ValueError as e:
            raise ManifestError.custom(e) from e
    for field in fields:
        if field.name not in values:
            if not field.optional:
                raise ManifestError.custom(f"missing field `{field.key}`")
            values[field.name] = None
    return values


def from_str(text: str, fields: Sequence[Field]) -> dict[str, Any]:
    """Parses a manifest into a mapping of field names to values.

    Keys not described by ``fields`` are ignored.
    """
    try:
        return _parse(text, fields)
    except ManifestError as e:
        raise ServerError.manifest_error(e) from e


def to_string(values: Mapping[str, Any], fields: Sequence[Field]) -> str:
    """Serializes values into a manifest, one line per field, in field order."""
    lines = []
    try:
        for field in fields:
            value = values.get(field.name)
            if value is None and field.optional:
                continue
            lines.append(f"{field.key}: {field.format(value)}\n")
    except ManifestError as e:
        raise ServerError.manifest_error(e) from e
    return "".join(lines)