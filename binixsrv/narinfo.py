"""NAR info: the ``.narinfo`` manifest describing one cached store path.

An example ``.narinfo``::

    StorePath: /nix/store/p4pclmv1gyja5kzc26npqpia1qqxrf0l-ruby-2.7.3
    URL: nar/1w1fff338fvdw53sqgamddn1b2xgds473pv6y13gizdbqjv4i5p3.nar.xz
    Compression: xz
    FileHash: sha256:1w1fff338fvdw53sqgamddn1b2xgds473pv6y13gizdbqjv4i5p3
    FileSize: 4029176
    NarHash: sha256:1impfw8zdgisxkghq9a3q7cn7jb9zyzgxdydiamp8z2nlyyl0h5h
    NarSize: 18735072
    References: 0d71ygfwbmy1xjlbj1v027dfmy9cqavy-libffi-3.3 ...
    Deriver: bidkcs01mww363s4s7akdhbl6ws66b0z-ruby-2.7.3.drv
    Sig: cache.nixos.org-1:...

The fingerprint that signatures cover has the form::

    1;{storePath};{narHash};{narSize};{commaDelimitedReferences}
"""

from __future__ import annotations

import base64
import enum
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from .errors import ServerError
from .manifest import Field, FieldKind, from_str as _manifest_from_str
from .manifest import to_string as _manifest_to_string

_NIX32_ALPHABET = "0123456789abcdfghijklmnpqrsvwxyz"
_HASH_SIZES = {"md5": 16, "sha1": 20, "sha256": 32, "sha512": 64}


def _nix32_length(size: int) -> int:
    return (size * 8 - 1) // 5 + 1


def _nix32_encode(digest: bytes) -> str:
    value = int.from_bytes(digest, "little")
    length = _nix32_length(len(digest))
    return "".join(
        _NIX32_ALPHABET[(value >> (5 * n)) & 0x1F] for n in reversed(range(length))
    )


def _nix32_decode(encoded: str, size: int) -> bytes:
    value = 0
    for char in encoded:
        digit = _NIX32_ALPHABET.find(char)
        if digit == -1:
            raise ValueError(f"invalid base32 character {char!r}")
        value = value * 32 + digit
    if value >= 1 << (8 * size):
        raise ValueError("base32 hash does not fit its hash type")
    return value.to_bytes(size, "little")


def parse_typed_hash(s: str) -> tuple[str, bytes]:
    """Parses ``<type>:<digest>`` with the digest in base16, Nix base32 or base64.

    Returns the hash type and the raw digest.
    """
    algorithm, sep, encoded = s.partition(":")
    if not sep:
        raise ValueError(f"hash {s!r} has no type prefix")
    size = _HASH_SIZES.get(algorithm)
    if size is None:
        raise ValueError(f"unsupported hash type {algorithm!r}")
    if len(encoded) == size * 2:
        return algorithm, bytes.fromhex(encoded)
    if len(encoded) == _nix32_length(size):
        return algorithm, _nix32_decode(encoded, size)
    if len(encoded) == 4 * ((size + 2) // 3):
        return algorithm, base64.b64decode(encoded, validate=True)
    raise ValueError(f"hash {s!r} has an invalid length")


def to_typed_base32(s: str) -> str:
    """Returns a typed hash in the form ``<type>:<Nix base32 digest>``."""
    algorithm, digest = parse_typed_hash(s)
    return f"{algorithm}:{_nix32_encode(digest)}"


class Compression(enum.Enum):
    """NAR compression type."""

    NONE = "none"
    XZ = "xz"
    BZIP2 = "bzip2"
    BROTLI = "br"
    ZSTD = "zstd"

    @classmethod
    def from_str(cls, s: str) -> Compression:
        """Parses a compression name, raising a server error if unknown."""
        try:
            return cls(s)
        except ValueError:
            raise ServerError.invalid_compression_type(s) from None

    def as_str(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value


def _parse_deriver(raw: str) -> str | None:
    return None if raw == "unknown-deriver" else raw


_FIELDS = (
    Field("store_path", "StorePath", FieldKind.PATH),
    Field("url", "URL"),
    Field("compression", "Compression", parser=Compression, formatter=lambda c: c.value),
    Field("file_hash", "FileHash", optional=True, parser=to_typed_base32),
    Field("file_size", "FileSize", FieldKind.UNSIGNED, optional=True),
    Field("nar_hash", "NarHash", parser=to_typed_base32),
    Field("nar_size", "NarSize", FieldKind.UNSIGNED),
    Field("references", "References", FieldKind.SPACE_LIST),
    Field("system", "System", optional=True),
    Field("deriver", "Deriver", optional=True, parser=_parse_deriver),
    Field("signature", "Sig", optional=True),
    Field("ca", "CA", optional=True),
)


@dataclass
class NarInfo:
    """NAR information for one store path.

    ``references`` holds base store paths without the store directory.
    Hashes are typed hash strings such as ``sha256:<digest>``.
    """

    store_path: PurePosixPath
    url: str
    compression: Compression
    nar_hash: str
    nar_size: int
    references: list[str] = field(default_factory=list)
    file_hash: str | None = None
    file_size: int | None = None
    system: str | None = None
    deriver: str | None = None
    signature: str | None = None
    ca: str | None = None

    def __post_init__(self) -> None:
        self.store_path = PurePosixPath(self.store_path)

    @classmethod
    def from_str(cls, manifest: str) -> NarInfo:
        """Parses a narinfo manifest."""
        return cls(**_manifest_from_str(manifest, _FIELDS))

    def to_string(self) -> str:
        """Returns the manifest representation of this narinfo."""
        values = {f.name: getattr(self, f.name) for f in _FIELDS}
        return _manifest_to_string(values, _FIELDS)

    def store_dir(self) -> PurePosixPath:
        """Returns the store directory holding this object."""
        return self.store_path.parent

    def fingerprint(self) -> bytes:
        """Returns the fingerprint that signatures of this object cover."""
        store_dir = self.store_dir()
        references = ",".join(f"{store_dir}/{reference}" for reference in self.references)
        text = (
            f"1;{self.store_path};{to_typed_base32(self.nar_hash)};"
            f"{self.nar_size};{references}"
        )
        return text.encode()