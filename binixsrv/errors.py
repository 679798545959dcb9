"""Server and manifest errors, and how they are shown to clients."""

from __future__ import annotations

import enum
import logging
from http import HTTPStatus
from typing import Any

_log = logging.getLogger(__name__)


class ErrorKind(enum.Enum):
    """The kind of a server error; the value is the name shown to clients."""

    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    INTERNAL_SERVER_ERROR = "InternalServerError"
    NO_SUCH_CACHE = "NoSuchCache"
    CACHE_ALREADY_EXISTS = "CacheAlreadyExists"
    NO_SUCH_OBJECT = "NoSuchObject"
    INVALID_COMPRESSION_TYPE = "InvalidCompressionType"
    INCOMPLETE_NAR = "IncompleteNar"
    DATABASE_ERROR = "DatabaseError"
    STORAGE_ERROR = "StorageError"
    MANIFEST_SERIALIZATION_ERROR = "ManifestSerializationError"
    ACCESS_ERROR = "AccessError"
    REQUEST_ERROR = "RequestError"
    BINIX_ERROR = "BinixError"

    def http_status_code(self) -> HTTPStatus:
        """Returns the HTTP status a client receives for this kind."""
        return _STATUS_CODES.get(self, HTTPStatus.INTERNAL_SERVER_ERROR)


_STATUS_CODES = {
    ErrorKind.NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorKind.UNAUTHORIZED: HTTPStatus.UNAUTHORIZED,
    ErrorKind.INTERNAL_SERVER_ERROR: HTTPStatus.INTERNAL_SERVER_ERROR,
    ErrorKind.ACCESS_ERROR: HTTPStatus.FORBIDDEN,
    ErrorKind.NO_SUCH_CACHE: HTTPStatus.NOT_FOUND,
    ErrorKind.NO_SUCH_OBJECT: HTTPStatus.NOT_FOUND,
    ErrorKind.CACHE_ALREADY_EXISTS: HTTPStatus.BAD_REQUEST,
    ErrorKind.INCOMPLETE_NAR: HTTPStatus.SERVICE_UNAVAILABLE,
    ErrorKind.MANIFEST_SERIALIZATION_ERROR: HTTPStatus.BAD_REQUEST,
    ErrorKind.REQUEST_ERROR: HTTPStatus.BAD_REQUEST,
    ErrorKind.INVALID_COMPRESSION_TYPE: HTTPStatus.BAD_REQUEST,
}

_FIXED_MESSAGES = {
    ErrorKind.NOT_FOUND: "The URL you requested was not found.",
    ErrorKind.UNAUTHORIZED: "Unauthorized.",
    ErrorKind.INTERNAL_SERVER_ERROR: (
        "The server encountered an internal error or misconfiguration."
    ),
    ErrorKind.NO_SUCH_CACHE: "The requested cache does not exist.",
    ErrorKind.CACHE_ALREADY_EXISTS: "The cache already exists.",
    ErrorKind.NO_SUCH_OBJECT: "The requested object does not exist.",
    ErrorKind.INCOMPLETE_NAR: (
        "The requested NAR has missing chunks and needs to be repaired."
    ),
    ErrorKind.BINIX_ERROR: "Error from the common components.",
}

_CAUSE_PREFIXES = {
    ErrorKind.DATABASE_ERROR: "Database error: ",
    ErrorKind.STORAGE_ERROR: "Storage error: ",
    ErrorKind.MANIFEST_SERIALIZATION_ERROR: "Manifest serialization error: ",
    ErrorKind.ACCESS_ERROR: "Access error: ",
    ErrorKind.REQUEST_ERROR: "General request error: ",
}

# Kinds whose full description includes the chain of causes.
_CHAINED = {ErrorKind.DATABASE_ERROR, ErrorKind.STORAGE_ERROR, ErrorKind.REQUEST_ERROR}

_LOGGED = {
    ErrorKind.DATABASE_ERROR,
    ErrorKind.STORAGE_ERROR,
    ErrorKind.MANIFEST_SERIALIZATION_ERROR,
    ErrorKind.BINIX_ERROR,
}

_HIDDEN_WITHOUT_DISCOVERY = {
    ErrorKind.NO_SUCH_CACHE,
    ErrorKind.NO_SUCH_OBJECT,
    ErrorKind.ACCESS_ERROR,
}

_INTERNAL = {
    ErrorKind.DATABASE_ERROR,
    ErrorKind.STORAGE_ERROR,
    ErrorKind.MANIFEST_SERIALIZATION_ERROR,
}


def _describe_chain(error: BaseException | object) -> str:
    parts = []
    seen: set[int] = set()
    current: Any = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        parts.append(str(current))
        current = getattr(current, "__cause__", None)
    return ": ".join(parts)


class ManifestError(Exception):
    """An error while reading or writing the Nix manifest format."""

    @classmethod
    def unexpected(cls, what: str) -> ManifestError:
        return cls(f"Unexpected {what}.")

    @classmethod
    def unexpected_eof(cls) -> ManifestError:
        return cls("Unexpected EOF.")

    @classmethod
    def expected_colon(cls) -> ManifestError:
        return cls("Expected a colon.")

    @classmethod
    def expected_boolean(cls) -> ManifestError:
        return cls("Expected a boolean.")

    @classmethod
    def expected_integer(cls) -> ManifestError:
        return cls("Expected an integer.")

    @classmethod
    def unsupported(cls, what: str) -> ManifestError:
        return cls(f'"{what}" values are unsupported.')

    @classmethod
    def any_unsupported(cls) -> ManifestError:
        return cls("Not possible to auto-determine the type.")

    @classmethod
    def none_unsupported(cls) -> ManifestError:
        return cls("None is unsupported. Leave absent optional fields out.")

    @classmethod
    def nested_map_unsupported(cls) -> ManifestError:
        return cls("Nested maps are unsupported.")

    @classmethod
    def float_unsupported(cls) -> ManifestError:
        return cls("Floating point numbers are unsupported.")

    @classmethod
    def custom(cls, message: object) -> ManifestError:
        return cls(f"Custom error: {message}")


class ServerError(Exception):
    """A server error carrying its kind and, where there is one, its cause."""

    def __init__(
        self,
        kind: ErrorKind,
        cause: Any = None,
        *,
        name: str | None = None,
        no_discovery_permission: bool = False,
    ) -> None:
        self.kind = kind
        self.cause = cause
        self.name = name
        # For access errors: the client lacks the discovery permission.
        self.no_discovery_permission = no_discovery_permission
        self.discovery_permission = True
        super().__init__(self.message)

    @classmethod
    def database_error(cls, error: Any) -> ServerError:
        return cls(ErrorKind.DATABASE_ERROR, error)

    @classmethod
    def storage_error(cls, error: Any) -> ServerError:
        return cls(ErrorKind.STORAGE_ERROR, error)

    @classmethod
    def request_error(cls, error: Any) -> ServerError:
        return cls(ErrorKind.REQUEST_ERROR, error)

    @classmethod
    def manifest_error(cls, error: ManifestError) -> ServerError:
        return cls(ErrorKind.MANIFEST_SERIALIZATION_ERROR, error)

    @classmethod
    def access_error(cls, error: Any, *, no_discovery_permission: bool = False) -> ServerError:
        return cls(
            ErrorKind.ACCESS_ERROR, error, no_discovery_permission=no_discovery_permission
        )

    @classmethod
    def binix_error(cls, error: Any) -> ServerError:
        return cls(ErrorKind.BINIX_ERROR, error)

    @classmethod
    def invalid_compression_type(cls, name: str) -> ServerError:
        return cls(ErrorKind.INVALID_COMPRESSION_TYPE, name=name)

    def set_discovery_permission(self, perm: bool) -> None:
        self.discovery_permission = perm

    @property
    def message(self) -> str:
        """The human-readable description of this error."""
        if self.kind in _FIXED_MESSAGES:
            return _FIXED_MESSAGES[self.kind]
        if self.kind is ErrorKind.INVALID_COMPRESSION_TYPE:
            return f'Invalid compression type "{self.name}".'
        prefix = _CAUSE_PREFIXES[self.kind]
        if self.kind in _CHAINED:
            return prefix + _describe_chain(self.cause)
        return prefix + str(self.cause)

    @property
    def error_name(self) -> str:
        """The machine-readable name of this error."""
        if self.kind is ErrorKind.BINIX_ERROR:
            cause_name = getattr(self.cause, "name", None)
            if callable(cause_name):
                cause_name = cause_name()
            if isinstance(cause_name, str):
                return cause_name
            return type(self.cause).__name__
        return self.kind.value

    def __str__(self) -> str:
        return self.message

    def _for_client(self) -> ServerError:
        error = self
        if not self.discovery_permission and self.kind in _HIDDEN_WITHOUT_DISCOVERY:
            return ServerError(ErrorKind.UNAUTHORIZED)
        if error.kind is ErrorKind.ACCESS_ERROR and error.no_discovery_permission:
            return ServerError(ErrorKind.UNAUTHORIZED)
        if error.kind in _INTERNAL:
            return ServerError(ErrorKind.INTERNAL_SERVER_ERROR)
        return error

    def to_response(self) -> tuple[HTTPStatus, dict[str, Any]]:
        """Returns the status and JSON body sent to the client."""
        if self.kind in _LOGGED:
            _log.error("%s", self)
        sanitized = self._for_client()
        status = sanitized.kind.http_status_code()
        body = {
            "code": int(status),
            "error": sanitized.error_name,
            "message": sanitized.message,
        }
        return status, body