"""Error taxonomy shared by the storage, service and HTTP layers.

Caller errors (``ValidationError``, ``NotFound``) are safe to show verbatim.
Backend faults derive from ``BackendError`` and carry a stable ``condition``
code plus a ``retryable`` flag; their raw backend message stays server side.
"""

from typing import Any, Dict, Optional


class RegulationsError(Exception):
    """Base class for every error raised by this package."""

    condition = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RegulationsError):
    """Caller input failed validation before any storage access."""

    condition = "invalid_input"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFound(RegulationsError):
    """A requested entity does not exist."""

    condition = "not_found"

    def __init__(self, entity: str, **identifiers: Any):
        self.entity = entity
        self.identifiers: Dict[str, Any] = identifiers
        described = ", ".join(f"{k}={v}" for k, v in identifiers.items())
        super().__init__(f"{entity} not found ({described})" if described else f"{entity} not found")


class BackendError(RegulationsError):
    """A storage backend fault."""

    condition = "backend_error"
    retryable = False

    def __init__(self, message: str, backend_message: Optional[str] = None):
        super().__init__(message)
        self.backend_message = backend_message


class BackendUnavailable(BackendError):
    """The backend was never opened, or cannot be (re)opened."""

    condition = "backend_unavailable"
    retryable = True


class BackendConnectionError(BackendError):
    """The connection could not be established or was lost mid-query."""

    condition = "connection_error"
    retryable = True


class SchemaError(BackendError):
    """A referenced table or column does not exist."""

    condition = "schema_error"


class QueryTimeout(BackendError):
    """The per-query deadline elapsed before the backend answered."""

    condition = "query_timeout"
    retryable = True


class QueryFailed(BackendError):
    """Any other backend failure; the backend message is kept for logs."""

    condition = "query_failed"


class DialectUnsupported(BackendError):
    """A statement uses a construct that cannot be translated safely."""

    condition = "dialect_unsupported"
