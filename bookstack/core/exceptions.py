"""
Bookstack Exception Hierarchy

Structured exception classes for the intake pipeline. Every error carries a
code, message, details and an ErrorKind so callers decide on retry by kind,
never by parsing message text.

Exception Hierarchy:
    BookstackError
    ├── ManifestError                  (terminal)
    │   └── UploadTooLargeError
    ├── RecordValidationError          (terminal)
    ├── ProviderError
    │   ├── ProviderTimeoutError       (retryable)
    │   ├── ProviderTransportError     (retryable)
    │   ├── ProviderResponseError      (terminal)
    │   └── ProviderConfigurationError (terminal)
    ├── CircuitOpenError               (retryable)
    ├── PersistenceError               (retryable)
    ├── BatchQueueingError             (terminal)
    └── BatchNotFoundError             (terminal)
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Whether an operation that raised may succeed if attempted again."""
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


class BookstackError(Exception):
    """
    Base exception for all intake errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        kind: RETRYABLE or TERMINAL
    """

    default_code: str = "BOOKSTACK_ERROR"
    default_kind: ErrorKind = ErrorKind.TERMINAL

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[ErrorKind] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.kind = kind or self.default_kind
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "kind": self.kind.value,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


def is_retryable(error: BaseException) -> bool:
    """Retry decision for any exception; unknown errors are terminal."""
    return isinstance(error, BookstackError) and error.retryable


# =============================================================================
# MANIFEST / RECORD ERRORS
# =============================================================================

class ManifestError(BookstackError):
    """Structurally invalid manifest: unparseable, empty, or over the record cap."""
    default_code = "MANIFEST_INVALID"


class UploadTooLargeError(ManifestError):
    """Uploaded file exceeds the configured size limit."""
    default_code = "UPLOAD_TOO_LARGE"

    def __init__(self, message: str, limit_bytes: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["limit_bytes"] = limit_bytes
        super().__init__(message, details=details, **kwargs)


class RecordValidationError(BookstackError):
    """A single manifest record failed validation."""
    default_code = "RECORD_INVALID"

    def __init__(self, message: str, row: Optional[int] = None, errors: Optional[List[str]] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"row": row, "errors": errors or []})
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# ENRICHMENT PROVIDER ERRORS
# =============================================================================

class ProviderError(BookstackError):
    """Base exception for enrichment provider failures."""
    default_code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["provider"] = provider
        self.provider = provider
        super().__init__(message, details=details, **kwargs)


class ProviderTimeoutError(ProviderError):
    """Provider did not answer within the per-call timeout."""
    default_code = "PROVIDER_TIMEOUT"
    default_kind = ErrorKind.RETRYABLE


class ProviderTransportError(ProviderError):
    """Connection failure, rate limiting, or a 5xx from the provider."""
    default_code = "PROVIDER_TRANSPORT"
    default_kind = ErrorKind.RETRYABLE

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class ProviderResponseError(ProviderError):
    """Provider answered, but with nothing usable (not found, bad JSON, no title/author)."""
    default_code = "PROVIDER_BAD_RESPONSE"


class ProviderConfigurationError(ProviderError):
    """Provider rejected our credentials or request shape (401/403/400)."""
    default_code = "PROVIDER_MISCONFIGURED"


class CircuitOpenError(BookstackError):
    """Raised when circuit breaker is OPEN and blocking requests."""
    default_code = "CIRCUIT_OPEN"
    default_kind = ErrorKind.RETRYABLE

    def __init__(self, circuit_name: str, retry_after_seconds: float):
        self.circuit_name = circuit_name
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Circuit '{circuit_name}' is OPEN. Retry after {retry_after_seconds:.0f} seconds.",
            details={"circuit": circuit_name, "retry_after_seconds": retry_after_seconds},
        )


# =============================================================================
# PERSISTENCE / BATCH ERRORS
# =============================================================================

class PersistenceError(BookstackError):
    """Storage collaborator failed."""
    default_code = "PERSISTENCE_FAILED"
    default_kind = ErrorKind.RETRYABLE


class BatchQueueingError(BookstackError):
    """The queuing transaction failed; the batch was recorded as failed."""
    default_code = "BATCH_QUEUEING_FAILED"

    def __init__(self, message: str, batch_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["batch_id"] = batch_id
        self.batch_id = batch_id
        super().__init__(message, details=details, **kwargs)


class BatchNotFoundError(BookstackError):
    """Unknown batch id."""
    default_code = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} not found", details={"batch_id": batch_id})
