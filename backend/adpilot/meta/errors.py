"""Error taxonomy for the Meta integration layer.

The Graph client classifies every failure into one of the ``ErrorKind``
values; only TRANSIENT and platform-side RATE_LIMITED errors are retried
internally. Everything else propagates with its classification attached.
"""

import enum


class ErrorKind(str, enum.Enum):
    AUTH_EXPIRED = "AUTH_EXPIRED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    TRANSIENT = "TRANSIENT"
    UNKNOWN = "UNKNOWN"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    CONFLICT = "CONFLICT"


# Graph error codes
AUTH_EXPIRED_CODES = {190}
RATE_LIMIT_CODES = {4, 17}
TRANSIENT_CODES = {2}
INVALID_PARAMETER_CODES = {100}


class MetaAPIError(Exception):
    kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        subcode: int | None = None,
        fbtrace_id: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.fbtrace_id = fbtrace_id
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "code": self.code,
            "subcode": self.subcode,
            "fbtrace_id": self.fbtrace_id,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, code={self.code}, message={self.message!r})"


class AuthExpiredError(MetaAPIError):
    """Token rejected by the platform; the connection must be re-authorised."""

    kind = ErrorKind.AUTH_EXPIRED


class RateLimitedError(MetaAPIError):
    """Throttled by the platform (retryable) or by the local call budget (not)."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, *, local: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.local = local

    @property
    def retryable(self) -> bool:
        return not self.local


class InvalidParameterError(MetaAPIError):
    kind = ErrorKind.INVALID_PARAMETER


class TransientError(MetaAPIError):
    kind = ErrorKind.TRANSIENT

    @property
    def retryable(self) -> bool:
        return True


class UnknownMetaError(MetaAPIError):
    kind = ErrorKind.UNKNOWN


def classify_error(
    payload: dict | None,
    status_code: int | None = None,
) -> MetaAPIError:
    """Build the typed error for a Graph ``{"error": {...}}`` envelope."""
    error = (payload or {}).get("error") or {}
    if not isinstance(error, dict):
        error = {"message": str(error)}
    code = error.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    kwargs = {
        "code": code,
        "subcode": error.get("error_subcode"),
        "fbtrace_id": error.get("fbtrace_id"),
        "status_code": status_code,
    }
    message = error.get("message") or f"Graph API request failed (HTTP {status_code})"

    if code in AUTH_EXPIRED_CODES:
        return AuthExpiredError(message, **kwargs)
    if code in RATE_LIMIT_CODES:
        return RateLimitedError(message, **kwargs)
    if code in TRANSIENT_CODES:
        return TransientError(message, **kwargs)
    if code in INVALID_PARAMETER_CODES:
        return InvalidParameterError(message, **kwargs)
    if code is None and status_code is not None and status_code >= 500:
        return TransientError(message, **kwargs)
    return UnknownMetaError(message, **kwargs)


# ---------------------------------------------------------------------------
# Orchestration errors (raised locally, never by the platform)
# ---------------------------------------------------------------------------

class SyncError(Exception):
    kind = ErrorKind.UNKNOWN

    @property
    def retryable(self) -> bool:
        return False


class PreconditionFailedError(SyncError):
    """A create call is missing a required parent or creative id."""

    kind = ErrorKind.PRECONDITION_FAILED


class ConflictError(SyncError):
    """The local row changed since it was read; the write was not applied."""

    kind = ErrorKind.CONFLICT
