"""
Error kinds and the engine's exception hierarchy.

Every error that crosses the API boundary carries a machine-readable kind
and a human-readable message. Messages never name another tenant's data.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from intent_engine.models.wire import as_utc, utc_now


class ErrorKind(str, Enum):
    RATE_LIMITED = "RateLimited"
    PARSE_TIMEOUT = "ParseTimeout"                  # Recovered via fallback
    PARSE_INVALID = "ParseInvalid"                  # Recovered via fallback
    NO_CANDIDATES = "NoCandidates"                  # A state, never raised
    AMBIGUOUS_SELECTION = "AmbiguousSelection"      # A state, never raised
    CONFIRMATION_MISMATCH = "ConfirmationMismatch"
    EXECUTION_FAILED = "ExecutionFailed"
    TENANT_ISOLATION_VIOLATION = "TenantIsolationViolation"
    IDENTITY_MISMATCH = "IdentityMismatch"
    INVALID_PARAMETERS = "InvalidParameters"
    CANCELLED = "Cancelled"                         # Caller went away; audit only


class ProviderError(Exception):
    """Raised when a provider call fails at the transport or HTTP level."""
    pass


class ErrorBody(BaseModel):
    kind: ErrorKind
    message: str


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    kind: ErrorKind = ErrorKind.EXECUTION_FAILED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_body(self) -> ErrorBody:
        return ErrorBody(kind=self.kind, message=self.message)


class RateLimited(EngineError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, limit: int, reset_at: datetime):
        super().__init__(
            f"Rate limit of {limit} requests exceeded; retry after {reset_at.isoformat()}"
        )
        self.limit = limit
        self.reset_at = as_utc(reset_at)

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        now = as_utc(now) if now else utc_now()
        return max(1, int((self.reset_at - now).total_seconds() + 0.999))


class ParseTimeout(EngineError):
    kind = ErrorKind.PARSE_TIMEOUT


class ParseInvalid(EngineError):
    kind = ErrorKind.PARSE_INVALID


class ConfirmationMismatch(EngineError):
    kind = ErrorKind.CONFIRMATION_MISMATCH


class ExecutionFailed(EngineError):
    kind = ErrorKind.EXECUTION_FAILED


class InvalidParameters(EngineError):
    kind = ErrorKind.INVALID_PARAMETERS


class IdentityMismatch(EngineError):
    kind = ErrorKind.IDENTITY_MISMATCH


class TenantIsolationViolation(EngineError):
    """Fatal invariant breach. The message is deliberately generic."""

    kind = ErrorKind.TENANT_ISOLATION_VIOLATION

    def __init__(self, message: str = "Tenant isolation invariant violated"):
        super().__init__(message)
