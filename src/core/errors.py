"""
Typed error taxonomy for ingestion, processing and persistence.

Only the reason code and message are surfaced to operators; raw exception
detail stays in logs.
"""

from __future__ import annotations

from enum import StrEnum


class ReasonCode(StrEnum):
    RATE_LIMITED = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    TIMEOUT = "timeout"
    NETWORK = "network"
    CIRCUIT_OPEN = "circuit_open"
    INVALID_CREDENTIALS = "invalid_credentials"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    MALFORMED_PAYLOAD = "malformed_payload"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    STORE_UNAVAILABLE = "store_unavailable"
    VERSION_CONFLICT = "version_conflict"
    INVALID_DESCRIPTOR = "invalid_descriptor"
    JOB_TIMEOUT = "job_timeout"
    RETRIES_EXHAUSTED = "retries_exhausted"
    INTERNAL = "internal_error"


class IngestionError(Exception):
    """Base error carrying a typed reason code and a human-readable message."""

    default_reason = ReasonCode.INTERNAL

    def __init__(self, message: str, *, reason: ReasonCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason

    def to_dict(self) -> dict[str, str]:
        return {"reason": self.reason.value, "message": self.message}


class RetryableError(IngestionError):
    """Transient failure; the call may succeed if retried later."""

    default_reason = ReasonCode.UPSTREAM_UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        reason: ReasonCode | None = None,
        retry_after: float | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, reason=reason)
        self.retry_after = retry_after
        self.status_code = status_code


class PermanentError(IngestionError):
    """Failure that retrying will not fix (bad request, bad credentials)."""

    default_reason = ReasonCode.BAD_REQUEST

    def __init__(
        self,
        message: str,
        *,
        reason: ReasonCode | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, reason=reason)
        self.status_code = status_code


class CircuitOpenError(IngestionError):
    """Call short-circuited because the source's breaker is open."""

    default_reason = ReasonCode.CIRCUIT_OPEN

    def __init__(self, source: str, *, retry_in: float | None = None) -> None:
        super().__init__(f"Circuit open for source '{source}'")
        self.source = source
        self.retry_in = retry_in


class RecordRejectedError(IngestionError):
    """A single record cannot be processed; the surrounding batch continues."""

    default_reason = ReasonCode.MALFORMED_PAYLOAD


class PersistenceUnavailableError(IngestionError):
    """The durable store cannot be reached; callers hold work and retry later."""

    default_reason = ReasonCode.STORE_UNAVAILABLE


class VersionConflictError(IngestionError):
    """Compare-and-swap write lost against a concurrent writer."""

    default_reason = ReasonCode.VERSION_CONFLICT


class SourceRegistrationError(IngestionError):
    """Connector or descriptor configuration rejected at registration time."""

    default_reason = ReasonCode.INVALID_DESCRIPTOR


def describe_failure(exc: BaseException) -> dict[str, str]:
    """Typed reason and message for job records; raw detail stays in logs."""
    if isinstance(exc, IngestionError):
        return exc.to_dict()
    if isinstance(exc, TimeoutError):
        return {"reason": ReasonCode.JOB_TIMEOUT.value, "message": "Job exceeded its timeout"}
    return {"reason": ReasonCode.INTERNAL.value, "message": f"Unexpected {type(exc).__name__}"}
