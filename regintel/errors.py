"""Error taxonomy for the acquisition pipeline.

Only `AuthorizationError`, exhausted `TransientFetchError` and
`ServiceUnavailable` ever surface as failed jobs. `DegradedCapabilityError` is
carried inside a `CapabilityResult` and `PersistenceConflict` is turned into a
duplicate outcome by the ingestion state machine.
"""

from __future__ import annotations


class RegIntelError(Exception):
    """Base class for pipeline errors."""


class ConfigError(RegIntelError):
    pass


class JobError(RegIntelError):
    """Error raised from inside a job handler.

    `retryable` tells the dispatcher whether another attempt may help.
    """

    retryable: bool = True


class AuthorizationError(JobError):
    """URL outside the domain allow-list (structural, never retried)."""

    retryable = False


class TransientFetchError(JobError):
    """Network/HTTP failure while fetching a source."""

    retryable = True


class ServiceUnavailable(JobError):
    """An external capability is not configured (no retry benefit)."""

    retryable = False


class NotFoundError(JobError):
    """Unknown item, feed, domain or job."""

    retryable = False


class InvalidResponseError(JobError):
    """An external service answered with a payload we cannot use."""

    retryable = True


class DegradedCapabilityError(RegIntelError):
    """Failure of an optional stage (secondary extraction, bookmarking)."""

    def __init__(self, capability: str, message: str):
        super().__init__(f"{capability}: {message}")
        self.capability = capability
        self.message = message


class PersistenceConflict(RegIntelError):
    """Unique constraint on the content fingerprint was violated at insert time."""

    def __init__(self, fingerprint: str):
        super().__init__(f"content_hash already stored: {fingerprint}")
        self.fingerprint = fingerprint


def failure_reason(exc: BaseException) -> str:
    """Operator-facing reason string: '<ErrorClass>: <message>'."""
    return f"{type(exc).__name__}: {exc}"
