"""
Error taxonomy for the harvester.

Every error raised by harvester code derives from HarvesterError and carries
the ErrorType the retry layer uses to decide whether to try again.
"""

from enum import Enum
from typing import Any, Optional


class ErrorType(Enum):
    """Failure classes understood by the retry layer."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    CAPTCHA = "captcha"
    BLOCKED = "blocked"
    PARSING = "parsing"
    UNKNOWN = "unknown"


class HarvesterError(Exception):
    """Base class for all harvester errors."""

    error_type: ErrorType = ErrorType.UNKNOWN

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class FilterValidationError(HarvesterError):
    """Filter specification is malformed. Raised before a job is enqueued."""

    def __init__(self, message: str, issues: Optional[list[str]] = None):
        super().__init__(message)
        self.issues = issues or []


class NetworkError(HarvesterError):
    """Connection-level failure (reset, refused, DNS)."""
    error_type = ErrorType.NETWORK


class ScrapeTimeoutError(HarvesterError):
    """An operation exceeded its hard timeout."""
    error_type = ErrorType.TIMEOUT


class RateLimitedError(HarvesterError):
    """Target answered with a rate limit (HTTP 429 or equivalent page)."""
    error_type = ErrorType.RATE_LIMITED


class BlockedError(HarvesterError):
    """Access denied by the target (HTTP 403, WAF page)."""
    error_type = ErrorType.BLOCKED


class CaptchaError(HarvesterError):
    """A captcha challenge was served instead of content."""
    error_type = ErrorType.CAPTCHA


class ParsingError(HarvesterError):
    """Page structure did not match what the extractor expects."""
    error_type = ErrorType.PARSING


class CircuitOpenError(HarvesterError):
    """Call rejected because the circuit breaker is open."""
    error_type = ErrorType.BLOCKED


class StalledJobError(HarvesterError):
    """A PROCESSING job stopped reporting progress and was reaped."""

    def __init__(self, job_id: str, stalled_for: float):
        super().__init__(
            f"Job timed out (stalled for more than {int(stalled_for)} seconds without progress)",
            context={"job_id": job_id},
        )
        self.job_id = job_id
        self.stalled_for = stalled_for
