"""Exception types raised by the classification oracle client.

Every failure the reconciliation pipeline must survive derives from
``OracleError`` so call sites can fall back with a single except clause.
"""

from typing import List, Optional

from app.errors import ConfigurationError


class OracleError(Exception):
    """Base class for all oracle failures."""


class OracleConfigurationError(OracleError, ConfigurationError):
    """Raised when the oracle is selected but cannot be constructed.

    This is fatal at stage start, unlike the other oracle errors.
    """


class OracleTransportError(OracleError):
    """Raised by adapters when the upstream request itself fails."""


class OracleTimeoutError(OracleError):
    """Raised when a single oracle call exceeds its timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Oracle call timed out after {timeout_seconds:.1f}s")


class OracleResponseError(OracleError):
    """Raised when oracle output fails parsing or schema validation.

    Attributes:
        stage: Which validation step failed ("json_parse" or "schema").
        errors: List of human-readable error descriptions.
        raw_response: The original string that failed validation.
    """

    def __init__(
        self,
        stage: str,
        errors: List[str],
        raw_response: str,
    ) -> None:
        self.stage = stage
        self.errors = errors
        self.raw_response = raw_response
        message = (
            f"Oracle output validation failed at stage '{stage}': "
            + "; ".join(errors)
        )
        super().__init__(message)


class OracleRetryExhaustedError(OracleError):
    """Raised when every attempt failed.

    Attributes:
        attempts: Total number of attempts made (initial + retries).
        last_error: The error from the final attempt.
        history: Errors from every failed attempt.
    """

    def __init__(
        self,
        attempts: int,
        last_error: Optional[OracleError],
        history: List[OracleError],
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.history = history
        super().__init__(
            f"Oracle call failed after {attempts} attempt(s). "
            f"Last error: {last_error}"
        )
