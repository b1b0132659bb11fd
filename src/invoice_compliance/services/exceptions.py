from __future__ import annotations

from typing import TYPE_CHECKING

import requests.exceptions

if TYPE_CHECKING:
    from invoice_compliance.models.ledger import ChainValidationResult
    from invoice_compliance.models.transmission import TransmissionResult


class ComplianceError(Exception):
    """Base class for every error raised by the compliance core."""


class ConfigurationError(ComplianceError):
    """A country table or numbering policy is malformed or names something unknown."""


class NumberingError(ComplianceError):
    """The sequence could not be advanced atomically; no number was issued."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class ChainIntegrityError(ComplianceError):
    """A hash chain failed validation (broken link or tampered entry)."""

    def __init__(self, result: ChainValidationResult) -> None:
        super().__init__(result.message or "Hash chain integrity check failed")
        self.result = result


class PayloadValidationError(ComplianceError):
    """A transmission payload is missing fields the platform requires."""

    def __init__(self, message: str, errors: list | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class RetryExhaustedError(ComplianceError):
    """Every retry attempt failed with a transient error."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"All {attempts} retry attempts exhausted. Last error: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryableHTTPError(requests.exceptions.HTTPError):
    """Raised for HTTP status codes that are safe to retry (429, 502, 503, 504)."""


class TransientResultError(ComplianceError):
    """A strategy returned a failed result whose error code marks it as transient."""

    def __init__(self, result: TransmissionResult) -> None:
        super().__init__(f"{result.error_code}: {result.message or 'transient failure'}")
        self.result = result
