from __future__ import annotations

from typing import Any, Protocol

from invoice_compliance.models.transmission import (
    FAILED,
    TransmissionPayload,
    TransmissionResult,
    failure,
)
from invoice_compliance.transmission.validation import ValidationResult


class TransmissionStrategy(Protocol):
    name: str

    def supports(self, platform: str) -> bool: ...

    def send(self, payload: TransmissionPayload) -> TransmissionResult: ...

    def check_status(
        self, external_id: str, company_id: str | None = None, platform: str = ""
    ) -> str: ...

    def cancel(self, external_id: str, company_id: str | None = None) -> bool: ...


def validation_failure(prefix: str, result: ValidationResult) -> TransmissionResult:
    return failure(f"{prefix}_VALIDATION_ERROR", f"Validation failed: {result.summary()}")


def not_configured(prefix: str, label: str) -> TransmissionResult:
    return failure(
        f"{prefix}_NOT_CONFIGURED",
        f"{label} is not configured for this company. Run 'invoice-compliance init' to set it up.",
    )


def http_failure(prefix: str, resp: Any) -> TransmissionResult:
    body = resp.text[:500] if resp.text else ""
    return failure(f"{prefix}_HTTP_{resp.status_code}", body or f"HTTP {resp.status_code}")


def network_failure(prefix: str, exc: Exception) -> TransmissionResult:
    return failure(f"{prefix}_NETWORK_ERROR", str(exc) or type(exc).__name__, status=FAILED)
