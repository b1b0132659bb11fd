from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

DELIVERED = "delivered"
ACCEPTED = "accepted"
VALIDATED = "validated"
SUBMITTED = "submitted"
PENDING = "pending"
REJECTED = "rejected"
FAILED = "failed"

STATUSES = frozenset({DELIVERED, ACCEPTED, VALIDATED, SUBMITTED, PENDING, REJECTED, FAILED})


@dataclass(frozen=True)
class Party:
    name: str
    email: str | None = None
    country: str | None = None
    siret: str | None = None
    vat_number: str | None = None
    peppol_id: str | None = None
    platform_id: str | None = None  # Codice Destinatario, KSeF number, ...

    @classmethod
    def from_dict(cls, d: dict) -> Party:
        return cls(
            name=d.get("name", ""),
            email=d.get("email"),
            country=d.get("country"),
            siret=d.get("siret"),
            vat_number=d.get("vat_number"),
            peppol_id=d.get("peppol_id"),
            platform_id=d.get("platform_id"),
        )


@dataclass(frozen=True)
class TransmissionPayload:
    """Everything a strategy needs to send one document. Content is passed through untouched."""

    company_id: str
    invoice_id: str
    invoice_number: str
    pdf: bytes
    sender: Party
    recipient: Party
    xml: bytes | None = None
    format: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransmissionResult:
    success: bool
    status: str
    external_id: str | None = None
    error_code: str | None = None
    message: str | None = None
    validation_url: str | None = None
    retries_attempted: int = 0
    circuit_breaker_tripped: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_attempts(self, attempts: int) -> TransmissionResult:
        return replace(self, retries_attempted=attempts)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "status": self.status}
        for key in ("external_id", "error_code", "message", "validation_url"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        out["retries_attempted"] = self.retries_attempted
        if self.circuit_breaker_tripped:
            out["circuit_breaker_tripped"] = True
        return out


def failure(error_code: str, message: str, status: str = REJECTED, **kwargs: Any) -> TransmissionResult:
    """Shorthand for a failed result."""
    return TransmissionResult(
        success=False, status=status, error_code=error_code, message=message, **kwargs
    )
