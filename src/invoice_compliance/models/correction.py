from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

TERMINAL_STATUSES = frozenset({"PAID", "CANCELLED", "CREDITED"})


@dataclass(frozen=True)
class DocumentState:
    """Current state of an issued document, as far as corrections are concerned."""

    invoice_id: str
    invoice_number: str
    issue_date: str
    total_ht: Decimal
    total_vat: Decimal
    total_ttc: Decimal
    status: str
    transmitted_at: str | None = None
    platform_id: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> DocumentState:
        return cls(
            invoice_id=str(d["invoice_id"]),
            invoice_number=d["invoice_number"],
            issue_date=d["issue_date"],
            total_ht=Decimal(str(d["total_ht"])),
            total_vat=Decimal(str(d["total_vat"])),
            total_ttc=Decimal(str(d["total_ttc"])),
            status=str(d.get("status", "SENT")).upper(),
            transmitted_at=d.get("transmitted_at"),
            platform_id=d.get("platform_id"),
        )


@dataclass(frozen=True)
class CreditLine:
    description: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: Decimal


@dataclass(frozen=True)
class CorrectionRequest:
    reason: str
    reason_code: str | None = None
    items: tuple[CreditLine, ...] = ()
    partial_amount: Decimal | None = None


@dataclass(frozen=True)
class CreditNote:
    original_invoice_ref: str
    reason: str
    lines: tuple[CreditLine, ...]
    total_ht: Decimal
    total_vat: Decimal
    total_ttc: Decimal
    reason_code: str | None = None
    number: str | None = None


@dataclass(frozen=True)
class CorrectionResult:
    can_correct: bool
    method: str | None = None
    requires_approval: bool = False
    approval_endpoint: str | None = None
    message: str | None = None
    credit_note: CreditNote | None = None
