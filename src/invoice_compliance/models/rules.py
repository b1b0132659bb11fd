from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from invoice_compliance.models.country import (
    NumberingPolicy,
    QrCodePolicy,
    SignaturePolicy,
    VatExemption,
    VatRate,
)


@dataclass(frozen=True)
class VatRules:
    rates: tuple[VatRate, ...]
    default_rate: Decimal
    reverse_charge: bool = False
    reverse_charge_text_key: str | None = None
    exemptions: tuple[VatExemption, ...] = ()
    rounding_mode: str = "total"


@dataclass(frozen=True)
class ValidationRules:
    required_invoice_fields: tuple[str, ...]
    required_client_fields: tuple[str, ...]
    identifier_formats: dict[str, str] = field(default_factory=dict)
    vat_number_format: str | None = None


@dataclass(frozen=True)
class FormatRules:
    preferred: str
    supported: tuple[str, ...]
    xml_syntax: str


@dataclass(frozen=True)
class TransmissionRules:
    """Canonical description of how the document leaves the system."""

    method: str  # email, peppol, clearance, platform, hash_chain
    mandatory: bool
    platform: str
    is_async: bool
    deadline_days: int | None
    label_key: str
    icon: str
    mandatory_from: str | None = None  # ISO date the obligation starts


@dataclass(frozen=True)
class ApplicableRules:
    vat: VatRules
    validation: ValidationRules
    format: FormatRules
    transmission: TransmissionRules
    numbering: NumberingPolicy
    signature: SignaturePolicy
    qr_code: QrCodePolicy
    legal_mention_keys: tuple[str, ...]
