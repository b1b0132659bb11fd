from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class VatRate:
    code: str  # S, R1, R2, SR, Z, AE (reverse charge), G (export)
    rate: Decimal
    label_key: str

    @classmethod
    def from_dict(cls, d: dict) -> VatRate:
        return cls(
            code=str(d["code"]),
            rate=Decimal(str(d["rate"])),
            label_key=d.get("label_key", d.get("label", "")),
        )


@dataclass(frozen=True)
class VatExemption:
    code: str
    article: str
    label_key: str

    @classmethod
    def from_dict(cls, d: dict) -> VatExemption:
        return cls(code=d["code"], article=d.get("article", ""), label_key=d.get("label_key", ""))


@dataclass(frozen=True)
class VatConfig:
    rates: tuple[VatRate, ...]
    default_rate: Decimal
    exemptions: tuple[VatExemption, ...] = ()
    number_format: str = "^[A-Z]{2}[0-9A-Z]+$"
    number_prefix: str = ""
    rounding_mode: str = "total"  # "line" or "total"
    reverse_charge_services: str = "compliance.reverseCharge.services"
    reverse_charge_goods: str = "compliance.reverseCharge.goods"

    @classmethod
    def from_dict(cls, d: dict) -> VatConfig:
        texts = d.get("reverse_charge_texts", {})
        return cls(
            rates=tuple(VatRate.from_dict(r) for r in d.get("rates", [])),
            default_rate=Decimal(str(d.get("default_rate", 0))),
            exemptions=tuple(VatExemption.from_dict(e) for e in d.get("exemptions", [])),
            number_format=d.get("number_format", "^[A-Z]{2}[0-9A-Z]+$"),
            number_prefix=d.get("number_prefix", ""),
            rounding_mode=d.get("rounding_mode", "total"),
            reverse_charge_services=texts.get("services", "compliance.reverseCharge.services"),
            reverse_charge_goods=texts.get("goods", "compliance.reverseCharge.goods"),
        )


@dataclass(frozen=True)
class IdentifierDefinition:
    """A national identifier (SIRET, NIF, NIP, ...) and its validation regex."""

    id: str
    label_key: str
    format: str
    required: bool = False
    example: str | None = None
    max_length: int | None = None

    @classmethod
    def from_dict(cls, d: dict) -> IdentifierDefinition:
        return cls(
            id=d["id"],
            label_key=d.get("label_key", f"identifiers.{d['id']}"),
            format=d.get("format", "^.*$"),
            required=bool(d.get("required", False)),
            example=d.get("example"),
            max_length=d.get("max_length"),
        )


@dataclass(frozen=True)
class ChannelConfig:
    """Platform chosen for one transaction type; method/async/... come from the platform table."""

    platform: str
    mandatory: bool | None = None  # None means use the platform table default
    mandatory_from: str | None = None
    deadline_days: int | None = None

    @classmethod
    def from_dict(cls, d: dict | str) -> ChannelConfig:
        if isinstance(d, str):
            return cls(platform=d)
        return cls(
            platform=d.get("platform", "email"),
            mandatory=d.get("mandatory"),
            mandatory_from=d.get("mandatory_from"),
            deadline_days=d.get("deadline_days"),
        )


@dataclass(frozen=True)
class TransmissionConfig:
    b2b: ChannelConfig
    b2g: ChannelConfig
    b2c: ChannelConfig | None = None
    cross_border: dict[str, str] = field(default_factory=dict)
    export_default: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> TransmissionConfig:
        b2b = ChannelConfig.from_dict(d.get("b2b", "email"))
        return cls(
            b2b=b2b,
            b2g=ChannelConfig.from_dict(d["b2g"]) if "b2g" in d else b2b,
            b2c=ChannelConfig.from_dict(d["b2c"]) if "b2c" in d else None,
            cross_border={str(k).upper(): v for k, v in (d.get("cross_border") or {}).items()},
            export_default=d.get("export_default"),
        )


@dataclass(frozen=True)
class NumberingPolicy:
    series_required: bool = False
    series_registration: bool = False
    series_format: str | None = None
    hash_chaining: bool = False
    hash_algorithm: str = "SHA-256"
    hash_fields: tuple[str, ...] = ("invoice_number", "issue_date", "total_ttc", "previous_hash")
    hash_delimiter: str = ";"
    gap_allowed: bool = True
    reset_period: str = "never"  # never, yearly, monthly
    platform_assigned: bool = False

    @classmethod
    def from_dict(cls, d: dict) -> NumberingPolicy:
        defaults = cls()
        return cls(
            series_required=bool(d.get("series_required", False)),
            series_registration=bool(d.get("series_registration", False)),
            series_format=d.get("series_format"),
            hash_chaining=bool(d.get("hash_chaining", False)),
            hash_algorithm=d.get("hash_algorithm", defaults.hash_algorithm),
            hash_fields=tuple(d.get("hash_fields", defaults.hash_fields)),
            hash_delimiter=d.get("hash_delimiter", defaults.hash_delimiter),
            gap_allowed=bool(d.get("gap_allowed", True)),
            reset_period=d.get("reset_period", "never"),
            platform_assigned=bool(d.get("platform_assigned", False)),
        )


@dataclass(frozen=True)
class FormatPreference:
    preferred: str = "pdf"
    supported: tuple[str, ...] = ("pdf",)
    xml_syntax: str = "UBL"

    @classmethod
    def from_dict(cls, d: dict) -> FormatPreference:
        return cls(
            preferred=d.get("preferred", "pdf"),
            supported=tuple(d.get("supported", ["pdf"])),
            xml_syntax=d.get("xml_syntax", "UBL"),
        )


@dataclass(frozen=True)
class SignaturePolicy:
    required: bool = False
    type: str | None = None  # xades, platform_sign, rsa
    algorithm: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> SignaturePolicy:
        return cls(
            required=bool(d.get("required", False)),
            type=d.get("type"),
            algorithm=d.get("algorithm"),
        )


@dataclass(frozen=True)
class QrCodePolicy:
    required: bool = False
    content_fields: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, d: dict) -> QrCodePolicy:
        return cls(
            required=bool(d.get("required", False)),
            content_fields=tuple(d.get("content_fields", [])),
        )


@dataclass(frozen=True)
class CorrectionCode:
    code: str
    label_key: str
    ubl_type_code: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> CorrectionCode:
        return cls(
            code=str(d["code"]),
            label_key=d.get("label_key", ""),
            ubl_type_code=d.get("ubl_type_code"),
        )


@dataclass(frozen=True)
class CorrectionConfig:
    allow_direct_modification: bool = True
    method: str = "credit_note"  # credit_note, corrective_invoice, replacement, void_and_reissue
    requires_original_reference: bool = False
    codes: tuple[CorrectionCode, ...] = ()
    requires_pre_approval: bool = False
    approval_endpoint: str | None = None
    correction_text_key: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> CorrectionConfig:
        return cls(
            allow_direct_modification=bool(d.get("allow_direct_modification", True)),
            method=d.get("method", "credit_note"),
            requires_original_reference=bool(d.get("requires_original_reference", False)),
            codes=tuple(CorrectionCode.from_dict(c) for c in d.get("codes", [])),
            requires_pre_approval=bool(d.get("requires_pre_approval", False)),
            approval_endpoint=d.get("approval_endpoint"),
            correction_text_key=d.get("correction_text_key"),
        )


@dataclass(frozen=True)
class ConditionalMention:
    condition: Any  # raw YAML value, parsed by models.conditions.parse_condition
    text_key: str

    @classmethod
    def from_dict(cls, d: dict) -> ConditionalMention:
        return cls(condition=d.get("condition"), text_key=d["text_key"])


@dataclass(frozen=True)
class CountryConfig:
    """Static compliance table for one country, keyed by ISO 3166-1 alpha-2 code."""

    code: str
    name: str
    currency: str
    is_eu: bool
    vat: VatConfig
    company_identifiers: tuple[IdentifierDefinition, ...]
    client_identifiers: tuple[IdentifierDefinition, ...]
    required_invoice_fields: tuple[str, ...]
    required_client_fields: tuple[str, ...]
    format: FormatPreference
    transmission: TransmissionConfig
    numbering: NumberingPolicy
    signature: SignaturePolicy
    qr_code: QrCodePolicy
    correction: CorrectionConfig
    mandatory_mentions: tuple[str, ...]
    conditional_mentions: tuple[ConditionalMention, ...]

    @classmethod
    def from_dict(cls, d: dict) -> CountryConfig:
        """Create a CountryConfig from a YAML-loaded dict, applying defaults for optional sections."""
        identifiers = d.get("identifiers", {})
        required = d.get("required_fields", {})
        mentions = d.get("legal_mentions", {})
        return cls(
            code=str(d["code"]).upper(),
            name=d.get("name", f"country.{str(d['code']).lower()}"),
            currency=d.get("currency", "EUR"),
            is_eu=bool(d.get("is_eu", False)),
            vat=VatConfig.from_dict(d.get("vat", {})),
            company_identifiers=tuple(
                IdentifierDefinition.from_dict(i) for i in identifiers.get("company", [])
            ),
            client_identifiers=tuple(
                IdentifierDefinition.from_dict(i) for i in identifiers.get("client", [])
            ),
            required_invoice_fields=tuple(required.get("invoice", [])),
            required_client_fields=tuple(required.get("client", [])),
            format=FormatPreference.from_dict(d.get("format", {})),
            transmission=TransmissionConfig.from_dict(d.get("transmission", {})),
            numbering=NumberingPolicy.from_dict(d.get("numbering", {})),
            signature=SignaturePolicy.from_dict(d.get("signature", {})),
            qr_code=QrCodePolicy.from_dict(d.get("qr_code", {})),
            correction=CorrectionConfig.from_dict(d.get("correction", {})),
            mandatory_mentions=tuple(mentions.get("mandatory", [])),
            conditional_mentions=tuple(
                ConditionalMention.from_dict(c) for c in mentions.get("conditional", [])
            ),
        )
