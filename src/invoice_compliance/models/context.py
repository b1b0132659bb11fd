from __future__ import annotations

from dataclasses import dataclass, field

B2B = "B2B"
B2G = "B2G"
B2C = "B2C"

GOODS = "goods"
SERVICES = "services"
MIXED = "mixed"

GOODS_ITEM_TYPES = frozenset({"PRODUCT"})
SERVICE_ITEM_TYPES = frozenset({"HOUR", "DAY", "SERVICE", "DEPOSIT"})


@dataclass(frozen=True)
class CompanyFacts:
    """Raw supplier facts as stored on the company record."""

    country_code: str
    vat_number: str | None = None
    vat_exempt: bool = False
    identifiers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> CompanyFacts:
        return cls(
            country_code=str(d["country_code"]).upper(),
            vat_number=d.get("vat_number") or None,
            vat_exempt=bool(d.get("vat_exempt", False)),
            identifiers=dict(d.get("identifiers") or {}),
        )


@dataclass(frozen=True)
class ClientFacts:
    """Raw customer facts. ``country_code`` is None for B2C clients without an address."""

    country_code: str | None = None
    vat_number: str | None = None
    kind: str = "COMPANY"  # COMPANY or INDIVIDUAL
    is_public_entity: bool = False
    identifiers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> ClientFacts:
        country = d.get("country_code")
        return cls(
            country_code=str(country).upper() if country else None,
            vat_number=d.get("vat_number") or None,
            kind=str(d.get("kind", "COMPANY")).upper(),
            is_public_entity=bool(d.get("is_public_entity", False)),
            identifiers=dict(d.get("identifiers") or {}),
        )


@dataclass(frozen=True)
class ItemFacts:
    type: str  # HOUR, DAY, SERVICE, PRODUCT, DEPOSIT

    @classmethod
    def from_dict(cls, d: dict) -> ItemFacts:
        return cls(type=str(d.get("type", "SERVICE")).upper())


@dataclass(frozen=True)
class Supplier:
    country_code: str
    vat_number: str | None
    is_vat_registered: bool
    vat_exempt: bool = False
    identifiers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Customer:
    country_code: str | None
    vat_number: str | None
    is_vat_registered: bool
    is_public_entity: bool
    identifiers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Transaction:
    type: str  # B2B, B2G, B2C
    nature: str  # goods, services, mixed
    is_domestic: bool
    is_intra_eu: bool
    is_export: bool


@dataclass(frozen=True)
class Place:
    delivery: str | None
    performance: str | None
    taxation: str


@dataclass(frozen=True)
class TransactionContext:
    """Normalized facts of one transaction; built once and never mutated."""

    supplier: Supplier
    customer: Customer
    transaction: Transaction
    place: Place
