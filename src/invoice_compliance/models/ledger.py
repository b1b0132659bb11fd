from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal

GENESIS_HASH = "0"

LINK = "link"
TAMPER = "tamper"


@dataclass(frozen=True)
class NumberingKey:
    company_id: str
    series: str = ""
    document_type: str = "invoice"  # invoice, quote, receipt, credit-note

    def storage_key(self) -> str:
        return f"{self.company_id}|{self.series}|{self.document_type}"


@dataclass(frozen=True)
class NumberingState:
    last_sequence: int
    year: int
    month: int
    last_hash: str | None = None
    validation_code: str | None = None  # issued by the tax authority on series registration

    @classmethod
    def from_dict(cls, d: dict) -> NumberingState:
        return cls(
            last_sequence=int(d.get("last_sequence", 0)),
            year=int(d["year"]),
            month=int(d["month"]),
            last_hash=d.get("last_hash"),
            validation_code=d.get("validation_code"),
        )

    def to_dict(self) -> dict:
        out = {
            "last_sequence": self.last_sequence,
            "year": self.year,
            "month": self.month,
            "last_hash": self.last_hash,
        }
        if self.validation_code is not None:
            out["validation_code"] = self.validation_code
        return out


@dataclass(frozen=True)
class HashInput:
    """Fields of a document that feed the hash chain."""

    invoice_number: str
    issue_date: str
    total_ht: Decimal
    total_ttc: Decimal
    supplier_tax_id: str
    customer_tax_id: str | None = None
    system_entry_date: str | None = None
    previous_hash: str = GENESIS_HASH

    def with_link(self, invoice_number: str, previous_hash: str) -> HashInput:
        return replace(self, invoice_number=invoice_number, previous_hash=previous_hash)

    @classmethod
    def from_dict(cls, d: dict) -> HashInput:
        return cls(
            invoice_number=str(d["invoice_number"]),
            issue_date=str(d["issue_date"]),
            total_ht=Decimal(str(d.get("total_ht", "0"))),
            total_ttc=Decimal(str(d["total_ttc"])),
            supplier_tax_id=str(d.get("supplier_tax_id", "")),
            customer_tax_id=d.get("customer_tax_id"),
            system_entry_date=d.get("system_entry_date"),
            previous_hash=str(d.get("previous_hash", GENESIS_HASH)),
        )


@dataclass(frozen=True)
class HashResult:
    hash: str
    input_string: str


@dataclass(frozen=True)
class ChainEntry:
    sequence: int
    hash: str
    fields: HashInput

    @classmethod
    def from_dict(cls, d: dict) -> ChainEntry:
        return cls(sequence=int(d["sequence"]), hash=d["hash"], fields=HashInput.from_dict(d["fields"]))


@dataclass(frozen=True)
class ChainValidationResult:
    valid: bool
    broken_at: int | None = None
    kind: str | None = None  # "link" or "tamper"
    message: str | None = None


@dataclass(frozen=True)
class GeneratedNumber:
    number: str  # zero-padded sequence
    full_number: str  # human-facing identifier
    sequence: int
    year: int
    series: str | None = None
    hash: HashResult | None = None
    previous_hash: str | None = None
    atcud: str | None = None  # <validation code>-<sequence>, for registered series
