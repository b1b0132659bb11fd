from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class LineItem:
    quantity: Decimal
    unit_price: Decimal
    vat_rate: Decimal | None = None  # None means the resolved default rate

    @classmethod
    def from_dict(cls, d: dict) -> LineItem:
        rate = d.get("vat_rate")
        return cls(
            quantity=Decimal(str(d["quantity"])),
            unit_price=Decimal(str(d["unit_price"])),
            vat_rate=Decimal(str(rate)) if rate is not None else None,
        )


@dataclass(frozen=True)
class VatBreakdownEntry:
    rate: Decimal
    code: str
    base: Decimal
    amount: Decimal


@dataclass(frozen=True)
class VatTotals:
    total_ht: Decimal
    total_vat: Decimal
    total_ttc: Decimal
    breakdown: tuple[VatBreakdownEntry, ...]

    def to_dict(self) -> dict:
        return {
            "total_ht": str(self.total_ht),
            "total_vat": str(self.total_vat),
            "total_ttc": str(self.total_ttc),
            "breakdown": [
                {"rate": str(b.rate), "code": b.code, "base": str(b.base), "amount": str(b.amount)}
                for b in self.breakdown
            ],
        }
