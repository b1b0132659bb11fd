"""VAT totals for a list of line items.

Line totals are grouped by rate. Each group's base and tax are rounded to
two decimals on their own, and the invoice totals are sums of those rounded
group values: TTC is rounded HT plus rounded VAT, never ``round(HT + VAT)``.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from invoice_compliance.models.rules import VatRules
from invoice_compliance.models.vat import LineItem, VatBreakdownEntry, VatTotals

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _rate_code(rate: Decimal, rules: VatRules) -> str:
    for r in rules.rates:
        if r.rate == rate:
            return r.code
    return "S"


def calculate(items: Iterable[LineItem], rules: VatRules) -> VatTotals:
    bases: dict[Decimal, Decimal] = {}
    line_taxes: dict[Decimal, Decimal] = {}
    per_line = rules.rounding_mode == "line"

    for item in items:
        rate = rules.default_rate if item.vat_rate is None else item.vat_rate
        line_total = item.quantity * item.unit_price
        bases[rate] = bases.get(rate, Decimal("0")) + line_total
        if per_line:
            line_tax = round2(line_total * rate / HUNDRED)
            line_taxes[rate] = line_taxes.get(rate, Decimal("0")) + line_tax

    breakdown = []
    for rate, base in bases.items():
        if rules.reverse_charge:
            amount = ZERO
        elif per_line:
            amount = round2(line_taxes[rate])
        else:
            amount = round2(base * rate / HUNDRED)
        breakdown.append(
            VatBreakdownEntry(
                rate=rate, code=_rate_code(rate, rules), base=round2(base), amount=amount
            )
        )

    total_ht = sum((b.base for b in breakdown), ZERO)
    total_vat = sum((b.amount for b in breakdown), ZERO)
    return VatTotals(
        total_ht=total_ht,
        total_vat=total_vat,
        total_ttc=total_ht + total_vat,
        breakdown=tuple(breakdown),
    )
