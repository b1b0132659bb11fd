"""Corrections of issued documents.

A document can be edited in place only while the country allows it, it has
not left the system and its status is not terminal. Anything else becomes a
credit note: full, partial by amount or partial by explicit lines.
"""

from __future__ import annotations

import dataclasses
import logging
from decimal import Decimal

from invoice_compliance.models.correction import (
    TERMINAL_STATUSES,
    CorrectionRequest,
    CorrectionResult,
    CreditLine,
    CreditNote,
    DocumentState,
)
from invoice_compliance.models.country import CorrectionCode, CorrectionConfig, CountryConfig
from invoice_compliance.models.ledger import NumberingKey
from invoice_compliance.models.rules import VatRules
from invoice_compliance.models.vat import LineItem
from invoice_compliance.services import vat_engine
from invoice_compliance.services.numbering import NumberingLedger
from invoice_compliance.services.vat_engine import ZERO, round2

logger = logging.getLogger(__name__)

DIRECT_MODIFICATION = "direct_modification"
PLATFORM_REQUEST = "platform_request"
CREDIT_NOTE_DOCUMENT = "credit-note"

_UNTAXED = VatRules(rates=(), default_rate=Decimal("0"))


def can_modify_directly(document: DocumentState, config: CorrectionConfig) -> bool:
    if not config.allow_direct_modification:
        return False
    if document.transmitted_at or document.platform_id:
        return False
    return document.status.upper() not in TERMINAL_STATUSES


def requires_pre_approval(config: CorrectionConfig) -> bool:
    return config.requires_pre_approval


def available_codes(config: CorrectionConfig) -> tuple[CorrectionCode, ...]:
    return config.codes


def default_reason_code(config: CorrectionConfig) -> str | None:
    return config.codes[0].code if config.codes else None


def validate_request(
    document: DocumentState, request: CorrectionRequest, config: CorrectionConfig
) -> list[str]:
    """Return a list of problems with *request*; empty when it can be applied."""
    errors: list[str] = []
    if not request.reason or not request.reason.strip():
        errors.append("A correction reason is required")
    if request.reason_code and config.codes:
        valid = {c.code for c in config.codes}
        if request.reason_code not in valid:
            errors.append(
                f"Unknown reason code '{request.reason_code}', expected one of {sorted(valid)}"
            )
    if request.partial_amount is not None:
        if request.partial_amount <= 0:
            errors.append("Partial amount must be positive")
        elif request.partial_amount > document.total_ttc:
            errors.append(
                f"Partial amount {request.partial_amount} exceeds the original total "
                f"{document.total_ttc}"
            )
    return errors


def _effective_rate(document: DocumentState) -> Decimal:
    if document.total_ht > 0 and document.total_vat > 0:
        return round2(document.total_vat / document.total_ht * vat_engine.HUNDRED)
    return ZERO


def _from_lines(lines: tuple[CreditLine, ...]) -> tuple[tuple[CreditLine, ...], Decimal, Decimal]:
    negated = tuple(dataclasses.replace(line, quantity=-abs(line.quantity)) for line in lines)
    items = [
        LineItem(quantity=c.quantity, unit_price=c.unit_price, vat_rate=c.vat_rate)
        for c in negated
    ]
    totals = vat_engine.calculate(items, _UNTAXED)
    return negated, totals.total_ht, totals.total_vat


def build_credit_note(
    document: DocumentState, request: CorrectionRequest, reason_code: str | None
) -> CreditNote:
    """Amounts of the credit note for *request*. Credit note totals are negative."""
    if request.items:
        lines, total_ht, total_vat = _from_lines(request.items)
    elif request.partial_amount is not None:
        ratio = request.partial_amount / document.total_ttc
        total_ht = -round2(document.total_ht * ratio)
        total_vat = -round2(document.total_vat * ratio)
        lines = (
            CreditLine(
                description=f"Correction: {request.reason}",
                quantity=Decimal("-1"),
                unit_price=-total_ht,
                vat_rate=_effective_rate(document),
            ),
        )
    else:
        total_ht = -round2(document.total_ht)
        total_vat = -round2(document.total_vat)
        lines = (
            CreditLine(
                description=f"Full credit: {request.reason}",
                quantity=Decimal("-1"),
                unit_price=round2(document.total_ht),
                vat_rate=_effective_rate(document),
            ),
        )
    return CreditNote(
        original_invoice_ref=document.invoice_number,
        reason=request.reason,
        lines=lines,
        total_ht=total_ht,
        total_vat=total_vat,
        total_ttc=total_ht + total_vat,
        reason_code=reason_code,
    )


class CorrectionEngine:
    def __init__(self, ledger: NumberingLedger | None = None) -> None:
        self._ledger = ledger

    def evaluate(self, document: DocumentState, country: CountryConfig) -> CorrectionResult:
        """How *document* may be corrected, without producing anything."""
        config = country.correction
        if can_modify_directly(document, config):
            return CorrectionResult(
                can_correct=True,
                method=DIRECT_MODIFICATION,
                message="Document can be modified directly",
            )
        if requires_pre_approval(config):
            return CorrectionResult(
                can_correct=True,
                method=PLATFORM_REQUEST,
                requires_approval=True,
                approval_endpoint=config.approval_endpoint,
                message="Correction requires platform pre-approval",
            )
        return CorrectionResult(
            can_correct=True,
            method=config.method,
            message=f"Document must be corrected with a {config.method.replace('_', ' ')}",
        )

    def create_credit_note(
        self, document: DocumentState, request: CorrectionRequest, config: CorrectionConfig
    ) -> CorrectionResult:
        errors = validate_request(document, request, config)
        if errors:
            logger.warning(
                "Rejected correction of %s: %s", document.invoice_number, "; ".join(errors)
            )
            return CorrectionResult(can_correct=False, message="; ".join(errors))
        if requires_pre_approval(config):
            return CorrectionResult(
                can_correct=True,
                method=PLATFORM_REQUEST,
                requires_approval=True,
                approval_endpoint=config.approval_endpoint,
                message="Correction requires platform pre-approval",
            )
        note = build_credit_note(
            document, request, request.reason_code or default_reason_code(config)
        )
        return CorrectionResult(can_correct=True, method=config.method, credit_note=note)

    def correct(
        self,
        document: DocumentState,
        request: CorrectionRequest,
        country: CountryConfig,
        *,
        company_id: str,
        series: str = "",
    ) -> CorrectionResult:
        """Produce and number a credit note for *document*.

        Documents that may still be edited in place are not credited; the
        result says so and carries no credit note.
        """
        if can_modify_directly(document, country.correction):
            return self.evaluate(document, country)
        result = self.create_credit_note(document, request, country.correction)
        if result.credit_note is None or self._ledger is None:
            return result

        key = NumberingKey(company_id=company_id, series=series, document_type=CREDIT_NOTE_DOCUMENT)
        generated = self._ledger.generate_next(key, country.numbering)
        logger.info(
            "Credit note %s issued against %s", generated.full_number, document.invoice_number
        )
        note = dataclasses.replace(result.credit_note, number=generated.full_number)
        return dataclasses.replace(result, credit_note=note)
