"""Combine a TransactionContext with the country tables into ApplicableRules.

Resolution never raises: unknown countries use the generic table, unknown
platforms fall back to email, unknown mention conditions evaluate to false.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from decimal import Decimal

from invoice_compliance.models.conditions import evaluate, parse_condition
from invoice_compliance.models.context import B2B, B2C, B2G, GOODS, TransactionContext
from invoice_compliance.models.country import ChannelConfig, CountryConfig, VatRate
from invoice_compliance.models.rules import (
    ApplicableRules,
    FormatRules,
    TransmissionRules,
    ValidationRules,
    VatRules,
)
from invoice_compliance.services import platforms
from invoice_compliance.services.country_registry import CountryRegistry

logger = logging.getLogger(__name__)

REVERSE_CHARGE_RATE = VatRate(code="AE", rate=Decimal("0"), label_key="vat.reverseCharge")
EXPORT_RATE = VatRate(code="G", rate=Decimal("0"), label_key="vat.export")

CLIENT_PREFIX = "client_"


class RuleResolver:
    def __init__(self, countries: CountryRegistry) -> None:
        self._countries = countries

    def resolve(self, context: TransactionContext, on: date | None = None) -> ApplicableRules:
        """Rules for *context*; *on* is the day transmission mandates are judged for."""
        supplier_cfg = self._countries.get(context.supplier.country_code)
        customer_cfg = (
            self._countries.get(context.customer.country_code)
            if context.customer.country_code
            else None
        )
        return ApplicableRules(
            vat=resolve_vat(context, supplier_cfg),
            validation=resolve_validation(supplier_cfg, customer_cfg),
            format=resolve_format(context, supplier_cfg, customer_cfg),
            transmission=resolve_transmission(context, supplier_cfg, customer_cfg, on),
            numbering=supplier_cfg.numbering,
            signature=supplier_cfg.signature,
            qr_code=supplier_cfg.qr_code,
            legal_mention_keys=resolve_mentions(context, supplier_cfg),
        )


def resolve_vat(context: TransactionContext, config: CountryConfig) -> VatRules:
    tx = context.transaction
    if tx.is_intra_eu and context.customer.is_vat_registered and tx.type in (B2B, B2G):
        text_key = (
            config.vat.reverse_charge_goods if tx.nature == GOODS else config.vat.reverse_charge_services
        )
        return VatRules(
            rates=(REVERSE_CHARGE_RATE,),
            default_rate=Decimal("0"),
            reverse_charge=True,
            reverse_charge_text_key=text_key,
            exemptions=config.vat.exemptions,
            rounding_mode=config.vat.rounding_mode,
        )
    if tx.is_export:
        return VatRules(
            rates=(EXPORT_RATE,),
            default_rate=Decimal("0"),
            exemptions=config.vat.exemptions,
            rounding_mode=config.vat.rounding_mode,
        )
    return VatRules(
        rates=config.vat.rates,
        default_rate=config.vat.default_rate,
        exemptions=config.vat.exemptions,
        rounding_mode=config.vat.rounding_mode,
    )


def resolve_validation(supplier: CountryConfig, customer: CountryConfig | None) -> ValidationRules:
    formats = {i.id: i.format for i in supplier.company_identifiers}
    if customer is not None:
        for ident in customer.client_identifiers:
            formats[f"{CLIENT_PREFIX}{ident.id}"] = ident.format
    return ValidationRules(
        required_invoice_fields=supplier.required_invoice_fields,
        required_client_fields=supplier.required_client_fields,
        identifier_formats=formats,
        vat_number_format=supplier.vat.number_format,
    )


def resolve_format(
    context: TransactionContext, supplier: CountryConfig, customer: CountryConfig | None
) -> FormatRules:
    # Administrations dictate the syntax they accept
    source = customer if context.transaction.type == B2G and customer is not None else supplier
    return FormatRules(
        preferred=source.format.preferred,
        supported=source.format.supported,
        xml_syntax=source.format.xml_syntax,
    )


def _select_channel(
    context: TransactionContext, supplier: CountryConfig, customer: CountryConfig | None
) -> ChannelConfig:
    tx = context.transaction
    transmission = supplier.transmission
    destination = (context.customer.country_code or "").upper()

    if destination and not tx.is_domestic and destination in transmission.cross_border:
        return ChannelConfig(platform=transmission.cross_border[destination])
    if tx.is_export and transmission.export_default:
        return ChannelConfig(platform=transmission.export_default)
    if tx.type == B2G and customer is not None:
        return customer.transmission.b2g
    if tx.type == B2C and transmission.b2c is not None:
        return transmission.b2c
    return transmission.b2b


def resolve_transmission(
    context: TransactionContext,
    supplier: CountryConfig,
    customer: CountryConfig | None,
    on: date | None = None,
) -> TransmissionRules:
    return platforms.describe(_select_channel(context, supplier, customer), on)


def resolve_mentions(context: TransactionContext, config: CountryConfig) -> tuple[str, ...]:
    keys = list(config.mandatory_mentions)
    for mention in config.conditional_mentions:
        if evaluate(parse_condition(mention.condition), context):
            keys.append(mention.text_key)
    return tuple(keys)


def validate_identifiers(values: dict[str, str | None], rules: ValidationRules) -> dict[str, str]:
    """Check identifier values against their formats.

    Returns ``{identifier_id: message}`` for each value that does not match;
    missing or empty values and identifiers without a known format are skipped.
    """
    errors: dict[str, str] = {}
    for ident, value in values.items():
        pattern = rules.identifier_formats.get(ident)
        if pattern is None or not value:
            continue
        try:
            if not re.fullmatch(pattern, value):
                errors[ident] = f"{ident}: '{value}' does not match {pattern}"
        except re.error:
            logger.warning("Invalid identifier format for %s: %r", ident, pattern)
    return errors
