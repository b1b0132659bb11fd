from __future__ import annotations

import logging
from collections.abc import Iterable

from invoice_compliance.models.context import (
    B2B,
    B2C,
    B2G,
    GOODS,
    GOODS_ITEM_TYPES,
    MIXED,
    SERVICE_ITEM_TYPES,
    SERVICES,
    ClientFacts,
    CompanyFacts,
    Customer,
    ItemFacts,
    Place,
    Supplier,
    Transaction,
    TransactionContext,
)
from invoice_compliance.services.country_registry import CountryRegistry
from invoice_compliance.services.vies import TaxIdValidator

logger = logging.getLogger(__name__)


def resolve_nature(items: Iterable[ItemFacts] | None) -> str:
    """Classify a set of line items as goods, services or mixed (no items means services)."""
    types = {i.type for i in items or ()}
    has_goods = bool(types & GOODS_ITEM_TYPES)
    has_services = bool(types & SERVICE_ITEM_TYPES)
    if has_goods and has_services:
        return MIXED
    if has_goods:
        return GOODS
    return SERVICES


def resolve_type(client: ClientFacts) -> str:
    if client.is_public_entity:
        return B2G
    if client.kind == "COMPANY":
        return B2B
    return B2C


def resolve_taxation_place(
    *,
    supplier_country: str,
    supplier_is_eu: bool,
    customer_country: str | None,
    customer_vat_valid: bool,
    nature: str,
    tx_type: str,
    is_export: bool,
) -> str:
    """Country where VAT is due.

    Mixed goods/services invoices stay in the supplier country; a correct
    treatment would split the invoice per nature.
    """
    if not supplier_is_eu:
        return supplier_country
    if tx_type == B2C:
        return supplier_country
    if customer_country == supplier_country:
        return supplier_country
    if is_export:
        return supplier_country
    if nature in (GOODS, SERVICES) and customer_vat_valid and customer_country:
        return customer_country
    return supplier_country


class ContextBuilder:
    def __init__(self, countries: CountryRegistry, validator: TaxIdValidator) -> None:
        self._countries = countries
        self._validator = validator

    def build(
        self,
        company: CompanyFacts,
        client: ClientFacts,
        items: Iterable[ItemFacts] | None = None,
        delivery_country: str | None = None,
    ) -> TransactionContext:
        supplier_country = (company.country_code or "").upper()
        customer_country = client.country_code.upper() if client.country_code else None
        supplier_cfg = self._countries.get(supplier_country)
        customer_cfg = self._countries.get(customer_country) if customer_country else None
        customer_is_eu = customer_cfg is not None and customer_cfg.is_eu

        customer_vat_valid = False
        if client.vat_number and supplier_cfg.is_eu and customer_is_eu:
            customer_vat_valid = self._validator.validate(client.vat_number)

        is_domestic = supplier_country == customer_country
        is_intra_eu = supplier_cfg.is_eu and customer_is_eu and not is_domestic
        is_export = supplier_cfg.is_eu and customer_cfg is not None and not customer_cfg.is_eu

        nature = resolve_nature(items)
        tx_type = resolve_type(client)
        taxation = resolve_taxation_place(
            supplier_country=supplier_country,
            supplier_is_eu=supplier_cfg.is_eu,
            customer_country=customer_country,
            customer_vat_valid=customer_vat_valid,
            nature=nature,
            tx_type=tx_type,
            is_export=is_export,
        )
        logger.debug(
            "Context %s->%s type=%s nature=%s taxation=%s",
            supplier_country,
            customer_country,
            tx_type,
            nature,
            taxation,
        )

        return TransactionContext(
            supplier=Supplier(
                country_code=supplier_country,
                vat_number=company.vat_number,
                is_vat_registered=bool(company.vat_number) and not company.vat_exempt,
                vat_exempt=company.vat_exempt,
                identifiers=dict(company.identifiers),
            ),
            customer=Customer(
                country_code=customer_country,
                vat_number=client.vat_number,
                is_vat_registered=customer_vat_valid,
                is_public_entity=client.is_public_entity,
                identifiers=dict(client.identifiers),
            ),
            transaction=Transaction(
                type=tx_type,
                nature=nature,
                is_domestic=is_domestic,
                is_intra_eu=is_intra_eu,
                is_export=is_export,
            ),
            place=Place(
                delivery=(delivery_country or customer_country),
                performance=customer_country,
                taxation=taxation,
            ),
        )
