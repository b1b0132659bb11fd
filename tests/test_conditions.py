from __future__ import annotations

import pytest

from invoice_compliance.models.conditions import (
    And,
    Compare,
    Not,
    Or,
    PathCheck,
    Unknown,
    canonical_path,
    evaluate,
    parse_condition,
)
from invoice_compliance.models.context import (
    Customer,
    Place,
    Supplier,
    Transaction,
    TransactionContext,
)


@pytest.fixture
def context() -> TransactionContext:
    return TransactionContext(
        supplier=Supplier(
            country_code="FR", vat_number="FR12345678901", is_vat_registered=True, vat_exempt=False
        ),
        customer=Customer(
            country_code="DE",
            vat_number="DE123456789",
            is_vat_registered=True,
            is_public_entity=False,
        ),
        transaction=Transaction(
            type="B2B", nature="goods", is_domestic=False, is_intra_eu=True, is_export=False
        ),
        place=Place(delivery="DE", performance="DE", taxation="DE"),
    )


class TestParse:
    def test_legacy_path(self):
        assert canonical_path("transaction.isIntraEU") == "transaction.is_intra_eu"
        assert parse_condition("company.exemptVat") == PathCheck("supplier.vat_exempt")

    def test_unknown_path(self):
        assert parse_condition("invoice.isKsefTransmitted") == Unknown("invoice.isKsefTransmitted")

    def test_structured(self):
        cond = parse_condition(
            {
                "and": [
                    "transaction.isExport",
                    {"property": "transaction.nature", "operator": "equals", "value": "goods"},
                ]
            }
        )
        assert cond == And(
            (
                PathCheck("transaction.is_export"),
                Compare("transaction.nature", "equals", "goods"),
            )
        )

    def test_or_and_not(self):
        raw = {"or": [{"not": "transaction.isDomestic"}, "customer.isPublicEntity"]}
        cond = parse_condition(raw)
        assert cond == Or(
            (Not(PathCheck("transaction.is_domestic")), PathCheck("customer.is_public_entity"))
        )

    def test_unknown_operator(self):
        raw = {"property": "transaction.type", "operator": "like", "value": "B2B"}
        assert isinstance(parse_condition(raw), Unknown)

    def test_non_mapping(self):
        assert isinstance(parse_condition(42), Unknown)


class TestEvaluate:
    def test_path(self, context):
        assert evaluate(parse_condition("transaction.isIntraEU"), context)
        assert not evaluate(parse_condition("company.exemptVat"), context)

    @pytest.mark.parametrize(
        ("prop", "op", "value", "expected"),
        [
            ("customer.country_code", "equals", "DE", True),
            ("customer.country_code", "not_equals", "DE", False),
            ("customer.country_code", "in", ["AT", "DE"], True),
            ("customer.country_code", "not_in", ["AT", "DE"], False),
            ("customer.vat_number", "contains", "123", True),
            ("customer.vat_number", "matches", r"^DE\d{9}$", True),
            ("customer.vat_number", "exists", None, True),
            ("transaction.type", "gt", "B2A", True),
            ("transaction.type", "lte", "B2A", False),
            ("place.taxation", "gte", None, False),
        ],
    )
    def test_operators(self, context, prop, op, value, expected):
        assert evaluate(Compare(prop, op, value), context) is expected

    def test_invalid_regex_is_false(self, context):
        assert not evaluate(Compare("customer.vat_number", "matches", "(["), context)

    def test_composites(self, context):
        intra = PathCheck("transaction.is_intra_eu")
        export = PathCheck("transaction.is_export")
        assert evaluate(And((intra, Not(export))), context)
        assert evaluate(Or((export, PathCheck("customer.is_vat_registered"))), context)
        assert evaluate(And(()), context)
        assert not evaluate(Or(()), context)

    def test_unknown_is_false(self, context, caplog):
        assert not evaluate(Unknown("invoice.something"), context)
        assert "Unknown legal-mention condition" in caplog.text
