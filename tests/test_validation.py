from __future__ import annotations

from dataclasses import replace

import pytest

from invoice_compliance.models.transmission import Party
from invoice_compliance.services.exceptions import PayloadValidationError
from invoice_compliance.transmission.validation import (
    assert_valid,
    is_valid_country_code,
    is_valid_email,
    validate_base_payload,
    validate_clearance_payload,
    validate_email_payload,
    validate_platform_payload,
)


def _fields(result) -> list[str]:
    return [e.field for e in result.errors]


class TestPrimitives:
    @pytest.mark.parametrize("value", ["a@b.fr", "billing+x@acme.co.uk"])
    def test_valid_email(self, value):
        assert is_valid_email(value)

    @pytest.mark.parametrize("value", ["", "no-at.fr", "a@b", "a b@c.fr"])
    def test_invalid_email(self, value):
        assert not is_valid_email(value)

    def test_country_code(self):
        assert is_valid_country_code("fr")
        assert not is_valid_country_code("FRA")
        assert not is_valid_country_code("F1")


class TestBasePayload:
    def test_valid(self, payload):
        assert validate_base_payload(payload).valid

    def test_missing_fields(self, payload):
        broken = replace(payload, invoice_id="", invoice_number="", pdf=b"")
        assert _fields(validate_base_payload(broken)) == ["invoice_id", "invoice_number", "pdf"]

    def test_party_checks(self, payload):
        broken = replace(
            payload,
            recipient=Party(name="", email="not-an-email", country="Germany"),
        )
        assert _fields(validate_base_payload(broken)) == [
            "recipient.name",
            "recipient.email",
            "recipient.country",
        ]


class TestEmailPayload:
    def test_recipient_email_required(self, payload):
        broken = replace(payload, recipient=replace(payload.recipient, email=None))
        assert _fields(validate_email_payload(broken)) == ["recipient.email"]


class TestPlatformPayload:
    def test_valid(self, payload):
        assert validate_platform_payload(payload, require_recipient_siret=True).valid

    def test_sender_siret(self, payload):
        broken = replace(payload, sender=replace(payload.sender, siret=None))
        assert _fields(validate_platform_payload(broken)) == ["sender.siret"]

    def test_recipient_vat_is_enough_without_siret_requirement(self, payload):
        recipient = replace(payload.recipient, siret=None)
        assert validate_platform_payload(replace(payload, recipient=recipient)).valid

    def test_recipient_siret_required(self, payload):
        recipient = replace(payload.recipient, siret=None)
        result = validate_platform_payload(
            replace(payload, recipient=recipient), require_recipient_siret=True
        )
        assert _fields(result) == ["recipient.siret"]

    def test_recipient_identifier(self, payload):
        recipient = replace(payload.recipient, siret=None, vat_number=None)
        assert _fields(validate_platform_payload(replace(payload, recipient=recipient))) == [
            "recipient"
        ]


class TestClearancePayload:
    def test_xml_and_vat_required(self, payload):
        broken = replace(payload, xml=None, sender=replace(payload.sender, vat_number=None))
        assert _fields(validate_clearance_payload(broken)) == ["xml", "sender.vat_number"]


def test_assert_valid(payload):
    assert_valid(validate_base_payload(payload), "email")
    broken = replace(payload, pdf=b"")
    with pytest.raises(PayloadValidationError, match="Validation failed for email: pdf") as exc_info:
        assert_valid(validate_base_payload(broken), "email")
    assert len(exc_info.value.errors) == 1
