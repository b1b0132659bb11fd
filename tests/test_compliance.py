from __future__ import annotations

import base64
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from invoice_compliance.models.context import ClientFacts, CompanyFacts, ItemFacts
from invoice_compliance.models.correction import CorrectionRequest, DocumentState
from invoice_compliance.models.ledger import ChainEntry, HashInput
from invoice_compliance.models.transmission import ACCEPTED, DELIVERED
from invoice_compliance.models.vat import LineItem
from invoice_compliance.services import numbering
from invoice_compliance.services.compliance import build_service
from invoice_compliance.services.exceptions import ConfigurationError, NumberingError
from tests.conftest import StaticValidator


@pytest.fixture
def mailer() -> MagicMock:
    return MagicMock()


@pytest.fixture
def service(tmp_path, mailer):
    return build_service(
        mailer,
        numbering_path=tmp_path / "numbering.json",
        companies_dir=tmp_path / "companies",
        tax_id_validator=StaticValidator(valid={"DE123456789"}),
    )


class TestEvaluate:
    def test_intra_eu_services(self, service, fr_company, de_client):
        evaluation = service.evaluate(fr_company, de_client, [ItemFacts("SERVICE")])
        assert evaluation.context.place.taxation == "DE"
        assert evaluation.rules.vat.reverse_charge
        totals = service.calculate_vat(
            [LineItem(quantity=Decimal("2"), unit_price=Decimal("500"))], evaluation.rules
        )
        assert totals.total_ht == Decimal("1000.00")
        assert totals.total_vat == Decimal("0.00")
        assert totals.total_ttc == Decimal("1000.00")

    def test_domestic_vat(self, service, fr_company):
        evaluation = service.evaluate(fr_company, ClientFacts(country_code="FR"))
        totals = service.calculate_vat(
            [LineItem(quantity=Decimal("1"), unit_price=Decimal("100"))], evaluation.rules
        )
        assert totals.total_ttc == Decimal("120.00")

    def test_resolve_rules_matches_evaluate(self, service, fr_company, de_client):
        evaluation = service.evaluate(fr_company, de_client)
        assert service.resolve_rules(evaluation.context) == evaluation.rules


class TestNumberingAndChain:
    def test_chained_numbers_verify(self, service):
        entries = []
        with patch.object(numbering, "_now", return_value=datetime(2026, 7, 1, tzinfo=UTC)):
            for total in ("121.00", "60.50"):
                document = HashInput(
                    invoice_number="",
                    issue_date="2026-07-01",
                    total_ht=Decimal("0"),
                    total_ttc=Decimal(total),
                    supplier_tax_id="B12345678",
                    customer_tax_id="A87654321",
                )
                generated = service.next_number("acme", "ES", series="A", document=document)
                entries.append(
                    ChainEntry(
                        sequence=generated.sequence,
                        hash=generated.hash.hash,
                        fields=document.with_link(generated.full_number, generated.previous_hash),
                    )
                )
        assert [e.fields.invoice_number for e in entries] == ["A/26/00001", "A/26/00002"]
        assert service.verify_chain("ES", entries).valid

    def test_document_types_numbered_separately(self, service):
        assert service.next_number("acme", "DE").sequence == 1
        assert service.next_number("acme", "DE", document_type="quote").sequence == 1
        assert service.next_number("acme", "DE").sequence == 2


class TestDocumentSecurity:
    def _document(self) -> HashInput:
        return HashInput(
            invoice_number="FT/26/00001",
            issue_date="2026-07-01",
            total_ht=Decimal("100"),
            total_ttc=Decimal("123"),
            supplier_tax_id="555555555",
            customer_tax_id="501234567",
        )

    def test_portugal_series_must_be_registered(self, service):
        with pytest.raises(NumberingError, match="not registered"):
            service.next_number("acme", "PT", series="FT")
        service.register_series("acme", "FT", "CSDF7T5H")
        generated = service.next_number("acme", "PT", series="FT")
        assert generated.atcud == "CSDF7T5H-1"

    def test_qr_content(self, service):
        content = service.qr_content("PT", self._document(), "AbCdEfGh")
        assert content == "555555555*501234567*FT/26/00001*2026-07-01*123.00*AbCd"
        assert service.qr_content("FR", self._document(), "AbCdEfGh") is None

    def test_verify_rsa_signature(self, service):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        public_pem = key.public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        data = "2026-07-01;2026-07-01T10:00:00;FT/26/00001;123.00;"
        signature = base64.b64encode(
            key.sign(data.encode(), padding.PKCS1v15(), hashes.SHA1())
        ).decode()
        assert service.verify_signature("PT", data, signature, public_pem)
        assert not service.verify_signature("PT", data + "x", signature, public_pem)

    @pytest.mark.parametrize(("country", "message"), [
        ("FR", "No document signature"),
        ("ES", "cannot be verified locally"),
    ])
    def test_signature_not_verifiable(self, service, country, message):
        with pytest.raises(ConfigurationError, match=message):
            service.verify_signature(country, "data", "c2ln", b"")


class TestCorrections:
    def _document(self) -> DocumentState:
        return DocumentState(
            invoice_id="inv-1",
            invoice_number="FT2026-00001",
            issue_date="2026-01-10",
            total_ht=Decimal("100.00"),
            total_vat=Decimal("22.00"),
            total_ttc=Decimal("122.00"),
            status="SENT",
            platform_id="SDI-99",
        )

    def test_evaluate(self, service):
        result = service.evaluate_correction(self._document(), "IT")
        assert result.method == "credit_note"

    def test_correct(self, service):
        result = service.correct(
            self._document(),
            CorrectionRequest("Wrong amount", partial_amount=Decimal("61")),
            company_id="acme",
            country_code="IT",
        )
        note = result.credit_note
        assert note.reason_code == "TD04"
        assert note.total_ht == Decimal("-50.00")
        assert note.total_ttc == Decimal("-61.00")
        assert note.number.endswith("-00001")


class TestTransmit:
    def test_fallback_email(self, service, mailer, fr_company, payload):
        rules = service.evaluate(fr_company, ClientFacts(country_code="US")).rules
        result = service.transmit(rules, payload)
        assert result.status == DELIVERED
        mailer.assert_called_once()

    def test_platform_not_configured(self, service, fr_company, de_client, payload):
        rules = service.evaluate(fr_company, de_client).rules
        result = service.transmit(rules, payload)
        assert result.error_code == "SUPERPDP_NOT_CONFIGURED"
        assert result.retries_attempted == 1

    @patch("invoice_compliance.transmission.pdp.post")
    def test_configured_platform(self, mock_post, service, fr_company, de_client, payload):
        service.settings.update(
            "acme", "pdp", {"api_url": "https://pdp.example", "client_id": "c", "api_key": "k"}
        )
        mock_post.return_value = MagicMock(
            ok=True, status_code=200, json=MagicMock(return_value={"id": "p-1"})
        )
        rules = service.evaluate(fr_company, de_client).rules
        result = service.transmit(rules, payload)
        assert result.status == ACCEPTED
        assert result.external_id == "p-1"

    def test_portugal_uses_at_webservice(self, service, mailer, payload):
        company = CompanyFacts(country_code="PT", vat_number="PT555555555")
        rules = service.evaluate(company, ClientFacts(country_code="PT", kind="INDIVIDUAL")).rules
        assert rules.transmission.platform == "saft"
        result = service.transmit(rules, replace(payload, metadata={"hash": "abcd", "total_ttc": 123}))
        assert result.error_code == "SAFT_NOT_CONFIGURED"
        mailer.assert_not_called()

    def test_belgian_public_sector_uses_peppol(self, service, mailer, payload):
        company = CompanyFacts(country_code="BE", vat_number="BE0123456789")
        client = ClientFacts(country_code="BE", vat_number="BE0987654321", is_public_entity=True)
        rules = service.evaluate(company, client).rules
        assert rules.transmission.platform == "peppol"
        assert rules.transmission.mandatory
        result = service.transmit(rules, payload)
        assert result.error_code == "PEPPOL_NOT_CONFIGURED"
        mailer.assert_not_called()

    def test_status_and_cancel(self, service):
        assert service.check_status("email", "x") == DELIVERED
        assert service.cancel("email", "x").error_code == "CANCEL_NOT_SUPPORTED"


def test_default_mailer_unconfigured(tmp_path, monkeypatch, fr_company, payload):
    monkeypatch.delenv("INVOICE_COMPLIANCE_SMTP_HOST", raising=False)
    service = build_service(
        numbering_path=tmp_path / "n.json",
        companies_dir=tmp_path / "companies",
        tax_id_validator=StaticValidator(),
    )
    rules = service.evaluate(fr_company, ClientFacts(country_code="US")).rules
    result = service.transmit(rules, payload)
    assert result.error_code == "EMAIL_SEND_FAILED"
    assert "INVOICE_COMPLIANCE_SMTP_HOST" in result.message
