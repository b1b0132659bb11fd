from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests.exceptions
from lxml import etree

from invoice_compliance.config import VIES_NS
from invoice_compliance.services.vies import (
    CachedTaxIdValidator,
    ViesClient,
    build_check_vat_envelope,
    normalize_tax_id,
    parse_check_vat_response,
)
from invoice_compliance.utils.cache import TtlCache
from tests.conftest import StaticValidator


def _vies_body(valid: bool) -> bytes:
    return (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soap:Body>"
        f'<checkVatResponse xmlns="{VIES_NS}">'
        "<countryCode>DE</countryCode><vatNumber>123456789</vatNumber>"
        f"<valid>{'true' if valid else 'false'}</valid>"
        "</checkVatResponse></soap:Body></soap:Envelope>"
    ).encode()


_FAULT = (
    b'<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
    b"<soap:Fault><faultcode>soap:Server</faultcode>"
    b"<faultstring>MS_UNAVAILABLE</faultstring></soap:Fault>"
    b"</soap:Body></soap:Envelope>"
)


def _mock_response(ok: bool = True, status_code: int = 200, content: bytes = b""):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status_code
    resp.content = content
    return resp


class TestEnvelope:
    def test_normalize(self):
        assert normalize_tax_id(" de 123 456\t789 ") == "DE123456789"

    def test_envelope_fields(self):
        root = etree.fromstring(build_check_vat_envelope("DE", "123456789"))
        ns = {"v": VIES_NS}
        assert root.findtext(".//v:countryCode", namespaces=ns) == "DE"
        assert root.findtext(".//v:vatNumber", namespaces=ns) == "123456789"

    def test_parse_valid(self):
        assert parse_check_vat_response(_vies_body(True)) is True
        assert parse_check_vat_response(_vies_body(False)) is False

    def test_parse_fault(self):
        with pytest.raises(RuntimeError, match="MS_UNAVAILABLE"):
            parse_check_vat_response(_FAULT)


class TestViesClient:
    @patch("invoice_compliance.services.vies.post")
    def test_splits_country_prefix(self, mock_post):
        mock_post.return_value = _mock_response(content=_vies_body(True))
        assert ViesClient().validate("de 123456789") is True
        sent = etree.fromstring(mock_post.call_args.kwargs["data"])
        assert sent.findtext(".//v:countryCode", namespaces={"v": VIES_NS}) == "DE"

    @patch("invoice_compliance.services.vies.post")
    def test_short_number_not_sent(self, mock_post):
        assert ViesClient().validate("DE") is False
        mock_post.assert_not_called()

    @patch("invoice_compliance.services.vies.post")
    def test_retries_unavailable(self, mock_post):
        mock_post.side_effect = [
            _mock_response(ok=False, status_code=503),
            _mock_response(content=_vies_body(True)),
        ]
        assert ViesClient(sleep_func=lambda _: None).validate("DE123456789") is True
        assert mock_post.call_count == 2

    @patch("invoice_compliance.services.vies.post")
    def test_http_error_propagates(self, mock_post):
        mock_post.return_value = _mock_response(ok=False, status_code=400)
        with pytest.raises(RuntimeError, match="400"):
            ViesClient(sleep_func=lambda _: None).validate("DE123456789")


class TestCachedTaxIdValidator:
    def test_caches_by_normalized_key(self, clock):
        inner = StaticValidator(valid={"DE123456789"})
        validator = CachedTaxIdValidator(inner, clock=clock)
        assert validator.validate("de 123456789") is True
        assert validator.validate("DE123456789") is True
        assert inner.calls == ["DE123456789"]

    def test_negative_answers_cached(self, clock):
        inner = StaticValidator()
        validator = CachedTaxIdValidator(inner, clock=clock)
        assert validator.validate("FR000") is False
        assert validator.validate("FR000") is False
        assert len(inner.calls) == 1

    def test_cache_expires_after_ttl(self, clock):
        inner = StaticValidator(valid={"IT123"})
        validator = CachedTaxIdValidator(inner, cache=TtlCache(60, clock=clock))
        validator.validate("IT123")
        clock.advance(61)
        validator.validate("IT123")
        assert len(inner.calls) == 2

    def test_fail_open_is_not_cached(self, clock):
        inner = StaticValidator(error=requests.exceptions.ConnectionError("down"))
        validator = CachedTaxIdValidator(inner, clock=clock)
        assert validator.validate("DE123456789") is True
        inner.error = None
        assert validator.validate("DE123456789") is False
        assert len(inner.calls) == 2

    def test_empty_id(self, clock):
        inner = StaticValidator()
        assert CachedTaxIdValidator(inner, clock=clock).validate("") is False
        assert inner.calls == []

    def test_clear_cache(self, clock):
        inner = StaticValidator(valid={"DE123456789"})
        validator = CachedTaxIdValidator(inner, clock=clock)
        validator.validate("DE123456789")
        validator.clear_cache()
        validator.validate("DE123456789")
        assert len(inner.calls) == 2
