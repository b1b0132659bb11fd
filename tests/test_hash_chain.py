from __future__ import annotations

import base64
import dataclasses
import hashlib
from decimal import Decimal

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from invoice_compliance.models.country import NumberingPolicy, QrCodePolicy
from invoice_compliance.models.ledger import LINK, TAMPER, ChainEntry, HashInput
from invoice_compliance.services import hash_chain
from invoice_compliance.services.exceptions import ChainIntegrityError, ConfigurationError

POLICY = NumberingPolicy(
    hash_chaining=True,
    hash_algorithm="SHA-256",
    hash_fields=("supplier_tax_id", "invoice_number", "issue_date", "total_ttc", "previous_hash"),
    hash_delimiter="|",
)


def _fields(n: int, previous: str) -> HashInput:
    return HashInput(
        invoice_number=f"A/26/{n:05d}",
        issue_date="2026-03-01",
        total_ht=Decimal("100"),
        total_ttc=Decimal("121.00") + n,
        supplier_tax_id="B12345678",
        previous_hash=previous,
    )


def _chain(length: int) -> list[ChainEntry]:
    entries = []
    previous = "0"
    for n in range(1, length + 1):
        fields = _fields(n, previous)
        result = hash_chain.generate_hash(fields, POLICY)
        entries.append(ChainEntry(sequence=n, hash=result.hash, fields=fields))
        previous = result.hash
    return entries


class TestGenerate:
    def test_input_string_uses_country_delimiter(self):
        result = hash_chain.generate_hash(_fields(1, "0"), POLICY)
        assert result.input_string == "B12345678|A/26/00001|2026-03-01|122.00|0"

    def test_digest_is_base64_sha256(self):
        result = hash_chain.generate_hash(_fields(1, "0"), POLICY)
        expected = base64.b64encode(hashlib.sha256(result.input_string.encode()).digest()).decode()
        assert result.hash == expected

    def test_legacy_field_names(self):
        policy = dataclasses.replace(
            POLICY, hash_fields=("invoiceDate", "grossTotal", "previousHash"), hash_delimiter=";"
        )
        assert hash_chain.build_input_string(_fields(1, "abc"), policy) == "2026-03-01;122.00;abc"

    def test_system_entry_date_defaults_to_issue_date(self):
        policy = dataclasses.replace(POLICY, hash_fields=("system_entry_date",))
        assert hash_chain.build_input_string(_fields(1, "0"), policy) == "2026-03-01"

    def test_unknown_field(self):
        policy = dataclasses.replace(POLICY, hash_fields=("colour",))
        with pytest.raises(ConfigurationError, match="colour"):
            hash_chain.generate_hash(_fields(1, "0"), policy)

    def test_unknown_algorithm(self):
        with pytest.raises(ConfigurationError, match="MD5"):
            hash_chain.compute_digest("x", "MD5")

    @pytest.mark.parametrize("name", ["SHA-1", "sha512", "SHA3-512"])
    def test_supported_algorithms(self, name):
        assert base64.b64decode(hash_chain.compute_digest("x", name))


class TestValidateChain:
    def test_round_trip(self):
        assert hash_chain.validate_chain(_chain(5), POLICY).valid

    def test_order_independent(self):
        assert hash_chain.validate_chain(list(reversed(_chain(4))), POLICY).valid

    def test_empty_chain(self):
        assert hash_chain.validate_chain([], POLICY).valid

    def test_tampered_field(self):
        entries = _chain(5)
        k = 3
        tampered = dataclasses.replace(
            entries[k - 1].fields, total_ttc=entries[k - 1].fields.total_ttc + 1
        )
        entries[k - 1] = dataclasses.replace(entries[k - 1], fields=tampered)
        result = hash_chain.validate_chain(entries, POLICY)
        assert not result.valid
        assert result.broken_at == k
        assert result.kind == TAMPER

    def test_broken_link(self):
        entries = _chain(5)
        k = 4
        fields = dataclasses.replace(entries[k - 1].fields, previous_hash="unrelated")
        entries[k - 1] = ChainEntry(
            sequence=k, hash=hash_chain.generate_hash(fields, POLICY).hash, fields=fields
        )
        result = hash_chain.validate_chain(entries, POLICY)
        assert not result.valid
        assert result.broken_at == k
        assert result.kind == LINK
        assert hash_chain.validate_single(entries[k - 1], POLICY).valid

    def test_validate_links_ignores_content(self):
        entries = _chain(3)
        entries[1] = dataclasses.replace(
            entries[1], fields=dataclasses.replace(entries[1].fields, issue_date="2030-01-01")
        )
        assert hash_chain.validate_links(entries).valid
        assert not hash_chain.validate_chain(entries, POLICY).valid

    def test_assert_chain_valid(self):
        entries = _chain(2)
        hash_chain.assert_chain_valid(entries, POLICY)
        entries[0] = dataclasses.replace(entries[0], hash="forged")
        with pytest.raises(ChainIntegrityError) as exc_info:
            hash_chain.assert_chain_valid(entries, POLICY)
        assert exc_info.value.result.broken_at == 1


def test_extract_hash_for_qr():
    assert hash_chain.extract_hash_for_qr("AbCdEfGh") == "AbCd"
    assert hash_chain.extract_hash_for_qr("AbCdEfGh", length=6) == "AbCdEf"


class TestQrContent:
    PORTUGAL = QrCodePolicy(
        required=True,
        content_fields=(
            "supplier_tax_id",
            "customer_tax_id",
            "invoice_number",
            "issue_date",
            "total_ttc",
            "hash",
        ),
    )

    def test_country_fields(self):
        fields = dataclasses.replace(_fields(1, "0"), customer_tax_id="501234567")
        content = hash_chain.build_qr_content(fields, "XyZwAbCd", self.PORTUGAL)
        assert content == "B12345678*501234567*A/26/00001*2026-03-01*122.00*XyZw"

    def test_default_fields(self):
        content = hash_chain.build_qr_content(_fields(1, "0"), "XyZw", QrCodePolicy(required=True))
        assert content == "B12345678*A/26/00001*122.00*XyZw"

    def test_hash_not_yet_known(self):
        content = hash_chain.build_qr_content(_fields(1, "0"), None, QrCodePolicy(required=True))
        assert content.endswith("*****")

    def test_not_required(self):
        assert hash_chain.build_qr_content(_fields(1, "0"), "XyZw", QrCodePolicy()) is None

    def test_unknown_field(self):
        policy = QrCodePolicy(required=True, content_fields=("atcud",))
        with pytest.raises(ConfigurationError, match="Unknown QR code field"):
            hash_chain.build_qr_content(_fields(1, "0"), "XyZw", policy)


class TestVerifySignature:
    @pytest.fixture(scope="class")
    def key(self):
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)

    @pytest.fixture(scope="class")
    def public_pem(self, key) -> bytes:
        return key.public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        )

    def _sign(self, key, data: str) -> str:
        signature = key.sign(data.encode(), padding.PKCS1v15(), hashes.SHA1())
        return base64.b64encode(signature).decode()

    def test_valid_signature(self, key, public_pem):
        data = "2026-03-01;2026-03-01T10:00:00;FT A/1;122.00;"
        assert hash_chain.verify_signature(data, self._sign(key, data), public_pem)

    def test_wrong_data(self, key, public_pem):
        signature = self._sign(key, "original")
        assert not hash_chain.verify_signature("modified", signature, public_pem)

    def test_garbage_signature(self, public_pem):
        assert not hash_chain.verify_signature("data", "not base64!", public_pem)

    def test_bad_key(self, key):
        assert not hash_chain.verify_signature("data", self._sign(key, "data"), b"not a pem")

    def test_unsupported_algorithm(self, key, public_pem):
        assert not hash_chain.verify_signature(
            "data", self._sign(key, "data"), public_pem, algorithm="MD5"
        )
