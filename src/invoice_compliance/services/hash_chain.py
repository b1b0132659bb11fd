"""Document hash chaining.

``hash = base64(H(f1 <d> f2 <d> ... <d> previous_hash))`` where the ordered
field list, the delimiter ``<d>`` and the digest ``H`` come from the
country's numbering policy. The first document of a chain links to ``"0"``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from collections.abc import Callable, Iterable
from decimal import ROUND_HALF_UP, Decimal

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from invoice_compliance.models.country import NumberingPolicy, QrCodePolicy
from invoice_compliance.models.ledger import (
    GENESIS_HASH,
    LINK,
    TAMPER,
    ChainEntry,
    ChainValidationResult,
    HashInput,
    HashResult,
)
from invoice_compliance.services.exceptions import ChainIntegrityError, ConfigurationError

logger = logging.getLogger(__name__)

_ALGORITHMS = {
    "SHA256": "sha256",
    "SHA1": "sha1",
    "SHA512": "sha512",
    "SHA3512": "sha3_512",
}

_SIGNATURE_HASHES = {
    "SHA1": hashes.SHA1,
    "SHA256": hashes.SHA256,
    "SHA512": hashes.SHA512,
}


def _money(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):.2f}"


_FIELDS: dict[str, Callable[[HashInput], str]] = {
    "invoice_number": lambda h: h.invoice_number,
    "issue_date": lambda h: h.issue_date,
    "system_entry_date": lambda h: h.system_entry_date or h.issue_date,
    "total_ht": lambda h: _money(h.total_ht),
    "total_ttc": lambda h: _money(h.total_ttc),
    "supplier_tax_id": lambda h: h.supplier_tax_id,
    "customer_tax_id": lambda h: h.customer_tax_id or "",
    "previous_hash": lambda h: h.previous_hash or GENESIS_HASH,
}

# Names used by the tax authorities' own documentation
_FIELD_ALIASES = {
    "invoiceNumber": "invoice_number",
    "issueDate": "issue_date",
    "invoiceDate": "issue_date",
    "systemEntryDate": "system_entry_date",
    "totalHT": "total_ht",
    "totalTTC": "total_ttc",
    "grossTotal": "total_ttc",
    "nif": "supplier_tax_id",
    "supplierNIF": "supplier_tax_id",
    "customerNIF": "customer_tax_id",
    "nifClient": "customer_tax_id",
    "previousHash": "previous_hash",
}


def _normalize_algorithm(algorithm: str) -> str:
    return algorithm.upper().replace("-", "").replace("_", "")


def compute_digest(data: str, algorithm: str) -> str:
    """Base64 digest of *data* (UTF-8). Raises ConfigurationError for unknown algorithms."""
    name = _ALGORITHMS.get(_normalize_algorithm(algorithm))
    if name is None:
        raise ConfigurationError(f"Unsupported hash algorithm: {algorithm}")
    digest = hashlib.new(name, data.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def build_input_string(fields: HashInput, policy: NumberingPolicy) -> str:
    values = []
    for name in policy.hash_fields:
        accessor = _FIELDS.get(_FIELD_ALIASES.get(name, name))
        if accessor is None:
            raise ConfigurationError(f"Unknown hash field: {name}")
        values.append(accessor(fields))
    return policy.hash_delimiter.join(values)


def generate_hash(fields: HashInput, policy: NumberingPolicy) -> HashResult:
    input_string = build_input_string(fields, policy)
    digest = compute_digest(input_string, policy.hash_algorithm)
    return HashResult(hash=digest, input_string=input_string)


def _sorted(entries: Iterable[ChainEntry]) -> list[ChainEntry]:
    return sorted(entries, key=lambda e: e.sequence)


def validate_links(
    entries: Iterable[ChainEntry], *, first_previous: str = GENESIS_HASH
) -> ChainValidationResult:
    """Check only that each entry points at its predecessor's hash."""
    previous = first_previous
    for entry in _sorted(entries):
        if entry.fields.previous_hash != previous:
            return ChainValidationResult(
                valid=False,
                broken_at=entry.sequence,
                kind=LINK,
                message=(
                    f"Chain broken at sequence {entry.sequence}: expected previous hash "
                    f"'{previous}', got '{entry.fields.previous_hash}'"
                ),
            )
        previous = entry.hash
    return ChainValidationResult(valid=True)


def validate_chain(
    entries: Iterable[ChainEntry],
    policy: NumberingPolicy,
    *,
    first_previous: str = GENESIS_HASH,
) -> ChainValidationResult:
    """Verify links and recompute every hash, stopping at the first break.

    A wrong ``previous_hash`` is reported as a ``link`` break; a stored hash
    that no longer matches the entry's own fields as a ``tamper`` break.
    """
    previous = first_previous
    for entry in _sorted(entries):
        if entry.fields.previous_hash != previous:
            return ChainValidationResult(
                valid=False,
                broken_at=entry.sequence,
                kind=LINK,
                message=(
                    f"Chain broken at sequence {entry.sequence}: previous hash mismatch, "
                    f"expected '{previous}', got '{entry.fields.previous_hash}'"
                ),
            )
        recomputed = generate_hash(entry.fields, policy).hash
        if recomputed != entry.hash:
            return ChainValidationResult(
                valid=False,
                broken_at=entry.sequence,
                kind=TAMPER,
                message=(
                    f"Hash mismatch at sequence {entry.sequence}: computed '{recomputed}', "
                    f"stored '{entry.hash}'. Data may have been tampered."
                ),
            )
        previous = entry.hash
    return ChainValidationResult(valid=True)


def assert_chain_valid(entries: Iterable[ChainEntry], policy: NumberingPolicy) -> None:
    result = validate_chain(entries, policy)
    if not result.valid:
        raise ChainIntegrityError(result)


def validate_single(entry: ChainEntry, policy: NumberingPolicy) -> ChainValidationResult:
    recomputed = generate_hash(entry.fields, policy).hash
    if recomputed != entry.hash:
        return ChainValidationResult(
            valid=False,
            broken_at=entry.sequence,
            kind=TAMPER,
            message=f"Hash mismatch: computed '{recomputed}', stored '{entry.hash}'",
        )
    return ChainValidationResult(valid=True)


def extract_hash_for_qr(hash_value: str, length: int = 4) -> str:
    """Leading characters of a hash, as printed next to the QR code."""
    return hash_value[:length]


def verify_signature(
    data: str,
    signature_b64: str,
    public_key_pem: bytes,
    algorithm: str = "SHA-1",
) -> bool:
    """Verify an RSA PKCS#1 v1.5 signature over *data*. Any failure yields False."""
    hash_cls = _SIGNATURE_HASHES.get(_normalize_algorithm(algorithm))
    if hash_cls is None:
        logger.error("Unsupported signature algorithm %s", algorithm)
        return False
    try:
        key = serialization.load_pem_public_key(public_key_pem)
        if not isinstance(key, rsa.RSAPublicKey):
            logger.error("Signature key is not an RSA public key")
            return False
        signature = base64.b64decode(signature_b64, validate=True)
        key.verify(signature, data.encode("utf-8"), padding.PKCS1v15(), hash_cls())
    except InvalidSignature:
        return False
    except (ValueError, TypeError, UnsupportedAlgorithm):
        logger.error("Failed to verify signature", exc_info=True)
        return False
    return True


QR_DEFAULT_FIELDS = ("supplier_tax_id", "invoice_number", "total_ttc", "hash")
QR_SEPARATOR = "*"


def build_qr_content(
    fields: HashInput, hash_value: str | None, policy: QrCodePolicy
) -> str | None:
    """Text encoded in the document's QR code, or None when none is required.

    The policy's content fields are joined with ``*``; ``hash`` contributes
    the leading characters of *hash_value* (``****`` before it is known).
    """
    if not policy.required:
        return None
    values = []
    for name in policy.content_fields or QR_DEFAULT_FIELDS:
        if name == "hash":
            values.append(extract_hash_for_qr(hash_value) if hash_value else "****")
            continue
        accessor = _FIELDS.get(_FIELD_ALIASES.get(name, name))
        if accessor is None:
            raise ConfigurationError(f"Unknown QR code field: {name}")
        values.append(accessor(fields))
    return QR_SEPARATOR.join(values)
