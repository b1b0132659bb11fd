"""Invoice communication to the Portuguese Autoridade Tributária (AT).

Each document is registered through the AT SOAP webservice, authenticated
with a WS-Security UsernameToken. The hash and ATCUD come from the
numbering ledger and travel in the payload metadata.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from datetime import UTC, date, datetime

import requests.exceptions
from lxml import etree
from requests import post

from invoice_compliance.config import PLATFORM_TIMEOUT
from invoice_compliance.models.settings import SaftConfig
from invoice_compliance.models.transmission import (
    ACCEPTED,
    PENDING,
    REJECTED,
    TransmissionPayload,
    TransmissionResult,
    failure,
)
from invoice_compliance.services.settings import ComplianceSettingsStore
from invoice_compliance.transmission.base import (
    http_failure,
    network_failure,
    not_configured,
    validation_failure,
)
from invoice_compliance.transmission.validation import validate_saft_payload

logger = logging.getLogger(__name__)

PREFIX = "SAFT"

SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSU_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"
AT_NS = "http://servicos.portaldasfinancas.gov.pt/faturas/"
PASSWORD_DIGEST = (
    "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-username-token-profile-1.0"
    "#PasswordDigest"
)
NONCE_ENCODING = (
    "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-soap-message-security-1.0"
    "#Base64Binary"
)

# Consumidor final
ANONYMOUS_CUSTOMER = "999999990"


def password_digest(nonce: bytes, created: str, password: str) -> str:
    """``Base64(SHA-1(nonce + created + password))``."""
    digest = hashlib.sha1(nonce + created.encode("utf-8") + password.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def _amount(value) -> str:
    return f"{float(value or 0):.2f}"


def _el(parent: etree._Element, tag: str, text: str | None = None, ns: str = AT_NS):
    el = etree.SubElement(parent, f"{{{ns}}}{tag}")
    if text is not None:
        el.text = text
    return el


def build_register_request(
    payload: TransmissionPayload,
    cfg: SaftConfig,
    nonce: bytes,
    created: str,
) -> bytes:
    envelope = etree.Element(
        f"{{{SOAP_NS}}}Envelope",
        nsmap={"soapenv": SOAP_NS, "wsse": WSSE_NS, "wsu": WSU_NS, "fat": AT_NS},
    )
    header = etree.SubElement(envelope, f"{{{SOAP_NS}}}Header")
    security = _el(header, "Security", ns=WSSE_NS)
    token = _el(security, "UsernameToken", ns=WSSE_NS)
    _el(token, "Username", f"{cfg.username}/{cfg.nif}", ns=WSSE_NS)
    _el(token, "Password", password_digest(nonce, created, cfg.password), ns=WSSE_NS).set(
        "Type", PASSWORD_DIGEST
    )
    _el(token, "Nonce", base64.b64encode(nonce).decode("ascii"), ns=WSSE_NS).set(
        "EncodingType", NONCE_ENCODING
    )
    _el(token, "Created", created, ns=WSU_NS)

    body = etree.SubElement(envelope, f"{{{SOAP_NS}}}Body")
    request = _el(body, "RegisterInvoiceRequest")
    _el(request, "TaxRegistrationNumber", cfg.nif)

    meta = payload.metadata
    invoice_date = meta.get("invoice_date") or date.today().isoformat()
    recipient = payload.recipient
    invoice = _el(request, "InvoiceHeader")
    _el(invoice, "InvoiceNo", payload.invoice_number)
    _el(invoice, "ATCUD", str(meta.get("atcud") or "0"))
    _el(invoice, "InvoiceDate", str(invoice_date))
    _el(invoice, "InvoiceType", str(meta.get("invoice_type") or "FT"))
    _el(invoice, "SelfBillingIndicator", "0")
    _el(invoice, "CustomerTaxID", (recipient.vat_number if recipient else None) or ANONYMOUS_CUSTOMER)
    _el(invoice, "CustomerTaxIDCountry", (recipient.country if recipient else None) or "PT")

    summary = _el(request, "InvoiceSummary")
    _el(summary, "TaxPayable", _amount(meta.get("total_vat")))
    _el(summary, "NetTotal", _amount(meta.get("total_ht")))
    _el(summary, "GrossTotal", _amount(meta.get("total_ttc")))

    _el(request, "SoftwareCertificateNumber", cfg.software_certificate)
    _el(request, "HashControl", str(meta["hash"])[:4])
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def _first_text(root: etree._Element, *names: str) -> str | None:
    for name in names:
        value = root.xpath(f"string(//*[local-name()='{name}'])")
        if value:
            return value.strip()
    return None


def parse_register_response(content: bytes) -> tuple[str, str | None, str | None]:
    """``(code, message, document_key)``; code ``"0"`` means the document was registered."""
    root = etree.fromstring(content)
    code = _first_text(root, "codigo", "CodigoResposta") or ""
    message = _first_text(root, "mensagem", "Mensagem")
    key = _first_text(root, "chaveDocumento", "ATDocCodeID")
    return code, message, key


class SaftStrategy:
    name = "saft"
    platforms = frozenset({"saft", "at-portugal"})

    def __init__(self, settings: ComplianceSettingsStore, timeout: float = PLATFORM_TIMEOUT) -> None:
        self._settings = settings
        self._timeout = timeout

    def supports(self, platform: str) -> bool:
        return platform in self.platforms

    def send(self, payload: TransmissionPayload) -> TransmissionResult:
        validation = validate_saft_payload(payload)
        if not validation.valid:
            return validation_failure(PREFIX, validation)
        cfg = self._settings.saft_config(payload.company_id)
        if cfg is None:
            return not_configured(PREFIX, "AT webservice")

        created = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        envelope = build_register_request(payload, cfg, os.urandom(16), created)
        try:
            resp = post(
                f"{cfg.api_url}/faturas",
                data=envelope,
                headers={
                    "Content-Type": "text/xml;charset=UTF-8",
                    "SOAPAction": "RegisterInvoice",
                },
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.error("AT communication of %s failed: %s", payload.invoice_number, exc)
            return network_failure(PREFIX, exc)

        if resp.status_code in (429, 502, 503, 504):
            logger.warning("AT webservice unavailable (%s)", resp.status_code)
            return http_failure(PREFIX, resp)
        if not resp.ok:
            logger.error("AT webservice error: %s - %s", resp.status_code, resp.text[:200])
            return http_failure(PREFIX, resp)

        try:
            code, message, key = parse_register_response(resp.content)
        except etree.XMLSyntaxError as exc:
            logger.error("Unreadable AT response for %s: %s", payload.invoice_number, exc)
            return failure(f"{PREFIX}_INVALID_RESPONSE", f"Unreadable AT response: {exc}")

        if code != "0":
            logger.error("AT rejected %s: [%s] %s", payload.invoice_number, code, message)
            return failure(
                f"{PREFIX}_REJECTED",
                message or f"AT rejected the document (code {code or 'missing'})",
                status=REJECTED,
            )

        logger.info("Invoice %s registered with AT. Key: %s", payload.invoice_number, key)
        return TransmissionResult(
            success=True,
            status=ACCEPTED,
            external_id=key,
            message="Invoice communicated to Autoridade Tributária",
        )

    def check_status(
        self, external_id: str, company_id: str | None = None, platform: str = ""
    ) -> str:
        # AT answers synchronously; a document key means it was registered
        return ACCEPTED if external_id else PENDING

    def cancel(self, external_id: str, company_id: str | None = None) -> bool:
        logger.warning("AT documents are voided with a credit note, not cancelled. ID: %s", external_id)
        return False
