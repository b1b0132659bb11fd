"""Peppol delivery through our Access Point.

The recipient's Access Point is found with the SML/SMP lookup: the SML
hostname is derived from an MD5 of the participant ID, and the SMP answers
with the endpoint and certificate for the Peppol BIS Billing 3.0 document
type. Our Access Point then signs and forwards the AS4 message.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import quote

import requests.exceptions
from lxml import etree
from requests import get, post

from invoice_compliance.config import PLATFORM_TIMEOUT
from invoice_compliance.models.settings import PeppolConfig
from invoice_compliance.models.transmission import (
    ACCEPTED,
    DELIVERED,
    PENDING,
    REJECTED,
    SUBMITTED,
    Party,
    TransmissionPayload,
    TransmissionResult,
    failure,
)
from invoice_compliance.services.exceptions import RetryableHTTPError
from invoice_compliance.services.settings import ComplianceSettingsStore
from invoice_compliance.transmission.base import (
    http_failure,
    network_failure,
    not_configured,
    validation_failure,
)
from invoice_compliance.transmission.validation import validate_peppol_payload

logger = logging.getLogger(__name__)

PREFIX = "PEPPOL"

PARTICIPANT_SCHEME = "iso6523-actorid-upis"
DOCUMENT_SCHEME = "busdox-docid-qns"
INVOICE_DOCUMENT_TYPE = (
    "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2::Invoice"
    "##urn:cen.eu:en16931:2017#compliant#urn:fdc:peppol.eu:2017:poacc:billing:3.0::2.1"
)
BILLING_PROCESS = "urn:fdc:peppol.eu:2017:poacc:billing:01:1.0"
DEFAULT_TRANSPORT = "peppol-transport-as4-v2_0"
# Belgian enterprise/VAT scheme, used when only a VAT number is known
VAT_SCHEME = "9925"
DEFAULT_SCHEME = "0088"

SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
EBMS_NS = "http://docs.oasis-open.org/ebxml-msg/ebms/v3.0/ns/core/200704/"
AP_PARTY_TYPE = "urn:fdc:peppol.eu:2017:identifiers:ap"

_STATUS_MAP = {
    "QUEUED": PENDING,
    "SENDING": SUBMITTED,
    "SENT": DELIVERED,
    "DELIVERED": DELIVERED,
    "ACKNOWLEDGED": ACCEPTED,
    "FAILED": REJECTED,
    "REJECTED": REJECTED,
}


@dataclass(frozen=True)
class SmpEndpoint:
    address: str
    certificate: str
    transport_profile: str


def participant_id(party: Party) -> str | None:
    """The party's Peppol ID, derived from its VAT number when none is given."""
    if party.peppol_id:
        return party.peppol_id
    if party.vat_number:
        return f"{VAT_SCHEME}:{party.vat_number}"
    return None


def split_participant_id(value: str | None, fallback: str | None = None) -> tuple[str, str]:
    """``"0088:123"`` -> ``("0088", "123")``; a bare ID gets the default scheme."""
    if not value:
        return DEFAULT_SCHEME, fallback or ""
    scheme, sep, ident = value.partition(":")
    if not sep:
        return DEFAULT_SCHEME, value
    return scheme or DEFAULT_SCHEME, ident or fallback or ""


def smp_hostname(participant: str, sml_domain: str) -> str:
    digest = hashlib.md5(participant.lower().encode("utf-8")).hexdigest()
    return f"B-{digest}.{PARTICIPANT_SCHEME}.{sml_domain}"


def smp_url(participant: str, sml_domain: str) -> str:
    participant_ref = quote(f"{PARTICIPANT_SCHEME}::{participant}", safe="")
    document_ref = quote(f"{DOCUMENT_SCHEME}::{INVOICE_DOCUMENT_TYPE}", safe="")
    host = smp_hostname(participant, sml_domain)
    return f"https://{host}/{participant_ref}/services/{document_ref}"


def _local(tag: str) -> str:
    return f"*[local-name()='{tag}']"


def parse_smp_response(content: bytes) -> SmpEndpoint | None:
    """Endpoint address, certificate and transport profile from an SMP answer."""
    root = etree.fromstring(content)
    endpoints = root.xpath(f"//{_local('Endpoint')}")
    address = root.xpath(
        f"string(//{_local('EndpointReference')}/{_local('Address')})"
    ).strip()
    if not address:
        return None
    certificate = root.xpath(f"string(//{_local('Certificate')})").strip()
    transport = endpoints[0].get("transportProfile") if endpoints else None
    return SmpEndpoint(
        address=address,
        certificate=certificate,
        transport_profile=transport or DEFAULT_TRANSPORT,
    )


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, f"{{{EBMS_NS}}}{tag}")
    if text is not None:
        el.text = text
    return el


def build_as4_envelope(
    payload: TransmissionPayload, message_id: str, sender_id: str, timestamp: datetime
) -> bytes:
    """ebMS3 user message header for the document; the Access Point signs and packages it."""
    envelope = etree.Element(f"{{{SOAP12_NS}}}Envelope", nsmap={"soap": SOAP12_NS, "eb": EBMS_NS})
    header = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Header")
    user_message = _sub(_sub(header, "Messaging"), "UserMessage")

    info = _sub(user_message, "MessageInfo")
    _sub(info, "Timestamp", timestamp.isoformat())
    _sub(info, "MessageId", message_id)

    party_info = _sub(user_message, "PartyInfo")
    for side, party, role in (("From", sender_id, "initiator"), ("To", "UNKNOWN", "responder")):
        el = _sub(party_info, side)
        _sub(el, "PartyId", party).set("type", AP_PARTY_TYPE)
        _sub(el, "Role", f"{EBMS_NS}{role}")

    collaboration = _sub(user_message, "CollaborationInfo")
    _sub(collaboration, "Service", BILLING_PROCESS).set("type", "cenbii-procid-ubl")
    _sub(collaboration, "Action", f"{DOCUMENT_SCHEME}::{INVOICE_DOCUMENT_TYPE}")
    _sub(collaboration, "ConversationId", payload.invoice_id)

    part = _sub(_sub(user_message, "PayloadInfo"), "PartInfo")
    part.set("href", f"cid:{payload.invoice_id}")
    props = _sub(part, "PartProperties")
    _sub(props, "Property", "application/xml").set("name", "MimeType")

    sender = split_participant_id(payload.sender.peppol_id, payload.sender.siret)
    recipient = split_participant_id(participant_id(payload.recipient), payload.recipient.siret)
    message_props = _sub(user_message, "MessageProperties")
    _sub(message_props, "Property", ":".join(sender)).set("name", "originalSender")
    _sub(message_props, "Property", ":".join(recipient)).set("name", "finalRecipient")

    etree.SubElement(envelope, f"{{{SOAP12_NS}}}Body")
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


class PeppolStrategy:
    name = "peppol"
    platforms = frozenset({"peppol", "xrechnung"})

    def __init__(self, settings: ComplianceSettingsStore, timeout: float = PLATFORM_TIMEOUT) -> None:
        self._settings = settings
        self._timeout = timeout

    def supports(self, platform: str) -> bool:
        return platform in self.platforms

    def _lookup(self, participant: str, cfg: PeppolConfig) -> SmpEndpoint | None:
        resp = get(
            smp_url(participant, cfg.sml_domain),
            headers={"Accept": "application/xml"},
            timeout=self._timeout,
        )
        if resp.status_code == 404:
            logger.warning("Participant %s is not registered in the Peppol network", participant)
            return None
        if resp.status_code in (429, 502, 503, 504):
            raise RetryableHTTPError(f"SMP lookup returned {resp.status_code}", response=resp)
        if not resp.ok:
            raise requests.exceptions.HTTPError(
                f"SMP lookup failed: {resp.status_code}", response=resp
            )
        return parse_smp_response(resp.content)

    def send(self, payload: TransmissionPayload) -> TransmissionResult:
        validation = validate_peppol_payload(payload)
        if not validation.valid:
            return validation_failure(PREFIX, validation)
        cfg = self._settings.peppol_config(payload.company_id)
        if cfg is None:
            return not_configured(PREFIX, "Peppol Access Point")

        recipient = participant_id(payload.recipient)
        message_id = f"{uuid.uuid4()}@{cfg.sender_id}"
        try:
            endpoint = self._lookup(recipient, cfg)
            if endpoint is None:
                return failure(
                    f"{PREFIX}_RECIPIENT_NOT_FOUND",
                    f"Recipient {recipient} not found in the Peppol network",
                )
            envelope = build_as4_envelope(payload, message_id, cfg.sender_id, datetime.now(UTC))
            resp = post(
                f"{cfg.access_point_url}/api/send",
                headers={
                    "Authorization": f"Bearer {cfg.api_key}",
                    "X-Sender-Id": cfg.sender_id,
                    "X-Recipient-Id": recipient,
                    "X-Recipient-Endpoint": endpoint.address,
                    "X-Recipient-Certificate": endpoint.certificate,
                    "X-Transport-Profile": endpoint.transport_profile,
                    "X-Document-Type": INVOICE_DOCUMENT_TYPE,
                    "X-Process-Id": BILLING_PROCESS,
                },
                files={
                    "envelope": ("envelope.xml", envelope, "application/soap+xml"),
                    "document": (
                        f"invoice-{payload.invoice_number}.xml", payload.xml, "application/xml"
                    ),
                },
                timeout=self._timeout,
            )
        except requests.exceptions.HTTPError as exc:
            logger.error("SMP lookup for %s failed: %s", recipient, exc)
            return http_failure(PREFIX, exc.response)
        except requests.exceptions.RequestException as exc:
            logger.error("Peppol transmission of %s failed: %s", payload.invoice_number, exc)
            return network_failure(PREFIX, exc)
        except etree.XMLSyntaxError as exc:
            logger.error("Unreadable SMP answer for %s: %s", recipient, exc)
            return failure(f"{PREFIX}_SMP_INVALID_RESPONSE", f"Unreadable SMP answer: {exc}")

        if not resp.ok:
            logger.error("Peppol Access Point error: %s - %s", resp.status_code, resp.text[:200])
            return http_failure(PREFIX, resp)

        data = resp.json()
        external_id = data.get("messageId") or message_id
        logger.info("Invoice %s sent via Peppol. Message ID: %s", payload.invoice_number, external_id)
        return TransmissionResult(
            success=True,
            status=SUBMITTED,
            external_id=external_id,
            message=f"Invoice sent via Peppol network to {recipient}",
        )

    def check_status(
        self, external_id: str, company_id: str | None = None, platform: str = ""
    ) -> str:
        cfg = self._settings.peppol_config(company_id) if company_id else None
        if cfg is None:
            logger.warning("Peppol status check for %s without configuration", external_id)
            return PENDING
        resp = get(
            f"{cfg.access_point_url}/api/messages/{quote(external_id, safe='')}/status",
            headers={"Authorization": f"Bearer {cfg.api_key}", "X-Sender-Id": cfg.sender_id},
            timeout=self._timeout,
        )
        if resp.status_code in (429, 502, 503, 504):
            raise RetryableHTTPError(
                f"Peppol status check returned {resp.status_code}", response=resp
            )
        if not resp.ok:
            raise RuntimeError(f"Peppol status check failed ({resp.status_code})")
        return _STATUS_MAP.get(str(resp.json().get("status", "")).upper(), PENDING)

    def cancel(self, external_id: str, company_id: str | None = None) -> bool:
        logger.warning("Peppol messages cannot be cancelled once sent. ID: %s", external_id)
        return False
