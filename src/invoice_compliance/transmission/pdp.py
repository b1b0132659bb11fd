from __future__ import annotations

import json
import logging

import requests.exceptions
from requests import get, post

from invoice_compliance.config import PLATFORM_TIMEOUT
from invoice_compliance.models.transmission import (
    ACCEPTED,
    DELIVERED,
    PENDING,
    REJECTED,
    SUBMITTED,
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
from invoice_compliance.transmission.validation import validate_platform_payload

logger = logging.getLogger(__name__)

PREFIX = "SUPERPDP"

_STATUS_MAP = {
    "PENDING": PENDING,
    "SUBMITTED": SUBMITTED,
    "ACCEPTED": ACCEPTED,
    "DELIVERED": DELIVERED,
    "REJECTED": REJECTED,
}


class PdpStrategy:
    """French accredited platform (PDP) over a bearer-key REST API."""

    name = "superpdp"
    platforms = frozenset({"superpdp", "pdp"})

    def __init__(self, settings: ComplianceSettingsStore, timeout: float = PLATFORM_TIMEOUT) -> None:
        self._settings = settings
        self._timeout = timeout

    def supports(self, platform: str) -> bool:
        return platform in self.platforms

    def send(self, payload: TransmissionPayload) -> TransmissionResult:
        validation = validate_platform_payload(payload)
        if not validation.valid:
            return validation_failure(PREFIX, validation)
        cfg = self._settings.pdp_config(payload.company_id)
        if cfg is None:
            return not_configured(PREFIX, "PDP")

        metadata = {
            "invoiceNumber": payload.invoice_number,
            "sender": {
                "siret": payload.sender.siret,
                "vatNumber": payload.sender.vat_number,
                "name": payload.sender.name,
            },
            "recipient": {
                "siret": payload.recipient.siret,
                "vatNumber": payload.recipient.vat_number,
                "name": payload.recipient.name,
            },
        }
        files = {"invoice": (f"invoice-{payload.invoice_number}.pdf", payload.pdf, "application/pdf")}
        if payload.xml:
            files["xml"] = (f"invoice-{payload.invoice_number}.xml", payload.xml, "application/xml")

        try:
            resp = post(
                f"{cfg.api_url}/invoices/submit",
                headers={"Authorization": f"Bearer {cfg.api_key}", "X-Client-Id": cfg.client_id},
                data={"metadata": json.dumps(metadata)},
                files=files,
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.error("PDP transmission of %s failed: %s", payload.invoice_number, exc)
            return network_failure(PREFIX, exc)

        if not resp.ok:
            logger.error("PDP API error: %s - %s", resp.status_code, resp.text[:200])
            return http_failure(PREFIX, resp)

        data = resp.json()
        status = str(data.get("status", "")).upper()
        if status == "REJECTED":
            return failure(
                data.get("errorCode") or f"{PREFIX}_REJECTED",
                data.get("message") or "Invoice rejected by the PDP",
                external_id=data.get("id"),
            )
        pending = status == "PENDING"
        return TransmissionResult(
            success=True,
            status=SUBMITTED if pending else ACCEPTED,
            external_id=data.get("id"),
            message="Invoice submitted, pending validation" if pending else "Invoice accepted",
        )

    def check_status(self, external_id: str, company_id: str | None = None, platform: str = "") -> str:
        cfg = self._settings.pdp_config(company_id) if company_id else None
        if cfg is None:
            logger.warning("PDP status check for %s without configuration", external_id)
            return PENDING
        resp = get(
            f"{cfg.api_url}/invoices/{external_id}/status",
            headers={"Authorization": f"Bearer {cfg.api_key}", "X-Client-Id": cfg.client_id},
            timeout=self._timeout,
        )
        if resp.status_code in (429, 502, 503, 504):
            raise RetryableHTTPError(f"PDP status check returned {resp.status_code}", response=resp)
        if not resp.ok:
            raise RuntimeError(f"PDP status check failed ({resp.status_code})")
        return _STATUS_MAP.get(str(resp.json().get("status", "")).upper(), PENDING)

    def cancel(self, external_id: str, company_id: str | None = None) -> bool:
        logger.warning("Cancellation is not supported by the PDP. ID: %s", external_id)
        return False
