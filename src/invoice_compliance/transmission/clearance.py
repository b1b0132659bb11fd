"""Clearance platforms reached over mutual TLS with the company's PKCS#12 certificate.

The document XML is produced elsewhere and passed through untouched; this
module only knows each platform's endpoints and how it names its receipt
identifier and status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import requests.exceptions
from requests_pkcs12 import get, post

from invoice_compliance.config import PLATFORM_TIMEOUT
from invoice_compliance.models.transmission import (
    ACCEPTED,
    DELIVERED,
    PENDING,
    REJECTED,
    SUBMITTED,
    VALIDATED,
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
from invoice_compliance.transmission.validation import validate_clearance_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClearanceEndpoint:
    label: str
    submit_path: str
    status_path: str  # formatted with {id}
    content_type: str
    id_field: str
    status_field: str
    statuses: dict[str, str]
    synchronous: bool = False


ENDPOINTS: dict[str, ClearanceEndpoint] = {
    "sdi": ClearanceEndpoint(
        label="SdI",
        submit_path="/fatture",
        status_path="/fatture/stato/{id}",
        content_type="application/xml",
        id_field="identificativoSdI",
        status_field="stato",
        statuses={
            "RC": SUBMITTED,
            "MC": DELIVERED,
            "DT": DELIVERED,
            "NE": ACCEPTED,
            "AT": ACCEPTED,
            "EC": REJECTED,
            "NS": REJECTED,
            "SE": REJECTED,
        },
    ),
    "ksef": ClearanceEndpoint(
        label="KSeF",
        submit_path="/online/Invoice/Send",
        status_path="/online/Invoice/Status/{id}",
        content_type="application/octet-stream",
        id_field="elementReferenceNumber",
        status_field="processingCode",
        statuses={"100": SUBMITTED, "200": ACCEPTED, "400": REJECTED, "410": REJECTED},
    ),
    "verifactu": ClearanceEndpoint(
        label="Verifactu",
        submit_path="/registro",
        status_path="/registro/{id}",
        content_type="application/xml",
        id_field="csv",
        status_field="estado",
        statuses={"CORRECTO": ACCEPTED, "PARCIALMENTE_CORRECTO": VALIDATED, "INCORRECTO": REJECTED},
        synchronous=True,
    ),
    "face": ClearanceEndpoint(
        label="FACe",
        submit_path="/facturas",
        status_path="/facturas/{id}/estado",
        content_type="application/xml",
        id_field="numeroRegistro",
        status_field="codigo",
        statuses={
            "1200": SUBMITTED,
            "1300": VALIDATED,
            "2400": ACCEPTED,
            "2500": DELIVERED,
            "2600": REJECTED,
            "3100": REJECTED,
        },
    ),
}


class ClearanceStrategy:
    name = "clearance"

    def __init__(self, settings: ComplianceSettingsStore, timeout: float = PLATFORM_TIMEOUT) -> None:
        self._settings = settings
        self._timeout = timeout

    def supports(self, platform: str) -> bool:
        return platform in ENDPOINTS

    def send(self, payload: TransmissionPayload) -> TransmissionResult:
        platform = str(payload.metadata.get("platform", "")).lower()
        endpoint = ENDPOINTS.get(platform)
        if endpoint is None:
            return failure("CLEARANCE_VALIDATION_ERROR", f"Unknown clearance platform '{platform}'")
        prefix = platform.upper()

        validation = validate_clearance_payload(payload)
        if not validation.valid:
            return validation_failure(prefix, validation)
        cfg = self._settings.clearance_config(payload.company_id, platform)
        if cfg is None:
            return not_configured(prefix, endpoint.label)

        headers = {"Content-Type": endpoint.content_type, "X-Invoice-Number": payload.invoice_number}
        if cfg.tax_id:
            headers["X-Tax-Id"] = cfg.tax_id
        if payload.recipient.platform_id:
            headers["X-Recipient-Code"] = payload.recipient.platform_id

        try:
            resp = post(
                f"{cfg.api_url}{endpoint.submit_path}",
                data=payload.xml,
                headers=headers,
                pkcs12_filename=cfg.pfx_path,
                pkcs12_password=cfg.pfx_password,
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.error("%s transmission of %s failed: %s", endpoint.label, payload.invoice_number, exc)
            return network_failure(prefix, exc)

        if not resp.ok:
            logger.error("%s API error: %s - %s", endpoint.label, resp.status_code, resp.text[:200])
            return http_failure(prefix, resp)

        data = resp.json()
        external_id = data.get(endpoint.id_field)
        status = endpoint.statuses.get(str(data.get(endpoint.status_field, "")).upper())
        if status == REJECTED:
            return failure(
                f"{prefix}_REJECTED",
                str(data.get("message") or data.get("descripcion") or f"Rejected by {endpoint.label}"),
                external_id=external_id,
            )
        if status is None:
            status = ACCEPTED if endpoint.synchronous else SUBMITTED
        logger.info("Invoice %s sent to %s (%s)", payload.invoice_number, endpoint.label, external_id)
        return TransmissionResult(
            success=True,
            status=status,
            external_id=external_id,
            message=f"Invoice {status} by {endpoint.label}",
            validation_url=data.get("validationUrl"),
        )

    def check_status(self, external_id: str, company_id: str | None = None, platform: str = "") -> str:
        endpoint = ENDPOINTS.get(platform)
        cfg = self._settings.clearance_config(company_id, platform) if company_id and endpoint else None
        if cfg is None or endpoint is None:
            logger.warning("Status check for %s on %r without configuration", external_id, platform)
            return PENDING
        resp = get(
            f"{cfg.api_url}{endpoint.status_path.format(id=external_id)}",
            pkcs12_filename=cfg.pfx_path,
            pkcs12_password=cfg.pfx_password,
            timeout=self._timeout,
        )
        if resp.status_code in (429, 502, 503, 504):
            raise RetryableHTTPError(
                f"{endpoint.label} status check returned {resp.status_code}", response=resp
            )
        if not resp.ok:
            raise RuntimeError(f"{endpoint.label} status check failed ({resp.status_code})")
        return endpoint.statuses.get(str(resp.json().get(endpoint.status_field, "")).upper(), PENDING)

    def cancel(self, external_id: str, company_id: str | None = None) -> bool:
        # None of the clearance platforms accept cancellation; a credit note is required
        logger.warning("Cancellation not supported by clearance platforms. ID: %s", external_id)
        return False
