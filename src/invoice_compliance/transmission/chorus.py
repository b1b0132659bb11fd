from __future__ import annotations

import logging

import requests.exceptions
from requests import get, post

from invoice_compliance.config import CHORUS_TOKEN_TTL, PLATFORM_TIMEOUT
from invoice_compliance.models.settings import ChorusConfig
from invoice_compliance.models.transmission import (
    ACCEPTED,
    DELIVERED,
    PENDING,
    REJECTED,
    SUBMITTED,
    VALIDATED,
    TransmissionPayload,
    TransmissionResult,
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
from invoice_compliance.utils.cache import TtlCache

logger = logging.getLogger(__name__)

PREFIX = "CHORUS"

# Chorus Pro flux statuses
_STATUS_MAP = {
    "DEPOSEE": SUBMITTED,
    "EN_COURS_DE_TRAITEMENT": SUBMITTED,
    "MISE_A_DISPOSITION": VALIDATED,
    "TRANSMISE": DELIVERED,
    "ACCEPTEE": ACCEPTED,
    "REFUSEE": REJECTED,
    "REJETEE": REJECTED,
}


def flux_syntax(fmt: str | None, has_xml: bool) -> str:
    if fmt == "ubl":
        return "IN_DP_E2_UBL_INVOICE"
    if fmt == "facturx" and has_xml:
        return "IN_DP_E2_FACTURX_EXTENDED"
    return "IN_DP_E2_FACTURX_MINIMUM"


class ChorusStrategy:
    """Chorus Pro (French public sector), OAuth client-credentials.

    Access tokens are cached per company in the injected *token_cache*.
    """

    name = "chorus"

    def __init__(
        self,
        settings: ComplianceSettingsStore,
        token_cache: TtlCache[str] | None = None,
        timeout: float = PLATFORM_TIMEOUT,
    ) -> None:
        self._settings = settings
        self._tokens = token_cache if token_cache is not None else TtlCache(CHORUS_TOKEN_TTL)
        self._timeout = timeout

    def supports(self, platform: str) -> bool:
        return platform == "chorus"

    def _access_token(self, company_id: str, cfg: ChorusConfig) -> str:
        cached = self._tokens.get(company_id)
        if cached:
            return cached
        resp = post(
            f"{cfg.api_url}/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": cfg.client_id,
                "client_secret": cfg.client_secret,
                "scope": "openid",
            },
            timeout=self._timeout,
        )
        if not resp.ok:
            message = f"Failed to obtain Chorus Pro access token: {resp.status_code}"
            if resp.status_code in (429, 502, 503, 504):
                raise RetryableHTTPError(message, response=resp)
            raise requests.exceptions.HTTPError(message, response=resp)
        data = resp.json()
        # Renew a minute before the platform expires it
        ttl = max(int(data.get("expires_in", CHORUS_TOKEN_TTL)) - 60, 0)
        self._tokens.set(company_id, data["access_token"], ttl=ttl)
        return data["access_token"]

    def send(self, payload: TransmissionPayload) -> TransmissionResult:
        validation = validate_platform_payload(payload, require_recipient_siret=True)
        if not validation.valid:
            return validation_failure(PREFIX, validation)
        cfg = self._settings.chorus_config(payload.company_id)
        if cfg is None:
            return not_configured(PREFIX, "Chorus Pro")

        if payload.xml:
            flux = (f"invoice-{payload.invoice_number}.xml", payload.xml, "application/xml")
        else:
            flux = (f"invoice-{payload.invoice_number}.pdf", payload.pdf, "application/pdf")

        try:
            token = self._access_token(payload.company_id, cfg)
            resp = post(
                f"{cfg.api_url}/cpro/factures/v1/deposer/flux",
                headers={"Authorization": f"Bearer {token}"},
                data={
                    "syntaxeFlux": flux_syntax(payload.format, bool(payload.xml)),
                    "idUtilisateurCourant": cfg.technical_account_id,
                },
                files={"fichierFlux": flux},
                timeout=self._timeout,
            )
        except requests.exceptions.HTTPError as exc:
            # Token request refused
            logger.error("Chorus Pro authentication failed: %s", exc)
            return http_failure(PREFIX, exc.response)
        except requests.exceptions.RequestException as exc:
            logger.error("Chorus Pro transmission of %s failed: %s", payload.invoice_number, exc)
            return network_failure(PREFIX, exc)

        if not resp.ok:
            if resp.status_code == 401:
                self._tokens.invalidate(payload.company_id)
            logger.error("Chorus Pro API error: %s - %s", resp.status_code, resp.text[:200])
            return http_failure(PREFIX, resp)

        data = resp.json()
        logger.info(
            "Invoice %s submitted to Chorus Pro with ID %s", payload.invoice_number, data.get("idFlux")
        )
        return TransmissionResult(
            success=True,
            status=SUBMITTED,
            external_id=data.get("idFlux"),
            message=f"Invoice submitted to Chorus Pro. Status: {data.get('statutCourant', '')}",
        )

    def check_status(self, external_id: str, company_id: str | None = None, platform: str = "") -> str:
        cfg = self._settings.chorus_config(company_id) if company_id else None
        if cfg is None or company_id is None:
            logger.warning("Chorus Pro status check for %s without configuration", external_id)
            return PENDING
        token = self._access_token(company_id, cfg)
        resp = get(
            f"{cfg.api_url}/cpro/factures/v1/consulter/statut",
            params={"idFlux": external_id},
            headers={"Authorization": f"Bearer {token}"},
            timeout=self._timeout,
        )
        if resp.status_code in (429, 502, 503, 504):
            raise RetryableHTTPError(
                f"Chorus Pro status check returned {resp.status_code}", response=resp
            )
        if not resp.ok:
            raise RuntimeError(f"Chorus Pro status check failed ({resp.status_code})")
        return _STATUS_MAP.get(resp.json().get("statutCourant", ""), PENDING)

    def cancel(self, external_id: str, company_id: str | None = None) -> bool:
        logger.warning("Cancellation not supported for Chorus Pro. ID: %s", external_id)
        return False
