"""EU VIES tax-ID validation.

``CachedTaxIdValidator`` is deliberately fail-open: when VIES cannot answer,
the number is accepted so that a VIES outage never blocks invoicing. Such
answers are not cached, so the next call asks VIES again.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from typing import Any, Protocol

from lxml import etree
from requests import post

from invoice_compliance.config import TAX_ID_CACHE_TTL, VIES_NS, VIES_TIMEOUT, VIES_URL
from invoice_compliance.services.exceptions import RetryableHTTPError
from invoice_compliance.services.resilience import VIES_CHECK, retry_call
from invoice_compliance.utils.cache import TtlCache

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

_VIES_XPATH_NS = {"v": VIES_NS}


class TaxIdValidator(Protocol):
    def validate(self, tax_id: str) -> bool: ...


def normalize_tax_id(tax_id: str) -> str:
    return re.sub(r"\s", "", tax_id).upper()


def build_check_vat_envelope(country_code: str, number: str) -> bytes:
    envelope = etree.Element(
        f"{{{SOAP_ENV_NS}}}Envelope", nsmap={"soapenv": SOAP_ENV_NS, "urn": VIES_NS}
    )
    etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    check = etree.SubElement(body, f"{{{VIES_NS}}}checkVat")
    etree.SubElement(check, f"{{{VIES_NS}}}countryCode").text = country_code
    etree.SubElement(check, f"{{{VIES_NS}}}vatNumber").text = number
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def parse_check_vat_response(content: bytes) -> bool:
    """Return the ``<valid>`` flag of a checkVat response.

    Raises RuntimeError on SOAP faults or responses without a ``<valid>`` element.
    """
    root = etree.fromstring(content)
    fault = root.find(f".//{{{SOAP_ENV_NS}}}Fault")
    if fault is not None:
        raise RuntimeError(f"VIES fault: {fault.findtext('faultstring', default='').strip()}")
    valid = root.findtext(".//v:valid", namespaces=_VIES_XPATH_NS)
    if valid is None:
        raise RuntimeError("VIES response without <valid> element")
    return valid.strip().lower() == "true"


class ViesClient:
    """Talks to the VIES checkVat SOAP endpoint. Errors propagate to the caller."""

    def __init__(
        self,
        url: str = VIES_URL,
        timeout: float = VIES_TIMEOUT,
        *,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._sleep = sleep_func

    def validate(self, tax_id: str) -> bool:
        vat = normalize_tax_id(tax_id)
        if len(vat) < 3:
            return False
        envelope = build_check_vat_envelope(vat[:2], vat[2:])

        def _do_post() -> Any:
            resp = post(
                self.url,
                data=envelope,
                headers={"Content-Type": "text/xml;charset=UTF-8", "SOAPAction": ""},
                timeout=self.timeout,
            )
            if not resp.ok:
                if resp.status_code in (429, 502, 503, 504):
                    raise RetryableHTTPError(f"VIES returned {resp.status_code}", response=resp)
                raise RuntimeError(f"VIES returned {resp.status_code}")
            return resp

        resp = retry_call(_do_post, VIES_CHECK, sleep_func=self._sleep)
        return parse_check_vat_response(resp.content)


class CachedTaxIdValidator:
    """Caching, fail-open wrapper around a TaxIdValidator."""

    def __init__(
        self,
        validator: TaxIdValidator,
        cache: TtlCache[bool] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._validator = validator
        self._cache = cache if cache is not None else TtlCache(TAX_ID_CACHE_TTL, clock=clock)

    def validate(self, tax_id: str | None) -> bool:
        if not tax_id:
            return False
        key = normalize_tax_id(tax_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            valid = self._validator.validate(key)
        except Exception:
            logger.warning(
                "Tax ID validation failed for %s, accepting by default (fail-open)",
                key,
                exc_info=True,
            )
            return True
        self._cache.set(key, valid)
        return valid

    def clear_cache(self) -> None:
        self._cache.clear()
