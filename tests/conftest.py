from __future__ import annotations

import pytest

from invoice_compliance import config as _config
from invoice_compliance.models.context import ClientFacts, CompanyFacts
from invoice_compliance.models.transmission import Party, TransmissionPayload
from invoice_compliance.services.country_registry import CountryRegistry


class FakeClock:
    """Manually advanced monotonic clock for breakers and caches."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticValidator:
    """Tax-ID validator answering from a fixed set, recording every call."""

    def __init__(self, valid: set[str] | None = None, error: Exception | None = None) -> None:
        self.valid = valid or set()
        self.error = error
        self.calls: list[str] = []

    def validate(self, tax_id: str) -> bool:
        self.calls.append(tax_id)
        if self.error is not None:
            raise self.error
        return tax_id in self.valid


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Keep config/data lookups away from the developer's real directories."""
    monkeypatch.setenv("INVOICE_COMPLIANCE_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("INVOICE_COMPLIANCE_DATA_DIR", str(tmp_path / "data"))
    for name in ("PDP_API_KEY", "CHORUS_CLIENT_SECRET", "PEPPOL_API_KEY", "SAFT_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    for platform in ("SDI", "KSEF", "VERIFACTU", "FACE"):
        monkeypatch.delenv(f"{platform}_PFX_PASSWORD", raising=False)


@pytest.fixture(autouse=True)
def fake_keyring(monkeypatch) -> dict[str, str]:
    """In-memory replacement for the OS keyring helpers."""
    store: dict[str, str] = {}

    def _set(company_id, field, value):
        store[f"{company_id}:{field}"] = value
        return True

    def _delete(company_id, field):
        return store.pop(f"{company_id}:{field}", None) is not None

    monkeypatch.setattr(_config, "get_secret", lambda c, f: store.get(f"{c}:{f}"))
    monkeypatch.setattr(_config, "set_secret", _set)
    monkeypatch.setattr(_config, "delete_secret", _delete)
    return store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def registry() -> CountryRegistry:
    return CountryRegistry()


@pytest.fixture
def fr_company() -> CompanyFacts:
    return CompanyFacts(
        country_code="FR",
        vat_number="FR12345678901",
        identifiers={"siret": "12345678900012"},
    )


@pytest.fixture
def de_client() -> ClientFacts:
    return ClientFacts(country_code="DE", vat_number="DE123456789", kind="COMPANY")


@pytest.fixture
def payload() -> TransmissionPayload:
    return TransmissionPayload(
        company_id="acme",
        invoice_id="inv-1",
        invoice_number="2026-00001",
        pdf=b"%PDF-1.7 test",
        sender=Party(
            name="ACME SAS",
            email="billing@acme.fr",
            country="FR",
            siret="12345678900012",
            vat_number="FR12345678901",
        ),
        recipient=Party(
            name="Kunde GmbH",
            email="rechnung@kunde.de",
            country="DE",
            siret="98765432100019",
            vat_number="DE123456789",
        ),
        xml=b"<Invoice/>",
        format="facturx",
    )
