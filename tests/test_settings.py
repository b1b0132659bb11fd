from __future__ import annotations

import pytest

from invoice_compliance import config as _config
from invoice_compliance.models.settings import (
    ChorusConfig,
    ClearanceConfig,
    PdpConfig,
    PeppolConfig,
    SaftConfig,
)
from invoice_compliance.services.exceptions import ConfigurationError
from invoice_compliance.services.settings import ComplianceSettingsStore


@pytest.fixture
def store(tmp_path) -> ComplianceSettingsStore:
    return ComplianceSettingsStore(tmp_path / "companies")


def _configure_pdp(store: ComplianceSettingsStore, company: str = "acme") -> None:
    store.update(
        company,
        "pdp",
        {"api_url": "https://pdp.example/v1/", "client_id": "cid", "api_key": "k-123"},
    )


class TestUpdate:
    def test_secrets_go_to_keyring(self, store, fake_keyring):
        _configure_pdp(store)
        assert fake_keyring == {"acme:pdp.api_key": "k-123"}
        assert store.load("acme") == {
            "pdp": {"api_url": "https://pdp.example/v1/", "client_id": "cid"}
        }

    def test_merges_section(self, store):
        _configure_pdp(store)
        store.update("acme", "pdp", {"provider": "superpdp"})
        assert store.load("acme")["pdp"]["client_id"] == "cid"
        assert store.load("acme")["pdp"]["provider"] == "superpdp"

    def test_none_removes_field_and_secret(self, store, fake_keyring):
        _configure_pdp(store)
        store.update("acme", "pdp", {"client_id": None, "api_key": None})
        assert "client_id" not in store.load("acme")["pdp"]
        assert fake_keyring == {}

    def test_keyring_failure(self, store, monkeypatch):
        monkeypatch.setattr(_config, "set_secret", lambda c, f, v: False)
        with pytest.raises(ConfigurationError, match="PDP_API_KEY"):
            _configure_pdp(store)

    def test_unknown_company_is_empty(self, store):
        assert store.load("nobody") == {}


class TestMasked:
    def test_flags_instead_of_values(self, store):
        _configure_pdp(store)
        masked = store.masked("acme")
        assert masked["pdp"] == {
            "api_url": "https://pdp.example/v1/",
            "client_id": "cid",
            "api_key_set": True,
        }
        assert "chorus" not in masked

    def test_env_secret_shows_section(self, store, monkeypatch):
        monkeypatch.setenv("CHORUS_CLIENT_SECRET", "s3cret")
        assert store.masked("acme")["chorus"] == {"client_secret_set": True}


class TestPlatformConfigs:
    def test_pdp(self, store):
        _configure_pdp(store)
        assert store.pdp_config("acme") == PdpConfig(
            api_url="https://pdp.example/v1", api_key="k-123", client_id="cid"
        )

    def test_pdp_incomplete(self, store):
        store.update("acme", "pdp", {"api_url": "https://pdp.example", "client_id": "cid"})
        assert store.pdp_config("acme") is None

    def test_env_overrides_keyring(self, store, monkeypatch):
        _configure_pdp(store)
        monkeypatch.setenv("PDP_API_KEY", "from-env")
        assert store.pdp_config("acme").api_key == "from-env"

    def test_chorus(self, store):
        store.update(
            "acme",
            "chorus",
            {
                "api_url": "https://api.piste.gouv.fr",
                "client_id": "piste-id",
                "technical_account_id": "TECH01",
                "client_secret": "piste-secret",
            },
        )
        assert store.chorus_config("acme") == ChorusConfig(
            api_url="https://api.piste.gouv.fr",
            client_id="piste-id",
            client_secret="piste-secret",
            technical_account_id="TECH01",
        )

    def test_clearance(self, store, monkeypatch):
        store.update("acme", "ksef", {"api_url": "https://ksef.example", "pfx_path": "/c.pfx"})
        assert store.clearance_config("acme", "ksef") is None
        monkeypatch.setenv("KSEF_PFX_PASSWORD", "pw")
        assert store.clearance_config("acme", "KSEF") == ClearanceConfig(
            platform="ksef", api_url="https://ksef.example", pfx_path="/c.pfx", pfx_password="pw"
        )

    def test_clearance_unknown_platform(self, store):
        assert store.clearance_config("acme", "peppol") is None

    def test_configured_platforms(self, store, monkeypatch):
        assert store.configured_platforms("acme") == ["email"]
        _configure_pdp(store)
        store.update("acme", "sdi", {"api_url": "https://sdi.example", "pfx_path": "/s.pfx"})
        monkeypatch.setenv("SDI_PFX_PASSWORD", "pw")
        assert store.configured_platforms("acme") == ["email", "pdp", "superpdp", "sdi"]

    def test_peppol_default_sml(self, store):
        store.update(
            "acme",
            "peppol",
            {"access_point_url": "https://ap.example/", "sender_id": "0208:0123", "api_key": "k"},
        )
        assert store.peppol_config("acme") == PeppolConfig(
            access_point_url="https://ap.example",
            sender_id="0208:0123",
            api_key="k",
            sml_domain=_config.PEPPOL_SML_DOMAIN,
        )

    def test_peppol_without_key(self, store):
        store.update("acme", "peppol", {"access_point_url": "https://ap.example", "sender_id": "x"})
        assert store.peppol_config("acme") is None

    def test_saft(self, store, monkeypatch):
        store.update(
            "acme",
            "saft",
            {
                "api_url": "https://at.example",
                "username": "555555555/1",
                "nif": "555555555",
                "software_certificate": "9999",
            },
        )
        assert store.saft_config("acme") is None
        monkeypatch.setenv("SAFT_PASSWORD", "at-pw")
        assert store.saft_config("acme") == SaftConfig(
            api_url="https://at.example",
            username="555555555/1",
            password="at-pw",
            nif="555555555",
            software_certificate="9999",
        )
        assert store.configured_platforms("acme") == ["email", "saft", "at-portugal"]
