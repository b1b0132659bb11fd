"""Per-company transmission settings.

Non-secret fields live in ``<config>/companies/<company_id>.yaml``, one
mapping per platform section. Secret fields go to the OS keyring under
``<company_id>:<section>.<field>``; an environment variable named
``<SECTION>_<FIELD>`` (e.g. ``CHORUS_CLIENT_SECRET``) takes priority, for
single-company setups and CI.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from invoice_compliance import config as _config
from invoice_compliance.models.settings import (
    ChorusConfig,
    ClearanceConfig,
    PdpConfig,
    PeppolConfig,
    SaftConfig,
)
from invoice_compliance.services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CLEARANCE_PLATFORMS = ("sdi", "ksef", "verifactu", "face")

SECRET_FIELDS: dict[str, tuple[str, ...]] = {
    "pdp": ("api_key",),
    "chorus": ("client_secret",),
    "peppol": ("api_key",),
    "saft": ("password",),
    **{p: ("pfx_password",) for p in CLEARANCE_PLATFORMS},
}


def _secret_name(section: str, field: str) -> str:
    return f"{section}.{field}"


class ComplianceSettingsStore:
    def __init__(self, companies_dir: Path | None = None) -> None:
        self._dir = companies_dir

    @property
    def companies_dir(self) -> Path:
        return self._dir or _config.get_companies_dir()

    def _path(self, company_id: str) -> Path:
        return self.companies_dir / f"{company_id}.yaml"

    def load(self, company_id: str) -> dict[str, dict[str, Any]]:
        """Non-secret settings for *company_id* ({} when none are stored)."""
        path = self._path(company_id)
        if not path.exists():
            return {}
        return _config.load_yaml(path)

    def _secret(self, company_id: str, section: str, field: str) -> str | None:
        env_value = os.environ.get(f"{section}_{field}".upper())
        if env_value:
            return env_value
        return _config.get_secret(company_id, _secret_name(section, field))

    def update(self, company_id: str, section: str, values: dict[str, Any]) -> None:
        """Merge *values* into one platform section, routing secrets to the keyring.

        A secret value of ``None`` removes the stored secret.
        """
        data = self.load(company_id)
        current = dict(data.get(section) or {})
        secrets = SECRET_FIELDS.get(section, ())
        for field, value in values.items():
            if field in secrets:
                name = _secret_name(section, field)
                if value is None:
                    _config.delete_secret(company_id, name)
                elif not _config.set_secret(company_id, name, str(value)):
                    raise ConfigurationError(
                        f"Could not store {section}.{field} in the OS keyring. "
                        f"Set {section.upper()}_{field.upper()} in the environment instead."
                    )
                continue
            if value is None:
                current.pop(field, None)
            else:
                current[field] = value
        data[section] = current
        _config.save_yaml(self._path(company_id), data)
        logger.info("Updated %s settings for company %s", section, company_id)

    def masked(self, company_id: str) -> dict[str, dict[str, Any]]:
        """Settings safe to display: every secret becomes a ``<field>_set`` flag."""
        data = self.load(company_id)
        out: dict[str, dict[str, Any]] = {}
        for section in sorted(set(data) | set(SECRET_FIELDS)):
            values = dict(data.get(section) or {})
            secrets = SECRET_FIELDS.get(section, ())
            for field in secrets:
                values.pop(field, None)
                values[f"{field}_set"] = bool(self._secret(company_id, section, field))
            if section in data or any(values.get(f"{f}_set") for f in secrets):
                out[section] = values
        return out

    def pdp_config(self, company_id: str) -> PdpConfig | None:
        section = self.load(company_id).get("pdp") or {}
        api_key = self._secret(company_id, "pdp", "api_key")
        if not (section.get("api_url") and section.get("client_id") and api_key):
            return None
        return PdpConfig(
            api_url=str(section["api_url"]).rstrip("/"),
            api_key=api_key,
            client_id=str(section["client_id"]),
            provider=section.get("provider"),
        )

    def chorus_config(self, company_id: str) -> ChorusConfig | None:
        section = self.load(company_id).get("chorus") or {}
        secret = self._secret(company_id, "chorus", "client_secret")
        required = ("api_url", "client_id", "technical_account_id")
        if not (all(section.get(k) for k in required) and secret):
            return None
        return ChorusConfig(
            api_url=str(section["api_url"]).rstrip("/"),
            client_id=str(section["client_id"]),
            client_secret=secret,
            technical_account_id=str(section["technical_account_id"]),
        )

    def clearance_config(self, company_id: str, platform: str) -> ClearanceConfig | None:
        platform = platform.lower()
        if platform not in CLEARANCE_PLATFORMS:
            return None
        section = self.load(company_id).get(platform) or {}
        password = self._secret(company_id, platform, "pfx_password")
        if not (section.get("api_url") and section.get("pfx_path") and password):
            return None
        return ClearanceConfig(
            platform=platform,
            api_url=str(section["api_url"]).rstrip("/"),
            pfx_path=str(section["pfx_path"]),
            pfx_password=password,
            tax_id=section.get("tax_id"),
        )

    def peppol_config(self, company_id: str) -> PeppolConfig | None:
        section = self.load(company_id).get("peppol") or {}
        api_key = self._secret(company_id, "peppol", "api_key")
        if not (section.get("access_point_url") and section.get("sender_id") and api_key):
            return None
        return PeppolConfig(
            access_point_url=str(section["access_point_url"]).rstrip("/"),
            sender_id=str(section["sender_id"]),
            api_key=api_key,
            sml_domain=str(section.get("sml_domain") or _config.PEPPOL_SML_DOMAIN),
        )

    def saft_config(self, company_id: str) -> SaftConfig | None:
        section = self.load(company_id).get("saft") or {}
        password = self._secret(company_id, "saft", "password")
        required = ("api_url", "username", "nif", "software_certificate")
        if not (all(section.get(k) for k in required) and password):
            return None
        return SaftConfig(
            api_url=str(section["api_url"]).rstrip("/"),
            username=str(section["username"]),
            password=password,
            nif=str(section["nif"]),
            software_certificate=str(section["software_certificate"]),
        )

    def configured_platforms(self, company_id: str) -> list[str]:
        platforms = ["email"]
        if self.pdp_config(company_id) is not None:
            platforms.extend(["pdp", "superpdp"])
        if self.chorus_config(company_id) is not None:
            platforms.append("chorus")
        if self.peppol_config(company_id) is not None:
            platforms.extend(["peppol", "xrechnung"])
        platforms.extend(p for p in CLEARANCE_PLATFORMS if self.clearance_config(company_id, p))
        if self.saft_config(company_id) is not None:
            platforms.extend(["saft", "at-portugal"])
        return platforms
