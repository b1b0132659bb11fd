from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PdpConfig:
    api_url: str
    api_key: str
    client_id: str
    provider: str | None = None


@dataclass(frozen=True)
class ChorusConfig:
    api_url: str
    client_id: str
    client_secret: str
    technical_account_id: str


@dataclass(frozen=True)
class ClearanceConfig:
    """Endpoint and client certificate for a clearance platform (SdI, KSeF, Verifactu, FACe)."""

    platform: str
    api_url: str
    pfx_path: str
    pfx_password: str
    tax_id: str | None = None  # NIP / NIF the session is opened for


@dataclass(frozen=True)
class PeppolConfig:
    """Our Peppol Access Point; recipients are found through the SML/SMP lookup."""

    access_point_url: str
    sender_id: str  # our participant ID, e.g. 0208:0123456789
    api_key: str
    sml_domain: str


@dataclass(frozen=True)
class SaftConfig:
    """Autoridade Tributária webservice credentials (Portugal)."""

    api_url: str
    username: str
    password: str
    nif: str
    software_certificate: str
