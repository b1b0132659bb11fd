from __future__ import annotations

import os
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "invoice-compliance"
KEYRING_SERVICE = "invoice-compliance"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (env var set in shell,
    dev layout, existing platformdirs directory).
    """
    from_env = os.environ.get("INVOICE_COMPLIANCE_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/invoice_compliance/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("INVOICE_COMPLIANCE_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("INVOICE_COMPLIANCE_DATA_DIR", "data", kind="data")


def get_countries_dir() -> Path:
    """Directory holding the bundled per-country YAML tables."""
    return Path(__file__).resolve().parent / "countries"


VIES_URL = "https://ec.europa.eu/taxation_customs/vies/services/checkVatService"
VIES_NS = "urn:ec.europa.eu:taxud:vies:services:checkVat:types"

VIES_TIMEOUT = 10
PLATFORM_TIMEOUT = 30

TAX_ID_CACHE_TTL = 24 * 60 * 60
CHORUS_TOKEN_TTL = 50 * 60

# Production SML; the acceptance network uses acc.edelivery.tech.ec.europa.eu
PEPPOL_SML_DOMAIN = "edelivery.tech.ec.europa.eu"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from None
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got '{raw}'")
    return value


def retry_max_attempts() -> int:
    return _env_int("INVOICE_COMPLIANCE_RETRY_MAX_ATTEMPTS", 3)


def breaker_settings() -> dict[str, int]:
    """Circuit breaker tuning read from env, with the built-in defaults."""
    return {
        "failure_threshold": _env_int("INVOICE_COMPLIANCE_BREAKER_THRESHOLD", 5),
        "reset_timeout": _env_int("INVOICE_COMPLIANCE_BREAKER_RESET_SECONDS", 60),
        "half_open_max_attempts": _env_int("INVOICE_COMPLIANCE_BREAKER_HALF_OPEN_ATTEMPTS", 3),
    }


def get_log_level() -> str:
    return os.environ.get("INVOICE_COMPLIANCE_LOG_LEVEL", "WARNING").upper()


def smtp_settings() -> dict | None:
    """SMTP relay settings from env, or None when no host is configured."""
    host = os.environ.get("INVOICE_COMPLIANCE_SMTP_HOST")
    if not host:
        return None
    return {
        "host": host,
        "port": _env_int("INVOICE_COMPLIANCE_SMTP_PORT", 587),
        "username": os.environ.get("INVOICE_COMPLIANCE_SMTP_USER") or None,
        "password": os.environ.get("INVOICE_COMPLIANCE_SMTP_PASSWORD") or None,
    }


# --- Keyring helpers ---


def _keyring_username(company_id: str, field: str) -> str:
    return f"{company_id}:{field}"


def get_secret(company_id: str, field: str) -> str | None:
    """Read a company secret from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, _keyring_username(company_id, field))
    except Exception:
        return None


def set_secret(company_id: str, field: str, value: str) -> bool:
    """Store a company secret in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, _keyring_username(company_id, field), value)
        return True
    except Exception:
        return False


def delete_secret(company_id: str, field: str) -> bool:
    """Remove a company secret from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, _keyring_username(company_id, field))
        return True
    except Exception:
        return False


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def save_yaml(path: Path, data: dict) -> Path:
    """Write *data* as YAML to *path* (atomic write)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(yaml.dump(data, default_flow_style=False, allow_unicode=True))
    os.replace(tmp, path)
    return path


def get_companies_dir() -> Path:
    return get_config_dir() / "companies"


def list_companies() -> list[str]:
    """Return sorted list of company ids (YAML file stems) from config/companies/."""
    companies_dir = get_companies_dir()
    if not companies_dir.exists():
        return []
    return sorted(f.stem for f in companies_dir.glob("*.yaml"))
