"""Per-country compliance tables.

Each country ships as one YAML file under ``invoice_compliance/countries``.
Files are parsed once into frozen ``CountryConfig`` objects; lookups for an
unknown code return the generic table re-keyed to the requested code.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from pathlib import Path

import yaml

from invoice_compliance import config as _config
from invoice_compliance.models.country import CountryConfig
from invoice_compliance.services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

GENERIC = "generic"


class CountryRegistry:
    def __init__(self, directory: Path | None = None) -> None:
        self._directory = directory or _config.get_countries_dir()
        self._lock = threading.Lock()
        self._configs: dict[str, CountryConfig] | None = None
        self._generic: CountryConfig | None = None

    def _load_all(self) -> tuple[dict[str, CountryConfig], CountryConfig]:
        configs: dict[str, CountryConfig] = {}
        generic: CountryConfig | None = None
        for path in sorted(self._directory.glob("*.yaml")):
            try:
                data = _config.load_yaml(path)
                cfg = CountryConfig.from_dict(data)
            except (yaml.YAMLError, KeyError, TypeError, ValueError, ArithmeticError) as exc:
                raise ConfigurationError(f"Invalid country table {path.name}: {exc}") from exc
            if path.stem == GENERIC:
                generic = cfg
            else:
                configs[cfg.code] = cfg
        if generic is None:
            raise ConfigurationError(f"Missing {GENERIC}.yaml in {self._directory}")
        logger.debug("Loaded %d country tables from %s", len(configs), self._directory)
        return configs, generic

    def _ensure_loaded(self) -> dict[str, CountryConfig]:
        with self._lock:
            if self._configs is None:
                self._configs, self._generic = self._load_all()
            return self._configs

    def get(self, code: str | None) -> CountryConfig:
        """Return the table for *code*, or the generic fallback. Never raises for unknown codes."""
        configs = self._ensure_loaded()
        key = (code or "").upper()
        cfg = configs.get(key)
        if cfg is not None:
            return cfg
        logger.warning("No compliance table for country %r, using generic defaults", code)
        assert self._generic is not None
        if not key:
            return self._generic
        return dataclasses.replace(self._generic, code=key)

    def has(self, code: str | None) -> bool:
        return (code or "").upper() in self._ensure_loaded()

    def codes(self) -> list[str]:
        return sorted(self._ensure_loaded())

    def all(self) -> list[CountryConfig]:
        configs = self._ensure_loaded()
        return [configs[c] for c in sorted(configs)]

    def generic(self) -> CountryConfig:
        self._ensure_loaded()
        assert self._generic is not None
        return self._generic

    def reload(self) -> None:
        """Drop parsed tables; the next lookup re-reads the directory."""
        with self._lock:
            self._configs = None
            self._generic = None
