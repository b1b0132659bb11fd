from __future__ import annotations

import logging
from datetime import UTC, date, datetime

from invoice_compliance.models.country import ChannelConfig
from invoice_compliance.models.rules import TransmissionRules

logger = logging.getLogger(__name__)

EMAIL = "email"
PEPPOL = "peppol"
CLEARANCE = "clearance"
PLATFORM = "platform"
HASH_CHAIN = "hash_chain"

# platform -> (method, mandatory, async, deadline_days, icon)
_PLATFORMS: dict[str, tuple[str, bool, bool, int | None, str]] = {
    "email": (EMAIL, False, False, None, "mail"),
    "superpdp": (PLATFORM, False, True, 7, "send"),
    "pdp": (PLATFORM, False, True, 7, "send"),
    "chorus": (PLATFORM, True, True, 10, "building-2"),
    "peppol": (PEPPOL, False, True, None, "globe"),
    "xrechnung": (PEPPOL, True, True, None, "globe"),
    "sdi": (CLEARANCE, True, True, 12, "file-check"),
    "ksef": (CLEARANCE, False, True, 1, "shield-check"),
    "face": (CLEARANCE, True, True, None, "landmark"),
    "verifactu": (HASH_CHAIN, True, False, None, "link"),
    "saft": (HASH_CHAIN, True, False, None, "file-code"),
    "at-portugal": (HASH_CHAIN, True, False, None, "file-code"),
}


def known_platforms() -> list[str]:
    return sorted(_PLATFORMS)


def _today() -> date:
    return datetime.now(UTC).date()


def in_force(mandatory_from: str | None, on: date | None = None) -> bool:
    """Whether an obligation starting on *mandatory_from* applies *on* that day."""
    if not mandatory_from:
        return True
    try:
        start = date.fromisoformat(mandatory_from)
    except ValueError:
        logger.warning("Invalid mandatory_from date %r, treating as in force", mandatory_from)
        return True
    return (on or _today()) >= start


def describe(channel: ChannelConfig | str, on: date | None = None) -> TransmissionRules:
    """Expand a platform name (or channel config) into full transmission rules.

    Channel-level ``mandatory`` and ``deadline_days`` override the table. A
    channel with ``mandatory_from`` is optional before that date (*on*
    defaults to today).
    Unknown platforms degrade to plain, optional email delivery.
    """
    if isinstance(channel, str):
        channel = ChannelConfig(platform=channel)
    name = channel.platform.lower()
    entry = _PLATFORMS.get(name)
    if entry is None:
        logger.warning("Unknown transmission platform %r, falling back to email", channel.platform)
        name = "email"
        entry = _PLATFORMS[name]
        channel = ChannelConfig(platform=name)
    method, mandatory, is_async, deadline, icon = entry
    if channel.mandatory is not None:
        mandatory = channel.mandatory
    return TransmissionRules(
        method=method,
        mandatory=mandatory and in_force(channel.mandatory_from, on),
        platform=name,
        is_async=is_async,
        deadline_days=channel.deadline_days if channel.deadline_days is not None else deadline,
        label_key=f"transmission.{name}",
        icon=icon,
        mandatory_from=channel.mandatory_from,
    )
