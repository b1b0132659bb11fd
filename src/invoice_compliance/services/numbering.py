"""Document numbering per (company, series, document type).

Every issued number goes through one atomic read-compute-write on the
store. When the country chains hashes, the new hash is computed inside that
same section, from the state being advanced.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, TypeVar

from filelock import FileLock, Timeout

from invoice_compliance import config as _config
from invoice_compliance.models.country import NumberingPolicy
from invoice_compliance.models.ledger import (
    GENESIS_HASH,
    GeneratedNumber,
    HashInput,
    HashResult,
    NumberingKey,
    NumberingState,
)
from invoice_compliance.services import hash_chain
from invoice_compliance.services.exceptions import NumberingError

T = TypeVar("T")

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 10.0


def _now() -> datetime:
    return datetime.now(UTC)


class NumberingStore(Protocol):
    def read(self, key: NumberingKey) -> NumberingState | None: ...

    def update(
        self,
        key: NumberingKey,
        fn: Callable[[NumberingState | None], tuple[NumberingState, T]],
    ) -> T: ...


class JsonNumberingStore:
    """Numbering states in a single JSON file, one entry per storage key."""

    def __init__(self, path: Path | None = None, *, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self._path = path
        self._lock_timeout = lock_timeout
        self._thread_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path or _config.get_data_dir() / "numbering.json"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the in-process and file locks during read-modify-write."""
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._thread_lock:
            try:
                with FileLock(path.with_suffix(".lock"), timeout=self._lock_timeout):
                    yield
            except Timeout as exc:
                raise NumberingError(f"Timed out waiting for numbering lock {path}") from exc

    def _load(self) -> dict[str, dict]:
        path = self.path
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, ValueError) as exc:
            # Never restart sequences from a file we cannot read
            raise NumberingError(f"Numbering state {path} is corrupt: {exc}") from exc

    def _save(self, data: dict[str, dict]) -> None:
        path = self.path
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n")
        os.replace(tmp, path)

    def read(self, key: NumberingKey) -> NumberingState | None:
        with self._locked():
            raw = self._load().get(key.storage_key())
        return NumberingState.from_dict(raw) if raw else None

    def update(
        self,
        key: NumberingKey,
        fn: Callable[[NumberingState | None], tuple[NumberingState, T]],
    ) -> T:
        """Apply *fn* to the current state and persist its result atomically.

        If *fn* raises, nothing is written.
        """
        with self._locked():
            data = self._load()
            raw = data.get(key.storage_key())
            new_state, result = fn(NumberingState.from_dict(raw) if raw else None)
            data[key.storage_key()] = new_state.to_dict()
            try:
                self._save(data)
            except OSError as exc:
                raise NumberingError(
                    f"Could not persist numbering state: {exc}", key.storage_key()
                ) from exc
            return result

    def items(self) -> dict[str, NumberingState]:
        with self._locked():
            return {k: NumberingState.from_dict(v) for k, v in self._load().items()}


def should_reset(state: NumberingState, policy: NumberingPolicy, now: datetime) -> bool:
    if policy.reset_period == "yearly":
        return state.year != now.year
    if policy.reset_period == "monthly":
        return state.year != now.year or state.month != now.month
    return False


def format_number(
    sequence: int, series: str, policy: NumberingPolicy, year: int
) -> tuple[str, str]:
    """Return ``(padded_sequence, full_number)``."""
    padded = f"{sequence:05d}"
    if policy.series_required and series:
        return padded, f"{series}/{year % 100:02d}/{padded}"
    if policy.reset_period == "yearly":
        return padded, f"{year}-{padded}"
    return padded, padded


def validate_format(number: str, policy: NumberingPolicy) -> bool:
    """Check the series part of a ``SERIES/YY/NNNNN`` number against the series regex."""
    if policy.series_format:
        parts = number.split("/")
        if len(parts) > 1:
            return re.search(policy.series_format, parts[0]) is not None
    return True


def check_gaps(numbers: Iterable[int]) -> list[int]:
    """Every integer missing between consecutive issued sequence numbers."""
    ordered = sorted(set(numbers))
    gaps: list[int] = []
    for prev, cur in zip(ordered, ordered[1:]):
        gaps.extend(range(prev + 1, cur))
    return gaps


def _check_series(key: NumberingKey, policy: NumberingPolicy) -> None:
    if policy.platform_assigned:
        raise NumberingError(
            "Numbers for this country are assigned by the transmission platform",
            key.storage_key(),
        )
    if policy.series_required and not key.series:
        raise NumberingError("A series is required for this country", key.storage_key())
    if key.series and policy.series_format and not re.search(policy.series_format, key.series):
        raise NumberingError(
            f"Series '{key.series}' does not match {policy.series_format}", key.storage_key()
        )


class NumberingLedger:
    def __init__(self, store: NumberingStore) -> None:
        self._store = store

    def generate_next(
        self,
        key: NumberingKey,
        policy: NumberingPolicy,
        document: HashInput | None = None,
    ) -> GeneratedNumber:
        """Issue the next number for *key*.

        With a hash-chaining policy and *document* given, the document's hash
        is chained to the key's last hash and stored with the new sequence.
        Where series must be registered with the tax authority, the number
        also carries its ATCUD.
        """
        _check_series(key, policy)
        now = _now()

        def _advance(state: NumberingState | None) -> tuple[NumberingState, GeneratedNumber]:
            current = state or NumberingState(last_sequence=0, year=now.year, month=now.month)
            if policy.series_registration and not current.validation_code:
                raise NumberingError(
                    f"Series '{key.series}' is not registered with the tax authority",
                    key.storage_key(),
                )
            sequence = current.last_sequence
            if should_reset(current, policy, now):
                logger.info(
                    "Resetting numbering sequence %s (%s policy)",
                    key.storage_key(),
                    policy.reset_period,
                )
                sequence = 0
            sequence += 1
            number, full_number = format_number(sequence, key.series, policy, now.year)

            hashed: HashResult | None = None
            previous_hash: str | None = None
            last_hash = current.last_hash
            if policy.hash_chaining and document is not None:
                previous_hash = current.last_hash or GENESIS_HASH
                linked = document.with_link(full_number, previous_hash)
                hashed = hash_chain.generate_hash(linked, policy)
                last_hash = hashed.hash

            new_state = NumberingState(
                last_sequence=sequence,
                year=now.year,
                month=now.month,
                last_hash=last_hash,
                validation_code=current.validation_code,
            )
            generated = GeneratedNumber(
                number=number,
                full_number=full_number,
                sequence=sequence,
                year=now.year,
                series=key.series or None,
                hash=hashed,
                previous_hash=previous_hash,
                atcud=(
                    f"{current.validation_code}-{sequence}" if policy.series_registration else None
                ),
            )
            return new_state, generated

        try:
            return self._store.update(key, _advance)
        except OSError as exc:
            raise NumberingError(f"Numbering store unavailable: {exc}", key.storage_key()) from exc

    def register_series(self, key: NumberingKey, validation_code: str) -> None:
        """Record the validation code the tax authority returned for *key*'s series."""
        code = validation_code.strip()
        if not code:
            raise NumberingError("A validation code is required", key.storage_key())

        def _register(state: NumberingState | None) -> tuple[NumberingState, None]:
            if state is None:
                now = _now()
                state = NumberingState(last_sequence=0, year=now.year, month=now.month)
            return replace(state, validation_code=code), None

        self._store.update(key, _register)
        logger.info("Registered series %s with validation code %s", key.storage_key(), code)

    def peek_next(self, key: NumberingKey, policy: NumberingPolicy) -> int:
        """Sequence the next generate_next call would issue, without reserving it."""
        now = _now()
        state = self._store.read(key)
        if state is None or should_reset(state, policy, now):
            return 1
        return state.last_sequence + 1

    def current_state(self, key: NumberingKey) -> NumberingState:
        state = self._store.read(key)
        if state is None:
            now = _now()
            return NumberingState(last_sequence=0, year=now.year, month=now.month)
        return state

    def last_hash(self, key: NumberingKey) -> str | None:
        state = self._store.read(key)
        return state.last_hash if state else None

    def release(self, key: NumberingKey, sequence: int, policy: NumberingPolicy) -> bool:
        """Give back a just-issued number (e.g. a deleted draft).

        Only the latest number can be returned, and never once a hash has been
        chained on it. Otherwise the release is refused and logged as a
        potential gap.
        """

        def _release(state: NumberingState | None) -> tuple[NumberingState, bool]:
            if state is None:
                return NumberingState(last_sequence=0, year=_now().year, month=_now().month), False
            chained = policy.hash_chaining and state.last_hash is not None
            if state.last_sequence != sequence or chained:
                return state, False
            return replace(state, last_sequence=sequence - 1), True

        released = self._store.update(key, _release)
        if not released:
            logger.warning(
                "Number %d released for %s could not be reused; this may create a gap%s",
                sequence,
                key.storage_key(),
                "" if policy.gap_allowed else " (gaps are not allowed for this country)",
            )
        return released
