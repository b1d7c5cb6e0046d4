"""
In-memory results ledger shared by every calculator of a workshop.

Holds at most one CalcEntry per CalcType. Calculators upsert their latest
result; other calculators read canonical keys back out of it, and the
autosave pipeline subscribes to its mutations.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from workshop.keys import CalcType, SharedKey, require_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    """One labelled value. Only items with a key are visible to other modules."""

    label: str
    value: str
    key: Optional[SharedKey] = None
    unit: Optional[str] = None
    detail: Optional[str] = None

    def __post_init__(self) -> None:
        if self.key is not None:
            object.__setattr__(self, "key", require_key(self.key))


@dataclass(frozen=True)
class CalcEntry:
    type: CalcType
    timestamp_millis: int
    title: str
    inputs: tuple[LineItem, ...] = ()
    outputs: tuple[LineItem, ...] = ()
    notes: tuple[LineItem, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", CalcType(self.type))
        for name in ("inputs", "outputs", "notes"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    def find(self, key: SharedKey) -> Optional[LineItem]:
        """First item carrying *key*, inputs before outputs."""
        for item in self.inputs + self.outputs:
            if item.key == key:
                return item
        return None


Subscriber = Callable[[tuple[CalcEntry, ...]], None]


def _parse_double(raw: str) -> Optional[float]:
    try:
        value = float(raw.strip())
    except (ValueError, AttributeError):
        return None
    return value if math.isfinite(value) else None


@dataclass
class _Slot:
    entry: CalcEntry
    # monotonic publish counter; breaks timestamp ties (last published wins)
    seq: int = field(default=0)


class ResultsLedger:
    """Thread-safe store of the latest calculation per calculator type."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[CalcType, _Slot] = {}
        self._seq = 0
        self._subscribers: list[Subscriber] = []

    # --- Mutations ---

    def upsert(self, entry: CalcEntry) -> None:
        with self._lock:
            self._seq += 1
            self._slots[entry.type] = _Slot(entry=entry, seq=self._seq)
            published = self._ordered()
        logger.debug("Ledger upsert %s (%d entries)", entry.type.value, len(published))
        self._publish(published)

    def clear(self) -> None:
        with self._lock:
            self._slots = {}
            published: tuple[CalcEntry, ...] = ()
        self._publish(published)

    # --- Queries ---

    def snapshot(self) -> tuple[CalcEntry, ...]:
        with self._lock:
            return self._ordered()

    @property
    def has_any_results(self) -> bool:
        with self._lock:
            return bool(self._slots)

    def present_types(self) -> frozenset[CalcType]:
        with self._lock:
            return frozenset(self._slots)

    def get(self, calc_type: CalcType) -> Optional[CalcEntry]:
        with self._lock:
            slot = self._slots.get(CalcType(calc_type))
            return slot.entry if slot else None

    def latest_item(self, key: str | SharedKey) -> Optional[LineItem]:
        """Item for *key* from the most recently timestamped entry containing it."""
        shared_key = require_key(key)
        best: Optional[LineItem] = None
        best_rank: tuple[int, int] | None = None
        with self._lock:
            for slot in self._slots.values():
                candidate = slot.entry.find(shared_key)
                if candidate is None:
                    continue
                rank = (slot.entry.timestamp_millis, slot.seq)
                if best_rank is None or rank > best_rank:
                    best_rank = rank
                    best = candidate
        return best

    def latest_value_by_key(self, key: str | SharedKey, as_type: str = "double") -> float | str | None:
        """Resolve *key* as a float (``"double"``) or raw string (``"string"``).

        Returns None when no entry carries the key or the value does not
        parse as the requested type.
        """
        item = self.latest_item(key)
        if item is None:
            return None
        if as_type == "string":
            return item.value
        if as_type == "double":
            return _parse_double(item.value)
        raise ValueError(f"Unsupported value type: {as_type!r}")

    def latest_double(self, key: str | SharedKey) -> Optional[float]:
        return self.latest_value_by_key(key, "double")  # type: ignore[return-value]

    def latest_string(self, key: str | SharedKey) -> Optional[str]:
        return self.latest_value_by_key(key, "string")  # type: ignore[return-value]

    # --- Observation ---

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for every published entry set. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _ordered(self) -> tuple[CalcEntry, ...]:
        slots = sorted(self._slots.values(), key=lambda s: (s.entry.timestamp_millis, s.seq))
        return tuple(s.entry for s in slots)

    def _publish(self, entries: tuple[CalcEntry, ...]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(entries)
            except Exception:
                logger.exception("Ledger subscriber failed")
