"""
Debounced autosave of the results ledger into the study's snapshot row.

A single worker task on the event loop waits for ledger mutations, debounces
them and writes one consolidated ``rhc_study_data`` row per study. Saves are
single-flight: a mutation that lands while a save is running triggers one
follow-up save once the debounce window passes again.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from workshop.keys import SharedKey
from workshop.ledger import CalcEntry, ResultsLedger
from workshop.session import PrefillStore, SessionGate, WorkshopPrefill

logger = logging.getLogger(__name__)

AUTOSAVE_DEBOUNCE_MS = int(os.getenv("AUTOSAVE_DEBOUNCE_MS", "500"))

DEFAULT_ERROR_MESSAGE = "Autosave failed"


class SnapshotStorage(Protocol):
    def get_rhc_by_study_id(self, study_id: str) -> Optional[dict[str, Any]]: ...

    def upsert_rhc_by_study_id(self, data: dict[str, Any]) -> dict[str, Any]: ...


class AutosaveState(str, Enum):
    DISABLED = "DISABLED"
    DEBOUNCING = "DEBOUNCING"
    SAVING = "SAVING"
    SAVED = "SAVED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class AutosaveStatus:
    enabled: bool = False
    is_saving: bool = False
    last_saved_at_millis: Optional[int] = None
    last_error: Optional[str] = None
    state: AutosaveState = AutosaveState.DISABLED


_WOOD_TOKENS = frozenset({"WU", "WOOD", "WOODS", "WOOD_UNITS", "WOODUNITS"})
_DYN_TOKENS = frozenset({"DYN", "DYNES", "DYNE", "CGS", "DYN_S_CM5", "DYN·S·CM⁻⁵", "DYNS/CM5"})


def normalize_units_token(raw: Optional[str]) -> Optional[str]:
    """Map the resistance unit spellings calculators use onto WOOD / DYN."""
    if raw is None:
        return None
    token = raw.strip().upper()
    if not token:
        return None
    if token in _WOOD_TOKENS:
        return "WOOD"
    if token in _DYN_TOKENS:
        return "DYN"
    return token


def normalize_co_method(method: str) -> str:
    return "TD" if method.strip().upper() == "TD" else "FICK"


def _now_millis() -> int:
    return int(time.time() * 1000)


def consolidate_snapshot(
    ledger: ResultsLedger,
    study_id: str,
    prefill: WorkshopPrefill,
    co_method_override: Optional[str] = None,
    now_millis: Optional[int] = None,
) -> dict[str, Any]:
    """Build a complete snapshot row from everything the ledger currently knows.

    Missing values are stored as None. The storage layer keeps the existing
    row's ``id`` and ``created_at_millis``.
    """
    now = now_millis if now_millis is not None else _now_millis()
    d = ledger.latest_double
    s = ledger.latest_string

    co = d(SharedKey.CO_LMIN)
    bsa = d(SharedKey.BSA_M2)
    ci = d(SharedKey.CI_LMIN_M2)
    if ci is None and co is not None and bsa is not None and bsa > 0:
        ci = co / bsa

    rap = d(SharedKey.RAP_MMHG)
    if rap is None:
        rap = d(SharedKey.CVP_MMHG)

    key_method = (s(SharedKey.CO_METHOD) or "").strip().upper() or None
    co_method = co_method_override or key_method or "FICK"

    return {
        "study_id": study_id,
        "weight_kg": prefill.weight_kg,
        "height_cm": prefill.height_cm,
        "bsa_m2": bsa,
        "sao2_percent": d(SharedKey.SAO2_PERCENT),
        "svo2_percent": d(SharedKey.SVO2_PERCENT),
        "hemoglobin_gdl": d(SharedKey.HB_GDL),
        "heart_rate_bpm": d(SharedKey.HR_BPM),
        "vo2_ml_min": d(SharedKey.VO2_MLMIN),
        "vo2_mode": s(SharedKey.VO2_MODE),
        "map_mmhg": d(SharedKey.MAP_MMHG),
        "rap_mmhg": rap,
        "pasp_mmhg": d(SharedKey.PASP_MMHG),
        "padp_mmhg": d(SharedKey.PADP_MMHG),
        "mpap_mmhg": d(SharedKey.MPAP_MMHG),
        "pawp_mmhg": d(SharedKey.PAWP_MMHG),
        "cardiac_output_lmin": co,
        "cardiac_index_lmin_m2": ci,
        "svr_wood": d(SharedKey.SVR_WOOD),
        "svr_dyn": d(SharedKey.SVR_DYN),
        "pvr_wood": d(SharedKey.PVR_WOOD),
        "pvr_dyn": d(SharedKey.PVR_DYN),
        "papi": d(SharedKey.PAPI),
        "cardiac_power_w": d(SharedKey.CPO_W),
        "cardiac_power_index_w_m2": d(SharedKey.CPI_W_M2),
        "svr_units": normalize_units_token(s(SharedKey.SVR_UNITS)),
        "pvr_units": normalize_units_token(s(SharedKey.PVR_UNITS)),
        "co_method": co_method,
        "created_at_millis": now,
        "updated_at_millis": now,
    }


StatusCallback = Callable[[AutosaveStatus], None]


class AutosavePipeline:
    """Watches the ledger and persists a consolidated snapshot per study.

    ``start()`` must be called from a running event loop. Ledger mutations may
    come from any thread; they are handed to the loop before being acted on.
    """

    def __init__(
        self,
        ledger: ResultsLedger,
        gate: SessionGate,
        prefill_store: PrefillStore,
        storage: SnapshotStorage,
        debounce_ms: int = AUTOSAVE_DEBOUNCE_MS,
        clock: Callable[[], int] = _now_millis,
    ) -> None:
        self._ledger = ledger
        self._gate = gate
        self._prefill_store = prefill_store
        self._storage = storage
        self._debounce = debounce_ms / 1000.0
        self._clock = clock

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._save_lock: Optional[asyncio.Lock] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._dirty = False
        # bumped by reset(); a save started under an older generation leaves status alone
        self._generation = 0
        self._co_method_override: Optional[str] = None
        self._save_count = 0

        self._status_lock = threading.Lock()
        self._status = AutosaveStatus()
        self._subscribers: list[StatusCallback] = []

    # --- Lifecycle ---

    def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._save_lock = asyncio.Lock()
        self._unsubscribe = self._ledger.subscribe(self._on_ledger_change)
        self._worker = self._loop.create_task(self._run())
        logger.info("Autosave pipeline started (debounce %.0f ms)", self._debounce * 1000)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
            logger.info("Autosave pipeline stopped")

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # --- Status ---

    @property
    def status(self) -> AutosaveStatus:
        with self._status_lock:
            status = self._status
        return replace(status, enabled=self._gate.is_autosave_enabled())

    @property
    def save_count(self) -> int:
        return self._save_count

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        with self._status_lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._status_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _set_status(self, generation: Optional[int] = None, **changes: Any) -> None:
        with self._status_lock:
            if generation is not None and generation != self._generation:
                return
            self._status = replace(self._status, **changes)
            status = self._status
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(status)
            except Exception:
                logger.exception("Autosave status subscriber failed")

    # --- CO method override ---

    def set_co_method(self, method: str) -> str:
        self._co_method_override = normalize_co_method(method)
        return self._co_method_override

    def clear_co_method(self) -> None:
        self._co_method_override = None

    @property
    def co_method_override(self) -> Optional[str]:
        return self._co_method_override

    # --- Control ---

    def reset(self) -> None:
        """Forget pending work and return to DISABLED. A running save finishes silently."""
        with self._status_lock:
            self._generation += 1
            self._dirty = False
        self._set_status(
            enabled=False,
            is_saving=False,
            last_saved_at_millis=None,
            last_error=None,
            state=AutosaveState.DISABLED,
        )

    async def flush_now(self) -> AutosaveStatus:
        """Save immediately, skipping the debounce. Waits for a running save first."""
        if self._save_lock is None:
            raise RuntimeError("Autosave pipeline is not started")
        async with self._save_lock:
            await self._save()
        return self.status

    async def drain(self) -> None:
        """Wait until no save is running."""
        if self._save_lock is None:
            return
        async with self._save_lock:
            pass

    # --- Internals ---

    def _on_ledger_change(self, entries: tuple[CalcEntry, ...]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._mark_dirty()
        else:
            loop.call_soon_threadsafe(self._mark_dirty)

    def _mark_dirty(self) -> None:
        if not self._gate.is_autosave_enabled():
            self._set_status(enabled=False)
            return
        self._dirty = True
        if not self._status.is_saving:
            self._set_status(enabled=True, state=AutosaveState.DEBOUNCING)
        if self._wake is not None:
            self._wake.set()

    async def _run(self) -> None:
        assert self._wake is not None and self._save_lock is not None
        while True:
            await self._wake.wait()
            self._wake.clear()
            while True:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self._debounce)
                except asyncio.TimeoutError:
                    break
                self._wake.clear()
                logger.debug("Autosave debounce restarted")
            async with self._save_lock:
                if self._dirty:
                    await self._save()

    async def _save(self) -> None:
        """Write one snapshot. Caller holds the save lock."""
        self._dirty = False
        ctx = self._gate.context
        if not self._gate.is_autosave_enabled() or not ctx.study_id:
            self._set_status(enabled=False)
            return

        generation = self._generation
        now = self._clock()
        row = consolidate_snapshot(
            self._ledger,
            ctx.study_id,
            self._prefill_store.value,
            self._co_method_override,
            now_millis=now,
        )
        self._set_status(
            generation, enabled=True, is_saving=True, last_error=None, state=AutosaveState.SAVING,
        )
        try:
            await asyncio.to_thread(self._storage.upsert_rhc_by_study_id, row)
        except Exception as exc:
            logger.exception("Autosave failed")
            self._set_status(
                generation,
                is_saving=False,
                last_error=str(exc) or DEFAULT_ERROR_MESSAGE,
                state=AutosaveState.ERROR,
            )
            return

        self._save_count += 1
        self._set_status(
            generation,
            is_saving=False,
            last_saved_at_millis=now,
            last_error=None,
            state=AutosaveState.DEBOUNCING if self._dirty else AutosaveState.SAVED,
        )
