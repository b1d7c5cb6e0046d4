"""Workshop session state: mode, patient/study identifiers, reset signalling."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from workshop.keys import CalcType, SharedKey
from workshop.ledger import ResultsLedger

logger = logging.getLogger(__name__)

REQUIRED_CALC_TYPES: frozenset[CalcType] = frozenset(
    {CalcType.FICK, CalcType.SVR, CalcType.CPO, CalcType.PAPI, CalcType.PVR}
)


class WorkshopMode(str, Enum):
    QUICK = "QUICK"
    PATIENT_STUDY = "PATIENT_STUDY"


def _new_run_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class WorkshopContext:
    # Internal identifiers only, never names or demographics
    mode: WorkshopMode = WorkshopMode.QUICK
    patient_id: Optional[str] = None
    study_id: Optional[str] = None
    run_id: str = field(default_factory=_new_run_id)


class ResetBus:
    """Monotonic reset counter; every reset notifies listeners with the new tick."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tick = 0
        self._listeners: list[Callable[[int], None]] = []

    @property
    def tick(self) -> int:
        with self._lock:
            return self._tick

    def reset_all(self) -> int:
        with self._lock:
            self._tick += 1
            tick = self._tick
            listeners = list(self._listeners)
        for listener in listeners:
            listener(tick)
        return tick

    def subscribe(self, listener: Callable[[int], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe


@dataclass(frozen=True)
class WorkshopPrefill:
    """Patient anthropometrics captured when a patient study starts."""

    weight_kg: Optional[float] = None
    height_cm: Optional[float] = None
    sex: Optional[str] = None
    birth_date_millis: Optional[int] = None


class PrefillStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = WorkshopPrefill()

    @property
    def value(self) -> WorkshopPrefill:
        with self._lock:
            return self._value

    def set(self, value: WorkshopPrefill) -> None:
        with self._lock:
            self._value = value

    def clear(self) -> None:
        self.set(WorkshopPrefill())


class SessionGate:
    """Holds the active WorkshopContext and answers the autosave/completion gates."""

    def __init__(self, required: Iterable[CalcType] = REQUIRED_CALC_TYPES) -> None:
        self._lock = threading.Lock()
        self._context = WorkshopContext()
        self._required = frozenset(required)

    @property
    def context(self) -> WorkshopContext:
        with self._lock:
            return self._context

    @property
    def required_types(self) -> frozenset[CalcType]:
        return self._required

    def start_quick(self) -> WorkshopContext:
        return self._set(WorkshopContext(mode=WorkshopMode.QUICK))

    def start_patient_study(self, patient_id: str, study_id: str) -> WorkshopContext:
        """Bind the workshop to a patient and an RHC study. Always starts a new run."""
        return self._set(
            WorkshopContext(
                mode=WorkshopMode.PATIENT_STUDY,
                patient_id=patient_id,
                study_id=study_id,
            )
        )

    def clear(self) -> WorkshopContext:
        return self._set(WorkshopContext())

    def is_autosave_enabled(self) -> bool:
        ctx = self.context
        return ctx.mode == WorkshopMode.PATIENT_STUDY and bool((ctx.study_id or "").strip())

    def is_workshop_complete(self, present_types: Iterable[CalcType]) -> bool:
        return self._required.issubset(frozenset(present_types))

    def _set(self, ctx: WorkshopContext) -> WorkshopContext:
        with self._lock:
            self._context = ctx
        logger.info("Workshop session %s (run %s)", ctx.mode.value, ctx.run_id)
        return ctx


def has_complete_results(ledger: ResultsLedger) -> bool:
    """Key-based completeness: every core output is resolvable as a number."""

    def has(*keys: SharedKey) -> bool:
        return any(ledger.latest_double(k) is not None for k in keys)

    return (
        has(SharedKey.CO_LMIN)
        and has(SharedKey.CI_LMIN_M2)
        and has(SharedKey.SVR_WOOD, SharedKey.SVR_DYN)
        and has(SharedKey.PVR_WOOD, SharedKey.PVR_DYN)
        and has(SharedKey.CPO_W, SharedKey.CPI_W_M2)
        and has(SharedKey.PAPI)
    )
