"""
Lifetime-scoped container for one workshop.

Created once by the application lifespan and handed to the routes; owns the
ledger, session gate, reset bus, prefill store and autosave pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from storage.database import Database
from workshop.autosave import AUTOSAVE_DEBOUNCE_MS, AutosavePipeline, AutosaveStatus
from workshop.ledger import ResultsLedger
from workshop.prefill import PrefillAdopter
from workshop.session import PrefillStore, ResetBus, SessionGate, WorkshopContext
from workshop.study_factory import prefill_from_patient, start_new_rhc_study

logger = logging.getLogger(__name__)


class WorkshopRuntime:
    def __init__(self, db: Database, debounce_ms: int = AUTOSAVE_DEBOUNCE_MS) -> None:
        self.db = db
        self.ledger = ResultsLedger()
        self.gate = SessionGate()
        self.reset_bus = ResetBus()
        self.prefill_store = PrefillStore()
        self.autosave = AutosavePipeline(
            self.ledger, self.gate, self.prefill_store, db, debounce_ms=debounce_ms,
        )
        self._adopters: dict[str, PrefillAdopter] = {}

    async def start(self) -> None:
        self.autosave.start()

    async def stop(self) -> None:
        """Flush a live patient study, then stop the pipeline."""
        if self.autosave.running and self.gate.is_autosave_enabled():
            await self.autosave.flush_now()
        await self.autosave.stop()

    def adopter(self, screen: str) -> PrefillAdopter:
        """The screen's prefill adopter; its one-shot guard re-arms on every reset."""
        adopter = self._adopters.get(screen)
        if adopter is None:
            adopter = PrefillAdopter.for_screen(screen, self.ledger, self.reset_bus)
            self._adopters[screen] = adopter
        return adopter

    # --- Session transitions ---

    def start_quick(self) -> WorkshopContext:
        self.reset_session()
        return self.gate.start_quick()

    async def start_patient_study(self, patient_id: str, study_id: str) -> WorkshopContext:
        """Resume an existing study. The ledger starts empty."""
        patient = await asyncio.to_thread(self.db.get_patient, patient_id)
        self.reset_session()
        self.prefill_store.set(prefill_from_patient(patient))
        return self.gate.start_patient_study(patient_id, study_id)

    async def new_study(self, patient_id: str) -> dict[str, Any]:
        return await start_new_rhc_study(self, patient_id)

    def reset_session(self) -> None:
        # Gate first: once identifiers are gone nothing can be saved
        self.gate.clear()
        self.autosave.reset()
        self.ledger.clear()
        self.autosave.clear_co_method()
        self.prefill_store.clear()
        self.reset_bus.reset_all()

    async def save_and_exit(self) -> Optional[AutosaveStatus]:
        """Persist the current study immediately, then close the session."""
        status = None
        if self.gate.is_autosave_enabled():
            status = await self.autosave.flush_now()
            study_id = self.gate.context.study_id
            if study_id:
                await asyncio.to_thread(self.db.end_study, study_id)
        self.reset_session()
        return status

    async def discard_study(self) -> Optional[str]:
        """Drop the current study and its snapshot, then close the session."""
        study_id = self.gate.context.study_id
        self.reset_session()
        await self.autosave.drain()
        if study_id:
            await asyncio.to_thread(self.db.delete_study, study_id)
            logger.info("Discarded study %s", study_id)
        return study_id
