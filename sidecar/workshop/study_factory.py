"""Creates a new RHC study for a patient and binds the workshop to it."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

from workshop.session import WorkshopPrefill

if TYPE_CHECKING:
    from workshop.runtime import WorkshopRuntime

logger = logging.getLogger(__name__)

STUDY_TYPE_RHC = "RHC"


class PatientNotFoundError(LookupError):
    pass


def prefill_from_patient(patient: Optional[dict[str, Any]]) -> WorkshopPrefill:
    if patient is None:
        return WorkshopPrefill()
    return WorkshopPrefill(
        weight_kg=patient.get("weight_kg"),
        height_cm=patient.get("height_cm"),
        sex=patient.get("sex"),
        birth_date_millis=patient.get("birth_date_millis"),
    )


async def start_new_rhc_study(runtime: WorkshopRuntime, patient_id: str) -> dict[str, Any]:
    """Insert a study row, then start an empty patient-study workshop on it.

    The previous workshop's results are discarded so the new study starts
    from a blank ledger.
    """
    patient = await asyncio.to_thread(runtime.db.get_patient, patient_id)
    if patient is None:
        raise PatientNotFoundError(f"Patient not found: {patient_id}")

    study = await asyncio.to_thread(runtime.db.create_study, patient_id, STUDY_TYPE_RHC)

    # Stop the outgoing session before the ledger is wiped so the clear is never saved
    runtime.gate.clear()
    runtime.autosave.reset()
    runtime.ledger.clear()
    runtime.autosave.clear_co_method()
    runtime.prefill_store.set(prefill_from_patient(patient))
    runtime.gate.start_patient_study(patient_id=patient_id, study_id=study["id"])
    runtime.reset_bus.reset_all()

    logger.info("Started RHC study %s", study["id"])
    return study
