"""End-to-end workshop flows over the runtime container."""

import asyncio
import os
import tempfile

import pytest

from workshop.autosave import AutosaveState
from workshop.keys import CalcType
from workshop.ledger import CalcEntry, LineItem
from workshop.runtime import WorkshopRuntime
from workshop.session import WorkshopMode
from workshop.study_factory import PatientNotFoundError
from storage.database import Database


@pytest.fixture
def db():
    """Create an isolated Database using a temp file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    try:
        yield Database(db_path=path)
    finally:
        os.unlink(path)


def _items(**values):
    return [LineItem(label=k, value=v, key=k) for k, v in values.items()]


class TestWorkshopFlow:
    def test_fick_then_svr_prefill_then_consolidated_row(self, db):
        patient = db.create_patient(weight_kg=70.0, height_cm=175.0)

        async def scenario():
            runtime = WorkshopRuntime(db, debounce_ms=50)
            await runtime.start()
            try:
                study = await runtime.new_study(patient["id"])

                runtime.ledger.upsert(CalcEntry(
                    type=CalcType.FICK,
                    timestamp_millis=1,
                    title="Fick cardiac output",
                    inputs=_items(sao2_percent="98", svo2_percent="65", hb_gdl="13.5", hr_bpm="72"),
                    outputs=_items(co_lmin="5.2", bsa_m2="1.8"),
                ))

                adopted = runtime.adopter("svr").run({"map": "", "cvp": ""})
                assert adopted.values == {"co": "5.20"}

                runtime.ledger.upsert(CalcEntry(
                    type=CalcType.SVR,
                    timestamp_millis=2,
                    title="Systemic vascular resistance",
                    inputs=_items(map_mmhg="93", cvp_mmhg="8", co_lmin=adopted.values["co"]),
                    outputs=_items(svr_wood="16.35", svr_dyn="1307.7", svr_units="WU"),
                ))
                await asyncio.sleep(0.3)
                debounced = db.get_rhc_by_study_id(study["id"])
                await asyncio.sleep(0.01)
                status = await runtime.autosave.flush_now()
                return study, status, debounced
            finally:
                await runtime.stop()

        study, status, debounced = asyncio.run(scenario())
        assert status.state == AutosaveState.SAVED
        assert debounced["svr_wood"] == 16.35

        row = db.get_rhc_by_study_id(study["id"])
        assert row["id"] == debounced["id"]
        assert row["created_at_millis"] == debounced["created_at_millis"]
        assert row["updated_at_millis"] > debounced["updated_at_millis"]
        assert row["cardiac_output_lmin"] == 5.2
        assert row["cardiac_index_lmin_m2"] == pytest.approx(5.2 / 1.8)
        assert row["map_mmhg"] == 93.0
        assert row["rap_mmhg"] == 8.0
        assert row["svr_wood"] == 16.35
        assert row["svr_units"] == "WOOD"
        assert row["sao2_percent"] == 98.0
        assert row["weight_kg"] == 70.0
        assert row["co_method"] == "FICK"

    def test_clear_disables_autosave(self, db):
        patient = db.create_patient()

        async def scenario():
            runtime = WorkshopRuntime(db, debounce_ms=50)
            await runtime.start()
            try:
                await runtime.new_study(patient["id"])
                runtime.ledger.upsert(CalcEntry(CalcType.PAPI, 1, "PAPi", outputs=_items(papi="1.1")))
                runtime.reset_session()
                await asyncio.sleep(0.2)
                return runtime
            finally:
                await runtime.stop()

        runtime = asyncio.run(scenario())
        assert runtime.ledger.has_any_results is False
        assert runtime.autosave.status.enabled is False
        assert runtime.autosave.save_count == 0
        assert runtime.gate.context.mode == WorkshopMode.QUICK

    def test_new_study_resets_co_method_and_prefill(self, db):
        first = db.create_patient(weight_kg=60.0)
        second = db.create_patient(weight_kg=90.0)

        async def scenario():
            runtime = WorkshopRuntime(db, debounce_ms=50)
            await runtime.start()
            try:
                await runtime.new_study(first["id"])
                runtime.autosave.set_co_method("TD")
                tick = runtime.reset_bus.tick
                await runtime.new_study(second["id"])
                return runtime, tick
            finally:
                await runtime.stop()

        runtime, tick = asyncio.run(scenario())
        assert runtime.autosave.co_method_override is None
        assert runtime.prefill_store.value.weight_kg == 90.0
        assert runtime.reset_bus.tick == tick + 1
        assert runtime.gate.context.patient_id == second["id"]

    def test_new_study_unknown_patient(self, db):
        async def scenario():
            runtime = WorkshopRuntime(db, debounce_ms=50)
            await runtime.start()
            try:
                await runtime.new_study("missing")
            finally:
                await runtime.stop()

        with pytest.raises(PatientNotFoundError):
            asyncio.run(scenario())

    def test_discard_removes_study_and_snapshot(self, db):
        patient = db.create_patient()

        async def scenario():
            runtime = WorkshopRuntime(db, debounce_ms=50)
            await runtime.start()
            try:
                study = await runtime.new_study(patient["id"])
                runtime.ledger.upsert(CalcEntry(CalcType.PVR, 1, "PVR", outputs=_items(pvr_wood="2.5")))
                await runtime.autosave.flush_now()
                await runtime.discard_study()
                await asyncio.sleep(0.2)
                return study
            finally:
                await runtime.stop()

        study = asyncio.run(scenario())
        assert db.get_study(study["id"]) is None
        assert db.get_rhc_by_study_id(study["id"]) is None

    def test_stop_flushes_pending_changes(self, db):
        patient = db.create_patient()

        async def scenario():
            runtime = WorkshopRuntime(db, debounce_ms=10_000)
            await runtime.start()
            study = await runtime.new_study(patient["id"])
            runtime.ledger.upsert(CalcEntry(CalcType.CPO, 1, "CPO", outputs=_items(cpo_w="0.95")))
            await runtime.stop()
            return study

        study = asyncio.run(scenario())
        assert db.get_rhc_by_study_id(study["id"])["cardiac_power_w"] == 0.95
