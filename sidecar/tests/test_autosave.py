"""Tests for the debounced, single-flight autosave pipeline."""

import asyncio
import itertools
import os
import tempfile
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from storage.database import Database
from workshop.autosave import (
    AutosavePipeline,
    AutosaveState,
    consolidate_snapshot,
    normalize_co_method,
    normalize_units_token,
)
from workshop.keys import CalcType
from workshop.ledger import CalcEntry, LineItem, ResultsLedger
from workshop.session import PrefillStore, SessionGate, WorkshopPrefill

DEBOUNCE_MS = 50
SETTLE = DEBOUNCE_MS / 1000 * 4


@pytest.fixture
def db():
    """Create an isolated Database using a temp file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    try:
        yield Database(db_path=path)
    finally:
        os.unlink(path)


@pytest.fixture
def env(db):
    patient = db.create_patient(weight_kg=80.0, height_cm=180.0)
    study = db.create_study(patient["id"])
    gate = SessionGate()
    gate.start_patient_study(patient["id"], study["id"])
    clock = itertools.count(1_000, 100)
    return SimpleNamespace(
        db=db,
        ledger=ResultsLedger(),
        gate=gate,
        prefill_store=PrefillStore(),
        study_id=study["id"],
        clock=lambda: next(clock),
    )


def _pipeline(env, storage=None, debounce_ms=DEBOUNCE_MS):
    return AutosavePipeline(
        env.ledger,
        env.gate,
        env.prefill_store,
        storage or env.db,
        debounce_ms=debounce_ms,
        clock=env.clock,
    )


def _publish(ledger, calc_type, ts=1, **values):
    ledger.upsert(CalcEntry(
        type=calc_type,
        timestamp_millis=ts,
        title=calc_type.value,
        outputs=[LineItem(label=k, value=v, key=k) for k, v in values.items()],
    ))


class _SlowStorage:
    """Storage double whose writes take a while, to overlap with mutations."""

    def __init__(self, delay=0.2):
        self.delay = delay
        self.rows = []

    def get_rhc_by_study_id(self, study_id):
        return self.rows[-1] if self.rows else None

    def upsert_rhc_by_study_id(self, data):
        time.sleep(self.delay)
        self.rows.append(dict(data))
        return data


class TestNormalization:
    @pytest.mark.parametrize("raw", ["WU", "wood", "Woods", "WOOD_UNITS", "woodunits", " WU "])
    def test_wood_spellings(self, raw):
        assert normalize_units_token(raw) == "WOOD"

    @pytest.mark.parametrize("raw", ["dyn", "DYNES", "dyne", "cgs", "DYN_S_CM5", "dyn·s·cm⁻⁵", "dyns/cm5"])
    def test_dyn_spellings(self, raw):
        assert normalize_units_token(raw) == "DYN"

    def test_other_token_upper_cased(self):
        assert normalize_units_token("mmhg·min/l") == "MMHG·MIN/L"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_blank_is_unset(self, raw):
        assert normalize_units_token(raw) is None

    @pytest.mark.parametrize("raw,expected", [("td", "TD"), ("FICK", "FICK"), ("thermo", "FICK")])
    def test_co_method(self, raw, expected):
        assert normalize_co_method(raw) == expected


class TestConsolidate:
    def test_ci_derived_from_co_and_bsa(self):
        ledger = ResultsLedger()
        _publish(ledger, CalcType.FICK, co_lmin="5.2", bsa_m2="1.8")
        row = consolidate_snapshot(ledger, "s1", WorkshopPrefill(), now_millis=5)
        assert row["cardiac_index_lmin_m2"] == pytest.approx(5.2 / 1.8)

    def test_direct_ci_wins(self):
        ledger = ResultsLedger()
        _publish(ledger, CalcType.FICK, co_lmin="5.2", bsa_m2="1.8", ci_lmin_m2="3.1")
        row = consolidate_snapshot(ledger, "s1", WorkshopPrefill())
        assert row["cardiac_index_lmin_m2"] == 3.1

    def test_ci_omitted_without_bsa(self):
        ledger = ResultsLedger()
        _publish(ledger, CalcType.FICK, co_lmin="5.2", bsa_m2="0")
        row = consolidate_snapshot(ledger, "s1", WorkshopPrefill())
        assert row["cardiac_index_lmin_m2"] is None
        assert row["cardiac_output_lmin"] == 5.2

    def test_rap_falls_back_to_cvp(self):
        ledger = ResultsLedger()
        _publish(ledger, CalcType.SVR, cvp_mmhg="8")
        row = consolidate_snapshot(ledger, "s1", WorkshopPrefill())
        assert row["rap_mmhg"] == 8.0

    def test_units_and_method(self):
        ledger = ResultsLedger()
        _publish(ledger, CalcType.SVR, 1, svr_units="WU", co_method="td")
        _publish(ledger, CalcType.PVR, 2, pvr_units="dynes")
        row = consolidate_snapshot(ledger, "s1", WorkshopPrefill())
        assert row["svr_units"] == "WOOD"
        assert row["pvr_units"] == "DYN"
        assert row["co_method"] == "TD"

    def test_method_override_and_default(self):
        ledger = ResultsLedger()
        assert consolidate_snapshot(ledger, "s1", WorkshopPrefill())["co_method"] == "FICK"
        _publish(ledger, CalcType.FICK, co_method="FICK")
        assert consolidate_snapshot(ledger, "s1", WorkshopPrefill(), "TD")["co_method"] == "TD"

    def test_anthropometrics_from_prefill(self):
        row = consolidate_snapshot(ResultsLedger(), "s1", WorkshopPrefill(weight_kg=72.0, height_cm=168.0))
        assert row["weight_kg"] == 72.0
        assert row["height_cm"] == 168.0

    def test_fick_inputs(self):
        ledger = ResultsLedger()
        _publish(
            ledger, CalcType.FICK,
            sao2_percent="98", svo2_percent="65", hb_gdl="13.5", hr_bpm="72",
            vo2_mlmin="250", vo2_mode="ESTIMATED",
        )
        row = consolidate_snapshot(ledger, "s1", WorkshopPrefill())
        assert row["hemoglobin_gdl"] == 13.5
        assert row["heart_rate_bpm"] == 72.0
        assert row["vo2_ml_min"] == 250.0
        assert row["vo2_mode"] == "ESTIMATED"


class TestDebounce:
    def test_disabled_when_quick(self, env):
        env.gate.start_quick()
        storage = MagicMock()

        async def scenario():
            pipeline = _pipeline(env, storage)
            pipeline.start()
            try:
                _publish(env.ledger, CalcType.FICK, co_lmin="5.0")
                await asyncio.sleep(SETTLE)
                return pipeline.status, pipeline.save_count
            finally:
                await pipeline.stop()

        status, count = asyncio.run(scenario())
        assert status.enabled is False
        assert status.state == AutosaveState.DISABLED
        assert count == 0
        storage.upsert_rhc_by_study_id.assert_not_called()

    def test_burst_saves_once(self, env):
        async def scenario():
            pipeline = _pipeline(env)
            pipeline.start()
            try:
                for i in range(5):
                    _publish(env.ledger, CalcType.FICK, i, co_lmin=str(5.0 + i / 10))
                    await asyncio.sleep(DEBOUNCE_MS / 1000 / 5)
                assert pipeline.status.state == AutosaveState.DEBOUNCING
                await asyncio.sleep(SETTLE)
                return pipeline.status, pipeline.save_count
            finally:
                await pipeline.stop()

        status, count = asyncio.run(scenario())
        assert count == 1
        assert status.state == AutosaveState.SAVED
        assert env.db.get_rhc_by_study_id(env.study_id)["cardiac_output_lmin"] == pytest.approx(5.4)

    def test_mutation_from_other_thread(self, env):
        async def scenario():
            pipeline = _pipeline(env)
            pipeline.start()
            try:
                await asyncio.to_thread(_publish, env.ledger, CalcType.PAPI, 1, papi="1.4")
                await asyncio.sleep(SETTLE)
                return pipeline.save_count
            finally:
                await pipeline.stop()

        assert asyncio.run(scenario()) == 1
        assert env.db.get_rhc_by_study_id(env.study_id)["papi"] == 1.4

    def test_created_at_preserved_across_saves(self, env):
        async def scenario():
            pipeline = _pipeline(env)
            pipeline.start()
            try:
                _publish(env.ledger, CalcType.FICK, 1, co_lmin="5.0")
                await asyncio.sleep(SETTLE)
                first = env.db.get_rhc_by_study_id(env.study_id)
                _publish(env.ledger, CalcType.FICK, 2, co_lmin="5.5")
                await asyncio.sleep(SETTLE)
                second = env.db.get_rhc_by_study_id(env.study_id)
                return first, second
            finally:
                await pipeline.stop()

        first, second = asyncio.run(scenario())
        assert second["id"] == first["id"]
        assert second["created_at_millis"] == first["created_at_millis"]
        assert second["updated_at_millis"] > first["updated_at_millis"]
        assert second["cardiac_output_lmin"] == 5.5


class TestFlush:
    def test_flush_right_after_mutation_saves_once(self, env):
        async def scenario():
            pipeline = _pipeline(env)
            pipeline.start()
            try:
                _publish(env.ledger, CalcType.FICK, co_lmin="5.2", bsa_m2="1.8")
                status = await pipeline.flush_now()
                await asyncio.sleep(SETTLE)
                return status, pipeline.save_count
            finally:
                await pipeline.stop()

        status, count = asyncio.run(scenario())
        assert count == 1
        assert status.state == AutosaveState.SAVED
        assert status.last_saved_at_millis is not None
        row = env.db.get_rhc_by_study_id(env.study_id)
        assert row["cardiac_index_lmin_m2"] == pytest.approx(5.2 / 1.8)

    def test_flush_writes_prefill_and_override(self, env):
        env.prefill_store.set(WorkshopPrefill(weight_kg=80.0, height_cm=180.0))

        async def scenario():
            pipeline = _pipeline(env)
            pipeline.start()
            try:
                pipeline.set_co_method("td")
                _publish(env.ledger, CalcType.SVR, cvp_mmhg="6", svr_units="WU")
                await pipeline.flush_now()
            finally:
                await pipeline.stop()

        asyncio.run(scenario())
        row = env.db.get_rhc_by_study_id(env.study_id)
        assert row["weight_kg"] == 80.0
        assert row["height_cm"] == 180.0
        assert row["co_method"] == "TD"
        assert row["rap_mmhg"] == 6.0
        assert row["svr_units"] == "WOOD"

    def test_flush_before_start_raises(self, env):
        pipeline = _pipeline(env)
        with pytest.raises(RuntimeError):
            asyncio.run(pipeline.flush_now())


class TestSingleFlight:
    def test_mid_save_mutations_coalesce_into_one_follow_up(self, env):
        storage = _SlowStorage(delay=0.2)

        async def scenario():
            pipeline = _pipeline(env, storage)
            pipeline.start()
            try:
                _publish(env.ledger, CalcType.FICK, 1, co_lmin="5.0")
                flush = asyncio.ensure_future(pipeline.flush_now())
                await asyncio.sleep(0.05)
                assert pipeline.status.is_saving
                _publish(env.ledger, CalcType.FICK, 2, co_lmin="5.1")
                _publish(env.ledger, CalcType.SVR, 3, svr_wood="14")
                await flush
                await asyncio.sleep(0.6)
                return pipeline.status, pipeline.save_count
            finally:
                await pipeline.stop()

        status, count = asyncio.run(scenario())
        assert count == 2
        assert status.state == AutosaveState.SAVED
        assert storage.rows[-1]["cardiac_output_lmin"] == 5.1
        assert storage.rows[-1]["svr_wood"] == 14.0


class TestFailures:
    def test_error_keeps_last_saved(self, env):
        storage = MagicMock()
        storage.upsert_rhc_by_study_id.side_effect = [{}, OSError("disk full")]

        async def scenario():
            pipeline = _pipeline(env, storage)
            pipeline.start()
            try:
                _publish(env.ledger, CalcType.FICK, co_lmin="5.0")
                ok = await pipeline.flush_now()
                _publish(env.ledger, CalcType.FICK, 2, co_lmin="5.5")
                failed = await pipeline.flush_now()
                return ok, failed
            finally:
                await pipeline.stop()

        ok, failed = asyncio.run(scenario())
        assert failed.state == AutosaveState.ERROR
        assert failed.last_error == "disk full"
        assert failed.is_saving is False
        assert failed.last_saved_at_millis == ok.last_saved_at_millis

    def test_error_without_message(self, env):
        storage = MagicMock()
        storage.upsert_rhc_by_study_id.side_effect = RuntimeError()

        async def scenario():
            pipeline = _pipeline(env, storage)
            pipeline.start()
            try:
                return await pipeline.flush_now()
            finally:
                await pipeline.stop()

        assert asyncio.run(scenario()).last_error == "Autosave failed"


class TestReset:
    def test_reset_disables_and_drops_pending_save(self, env):
        async def scenario():
            pipeline = _pipeline(env)
            pipeline.start()
            try:
                _publish(env.ledger, CalcType.FICK, co_lmin="5.0")
                env.gate.clear()
                pipeline.reset()
                await asyncio.sleep(SETTLE)
                return pipeline.status, pipeline.save_count
            finally:
                await pipeline.stop()

        status, count = asyncio.run(scenario())
        assert count == 0
        assert status.enabled is False
        assert status.state == AutosaveState.DISABLED
        assert env.db.get_rhc_by_study_id(env.study_id) is None

    def test_reset_discards_in_flight_status(self, env):
        storage = _SlowStorage(delay=0.2)

        async def scenario():
            pipeline = _pipeline(env, storage)
            pipeline.start()
            try:
                _publish(env.ledger, CalcType.FICK, co_lmin="5.0")
                flush = asyncio.ensure_future(pipeline.flush_now())
                await asyncio.sleep(0.05)
                env.gate.clear()
                pipeline.reset()
                await flush
                return pipeline.status
            finally:
                await pipeline.stop()

        status = asyncio.run(scenario())
        assert status.state == AutosaveState.DISABLED
        assert status.last_saved_at_millis is None
        assert status.is_saving is False

    def test_status_subscribers(self, env):
        seen = []

        async def scenario():
            pipeline = _pipeline(env)
            pipeline.subscribe(lambda s: seen.append(s.state))
            pipeline.start()
            try:
                _publish(env.ledger, CalcType.FICK, co_lmin="5.0")
                await pipeline.flush_now()
            finally:
                await pipeline.stop()

        asyncio.run(scenario())
        assert seen[:3] == [AutosaveState.DEBOUNCING, AutosaveState.SAVING, AutosaveState.SAVED]
