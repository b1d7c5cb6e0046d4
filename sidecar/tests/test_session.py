"""Tests for the session gate, reset bus and completeness checks."""

from workshop.keys import CalcType, SharedKey
from workshop.ledger import CalcEntry, LineItem, ResultsLedger
from workshop.session import (
    PrefillStore,
    ResetBus,
    SessionGate,
    WorkshopMode,
    WorkshopPrefill,
    has_complete_results,
)


class TestSessionGate:
    def test_starts_quick_and_disabled(self):
        gate = SessionGate()
        assert gate.context.mode == WorkshopMode.QUICK
        assert gate.is_autosave_enabled() is False

    def test_patient_study_enables_autosave(self):
        gate = SessionGate()
        ctx = gate.start_patient_study("p1", "s1")
        assert ctx.mode == WorkshopMode.PATIENT_STUDY
        assert gate.is_autosave_enabled() is True

    def test_blank_study_id_disables_autosave(self):
        gate = SessionGate()
        gate.start_patient_study("p1", "   ")
        assert gate.is_autosave_enabled() is False

    def test_clear_disables_autosave(self):
        gate = SessionGate()
        gate.start_patient_study("p1", "s1")
        ctx = gate.clear()
        assert ctx.study_id is None
        assert gate.is_autosave_enabled() is False

    def test_every_start_gets_new_run_id(self):
        gate = SessionGate()
        runs = {gate.start_quick().run_id, gate.start_patient_study("p", "s").run_id, gate.clear().run_id}
        assert len(runs) == 3

    def test_workshop_incomplete(self):
        gate = SessionGate()
        assert gate.is_workshop_complete({CalcType.FICK, CalcType.SVR}) is False

    def test_workshop_complete(self):
        gate = SessionGate()
        assert gate.is_workshop_complete(set(CalcType)) is True

    def test_custom_required_types(self):
        gate = SessionGate(required=[CalcType.FICK])
        assert gate.is_workshop_complete({CalcType.FICK}) is True


class TestResetBus:
    def test_tick_increments_and_notifies(self):
        bus = ResetBus()
        seen = []
        bus.subscribe(seen.append)
        assert bus.reset_all() == 1
        assert bus.reset_all() == 2
        assert bus.tick == 2
        assert seen == [1, 2]

    def test_unsubscribe(self):
        bus = ResetBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        bus.reset_all()
        assert seen == []


class TestPrefillStore:
    def test_set_and_clear(self):
        store = PrefillStore()
        store.set(WorkshopPrefill(weight_kg=70.0, height_cm=175.0))
        assert store.value.weight_kg == 70.0
        store.clear()
        assert store.value == WorkshopPrefill()


class TestHasCompleteResults:
    def _publish(self, ledger, calc_type, *items):
        ledger.upsert(CalcEntry(
            type=calc_type,
            timestamp_millis=len(ledger.snapshot()) + 1,
            title=calc_type.value,
            outputs=[LineItem(label=k.value, value=v, key=k) for k, v in items],
        ))

    def test_empty(self):
        assert has_complete_results(ResultsLedger()) is False

    def test_all_core_outputs(self):
        ledger = ResultsLedger()
        self._publish(ledger, CalcType.FICK, (SharedKey.CO_LMIN, "5.0"), (SharedKey.CI_LMIN_M2, "2.7"))
        self._publish(ledger, CalcType.SVR, (SharedKey.SVR_DYN, "1200"))
        self._publish(ledger, CalcType.PVR, (SharedKey.PVR_WOOD, "2.1"))
        self._publish(ledger, CalcType.CPO, (SharedKey.CPI_W_M2, "0.5"))
        assert has_complete_results(ledger) is False
        self._publish(ledger, CalcType.PAPI, (SharedKey.PAPI, "1.5"))
        assert has_complete_results(ledger) is True

    def test_non_numeric_value_does_not_count(self):
        ledger = ResultsLedger()
        self._publish(ledger, CalcType.FICK, (SharedKey.CO_LMIN, "5.0"), (SharedKey.CI_LMIN_M2, "n/a"))
        self._publish(ledger, CalcType.SVR, (SharedKey.SVR_WOOD, "15"))
        self._publish(ledger, CalcType.PVR, (SharedKey.PVR_DYN, "160"))
        self._publish(ledger, CalcType.CPO, (SharedKey.CPO_W, "0.9"))
        self._publish(ledger, CalcType.PAPI, (SharedKey.PAPI, "1.5"))
        assert has_complete_results(ledger) is False
