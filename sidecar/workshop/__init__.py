"""Workshop core: shared results ledger, session gate, prefill and autosave."""

from workshop.autosave import AutosavePipeline, AutosaveState, AutosaveStatus
from workshop.keys import CalcType, SharedKey, UnknownKeyError
from workshop.ledger import CalcEntry, LineItem, ResultsLedger
from workshop.prefill import PrefillAdopter
from workshop.session import SessionGate, WorkshopContext, WorkshopMode

__all__ = [
    "AutosavePipeline",
    "AutosaveState",
    "AutosaveStatus",
    "CalcEntry",
    "CalcType",
    "LineItem",
    "PrefillAdopter",
    "ResultsLedger",
    "SessionGate",
    "SharedKey",
    "UnknownKeyError",
    "WorkshopContext",
    "WorkshopMode",
]
