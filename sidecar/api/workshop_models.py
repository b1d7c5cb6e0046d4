"""Pydantic models for the /workshop, /patients, /studies and /preferences endpoints."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from trends.classifier import TrendDirection, TrendInsight, TrendMetric
from validation.units import UnitSystem
from workshop.autosave import AutosaveState
from workshop.keys import CalcType
from workshop.session import WorkshopMode


# --- Ledger ---


class LineItemModel(BaseModel):
    label: str
    value: str
    key: Optional[str] = None
    unit: Optional[str] = None
    detail: Optional[str] = None


class CalcEntryModel(BaseModel):
    type: CalcType
    timestamp_millis: Optional[int] = None  # server time when omitted
    title: str
    inputs: list[LineItemModel] = Field(default_factory=list)
    outputs: list[LineItemModel] = Field(default_factory=list)
    notes: list[LineItemModel] = Field(default_factory=list)


class EntriesResponse(BaseModel):
    entries: list[CalcEntryModel]
    has_any_results: bool


class ValueResponse(BaseModel):
    key: str
    value: float | str | None


# --- Session ---


class StudySessionRequest(BaseModel):
    patient_id: str = Field(..., min_length=1)
    study_id: str = Field(..., min_length=1)


class NewStudyRequest(BaseModel):
    patient_id: str = Field(..., min_length=1)


class PrefillDisplay(BaseModel):
    """Patient anthropometrics shown in the preferred unit system."""

    unit_system: UnitSystem
    weight: Optional[float] = None
    weight_unit: str
    height: Optional[float] = None
    height_unit: str
    sex: Optional[str] = None
    birth_date_millis: Optional[int] = None


class SessionResponse(BaseModel):
    mode: WorkshopMode
    patient_id: Optional[str] = None
    study_id: Optional[str] = None
    run_id: str
    autosave_enabled: bool
    reset_tick: int
    prefill: Optional[PrefillDisplay] = None


class DiscardResponse(BaseModel):
    discarded_study_id: Optional[str] = None


# --- Autosave ---


class AutosaveStatusResponse(BaseModel):
    enabled: bool
    is_saving: bool
    last_saved_at_millis: Optional[int] = None
    last_error: Optional[str] = None
    state: AutosaveState


class CoMethodRequest(BaseModel):
    method: str = Field(..., min_length=1)


class CoMethodResponse(BaseModel):
    co_method: str


class CompletionResponse(BaseModel):
    present_types: list[CalcType]
    missing_types: list[CalcType]
    workshop_complete: bool
    has_complete_results: bool


# --- Prefill ---


class PrefillRequest(BaseModel):
    values: dict[str, str] = Field(default_factory=dict)
    display_units: dict[str, str] = Field(default_factory=dict)


class PrefillResponse(BaseModel):
    screen: str
    values: dict[str, str]
    estimated: list[str] = Field(default_factory=list)
    skipped: bool = False


# --- Patients / studies ---


class PatientCreateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=200)
    sex: Optional[str] = None
    birth_date_millis: Optional[int] = None
    weight_kg: Optional[float] = Field(default=None, gt=0, le=300)
    height_cm: Optional[float] = Field(default=None, gt=0, le=250)
    notes: Optional[str] = None


class PatientResponse(BaseModel):
    id: str
    internal_code: str
    display_name: Optional[str] = None
    sex: Optional[str] = None
    birth_date_millis: Optional[int] = None
    weight_kg: Optional[float] = None
    height_cm: Optional[float] = None
    notes: Optional[str] = None
    created_at_millis: int
    updated_at_millis: int


class StudyResponse(BaseModel):
    id: str
    patient_id: str
    type: str
    started_at_millis: int
    ended_at_millis: Optional[int] = None
    notes: Optional[str] = None
    created_at_millis: int
    updated_at_millis: int


class StudyWithSnapshot(BaseModel):
    study: StudyResponse
    rhc: Optional[dict[str, Any]] = None


class StudyListResponse(BaseModel):
    items: list[StudyWithSnapshot]
    total: int


class StudyDeleteResponse(BaseModel):
    deleted: bool


# --- Trends ---


class TrendPointModel(BaseModel):
    x_millis: int
    y: float


class TrendSeriesModel(BaseModel):
    metric: TrendMetric
    points: list[TrendPointModel]
    direction: TrendDirection


class SummaryRowModel(BaseModel):
    metric: TrendMetric
    label: str
    value: Optional[float] = None
    decimals: int
    unit: str


class LatestSummaryModel(BaseModel):
    study_id: str
    started_at_millis: int
    rows: list[SummaryRowModel]
    has_any_value: bool


class TrendsResponse(BaseModel):
    patient_id: str
    last_update_millis: Optional[int] = None
    latest: Optional[LatestSummaryModel] = None
    series: list[TrendSeriesModel] = Field(default_factory=list)
    insights: list[TrendInsight] = Field(default_factory=list)
    sufficient: bool = False


# --- Preferences ---


class Preferences(BaseModel):
    unit_system: UnitSystem = UnitSystem.METRIC
    disclaimer_accepted: bool = False


class PreferencesUpdate(BaseModel):
    """Partial update for preferences."""

    unit_system: Optional[UnitSystem] = None
    disclaimer_accepted: Optional[bool] = None
