import asyncio
import logging
import time
from typing import Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request

from api import preferences as preferences_store
from api.workshop_models import (
    AutosaveStatusResponse,
    CalcEntryModel,
    CoMethodRequest,
    CoMethodResponse,
    CompletionResponse,
    DiscardResponse,
    EntriesResponse,
    LatestSummaryModel,
    LineItemModel,
    NewStudyRequest,
    PatientCreateRequest,
    PatientResponse,
    Preferences,
    PreferencesUpdate,
    PrefillDisplay,
    PrefillRequest,
    PrefillResponse,
    SessionResponse,
    StudyDeleteResponse,
    StudyListResponse,
    StudyResponse,
    StudySessionRequest,
    StudyWithSnapshot,
    SummaryRowModel,
    TrendPointModel,
    TrendSeriesModel,
    TrendsResponse,
    ValueResponse,
)
from trends.classifier import build_trends, last_update_millis, latest_summary
from validation.units import convert
from workshop.autosave import AutosaveStatus
from workshop.keys import UnknownKeyError
from workshop.ledger import CalcEntry, LineItem
from workshop.runtime import WorkshopRuntime
from workshop.session import WorkshopMode, has_complete_results
from workshop.study_factory import PatientNotFoundError

_logger = logging.getLogger(__name__)

router = APIRouter()


def _runtime(request: Request) -> WorkshopRuntime:
    """Return the workshop runtime created by the app lifespan."""
    return request.app.state.runtime


async def _db_call(request: Request, method_name: str, *args, **kwargs):
    """Run a blocking database method in a worker thread."""
    method = getattr(_runtime(request).db, method_name)
    try:
        return await asyncio.to_thread(method, *args, **kwargs)
    except Exception as exc:
        _logger.exception("Database error in %s: %s", method_name, exc)
        raise HTTPException(
            status_code=500,
            detail="A database error occurred. Please try again.",
        )


def _to_line_item(model: LineItemModel) -> LineItem:
    return LineItem(
        label=model.label,
        value=model.value,
        key=model.key,
        unit=model.unit,
        detail=model.detail,
    )


def _to_entry_model(entry: CalcEntry) -> CalcEntryModel:
    def items(seq):
        return [
            LineItemModel(
                label=i.label,
                value=i.value,
                key=i.key.value if i.key is not None else None,
                unit=i.unit,
                detail=i.detail,
            )
            for i in seq
        ]

    return CalcEntryModel(
        type=entry.type,
        timestamp_millis=entry.timestamp_millis,
        title=entry.title,
        inputs=items(entry.inputs),
        outputs=items(entry.outputs),
        notes=items(entry.notes),
    )


def _autosave_response(status: AutosaveStatus) -> AutosaveStatusResponse:
    return AutosaveStatusResponse(
        enabled=status.enabled,
        is_saving=status.is_saving,
        last_saved_at_millis=status.last_saved_at_millis,
        last_error=status.last_error,
        state=status.state,
    )


def _prefill_display(runtime: WorkshopRuntime) -> Optional[PrefillDisplay]:
    ctx = runtime.gate.context
    if ctx.mode != WorkshopMode.PATIENT_STUDY:
        return None
    unit_system = preferences_store.get_preferences(runtime.db).unit_system
    prefill = runtime.prefill_store.value
    weight = prefill.weight_kg
    height = prefill.height_cm
    return PrefillDisplay(
        unit_system=unit_system,
        weight=convert(weight, "kg", unit_system.weight_unit) if weight is not None else None,
        weight_unit=unit_system.weight_unit,
        height=convert(height, "cm", unit_system.height_unit) if height is not None else None,
        height_unit=unit_system.height_unit,
        sex=prefill.sex,
        birth_date_millis=prefill.birth_date_millis,
    )


def _session_response(runtime: WorkshopRuntime) -> SessionResponse:
    ctx = runtime.gate.context
    return SessionResponse(
        mode=ctx.mode,
        patient_id=ctx.patient_id,
        study_id=ctx.study_id,
        run_id=ctx.run_id,
        autosave_enabled=runtime.gate.is_autosave_enabled(),
        reset_tick=runtime.reset_bus.tick,
        prefill=_prefill_display(runtime),
    )


@router.get("/health")
async def health_check(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or not runtime.autosave.running:
        return {"status": "starting"}
    return {"status": "ok"}


# --- Ledger Endpoints ---


@router.get("/workshop/entries", response_model=EntriesResponse)
async def list_entries(request: Request):
    """Return every calculation currently in the ledger, oldest first."""
    runtime = _runtime(request)
    return EntriesResponse(
        entries=[_to_entry_model(e) for e in runtime.ledger.snapshot()],
        has_any_results=runtime.ledger.has_any_results,
    )


@router.post("/workshop/entries", response_model=CalcEntryModel, status_code=201)
async def upsert_entry(request: Request, body: CalcEntryModel = Body(...)):
    """Publish a calculator result, replacing any previous result of the same type."""
    runtime = _runtime(request)
    try:
        entry = CalcEntry(
            type=body.type,
            timestamp_millis=body.timestamp_millis
            if body.timestamp_millis is not None
            else int(time.time() * 1000),
            title=body.title,
            inputs=[_to_line_item(i) for i in body.inputs],
            outputs=[_to_line_item(i) for i in body.outputs],
            notes=[_to_line_item(i) for i in body.notes],
        )
    except UnknownKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    runtime.ledger.upsert(entry)
    return _to_entry_model(entry)


@router.delete("/workshop/entries", response_model=EntriesResponse)
async def clear_entries(request: Request):
    # Clearing results ends the session so an empty ledger is never saved
    _runtime(request).reset_session()
    return EntriesResponse(entries=[], has_any_results=False)


@router.get("/workshop/values/{key}", response_model=ValueResponse)
async def get_value(
    request: Request,
    key: str,
    as_type: str = Query("double", alias="as", pattern="^(double|string)$"),
):
    """Resolve a canonical key from the most recent calculation that carries it."""
    runtime = _runtime(request)
    try:
        value = runtime.ledger.latest_value_by_key(key, as_type)
    except UnknownKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return ValueResponse(key=key, value=value)


# --- Session Endpoints ---


@router.get("/workshop/session", response_model=SessionResponse)
async def get_session(request: Request):
    return _session_response(_runtime(request))


@router.post("/workshop/session/quick", response_model=SessionResponse)
async def start_quick_session(request: Request):
    """Start an anonymous workshop. Nothing is persisted."""
    runtime = _runtime(request)
    runtime.start_quick()
    return _session_response(runtime)


@router.post("/workshop/session/study", response_model=SessionResponse)
async def start_study_session(request: Request, body: StudySessionRequest = Body(...)):
    """Bind the workshop to an existing study of a patient."""
    runtime = _runtime(request)
    study = await _db_call(request, "get_study", body.study_id)
    if not study or study["patient_id"] != body.patient_id:
        raise HTTPException(status_code=404, detail="Study not found.")
    await runtime.start_patient_study(body.patient_id, body.study_id)
    return _session_response(runtime)


@router.post("/workshop/studies", response_model=StudyResponse, status_code=201)
async def create_workshop_study(request: Request, body: NewStudyRequest = Body(...)):
    """Create a new RHC study for the patient and start an empty workshop on it."""
    runtime = _runtime(request)
    try:
        study = await runtime.new_study(body.patient_id)
    except PatientNotFoundError:
        raise HTTPException(status_code=404, detail="Patient not found.")
    return StudyResponse(**study)


@router.post("/workshop/reset", response_model=SessionResponse)
async def reset_workshop(request: Request):
    """Clear every result and the session identifiers."""
    runtime = _runtime(request)
    runtime.reset_session()
    return _session_response(runtime)


@router.post("/workshop/discard", response_model=DiscardResponse)
async def discard_workshop(request: Request):
    """Delete the current study with its snapshot, then reset."""
    runtime = _runtime(request)
    study_id = await runtime.discard_study()
    return DiscardResponse(discarded_study_id=study_id)


@router.post("/workshop/save-exit", response_model=AutosaveStatusResponse)
async def save_and_exit_workshop(request: Request):
    """Flush the current study, mark it ended and close the session."""
    runtime = _runtime(request)
    status = await runtime.save_and_exit()
    return _autosave_response(status or runtime.autosave.status)


# --- Autosave Endpoints ---


@router.get("/workshop/autosave", response_model=AutosaveStatusResponse)
async def get_autosave_status(request: Request):
    return _autosave_response(_runtime(request).autosave.status)


@router.post("/workshop/autosave/flush", response_model=AutosaveStatusResponse)
async def flush_autosave(request: Request):
    """Save immediately, skipping the debounce window."""
    status = await _runtime(request).autosave.flush_now()
    return _autosave_response(status)


@router.put("/workshop/co-method", response_model=CoMethodResponse)
async def set_co_method(request: Request, body: CoMethodRequest = Body(...)):
    method = _runtime(request).autosave.set_co_method(body.method)
    return CoMethodResponse(co_method=method)


@router.get("/workshop/completion", response_model=CompletionResponse)
async def get_completion(request: Request):
    runtime = _runtime(request)
    present = runtime.ledger.present_types()
    required = runtime.gate.required_types
    return CompletionResponse(
        present_types=sorted(present, key=lambda t: t.value),
        missing_types=sorted(required - present, key=lambda t: t.value),
        workshop_complete=runtime.gate.is_workshop_complete(present),
        has_complete_results=has_complete_results(runtime.ledger),
    )


# --- Prefill Endpoints ---


@router.post("/workshop/prefill/{screen}", response_model=PrefillResponse)
async def prefill_screen(request: Request, screen: str, body: PrefillRequest = Body(...)):
    """Return values to place into the screen's blank fields (once per session reset)."""
    runtime = _runtime(request)
    try:
        adopter = runtime.adopter(screen)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown screen: {screen}")
    outcome = adopter.run(body.values, body.display_units)
    return PrefillResponse(
        screen=screen,
        values=outcome.values,
        estimated=sorted(outcome.estimated),
        skipped=outcome.skipped,
    )


# --- Patient / Study Endpoints ---


@router.post("/patients", response_model=PatientResponse, status_code=201)
async def create_patient(request: Request, body: PatientCreateRequest = Body(...)):
    record = await _db_call(request, "create_patient", **body.model_dump())
    return PatientResponse(**record)


@router.get("/patients/{patient_id}", response_model=PatientResponse)
async def get_patient(request: Request, patient_id: str):
    record = await _db_call(request, "get_patient", patient_id)
    if not record:
        raise HTTPException(status_code=404, detail="Patient not found.")
    return PatientResponse(**record)


@router.get("/patients/{patient_id}/studies", response_model=StudyListResponse)
async def list_patient_studies(request: Request, patient_id: str):
    """Return the patient's studies, newest first, each with its snapshot."""
    patient = await _db_call(request, "get_patient", patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found.")
    rows = await _db_call(request, "list_studies_with_rhc", patient_id)
    items = [StudyWithSnapshot(study=StudyResponse(**r["study"]), rhc=r["rhc"]) for r in rows]
    return StudyListResponse(items=items, total=len(items))


@router.get("/patients/{patient_id}/trends", response_model=TrendsResponse)
async def get_patient_trends(request: Request, patient_id: str):
    """Latest-study summary plus trend directions and insights across studies."""
    patient = await _db_call(request, "get_patient", patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found.")
    rows = await _db_call(request, "list_studies_with_rhc", patient_id)

    response = TrendsResponse(patient_id=patient_id)
    if rows:
        newest = rows[0]
        summary = latest_summary(newest["study"], newest["rhc"])
        response.last_update_millis = last_update_millis(newest["study"], newest["rhc"])
        response.latest = LatestSummaryModel(
            study_id=summary.study_id,
            started_at_millis=summary.started_at_millis,
            rows=[
                SummaryRowModel(
                    metric=r.metric, label=r.label, value=r.value, decimals=r.decimals, unit=r.unit,
                )
                for r in summary.rows
            ],
            has_any_value=summary.has_any_value,
        )

    trends = build_trends(rows)
    if trends is not None:
        response.sufficient = True
        response.series = [
            TrendSeriesModel(
                metric=s.metric,
                points=[TrendPointModel(x_millis=p.x_millis, y=p.y) for p in s.points],
                direction=s.direction,
            )
            for s in trends.series
        ]
        response.insights = trends.insights
    return response


@router.get("/studies/{study_id}/snapshot", response_model=StudyWithSnapshot)
async def get_study_snapshot(request: Request, study_id: str):
    study = await _db_call(request, "get_study", study_id)
    if not study:
        raise HTTPException(status_code=404, detail="Study not found.")
    rhc = await _db_call(request, "get_rhc_by_study_id", study_id)
    return StudyWithSnapshot(study=StudyResponse(**study), rhc=rhc)


@router.delete("/studies/{study_id}", response_model=StudyDeleteResponse)
async def delete_study(request: Request, study_id: str):
    """Delete a study and its snapshot. Deleting the active study also resets the workshop."""
    runtime = _runtime(request)
    if runtime.gate.context.study_id == study_id:
        await runtime.discard_study()
        return StudyDeleteResponse(deleted=True)
    deleted = await _db_call(request, "delete_study", study_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Study not found.")
    return StudyDeleteResponse(deleted=True)


# --- Preferences Endpoints ---


@router.get("/preferences", response_model=Preferences)
async def get_preferences(request: Request):
    return preferences_store.get_preferences(_runtime(request).db)


@router.patch("/preferences", response_model=Preferences)
async def update_preferences(request: Request, update: PreferencesUpdate = Body(...)):
    """Update preferences (partial update)."""
    return preferences_store.update_preferences(update, _runtime(request).db)
