"""FastAPI entrypoint for DMP evaluation."""

from __future__ import annotations

import json
import os
import queue
import re
import threading
from collections import OrderedDict
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import Body, FastAPI, File, Form, HTTPException, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from models import PHASES, EndpointProfile, EvaluationOutcome
from services import (
    DMPEvaluator,
    EvaluatorConfig,
    MarkdownReportRenderer,
    PDFRenderError,
    PDFReportRenderer,
    ProfileError,
    ReportRenderError,
    SettingsStore,
    export_json,
)
from services.report_exporter import default_filename
from utils import criteria_extractor, io_utils
from utils.ai_client import AIClientError, ModelClient
from utils.file_parser import DocumentInput, FileParseError, parse_document

load_dotenv()


def _normalize_root_path(value: Optional[str]) -> str:
    """Normalize a configured root path into '/prefix' form or empty string."""
    if not value:
        return ""
    value = value.strip()
    if not value or value == "/":
        return ""
    if not value.startswith("/"):
        value = f"/{value}"
    return value.rstrip("/")


APP_ROOT_PATH = _normalize_root_path(os.getenv("APP_ROOT_PATH"))

CONFIG = EvaluatorConfig.load()
OUTPUT_BASE: Path = CONFIG.output_base
MAX_UPLOAD_BYTES = CONFIG.max_upload_mb * 1024 * 1024

settings_store = SettingsStore.from_config(CONFIG)
model_client = ModelClient(settings_store, timeout=CONFIG.timeout_seconds)
evaluator = DMPEvaluator(
    settings_store,
    model_client,
    log_path=OUTPUT_BASE / "logs" / "evaluations.jsonl",
)

_EVALUATION_LOCK = threading.Lock()
MAX_CACHED_OUTCOMES = 64
_OUTCOMES: OrderedDict[str, EvaluationOutcome] = OrderedDict()
_OUTCOMES_LOCK = threading.Lock()
_EVALUATION_ID = re.compile(r"^[0-9a-f]{32}$")

_EXPORT_MEDIA_TYPES = {
    "json": "application/json",
    "md": "text/markdown; charset=utf-8",
    "pdf": "application/pdf",
}


app = FastAPI(title="DMP Evaluator", version="1.0.0", root_path=APP_ROOT_PATH)


class SettingsResponse(BaseModel):
    api_key_set: bool
    api_key_preview: Optional[str] = None
    model: str
    test_mode: bool
    active_profile_id: str


class SettingsUpdate(BaseModel):
    api_key: Optional[str] = Field(None, description="Empty string clears the stored key")
    model: Optional[str] = None
    test_mode: Optional[bool] = None


class ProfileItem(BaseModel):
    id: str
    builtin: bool
    active: bool
    profile: Dict[str, Any]


class CriteriaConvertRequest(BaseModel):
    criteria_text: str


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "test_mode": settings_store.is_test_mode(),
        "active_profile_id": settings_store.get_active_profile_id(),
        "evaluation_running": _EVALUATION_LOCK.locked(),
    }


@app.get("/settings", response_model=SettingsResponse)
async def get_settings() -> Dict[str, Any]:
    return _settings_payload()


@app.put("/settings", response_model=SettingsResponse)
async def update_settings(update: SettingsUpdate) -> Dict[str, Any]:
    fields = update.model_fields_set
    if "api_key" in fields:
        settings_store.set_api_key(update.api_key or None)
    if "model" in fields:
        settings_store.set_model(update.model)
    if "test_mode" in fields and update.test_mode is not None:
        settings_store.set_test_mode(update.test_mode)
    return _settings_payload()


@app.get("/profiles", response_model=List[ProfileItem])
async def list_profiles() -> List[Dict[str, Any]]:
    active = settings_store.get_active_profile_id()
    return [
        _profile_payload(profile_id, profile, active)
        for profile_id, profile in settings_store.all_profiles().items()
    ]


@app.get("/profiles/{profile_id}", response_model=ProfileItem)
async def get_profile(profile_id: str) -> Dict[str, Any]:
    profile = _require_profile(profile_id)
    return _profile_payload(profile_id, profile, settings_store.get_active_profile_id())


@app.put("/profiles/{profile_id}", response_model=ProfileItem)
async def save_profile(profile_id: str, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    try:
        profile = EndpointProfile.model_validate(payload)
    except ValidationError as exc:
        detail = exc.errors(include_url=False, include_context=False)
        raise HTTPException(status_code=422, detail=detail) from exc
    try:
        settings_store.save_profile(profile_id, profile)
    except ProfileError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _profile_payload(profile_id.strip(), profile, settings_store.get_active_profile_id())


@app.delete("/profiles/{profile_id}")
async def delete_profile(profile_id: str) -> Dict[str, Any]:
    _require_profile(profile_id)
    try:
        settings_store.delete_profile(profile_id)
    except ProfileError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"deleted": profile_id, "active_profile_id": settings_store.get_active_profile_id()}


@app.get("/profiles/{profile_id}/preview", response_class=PlainTextResponse)
async def preview_profile(profile_id: str) -> PlainTextResponse:
    return PlainTextResponse(_require_profile(profile_id).preview_request())


@app.post("/profiles/{profile_id}/activate")
async def activate_profile(profile_id: str) -> Dict[str, Any]:
    _require_profile(profile_id)
    settings_store.set_active_profile_id(profile_id)
    return {"active_profile_id": profile_id}


@app.get("/criteria/default")
async def default_criteria(phase: str = "proposal") -> Dict[str, Any]:
    phase = _validate_phase(phase)
    rubric = criteria_extractor.get_default_criteria(phase)
    return {
        "phase": phase,
        "text": criteria_extractor.get_default_criteria_text(phase),
        "rubric": rubric.model_dump(mode="json"),
    }


@app.post("/criteria/extract")
async def extract_criteria(
    criteria_file: Optional[UploadFile] = File(None),
    criteria_text: Optional[str] = Form(None),
    phase: str = Form("proposal"),
) -> Dict[str, Any]:
    phase = _validate_phase(phase)
    document = await _read_document(criteria_file, criteria_text, label="criteria")

    def _extract() -> Dict[str, Any]:
        parsed = parse_document(document, model_client, max_bytes=MAX_UPLOAD_BYTES)
        rubric = criteria_extractor.extract_criteria(parsed.text, phase)
        validation = criteria_extractor.validate_criteria(rubric)
        return {
            "rubric": rubric.model_dump(mode="json"),
            "validation": validation.model_dump(),
            "stats": criteria_extractor.get_criteria_stats(rubric),
            "display": criteria_extractor.format_criteria_for_display(rubric),
        }

    try:
        return await run_in_threadpool(_extract)
    except FileParseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/criteria/convert")
async def convert_criteria(request: CriteriaConvertRequest) -> Dict[str, Any]:
    try:
        conversion = await run_in_threadpool(
            model_client.detect_and_convert_criteria, request.criteria_text
        )
    except AIClientError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(conversion)


@app.post("/evaluations")
async def create_evaluation(
    criteria_file: Optional[UploadFile] = File(None),
    criteria_text: Optional[str] = Form(None),
    use_default_criteria: bool = Form(False),
    dmp_file: Optional[UploadFile] = File(None),
    dmp_text: Optional[str] = Form(None),
    phase: str = Form("proposal"),
) -> Dict[str, Any]:
    phase = _validate_phase(phase)
    criteria = await _criteria_document(criteria_file, criteria_text, use_default_criteria, phase)
    dmp = await _read_document(dmp_file, dmp_text, label="DMP")

    if not _EVALUATION_LOCK.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="An evaluation is already running")
    try:
        outcome = await run_in_threadpool(evaluator.evaluate, criteria, dmp, phase)
    finally:
        _EVALUATION_LOCK.release()

    evaluation_id = _store_outcome(outcome)
    return _outcome_payload(evaluation_id, outcome)


@app.post("/evaluations/stream")
async def stream_evaluation(
    criteria_file: Optional[UploadFile] = File(None),
    criteria_text: Optional[str] = Form(None),
    use_default_criteria: bool = Form(False),
    dmp_file: Optional[UploadFile] = File(None),
    dmp_text: Optional[str] = Form(None),
    phase: str = Form("proposal"),
) -> StreamingResponse:
    phase = _validate_phase(phase)
    criteria = await _criteria_document(criteria_file, criteria_text, use_default_criteria, phase)
    dmp = await _read_document(dmp_file, dmp_text, label="DMP")

    if not _EVALUATION_LOCK.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="An evaluation is already running")

    events: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()

    def _run() -> None:
        try:
            outcome = evaluator.evaluate(
                criteria,
                dmp,
                phase,
                lambda event: events.put(event.model_dump(by_alias=True)),
            )
            evaluation_id = _store_outcome(outcome)
            events.put({"type": "outcome", **_outcome_payload(evaluation_id, outcome)})
        finally:
            _EVALUATION_LOCK.release()
            events.put(None)

    threading.Thread(target=_run, name="dmp-evaluation", daemon=True).start()

    def _event_stream() -> Iterator[str]:
        while True:
            item = events.get()
            if item is None:
                break
            yield f"data: {json.dumps(item, ensure_ascii=False)}\n\n"

    return StreamingResponse(
        _event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@app.get("/evaluations/{evaluation_id}")
async def get_evaluation(evaluation_id: str) -> Dict[str, Any]:
    return _outcome_payload(evaluation_id, _load_outcome(evaluation_id))


@app.get("/evaluations/{evaluation_id}/export/{fmt}")
async def export_evaluation(evaluation_id: str, fmt: str) -> Response:
    if fmt not in _EXPORT_MEDIA_TYPES:
        raise HTTPException(status_code=404, detail="Unknown export format requested")
    outcome = _load_outcome(evaluation_id)

    try:
        if fmt == "json":
            content: bytes = export_json(outcome).encode("utf-8")
        elif fmt == "md":
            content = MarkdownReportRenderer().render(outcome).encode("utf-8")
        else:
            content = await run_in_threadpool(PDFReportRenderer().render_bytes, outcome)
    except (ReportRenderError, PDFRenderError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    if evaluator.event_log is not None:
        evaluator.event_log.log(
            "evaluation_exported",
            extra={"evaluation_id": evaluation_id, "format": fmt, "bytes": len(content)},
        )
    filename = default_filename(fmt)
    return Response(
        content=content,
        media_type=_EXPORT_MEDIA_TYPES[fmt],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _settings_payload() -> Dict[str, Any]:
    api_key = settings_store.get_api_key()
    return {
        "api_key_set": bool(api_key),
        "api_key_preview": _mask_key(api_key) if api_key else None,
        "model": settings_store.get_model(),
        "test_mode": settings_store.is_test_mode(),
        "active_profile_id": settings_store.get_active_profile_id(),
    }


def _mask_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "****"
    return f"****{api_key[-4:]}"


def _profile_payload(profile_id: str, profile: EndpointProfile, active: str) -> Dict[str, Any]:
    return {
        "id": profile_id,
        "builtin": not settings_store.is_custom_profile(profile_id),
        "active": profile_id == active,
        "profile": profile.model_dump(by_alias=True),
    }


def _require_profile(profile_id: str) -> EndpointProfile:
    profile = settings_store.get_profile(profile_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Profile '{profile_id}' not found")
    return profile


def _validate_phase(phase: str) -> str:
    value = (phase or "").strip().lower()
    if value not in PHASES:
        raise HTTPException(
            status_code=400, detail=f"Unknown phase '{phase}'. Expected one of: {', '.join(PHASES)}"
        )
    return value


async def _read_document(
    upload: Optional[UploadFile], text: Optional[str], *, label: str
) -> DocumentInput:
    if upload is not None and upload.filename:
        raw = await upload.read()
        if not raw:
            raise HTTPException(status_code=400, detail=f"{label} upload was empty.")
        if len(raw) > MAX_UPLOAD_BYTES:
            raise HTTPException(
                status_code=413,
                detail=f"{label} file too large (max {MAX_UPLOAD_BYTES // (1024 * 1024)}MB)",
            )
        return DocumentInput(name=upload.filename, data=raw)

    if text and text.strip():
        return DocumentInput.from_text(text)

    raise HTTPException(status_code=400, detail=f"Provide a {label} file or paste {label} text.")


async def _criteria_document(
    upload: Optional[UploadFile], text: Optional[str], use_default: bool, phase: str
) -> DocumentInput:
    if use_default and not (upload is not None and upload.filename) and not (text and text.strip()):
        return DocumentInput.from_text(
            criteria_extractor.get_default_criteria_text(phase), name="default-criteria.md"
        )
    return await _read_document(upload, text, label="criteria")


def _outcome_payload(evaluation_id: str, outcome: EvaluationOutcome) -> Dict[str, Any]:
    return {"evaluationId": evaluation_id, **outcome.model_dump(mode="json", by_alias=True)}


def _outcome_path(evaluation_id: str) -> Path:
    return OUTPUT_BASE / "evaluations" / f"{evaluation_id}.json"


def _store_outcome(outcome: EvaluationOutcome) -> str:
    evaluation_id = uuid4().hex
    _cache_outcome(evaluation_id, outcome)
    io_utils.write_json(_outcome_path(evaluation_id), outcome.model_dump(mode="json", by_alias=True))
    return evaluation_id


def _load_outcome(evaluation_id: str) -> EvaluationOutcome:
    if not _EVALUATION_ID.match(evaluation_id):
        raise HTTPException(status_code=404, detail=f"Evaluation '{evaluation_id}' not found")

    with _OUTCOMES_LOCK:
        cached = _OUTCOMES.get(evaluation_id)
        if cached is not None:
            _OUTCOMES.move_to_end(evaluation_id)
    if cached is not None:
        return cached

    path = _outcome_path(evaluation_id)
    if not path.exists():
        raise HTTPException(status_code=404, detail=f"Evaluation '{evaluation_id}' not found")
    try:
        outcome = EvaluationOutcome.model_validate(io_utils.read_json_file(str(path)))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise HTTPException(status_code=500, detail="Stored evaluation is unreadable") from exc

    _cache_outcome(evaluation_id, outcome)
    return outcome


def _cache_outcome(evaluation_id: str, outcome: EvaluationOutcome) -> None:
    # stored outcomes are reloaded from disk once evicted
    with _OUTCOMES_LOCK:
        _OUTCOMES[evaluation_id] = outcome
        _OUTCOMES.move_to_end(evaluation_id)
        while len(_OUTCOMES) > MAX_CACHED_OUTCOMES:
            _OUTCOMES.popitem(last=False)
