"""DMP evaluation pipeline: decode, extract, prompt, call the model, normalize."""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from models import (
    STATUSES,
    CategoryResult,
    EvaluationMetadata,
    EvaluationOutcome,
    EvaluationResult,
    EvaluationSummary,
    ProgressEvent,
    Rubric,
)
from utils import criteria_extractor, io_utils, prompts
from utils.ai_client import ModelClient
from utils.file_parser import DocumentInput, ParsedDocument, format_file_size, parse_document

from .settings_store import SettingsStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
DocumentParser = Callable[[DocumentInput], ParsedDocument]

MIN_DOCUMENT_LENGTH = 100
STRENGTH_THRESHOLD = 80
WEAKNESS_THRESHOLD = 60
PLACEHOLDER_FEEDBACK = (
    "This criterion was not evaluated. Please review the DMP for this section."
)

_LEADING_INT = re.compile(r"^\s*(\d+)")


def determine_status(score: float) -> str:
    """Map a 0-100 score onto its status band."""

    if score >= 90:
        return "excellent"
    if score >= 75:
        return "good"
    if score >= 60:
        return "fair"
    return "poor"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _coerce_score(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if isinstance(value, int):
        value = max(0, min(100, value))
    if not isinstance(value, (int, float)) or math.isnan(value):
        return 0
    return _round_half_up(min(100.0, max(0.0, float(value))))


def _category_sort_key(category: CategoryResult) -> Tuple[int, int, str]:
    match = _LEADING_INT.match(category.id)
    if match is None:
        return (1, 0, category.id)
    return (0, int(match.group(1)), category.id)


def _normalize_category(raw: Dict[str, Any]) -> CategoryResult:
    score = _coerce_score(raw.get("score"))
    status = raw.get("status")
    status = status.strip().lower() if isinstance(status, str) else ""
    if status not in STATUSES:
        status = determine_status(score)
    return CategoryResult(
        id=str(raw.get("id") or "unknown").strip().lower(),
        name=str(raw.get("name") or "Unknown Category"),
        score=score,
        status=status,
        feedback=str(raw.get("feedback") or "No feedback provided"),
    )


def process_results(raw: Any, rubric: Rubric) -> EvaluationResult:
    """Turn raw model output into a result covering exactly the rubric's ids.

    Unknown ids are dropped, duplicates keep their first occurrence and
    criteria the model skipped are filled with a zero-score placeholder.
    """

    raw = raw if isinstance(raw, dict) else {}
    wanted = rubric.id_set

    categories: List[CategoryResult] = []
    seen: set[str] = set()
    raw_categories = raw.get("categories")
    if isinstance(raw_categories, list):
        for item in raw_categories:
            if not isinstance(item, dict):
                continue
            category = _normalize_category(item)
            if category.id not in wanted:
                logger.warning("Dropping evaluation for unknown category %s", category.id)
                continue
            if category.id in seen:
                logger.warning("Ignoring duplicate evaluation for category %s", category.id)
                continue
            seen.add(category.id)
            categories.append(category)

    overall = _coerce_score(raw.get("overallScore")) if raw.get("overallScore") else 0
    if not overall and categories:
        overall = _round_half_up(sum(c.score for c in categories) / len(categories))

    for entry in rubric.categories:
        if entry.id not in seen:
            logger.warning("Missing evaluation for category %s, adding placeholder", entry.id)
            categories.append(
                CategoryResult(
                    id=entry.id,
                    name=entry.name,
                    score=0,
                    status="poor",
                    feedback=PLACEHOLDER_FEEDBACK,
                )
            )

    categories.sort(key=_category_sort_key)
    return EvaluationResult(overall_score=overall, categories=categories)


def generate_summary(result: Optional[EvaluationResult]) -> Optional[EvaluationSummary]:
    """Aggregate statistics for reports; ``None`` when there is nothing to summarise."""

    if result is None or not result.categories:
        return None

    scores = [category.score for category in result.categories]
    return EvaluationSummary(
        overall_score=result.overall_score,
        total_categories=len(result.categories),
        average_score=_round_half_up(sum(scores) / len(scores)),
        max_score=max(scores),
        min_score=min(scores),
        status_counts={
            status: sum(1 for c in result.categories if c.status == status) for status in STATUSES
        },
        strengths=[c for c in result.categories if c.score >= STRENGTH_THRESHOLD],
        weaknesses=[c for c in result.categories if c.score < WEAKNESS_THRESHOLD],
    )


class DMPEvaluator:
    """Run one evaluation end to end and report progress as it goes.

    ``evaluate`` never raises: every failure becomes an unsuccessful
    :class:`EvaluationOutcome` that keeps the file names and phase.
    """

    def __init__(
        self,
        settings: SettingsStore,
        client: Optional[ModelClient] = None,
        parser: Optional[DocumentParser] = None,
        *,
        log_path: Optional[Path] = None,
    ) -> None:
        self.settings = settings
        self.client = client or ModelClient(settings)
        self.parser = parser or (lambda document: parse_document(document, self.client))
        self.event_log = _EvaluationLogger(log_path) if log_path else None

    def evaluate(
        self,
        criteria_input: DocumentInput,
        document_input: DocumentInput,
        phase: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EvaluationOutcome:
        metadata = EvaluationMetadata(
            criteria_file=criteria_input.name if criteria_input else None,
            dmp_file=document_input.name if document_input else None,
            phase=phase,
            profile=self.settings.get_active_profile_id(),
            test_mode=self.settings.is_test_mode(),
        )
        self._log("evaluation_started", metadata)

        try:
            result = self._run(criteria_input, document_input, phase, metadata, on_progress)
        except Exception as exc:  # every failure is reported, never raised
            error = str(exc) or exc.__class__.__name__
            logger.warning("Evaluation failed: %s", error)
            self._log("evaluation_failed", metadata, error=error)
            _emit(on_progress, ProgressEvent.complete(f"Evaluation failed: {error}"))
            return EvaluationOutcome(success=False, error=error, metadata=metadata)

        self._log(
            "evaluation_completed",
            metadata,
            overall_score=result.overall_score,
            categories=len(result.categories),
        )
        _emit(on_progress, ProgressEvent.complete("Evaluation complete!"))
        return EvaluationOutcome(success=True, results=result, metadata=metadata)

    def _run(
        self,
        criteria_input: DocumentInput,
        document_input: DocumentInput,
        phase: str,
        metadata: EvaluationMetadata,
        on_progress: Optional[ProgressCallback],
    ) -> EvaluationResult:
        if criteria_input is None:
            raise ValueError("No criteria file provided")
        if document_input is None:
            raise ValueError("No DMP file provided")

        _emit(on_progress, ProgressEvent.status(_parse_message(criteria_input, "evaluation criteria")))
        criteria_doc = self.parser(criteria_input)
        rubric = criteria_extractor.extract_criteria(criteria_doc.text, phase)

        validation = criteria_extractor.validate_criteria(rubric)
        if not validation.valid:
            raise ValueError(f"Invalid criteria: {validation.message}")
        logger.info("Criteria loaded: %s", validation.message)
        _emit(on_progress, ProgressEvent.status(f"Criteria loaded: {len(rubric.categories)} categories"))

        _emit(on_progress, ProgressEvent.status(_parse_message(document_input, "DMP document")))
        dmp_doc = self.parser(document_input)
        _emit(on_progress, ProgressEvent.status(f"DMP document parsed: {format_file_size(dmp_doc.size)}"))

        if len(dmp_doc.text) < MIN_DOCUMENT_LENGTH:
            raise ValueError("DMP document is too short. Please provide a complete DMP.")

        _emit(on_progress, ProgressEvent.status("Building evaluation prompt..."))
        prompt = prompts.build_evaluation_prompt(rubric, dmp_doc.text, rubric.phase)

        _emit(on_progress, ProgressEvent.status("Evaluating DMP with AI..."))
        metadata.model = self.settings.get_model()
        raw = self.client.evaluate_dmp(
            prompt.system_prompt,
            prompt.user_prompt,
            lambda event: _forward_client_event(on_progress, event),
        )

        _emit(on_progress, ProgressEvent.status("Processing results..."))
        result = process_results(raw, rubric)
        logger.info("Evaluation complete. Overall score: %d", result.overall_score)
        return result

    def _log(self, event: str, metadata: EvaluationMetadata, **extra: Any) -> None:
        if self.event_log is None:
            return
        payload = metadata.model_dump(mode="json")
        payload.update(extra)
        self.event_log.log(event, extra=payload)


def _parse_message(document: DocumentInput, label: str) -> str:
    if document.name.lower().endswith(".doc"):
        return "Extracting .doc file with AI..."
    return f"Parsing {label}..."


def _emit(callback: Optional[ProgressCallback], event: ProgressEvent) -> None:
    if callback is not None:
        callback(event)


def _forward_client_event(callback: Optional[ProgressCallback], event: ProgressEvent) -> None:
    # the run's single complete event is emitted by DMPEvaluator.evaluate
    if event.type == "stream":
        _emit(callback, event)
    else:
        _emit(callback, ProgressEvent.status(f"AI: {event.content}"))


class _EvaluationLogger:
    """Structured logger that appends evaluation events as JSON lines."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def log(self, event: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"event": event}
        if extra:
            payload.update(extra)
        try:
            io_utils.append_json_line(
                self.path, {"timestamp": datetime.now(timezone.utc).isoformat(), **payload}
            )
        except OSError as exc:
            logger.warning("Could not write evaluation event %s to %s: %s", event, self.path, exc)
