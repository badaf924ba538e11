"""JSON and Markdown exports of evaluation outcomes."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, TemplateError

from models import EvaluationOutcome

from .evaluator import generate_summary

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B-\x1F\x7F]")


class ReportRenderError(RuntimeError):
    """Raised when a report could not be rendered."""


def _default_template_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "templates"


@dataclass(slots=True)
class ReportSettings:
    """Configuration for Markdown report generation."""

    template_dir: Path = field(default_factory=_default_template_dir)
    markdown_template: str = "report.md.j2"
    bar_length: int = 30
    excerpt_chars: int = 150


def status_label(score: int) -> str:
    if score >= 90:
        return "Excellent"
    if score >= 75:
        return "Good"
    if score >= 60:
        return "Fair"
    return "Needs Improvement"


def score_bar(score: int, length: int = 30) -> str:
    filled = int(round(score / 100 * length))
    filled = min(max(filled, 0), length)
    return "█" * filled + " " * (length - filled)


def default_filename(extension: str, on: Optional[date] = None) -> str:
    """``dmp-evaluation-<YYYY-MM-DD>.<extension>``."""

    day = on or date.today()
    return f"dmp-evaluation-{day.isoformat()}.{extension}"


def format_timestamp(value: Optional[str], *, with_time: bool = False) -> str:
    if not value:
        return ""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return parsed.strftime("%Y-%m-%d %H:%M %Z").strip() if with_time else parsed.strftime("%Y-%m-%d")


def export_json(outcome: EvaluationOutcome) -> str:
    """Verbatim dump of the outcome, camelCase keys as on the wire."""

    payload = outcome.model_dump(mode="json", by_alias=True)
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


class MarkdownReportRenderer:
    """Render evaluation outcomes as a Markdown report."""

    def __init__(self, settings: Optional[ReportSettings] = None) -> None:
        self.settings = settings or ReportSettings()
        self._env = Environment(
            loader=FileSystemLoader(str(self.settings.template_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._env.filters["excerpt"] = self._excerpt
        self._env.filters["table_cell"] = lambda value: str(value).replace("|", "\\|")

    def render(self, outcome: EvaluationOutcome) -> str:
        if not outcome.success or outcome.results is None:
            raise ReportRenderError("No evaluation results to export")

        try:
            template = self._env.get_template(self.settings.markdown_template)
        except TemplateError as exc:  # pragma: no cover - configuration issue
            raise ReportRenderError(str(exc)) from exc

        try:
            rendered = template.render(self._build_context(outcome))
        except TemplateError as exc:  # pragma: no cover - template runtime errors
            raise ReportRenderError(str(exc)) from exc
        return rendered.rstrip("\n") + "\n"

    def _build_context(self, outcome: EvaluationOutcome) -> Dict[str, Any]:
        results = outcome.results
        assert results is not None
        overall = results.overall_score
        summary = generate_summary(results)
        return {
            "metadata": outcome.metadata,
            "results": _sanitize(results),
            "summary": _sanitize(summary) if summary else None,
            "evaluation_date": format_timestamp(outcome.metadata.evaluation_date),
            "generated_at": format_timestamp(outcome.metadata.evaluation_date, with_time=True),
            "overall_label": status_label(overall),
            "score_bar": score_bar(overall, self.settings.bar_length),
        }

    def _excerpt(self, text: str) -> str:
        limit = self.settings.excerpt_chars
        if len(text) <= limit:
            return text
        return text[:limit].rstrip() + "..."


def _sanitize(model: Any) -> Any:
    """Copy of a pydantic model with control characters stripped from strings."""

    def clean(value: Any) -> Any:
        if isinstance(value, str):
            return _CONTROL_CHARS.sub("", value)
        if isinstance(value, dict):
            return {key: clean(item) for key, item in value.items()}
        if isinstance(value, list):
            return [clean(item) for item in value]
        return value

    return type(model).model_validate(clean(model.model_dump()))
