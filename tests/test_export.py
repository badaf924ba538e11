from __future__ import annotations

import io
import json
from datetime import date

import pytest
from PyPDF2 import PdfReader

from models import CategoryResult, EvaluationMetadata, EvaluationOutcome, EvaluationResult
from services.pdf_renderer import PDFRenderError, PDFReportRenderer
from services.report_exporter import (
    MarkdownReportRenderer,
    ReportRenderError,
    default_filename,
    export_json,
    score_bar,
    status_label,
)


def _outcome() -> EvaluationOutcome:
    categories = [
        CategoryResult(id="1a", name="Data Collection", score=92, status="excellent",
                       feedback="Collection methods are described in detail. " * 6),
        CategoryResult(id="2a", name="Metadata | Standards", score=78, status="good",
                       feedback="Metadata standard named."),
        CategoryResult(id="3a", name="Storage", score=40, status="poor",
                       feedback="Backups are not described."),
    ]
    return EvaluationOutcome(
        success=True,
        results=EvaluationResult(overall_score=70, categories=categories),
        metadata=EvaluationMetadata(
            criteria_file="criteria.md",
            dmp_file="plan.pdf",
            phase="mid",
            evaluation_date="2026-03-01T10:30:00+00:00",
            model="test/model",
        ),
    )


def _failed_outcome() -> EvaluationOutcome:
    return EvaluationOutcome(
        success=False, error="DMP document is too short.", metadata=EvaluationMetadata(phase="end")
    )


def test_json_export_uses_wire_field_names():
    payload = json.loads(export_json(_outcome()))

    assert payload["success"] is True
    assert payload["results"]["overallScore"] == 70
    assert payload["results"]["categories"][0]["id"] == "1a"
    assert payload["metadata"]["dmpFile"] == "plan.pdf"
    assert payload["metadata"]["evaluationDate"] == "2026-03-01T10:30:00+00:00"


def test_json_export_keeps_failures():
    payload = json.loads(export_json(_failed_outcome()))

    assert payload["success"] is False
    assert payload["error"] == "DMP document is too short."
    assert payload["results"] is None


def test_markdown_report_sections():
    report = MarkdownReportRenderer().render(_outcome())

    assert report.startswith("# DMP Evaluation Report\n")
    assert "- **Date**: 2026-03-01" in report
    assert "- **Phase**: Mid" in report
    assert "- **Model Used**: test/model" in report
    assert "**70/100** (Fair)" in report
    assert f"`[{score_bar(70)}]`" in report
    assert "- Average Score: 70" in report
    assert "- Excellent (90-100): 1 categories" in report
    assert "| 1a | Data Collection | 92/100 | Excellent |" in report
    assert "| 2a | Metadata \\| Standards | 78/100 | Good |" in report
    assert "### 3a. Storage" in report
    assert "## Key Findings" in report
    assert "### Areas for Improvement" in report
    assert "- **Storage** (40/100): Backups are not described." in report
    assert "*Generated by DMP Evaluation Tool on 2026-03-01 10:30 UTC*" in report


def test_markdown_strength_feedback_is_shortened():
    report = MarkdownReportRenderer().render(_outcome())

    strength_line = next(line for line in report.splitlines() if line.startswith("- **Data Collection**"))
    assert strength_line.endswith("...")
    assert len(strength_line) < 200


def test_markdown_requires_results():
    with pytest.raises(ReportRenderError):
        MarkdownReportRenderer().render(_failed_outcome())


def test_pdf_report_contains_scores_and_page_numbers():
    payload = PDFReportRenderer().render_bytes(_outcome())

    assert payload.startswith(b"%PDF")
    reader = PdfReader(io.BytesIO(payload))
    text = "\n".join(page.extract_text() or "" for page in reader.pages)
    assert len(reader.pages) >= 2
    assert "DMP Evaluation Report" in text
    assert "70/100" in text
    assert f"Page 1 of {len(reader.pages)}" in text


def test_pdf_report_written_to_disk(tmp_path):
    target = tmp_path / "exports" / "report.pdf"

    written = PDFReportRenderer().render(_outcome(), target)

    assert written == target.stat().st_size


def test_pdf_requires_results():
    with pytest.raises(PDFRenderError):
        PDFReportRenderer().render_bytes(_failed_outcome())


@pytest.mark.parametrize(
    "score, label", [(95, "Excellent"), (80, "Good"), (60, "Fair"), (10, "Needs Improvement")]
)
def test_status_label(score, label):
    assert status_label(score) == label


def test_score_bar_and_filename():
    assert score_bar(50, 10) == "█████     "
    assert score_bar(100, 4) == "████"
    assert default_filename("md", date(2026, 3, 1)) == "dmp-evaluation-2026-03-01.md"
