"""PDF rendering of DMP evaluation reports."""

from __future__ import annotations

import html
import io
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas
from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from models import EvaluationOutcome

from .report_exporter import format_timestamp


_PAGE_SIZES = {
    "letter": LETTER,
    "us_letter": LETTER,
    "a4": A4,
}

_SCORE_COLORS = (
    (90, colors.HexColor("#198754")),
    (75, colors.HexColor("#0dcaf0")),
    (60, colors.HexColor("#ffc107")),
)
_POOR_COLOR = colors.HexColor("#dc3545")
_HEADER_FILL = colors.HexColor("#0d6efd")


@dataclass(slots=True)
class PDFSettings:
    """Runtime configuration for PDF exports."""

    page_size: str = "a4"
    font: str = "Helvetica"
    line_spacing: float = 1.2


class PDFRenderError(RuntimeError):
    """Raised when a PDF could not be generated."""


class _NumberedCanvas(canvas.Canvas):
    """Canvas that stamps ``Page i of n`` once the page count is known."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._saved_pages: List[dict] = []

    def showPage(self) -> None:  # noqa: N802 - ReportLab API
        self._saved_pages.append(dict(self.__dict__))
        self._startPage()

    def save(self) -> None:
        total = len(self._saved_pages)
        for state in self._saved_pages:
            self.__dict__.update(state)
            self._draw_page_number(total)
            super().showPage()
        super().save()

    def _draw_page_number(self, total: int) -> None:
        width, _ = self._pagesize
        self.saveState()
        self.setFont("Helvetica", 8)
        self.setFillColor(colors.grey)
        self.drawCentredString(width / 2, 0.5 * inch, f"Page {self._pageNumber} of {total}")
        self.restoreState()


def _score_color(score: int) -> colors.Color:
    for threshold, color in _SCORE_COLORS:
        if score >= threshold:
            return color
    return _POOR_COLOR


class PDFReportRenderer:
    """Render evaluation reports using ReportLab."""

    def __init__(self, settings: PDFSettings | None = None) -> None:
        self.settings = settings or PDFSettings()
        self._page_size = self._resolve_page_size(self.settings.page_size)
        base = getSampleStyleSheet()["Normal"]
        spacing = self.settings.line_spacing
        self._body_style = ParagraphStyle(
            "ReportBody",
            parent=base,
            fontName=self.settings.font,
            fontSize=10,
            leading=max(10, 10 * spacing),
            spaceAfter=4,
        )
        self._title_style = ParagraphStyle(
            "ReportTitle",
            parent=self._body_style,
            fontName=f"{self.settings.font}-Bold",
            fontSize=20,
            leading=max(20, 20 * spacing),
            spaceAfter=12,
        )
        self._header_style = ParagraphStyle(
            "ReportHeader",
            parent=self._body_style,
            fontName=f"{self.settings.font}-Bold",
            fontSize=14,
            leading=max(14, 14 * spacing),
            spaceBefore=6,
            spaceAfter=8,
        )
        self._category_style = ParagraphStyle(
            "ReportCategory",
            parent=self._body_style,
            fontName=f"{self.settings.font}-Bold",
            fontSize=11,
            spaceBefore=6,
            spaceAfter=2,
        )
        self._cell_style = ParagraphStyle(
            "ReportCell", parent=self._body_style, fontSize=9, leading=11, spaceAfter=0
        )

    def render(self, outcome: EvaluationOutcome, target: Path) -> int:
        """Write the report to ``target`` and return the number of bytes written."""

        target.parent.mkdir(parents=True, exist_ok=True)
        payload = self.render_bytes(outcome)
        target.write_bytes(payload)
        return len(payload)

    def render_bytes(self, outcome: EvaluationOutcome) -> bytes:
        if not outcome.success or outcome.results is None:
            raise PDFRenderError("No evaluation results to export")

        buffer = io.BytesIO()
        document = SimpleDocTemplate(
            buffer,
            pagesize=self._page_size,
            leftMargin=0.75 * inch,
            rightMargin=0.75 * inch,
            topMargin=0.9 * inch,
            bottomMargin=0.9 * inch,
            title="DMP Evaluation Report",
        )
        story = self._build_story(outcome)
        try:
            document.build(story, canvasmaker=_NumberedCanvas)
        except Exception as exc:  # pragma: no cover - ReportLab runtime issues
            raise PDFRenderError(str(exc)) from exc
        return buffer.getvalue()

    def _build_story(self, outcome: EvaluationOutcome) -> List[object]:
        results = outcome.results
        assert results is not None
        metadata = outcome.metadata
        story: List[object] = [Paragraph("DMP Evaluation Report", self._title_style)]

        info_lines = [
            f"Date: {format_timestamp(metadata.evaluation_date)}",
            f"Phase: {metadata.phase.capitalize()}",
            f"DMP File: {metadata.dmp_file or 'N/A'}",
            f"Criteria File: {metadata.criteria_file or 'N/A'}",
        ]
        if metadata.model:
            info_lines.append(f"Model: {metadata.model}")
        for line in info_lines:
            story.append(Paragraph(html.escape(line), self._body_style))
        story.append(Spacer(1, 0.2 * inch))

        story.append(Paragraph("Overall Compliance Score", self._header_style))
        score_style = ParagraphStyle(
            "ReportScore",
            parent=self._title_style,
            fontSize=24,
            leading=28,
            textColor=_score_color(results.overall_score),
        )
        story.append(Paragraph(f"{results.overall_score}/100", score_style))
        story.append(Spacer(1, 0.15 * inch))

        story.append(Paragraph("Detailed Scores by Category", self._header_style))
        story.append(self._score_table(results.categories))

        story.append(PageBreak())
        story.append(Paragraph("Detailed Feedback", self._header_style))
        for category in results.categories:
            story.append(
                Paragraph(
                    html.escape(f"{category.id}. {category.name}"), self._category_style
                )
            )
            story.append(
                Paragraph(
                    f"Score: {category.score}/100 ({category.status.capitalize()})",
                    self._body_style,
                )
            )
            feedback = html.escape(category.feedback).replace("\n", "<br/>")
            story.append(Paragraph(feedback, self._body_style))
            story.append(Spacer(1, 0.12 * inch))
        return story

    def _score_table(self, categories: Sequence) -> Table:
        rows: List[list] = [["ID", "Category", "Score", "Status"]]
        for category in categories:
            rows.append(
                [
                    category.id,
                    Paragraph(html.escape(category.name), self._cell_style),
                    f"{category.score}/100",
                    category.status.capitalize(),
                ]
            )
        width = self._page_size[0] - 1.5 * inch
        table = Table(
            rows,
            colWidths=[0.1 * width, 0.56 * width, 0.17 * width, 0.17 * width],
            repeatRows=1,
        )
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), _HEADER_FILL),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                    ("FONTNAME", (0, 0), (-1, 0), f"{self.settings.font}-Bold"),
                    ("FONTSIZE", (0, 0), (-1, -1), 9),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                    ("TOPPADDING", (0, 0), (-1, -1), 3),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
                ]
            )
        )
        return table

    @staticmethod
    def _resolve_page_size(label: str) -> Sequence[float]:
        key = (label or "").strip().lower()
        return _PAGE_SIZES.get(key, A4)
