"""Service layer: settings, evaluation pipeline and report exports."""

from .evaluator import DMPEvaluator, determine_status, generate_summary, process_results
from .pdf_renderer import PDFRenderError, PDFReportRenderer, PDFSettings
from .report_exporter import MarkdownReportRenderer, ReportRenderError, ReportSettings, export_json
from .settings_store import EvaluatorConfig, ProfileError, SettingsStore

__all__ = [
    "DMPEvaluator",
    "determine_status",
    "generate_summary",
    "process_results",
    "PDFRenderError",
    "PDFReportRenderer",
    "PDFSettings",
    "MarkdownReportRenderer",
    "ReportRenderError",
    "ReportSettings",
    "export_json",
    "EvaluatorConfig",
    "ProfileError",
    "SettingsStore",
]
