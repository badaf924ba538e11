"""Evaluation result models shared by the pipeline, the API and the exporters."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Status = Literal["excellent", "good", "fair", "poor"]

STATUSES: tuple[str, ...] = ("excellent", "good", "fair", "poor")


class _CamelModel(BaseModel):
    """Base for models exchanged as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CategoryResult(_CamelModel):
    """Normalized score and feedback for a single rubric criterion."""

    id: str
    name: str
    score: int = Field(ge=0, le=100)
    status: Status
    feedback: str


class EvaluationResult(_CamelModel):
    """Canonical result shape produced once from raw model output."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    overall_score: int = Field(ge=0, le=100)
    categories: List[CategoryResult] = Field(default_factory=list)

    @property
    def category_ids(self) -> List[str]:
        return [category.id for category in self.categories]


class EvaluationMetadata(_CamelModel):
    """Context retained with every outcome so a run can be repeated."""

    criteria_file: Optional[str] = None
    dmp_file: Optional[str] = None
    phase: str
    evaluation_date: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    model: Optional[str] = None
    profile: Optional[str] = None
    test_mode: bool = False


class EvaluationOutcome(_CamelModel):
    """Top-level orchestrator response: either results or an error message."""

    success: bool
    results: Optional[EvaluationResult] = None
    error: Optional[str] = None
    metadata: EvaluationMetadata


class ProgressEvent(_CamelModel):
    """Progress notification delivered to the caller during a run."""

    type: Literal["status", "stream", "complete"]
    content: str
    is_reasoning: bool = False

    @classmethod
    def status(cls, content: str) -> "ProgressEvent":
        return cls(type="status", content=content)

    @classmethod
    def stream(cls, content: str, *, is_reasoning: bool) -> "ProgressEvent":
        return cls(type="stream", content=content, is_reasoning=is_reasoning)

    @classmethod
    def complete(cls, content: str) -> "ProgressEvent":
        return cls(type="complete", content=content)


class EvaluationSummary(_CamelModel):
    """Aggregate statistics used by the Markdown and PDF reports."""

    overall_score: int
    total_categories: int
    average_score: int
    max_score: int
    min_score: int
    status_counts: Dict[str, int]
    strengths: List[CategoryResult] = Field(default_factory=list)
    weaknesses: List[CategoryResult] = Field(default_factory=list)
