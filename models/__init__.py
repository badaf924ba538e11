"""Pydantic models for rubrics, evaluation results and endpoint profiles."""

from .evaluation import (
    STATUSES,
    CategoryResult,
    EvaluationMetadata,
    EvaluationOutcome,
    EvaluationResult,
    EvaluationSummary,
    ProgressEvent,
    Status,
)
from .profile import BUILTIN_PROFILES, DEFAULT_PROFILE_ID, EndpointProfile, RequestConfig
from .rubric import PHASES, CriteriaValidation, Phase, Rubric, RubricEntry

__all__ = [
    "STATUSES",
    "CategoryResult",
    "EvaluationMetadata",
    "EvaluationOutcome",
    "EvaluationResult",
    "EvaluationSummary",
    "ProgressEvent",
    "Status",
    "BUILTIN_PROFILES",
    "DEFAULT_PROFILE_ID",
    "EndpointProfile",
    "RequestConfig",
    "PHASES",
    "CriteriaValidation",
    "Phase",
    "Rubric",
    "RubricEntry",
]
