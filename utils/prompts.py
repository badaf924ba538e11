"""Helpers for loading and rendering prompt templates."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from jinja2 import Template, StrictUndefined

from models import Rubric


PHASE_LABELS = {
    "proposal": "proposal/early stage",
    "mid": "mid-project",
    "end": "end-project",
}


class PromptNotFoundError(FileNotFoundError):
    """Raised when a prompt template cannot be located."""


class PromptRenderError(RuntimeError):
    """Raised when a prompt template cannot be rendered."""


@dataclass
class EvaluationPrompt:
    """System/user prompt pair sent to the model."""

    system_prompt: str
    user_prompt: str


def _prompts_base_dir() -> Path:
    env_dir = os.getenv("PROMPTS_DIR")
    if env_dir:
        return Path(env_dir)
    return Path(__file__).resolve().parent.parent / "prompts"


def _resolve_prompt_path(name: str) -> Path:
    candidate = Path(name)
    if candidate.is_absolute() and candidate.exists():
        return candidate

    base = _prompts_base_dir()
    path = base / name
    if path.exists():
        return path

    if not name.endswith(".md"):
        path_with_ext = base / f"{name}.md"
        if path_with_ext.exists():
            return path_with_ext

    raise PromptNotFoundError(f"Prompt template not found: {name}")


def load_prompt(name: str, context: Dict[str, Any] | None = None) -> str:
    """Load a prompt template and render it with the given context."""

    path = _resolve_prompt_path(name)
    source = path.read_text(encoding="utf-8")
    context = context or {}

    try:
        template = Template(source, undefined=StrictUndefined)
        return template.render(**context)
    except Exception as exc:  # pragma: no cover - template syntax errors
        raise PromptRenderError(f"Failed to render prompt '{name}': {exc}") from exc


def phase_label(phase: str) -> str:
    return PHASE_LABELS.get(phase, PHASE_LABELS["end"])


def format_criteria_block(rubric: Rubric) -> str:
    """Render every rubric entry as a bold heading followed by its description."""

    return "\n\n".join(
        f"**{entry.id}: {entry.name}**\n{entry.description}" for entry in rubric.categories
    )


def build_evaluation_prompt(rubric: Rubric, document_text: str, phase: str) -> EvaluationPrompt:
    """Render the system and user prompts for a DMP evaluation.

    The document text is passed through verbatim; no truncation happens here.
    """

    system_prompt = load_prompt("dmp_system.md", {"phase_label": phase_label(phase)})
    user_prompt = load_prompt(
        "dmp_evaluator.md",
        {
            "phase": phase,
            "criteria_text": format_criteria_block(rubric),
            "document_text": document_text,
        },
    )
    return EvaluationPrompt(system_prompt=system_prompt, user_prompt=user_prompt)
