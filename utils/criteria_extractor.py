"""Extract DMP evaluation criteria from the Table 2 markdown grid.

The criteria document carries one row per criterion with three phase columns
(proposal, mid-project, end-project). The first cell of a criterion row starts
with its id (``1a``, ``2b``...). Rows without an id continue the text of the
criterion above them.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from models import PHASES, CriteriaValidation, Rubric, RubricEntry

from . import prompts

logger = logging.getLogger(__name__)

TABLE_MARKER = "Table 2"
HEADER_MARKER = "Proposal/Early Stage"
MIN_DESCRIPTION_LENGTH = 10

CATEGORY_DEFINITIONS: Dict[str, str] = {
    "1a": "Data Description and Collection or Re-use",
    "1b": "Data Types, Formats, and Volumes",
    "2a": "Metadata and Documentation Standards",
    "2b": "Data Quality Control Measures",
    "3a": "Storage and Backup",
    "3b": "Data Access Management",
    "3c": "Data Security and Protection",
    "4a": "Personal Data and GDPR Compliance",
    "4b": "Intellectual Property Rights and Ownership",
    "4c": "Ethical Requirements and Approvals",
    "5a": "Data Sharing Plans and Restrictions",
    "5b": "Data Preservation and Archiving",
    "5c": "Access Methods and Software Tools",
    "5d": "Persistent Identifiers (PIDs)",
    "6a": "Data Management Roles and Responsibilities",
    "6b": "Resources for FAIR Data Management",
}

PHASE_COLUMNS = {"proposal": 0, "mid": 1, "end": 2}

PHASE_FOCUS = {
    "proposal": "planned or proposed approach",
    "mid": "current implementation and progress",
    "end": "final outcomes and compliance",
}

_CATEGORY_ID = re.compile(r"(\d+[a-z])\s*", re.IGNORECASE)
_SEPARATOR_ROW = re.compile(r"^\|\s*-+\s*\|")
_LEADING_ID = re.compile(r"^\d+[a-z]?\s+", re.IGNORECASE)
_LEADING_SECTION = re.compile(r"^\d+\s+[A-Z\s]+\d+[a-z]", re.IGNORECASE)
_NAME_PREFIX = re.compile(r"^\d+[a-z]?\s*", re.IGNORECASE)
_QUESTION = re.compile(r"^([^\n]+\?)")


def _normalise_phase(phase: str) -> str:
    if phase in PHASES:
        return phase
    logger.warning("Unknown phase %r, falling back to proposal", phase)
    return "proposal"


def extract_criteria(text: str, phase: str = "proposal") -> Rubric:
    """Parse the criteria table for ``phase``; never returns an empty rubric."""

    phase = _normalise_phase(phase)
    logger.info("Extracting criteria for phase %s", phase)

    start = text.find(TABLE_MARKER)
    if start == -1:
        logger.warning("%s not found, using default criteria", TABLE_MARKER)
        return get_default_criteria(phase)

    end = text.find("\n# ", start + 1)
    table_text = text[start:end] if end > -1 else text[start:]

    entries = _parse_table_rows(table_text, phase)
    if not entries:
        logger.warning("No criteria extracted, using default criteria")
        return get_default_criteria(phase)

    logger.info("Extracted %d criteria categories", len(entries))
    return Rubric(
        phase=phase,  # type: ignore[arg-type]
        categories=[RubricEntry(**entry) for entry in entries],
    )


def _parse_table_rows(table_text: str, phase: str) -> List[Dict[str, str]]:
    column = PHASE_COLUMNS.get(phase, 0)
    entries: List[Dict[str, str]] = []
    by_id: Dict[str, Dict[str, str]] = {}
    current_id: Optional[str] = None
    current_name: Optional[str] = None

    for line in table_text.split("\n"):
        if HEADER_MARKER in line or _SEPARATOR_ROW.match(line):
            continue
        if not line.startswith("|"):
            continue

        cells = [cell.strip() for cell in line.split("|")]
        cells = [cell for cell in cells if cell]
        if len(cells) < 3:
            continue

        first_cell = cells[0]
        match = _CATEGORY_ID.search(first_cell)
        if match:
            current_id = match.group(1).lower()
            current_name = (
                CATEGORY_DEFINITIONS.get(current_id)
                or extract_category_name(first_cell)
                or current_id
            )
            raw = cells[column] if column < len(cells) else first_cell
            description = clean_description(raw, current_id)
            if len(description) > MIN_DESCRIPTION_LENGTH:
                _add_text(entries, by_id, current_id, current_name, description)
            continue

        if current_id is None or column >= len(cells):
            continue

        additional = clean_description(cells[column])
        if len(additional) > MIN_DESCRIPTION_LENGTH:
            _add_text(entries, by_id, current_id, current_name or current_id, additional)
    return entries


def _add_text(
    entries: List[Dict[str, str]],
    by_id: Dict[str, Dict[str, str]],
    category_id: str,
    name: str,
    text: str,
) -> None:
    existing = by_id.get(category_id)
    if existing is not None:
        existing["description"] += "\n\n" + text
        return
    entry = {"id": category_id, "name": name, "description": text}
    by_id[category_id] = entry
    entries.append(entry)


def extract_category_name(cell_text: str) -> str:
    """Return the first question (or first line) of a criterion cell."""

    without_id = _NAME_PREFIX.sub("", cell_text, count=1)
    question = _QUESTION.match(without_id)
    if question:
        return question.group(1).strip()
    first_line = without_id.split("\n")[0]
    return first_line[:100].strip()


def clean_description(text: Optional[str], category_id: Optional[str] = None) -> str:
    """Strip id prefixes and collapse whitespace."""

    if not text:
        return ""

    cleaned = text
    if category_id:
        cleaned = re.sub(rf"^{re.escape(category_id)}\s*", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = _LEADING_ID.sub("", cleaned, count=1)
    cleaned = _LEADING_SECTION.sub("", cleaned, count=1)
    return cleaned.strip()


def get_default_criteria(phase: str = "proposal") -> Rubric:
    """Hand-authored fallback rubric covering all sixteen criteria."""

    phase = _normalise_phase(phase)
    focus = PHASE_FOCUS[phase]
    categories = [
        RubricEntry(
            id=category_id,
            name=name,
            description=f"Evaluate the {focus} for {name.lower()}.",
        )
        for category_id, name in CATEGORY_DEFINITIONS.items()
    ]
    return Rubric(phase=phase, categories=categories)  # type: ignore[arg-type]


def get_default_criteria_text(phase: str = "proposal") -> str:
    """Markdown criteria document users can start from when pasting text."""

    return prompts.load_prompt(
        "default_criteria.md", {"phase_label": prompts.phase_label(_normalise_phase(phase))}
    )


def validate_criteria(criteria: Any) -> CriteriaValidation:
    """Check that a rubric (or rubric-shaped mapping) can drive an evaluation."""

    if criteria is None:
        return CriteriaValidation(valid=False, message="No criteria provided")

    if isinstance(criteria, Rubric):
        categories: Any = [entry.model_dump() for entry in criteria.categories]
    elif isinstance(criteria, Mapping):
        categories = criteria.get("categories")
    else:
        categories = getattr(criteria, "categories", None)

    if not isinstance(categories, list):
        return CriteriaValidation(
            valid=False, message="Invalid criteria structure: missing categories array"
        )
    if not categories:
        return CriteriaValidation(valid=False, message="No evaluation categories found")

    for category in categories:
        if isinstance(category, RubricEntry):
            category = category.model_dump()
        if not isinstance(category, Mapping) or not all(
            category.get(key) for key in ("id", "name", "description")
        ):
            return CriteriaValidation(
                valid=False,
                message="Invalid category structure: missing id, name, or description",
            )

    return CriteriaValidation(
        valid=True, message=f"{len(categories)} categories loaded successfully"
    )


def format_criteria_for_display(rubric: Optional[Rubric]) -> str:
    if rubric is None or not rubric.categories:
        return "No criteria loaded"

    lines = [f"Evaluation Criteria ({rubric.phase} phase)", ""]
    for entry in rubric.categories:
        lines.append(f"{entry.id}. {entry.name}")
        lines.append(entry.description)
        lines.append("")
    return "\n".join(lines)


def get_criteria_stats(rubric: Optional[Rubric]) -> Dict[str, Any]:
    if rubric is None or not rubric.categories:
        return {"total": 0, "avg_description_length": 0}

    total = len(rubric.categories)
    total_chars = sum(len(entry.description) for entry in rubric.categories)
    return {
        "total": total,
        "avg_description_length": round(total_chars / total),
        "phase": rubric.phase,
    }
