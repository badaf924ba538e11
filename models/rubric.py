"""Rubric models for DMP evaluation criteria."""

from __future__ import annotations

import re
from typing import List, Literal, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Phase = Literal["proposal", "mid", "end"]

PHASES: tuple[str, ...] = ("proposal", "mid", "end")

_CATEGORY_ID = re.compile(r"^\d+[a-z]$")


class RubricEntry(BaseModel):
    """Single evaluation criterion extracted from the criteria document."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def _normalise_id(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("id", mode="after")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        if not _CATEGORY_ID.match(value):
            raise ValueError(f"Criterion id '{value}' must look like '1a'")
        return value

    @field_validator("name", "description", mode="after")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("value must not be blank")
        return value.strip()


class Rubric(BaseModel):
    """Ordered criteria for one project phase."""

    model_config = ConfigDict(extra="forbid")

    phase: Phase = "proposal"
    categories: List[RubricEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "Rubric":
        seen: Set[str] = set()
        for entry in self.categories:
            if entry.id in seen:
                raise ValueError(f"Duplicate criterion id detected: {entry.id}")
            seen.add(entry.id)
        return self

    @property
    def id_set(self) -> Set[str]:
        return {entry.id for entry in self.categories}


class CriteriaValidation(BaseModel):
    """Outcome of checking a rubric before it is sent to the model."""

    valid: bool
    message: str
