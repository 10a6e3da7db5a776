"""Typed schemas for the JSON blobs stored on projects and rows.

Project config, row input and row output are persisted as JSON columns.
Every read and write goes through these models so the stored shape stays
explicit instead of drifting as a free-form dict.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from skillbase.schemas.common import Confidence, ModelSpeed


class ProjectConfig(BaseModel):
    library_id: str = "knowledge"
    model_speed: ModelSpeed = ModelSpeed.QUALITY
    batch_size: int | None = Field(default=None, ge=5, le=50)
    customer_name: str | None = None
    prompt_overrides: dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "ignore", "use_enum_values": True}


class RowInput(BaseModel):
    question: str = Field(..., min_length=1)
    context: str | None = None

    model_config = {"extra": "allow"}

    @field_validator("question")
    @classmethod
    def _strip_question(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("question must not be blank")
        return v


class Transparency(BaseModel):
    run_id: str
    batch_number: int
    skill_ids: list[str]
    skill_count: int
    model_speed: str
    library_id: str


class RowOutput(BaseModel):
    response: str
    confidence: str = Confidence.MEDIUM.value
    sources: list[str] = Field(default_factory=list)
    reasoning: str | None = None
    inference: str | None = None
    remarks: str | None = None
    transparency: Transparency | None = None


class HistoryEntry(BaseModel):
    """One audit entry appended to ``Row.history``."""
    at: str
    action: str
    run_id: str | None = None
    actor: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class GenerationQuestion(BaseModel):
    id: str
    question: str
    context: str | None = None


class GeneratedAnswer(BaseModel):
    id: str
    response: str
    confidence: str = Confidence.MEDIUM.value
    sources: list[str] = Field(default_factory=list)
    reasoning: str | None = None
    inference: str | None = None
    remarks: str | None = None
    tokens_used: int = 0

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalise_confidence(cls, v: Any) -> str:
        text = str(v or "").strip().lower()
        if text in {c.value for c in Confidence}:
            return text
        return Confidence.MEDIUM.value

    @field_validator("sources", mode="before")
    @classmethod
    def _coerce_sources(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return [str(s) for s in v]


class SkillContent(BaseModel):
    id: str
    title: str
    content: str
