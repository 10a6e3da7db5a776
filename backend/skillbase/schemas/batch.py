"""Dispatch, status and skill preview schemas."""
from datetime import datetime
from pydantic import BaseModel, Field
from skillbase.schemas.common import DispatchMode, ModelSpeed, ProjectStatus


class DispatchRequest(BaseModel):
    skill_ids: list[str] = Field(default_factory=list)
    batch_size: int = 25
    library_id: str | None = None
    model_speed: ModelSpeed | None = None


class DispatchResponse(BaseModel):
    mode: DispatchMode
    job_id: str | None = None
    run_id: str
    project_id: str
    total_questions: int
    batch_size: int
    skill_count: int
    message: str


class RowStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    error: int = 0


class RunSummary(BaseModel):
    run_id: str
    mode: str
    status: str
    job_id: str | None
    total_batches: int
    completed_batches: int
    processed_rows: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None


class BatchStatusResponse(BaseModel):
    project_id: str
    project_name: str
    status: ProjectStatus
    row_stats: RowStats
    total_rows: int
    completion_percent: float
    is_processing: bool
    last_run: RunSummary | None = None


class SkillPreviewRequest(BaseModel):
    library_id: str | None = None
    min_score: float | None = Field(default=None, ge=0.0, le=1.0)
    max_skills: int | None = Field(default=None, ge=1, le=50)


class SkillCandidateOut(BaseModel):
    skill_id: str
    title: str
    score: float
    confidence: str
    is_customer_scoped: bool
    estimated_tokens: int
    matched_terms: list[str] = []


class SkillPreviewResponse(BaseModel):
    project_id: str
    library_id: str
    question_count: int
    questions_sampled: int
    recommended: list[SkillCandidateOut]
    skills: list[SkillCandidateOut]
    coverage: dict
