"""Project and row schemas for request/response validation."""
from datetime import datetime
from pydantic import BaseModel, Field
from skillbase.schemas.common import ProjectStatus, RowStatus, ReviewStatus
from skillbase.schemas.payloads import ProjectConfig, RowInput


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    customer_id: str | None = None
    config: ProjectConfig = Field(default_factory=ProjectConfig)
    file_context: str | None = None
    questions: list[RowInput] = Field(default_factory=list, max_length=5000)


class ProjectResponse(BaseModel):
    id: str
    owner_id: str
    customer_id: str | None
    name: str
    description: str | None
    status: ProjectStatus
    config: dict | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    total_rows: int = 0

    model_config = {"from_attributes": True}


class RowResponse(BaseModel):
    id: str
    project_id: str
    row_number: int
    input_data: dict
    output_data: dict | None
    status: RowStatus
    error_message: str | None
    tokens_used: int | None
    processed_at: datetime | None
    flagged_for_review: bool
    flagged_at: datetime | None
    flagged_by: str | None
    flag_note: str | None
    flag_resolved: bool
    flag_resolved_at: datetime | None
    flag_resolved_by: str | None
    flag_resolution_note: str | None
    review_status: ReviewStatus | None
    review_requested_at: datetime | None
    review_requested_by: str | None
    review_note: str | None
    reviewed_at: datetime | None
    reviewed_by: str | None
    user_edited_answer: str | None
    clarify_conversation: list | None
    history: list | None

    model_config = {"from_attributes": True}


class ClarifyMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str = Field(..., min_length=1)


class RowUpdate(BaseModel):
    flagged_for_review: bool | None = None
    flag_note: str | None = None
    flag_resolved: bool | None = None
    resolution_note: str | None = None
    review_status: ReviewStatus | None = None
    review_note: str | None = None
    user_edited_answer: str | None = None
    clarify_message: ClarifyMessage | None = None


class RowRerunRequest(BaseModel):
    library_id: str | None = None
    model_speed: str | None = None
    min_score: float = Field(default=0.1, ge=0, le=1)
    max_skills: int = Field(default=10, ge=1, le=30)
