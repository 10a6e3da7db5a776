"""Review queue schemas."""
from datetime import datetime
from pydantic import BaseModel
from skillbase.schemas.common import ReviewSource, ReviewStatus


class ReviewUpdate(BaseModel):
    source: ReviewSource = ReviewSource.ALL
    project_id: str | None = None
    review_status: ReviewStatus | None = None
    flag_resolved: bool | None = None
    note: str | None = None


class ReviewItem(BaseModel):
    id: str
    source: str
    question: str
    response: str | None = None
    confidence: str | None = None
    user_edited_answer: str | None = None
    review_status: ReviewStatus | None = None
    review_note: str | None = None
    review_requested_by: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    flagged_for_review: bool = False
    flag_note: str | None = None
    flagged_by: str | None = None
    flag_resolved: bool = False
    flag_resolution_note: str | None = None
    updated_at: datetime | None = None
    project_id: str | None = None
    project_name: str | None = None
    library: str | None = None


class ReviewListResponse(BaseModel):
    items: list[ReviewItem]
    total: int
