"""Review queue endpoints shared by project rows and single questions."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from skillbase.api.deps import get_current_user, get_review_workflow
from skillbase.schemas.common import ReviewFilter, ReviewSource
from skillbase.schemas.review import ReviewItem, ReviewListResponse, ReviewUpdate
from skillbase.services.review_workflow import ReviewWorkflow, to_review_item

router = APIRouter()


@router.get("", response_model=ReviewListResponse)
def list_reviews(
    type: ReviewFilter = Query(ReviewFilter.PENDING),
    source: ReviewSource = Query(ReviewSource.ALL),
    library_id: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    items = workflow.list_reviews(user_id, type, source, library_id, limit)
    return ReviewListResponse(items=[ReviewItem(**i) for i in items], total=len(items))


@router.patch("/{item_id}", response_model=ReviewItem)
def update_review(
    item_id: str,
    payload: ReviewUpdate,
    user_id: str = Depends(get_current_user),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    item = workflow.update_review(
        item_id,
        user_id,
        source=payload.source,
        project_id=payload.project_id,
        review_status=payload.review_status,
        flag_resolved=payload.flag_resolved,
        note=payload.note,
    )
    source = "questions" if item.__tablename__ == "question_history" else "project"
    return ReviewItem(**to_review_item(item, source))
