"""Row edits: flag, request or settle review, edit the answer, clarify, rerun."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from skillbase.api.deps import get_current_user, get_rerun_service, get_review_workflow
from skillbase.schemas.project import RowRerunRequest, RowResponse, RowUpdate
from skillbase.services.review_workflow import ReviewWorkflow
from skillbase.services.row_rerun import RowRerunService

router = APIRouter()


@router.patch("/projects/{project_id}/rows/{row_id}", response_model=RowResponse)
def update_row(
    project_id: str,
    row_id: str,
    payload: RowUpdate,
    user_id: str = Depends(get_current_user),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    fields = payload.model_dump(exclude_unset=True)
    kwargs = {
        "flagged_for_review": fields.get("flagged_for_review"),
        "flag_note": fields.get("flag_note"),
        "flag_resolved": fields.get("flag_resolved"),
        "resolution_note": fields.get("resolution_note"),
        "review_note": fields.get("review_note"),
        "user_edited_answer": fields.get("user_edited_answer"),
        "clarify_message": fields.get("clarify_message"),
    }
    if "review_status" in fields:
        kwargs["review_status"] = fields["review_status"]
    return workflow.update_row(row_id, project_id, user_id, **kwargs)


@router.post("/projects/{project_id}/rows/{row_id}/rerun", response_model=RowResponse)
async def rerun_row(
    project_id: str,
    row_id: str,
    payload: RowRerunRequest | None = None,
    user_id: str = Depends(get_current_user),
    service: RowRerunService = Depends(get_rerun_service),
):
    """Answer one row again with automatic skill selection and its clarify thread."""
    payload = payload or RowRerunRequest()
    return await service.rerun(
        project_id, row_id, user_id,
        library_id=payload.library_id,
        model_speed=payload.model_speed,
        min_score=payload.min_score,
        max_skills=payload.max_skills,
    )
