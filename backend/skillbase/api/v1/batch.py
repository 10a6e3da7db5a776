"""Bulk processing endpoints: dispatch a run and poll its status."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from skillbase.api.deps import get_current_user, get_dispatcher
from skillbase.database import get_db
from skillbase.models import Project
from skillbase.schemas.batch import BatchStatusResponse, DispatchRequest, DispatchResponse
from skillbase.schemas.common import DispatchMode
from skillbase.schemas.payloads import ProjectConfig
from skillbase.services.dispatcher import BatchDispatcher

router = APIRouter()


@router.post("/projects/{project_id}/process-batch", response_model=DispatchResponse, status_code=202)
def process_batch(
    project_id: str,
    payload: DispatchRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: BatchDispatcher = Depends(get_dispatcher),
):
    """Start answering every open question of the project."""
    project = db.query(Project).filter(Project.id == project_id).first()
    cfg = ProjectConfig.model_validate((project.config if project else None) or {})
    model_speed = payload.model_speed.value if payload.model_speed else cfg.model_speed

    result = dispatcher.dispatch(
        project_id,
        user_id,
        skill_ids=payload.skill_ids,
        batch_size=payload.batch_size,
        library_id=payload.library_id or cfg.library_id,
        model_speed=model_speed,
    )
    if result.mode == DispatchMode.ASYNC:
        message = "Processing queued; poll process-batch-status for progress"
    else:
        message = "Processing started in the background; poll process-batch-status for progress"
    return DispatchResponse(
        mode=result.mode,
        job_id=result.job_id,
        run_id=result.run_id,
        project_id=result.project_id,
        total_questions=result.total_questions,
        batch_size=result.batch_size,
        skill_count=result.skill_count,
        message=message,
    )


@router.get("/projects/{project_id}/process-batch-status", response_model=BatchStatusResponse)
def process_batch_status(
    project_id: str,
    response: Response,
    user_id: str = Depends(get_current_user),
    dispatcher: BatchDispatcher = Depends(get_dispatcher),
):
    response.headers["Cache-Control"] = "no-store"
    return dispatcher.get_status(project_id, user_id)
