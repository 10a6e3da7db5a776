"""Project endpoints: create with questions, read, list rows, preview skills."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from skillbase.api.deps import get_authz, get_current_user, get_selector
from skillbase.config import Settings, get_settings
from skillbase.database import get_db
from skillbase.errors import ForbiddenError
from skillbase.models import Project, Row
from skillbase.schemas.batch import SkillPreviewRequest, SkillPreviewResponse
from skillbase.schemas.common import PaginatedResponse
from skillbase.schemas.payloads import ProjectConfig
from skillbase.schemas.project import ProjectCreate, ProjectResponse, RowResponse
from skillbase.services.authorization import AuthorizationService
from skillbase.services.row_store import RowStore
from skillbase.services.skill_selector import SkillSelector

router = APIRouter()
logger = logging.getLogger(__name__)


def _load_managed(db: Session, authz: AuthorizationService, project_id: str, user_id: str) -> Project:
    project = RowStore(db).get_project(project_id)
    if not authz.can_manage(user_id, project_id):
        raise ForbiddenError("Access denied")
    return project


def _enrich(project: Project, db: Session) -> ProjectResponse:
    resp = ProjectResponse.model_validate(project)
    resp.total_rows = db.query(func.count(Row.id)).filter(Row.project_id == project.id).scalar() or 0
    return resp


@router.post("", response_model=ProjectResponse, status_code=201)
def create_project(
    payload: ProjectCreate,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    project = Project(
        owner_id=user_id,
        customer_id=payload.customer_id,
        name=payload.name,
        description=payload.description,
        config=payload.config.model_dump(mode="json"),
        file_context=payload.file_context,
    )
    db.add(project)
    db.flush()
    for number, question in enumerate(payload.questions, start=1):
        db.add(Row(
            project_id=project.id,
            row_number=number,
            input_data=question.model_dump(exclude_none=True),
        ))
    db.commit()
    db.refresh(project)
    logger.info("Created project %s with %d question(s)", project.id[:8], len(payload.questions))
    return _enrich(project, db)


@router.get("/{project_id}", response_model=ProjectResponse)
def get_project(
    project_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    authz: AuthorizationService = Depends(get_authz),
):
    return _enrich(_load_managed(db, authz, project_id, user_id), db)


@router.get("/{project_id}/rows", response_model=PaginatedResponse[RowResponse])
def list_rows(
    project_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    status: str | None = None,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    authz: AuthorizationService = Depends(get_authz),
):
    _load_managed(db, authz, project_id, user_id)
    query = db.query(Row).filter(Row.project_id == project_id)
    if status:
        query = query.filter(Row.status == status.upper())
    total = query.count()
    rows = query.order_by(Row.row_number).offset((page - 1) * page_size).limit(page_size).all()
    return PaginatedResponse(
        items=[RowResponse.model_validate(r) for r in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size,
    )


@router.post("/{project_id}/preview-skills", response_model=SkillPreviewResponse)
def preview_skills(
    project_id: str,
    payload: SkillPreviewRequest | None = None,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    authz: AuthorizationService = Depends(get_authz),
    selector: SkillSelector = Depends(get_selector),
    settings: Settings = Depends(get_settings),
):
    """Rank the library's skills against every question of the project."""
    payload = payload or SkillPreviewRequest()
    project = _load_managed(db, authz, project_id, user_id)
    cfg = ProjectConfig.model_validate(project.config or {})
    library_id = payload.library_id or cfg.library_id
    questions = RowStore(db).open_questions(project_id)
    preview = selector.preview(
        library_id,
        questions,
        customer_id=project.customer_id,
        min_score=payload.min_score if payload.min_score is not None else settings.SKILL_MIN_SCORE,
        max_skills=payload.max_skills or settings.SKILL_MAX_COUNT,
    )
    return SkillPreviewResponse(project_id=project_id, **preview)
