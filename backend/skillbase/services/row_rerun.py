"""Single-row rerun: answer one question again using its clarify thread.

A rerun is a one-row run. It takes the same PROCESSING guard as a bulk
dispatch, is recorded as a ``BatchRun`` with mode ``rerun`` so startup
recovery can release it after a crash, and closes through
``RowStore.close_run`` like any other run. Skills are picked
automatically from the question and the user's clarify messages.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from skillbase.config import Settings
from skillbase.errors import (
    BatchLengthMismatchError,
    ConflictError,
    GenerationError,
    InvalidArgumentError,
    NotFoundError,
)
from skillbase.models import BatchRun, Row
from skillbase.schemas.common import DispatchMode, ModelSpeed, ProjectStatus, RunStatus
from skillbase.schemas.payloads import GenerationQuestion, ProjectConfig, Transparency
from skillbase.services.answer_generator import AnswerGenerator
from skillbase.services.authorization import AuthorizationService
from skillbase.services.batch_processor import record_history
from skillbase.services.row_store import RowStore
from skillbase.services.skill_selector import SkillSelector

logger = logging.getLogger(__name__)


def clarify_context(row: Row) -> str | None:
    """The row's own context followed by its clarify conversation."""
    parts = [row.context] if row.context else []
    thread = [
        f"{m.get('role', 'user')}: {m.get('content', '')}"
        for m in row.clarify_conversation or []
        if m.get("content")
    ]
    if thread:
        parts.append("Clarification:\n" + "\n".join(thread))
    return "\n\n".join(parts) or None


class RowRerunService:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        generator: AnswerGenerator,
        selector: SkillSelector | None = None,
        authz: AuthorizationService | None = None,
    ):
        self.db = db
        self.settings = settings
        self.generator = generator
        self.store = RowStore(db)
        self.selector = selector or SkillSelector(db, question_sample=settings.SKILL_QUESTION_SAMPLE)
        self.authz = authz or AuthorizationService(db, settings.reviewer_ids)

    async def rerun(
        self,
        project_id: str,
        row_id: str,
        user_id: str,
        library_id: str | None = None,
        model_speed: str | None = None,
        min_score: float = 0.1,
        max_skills: int = 10,
    ) -> Row:
        project = self.store.get_project(project_id)
        if not self.authz.can_manage(user_id, project_id):
            raise NotFoundError("Row not found")
        row = self.db.query(Row).filter(Row.id == row_id, Row.project_id == project_id).first()
        if row is None:
            raise NotFoundError("Row not found")
        if not row.question.strip():
            raise InvalidArgumentError("Row has no question to process")

        cfg = ProjectConfig.model_validate(project.config or {})
        library_id = library_id or cfg.library_id
        model_speed = model_speed or cfg.model_speed
        if library_id not in self.settings.library_ids:
            raise InvalidArgumentError(f"Unknown library: {library_id}", {"library_id": library_id})
        if model_speed not in {m.value for m in ModelSpeed}:
            raise InvalidArgumentError(f"Unknown model speed: {model_speed}", {"model_speed": model_speed})

        question = GenerationQuestion(id=row.id, question=row.question, context=clarify_context(row))
        sample = [row.question] + [
            m["content"] for m in row.clarify_conversation or []
            if m.get("role") == "user" and m.get("content")
        ]
        candidates = self.selector.select_automatic(
            library_id, sample, project.customer_id, min_score=min_score, max_skills=max_skills,
        )
        skills = self.selector.load_skill_content([c.skill_id for c in candidates])
        if not skills:
            raise InvalidArgumentError("No skills match this question")

        previous = self.store.try_mark_processing(project_id)
        if previous is None:
            raise ConflictError("Project is already being processed")

        run = BatchRun(
            project_id=project_id,
            user_id=user_id,
            mode=DispatchMode.RERUN.value,
            status=RunStatus.IN_PROGRESS.value,
            previous_status=previous,
            config={
                "row_id": row_id,
                "skill_ids": [s.id for s in skills],
                "batch_size": 1,
                "library_id": library_id,
                "model_speed": model_speed,
            },
            total_rows=1,
            total_batches=1,
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(run)
        self.db.commit()
        run_id = run.id
        self.store.claim_row(row_id, run_id)
        logger.info("Rerun %s of row %s with %d skill(s)", run_id[:8], row_id[:8], len(skills))

        try:
            answers = await self.generator.generate([question], skills, model_speed, project.file_context)
            if len(answers) != 1:
                raise BatchLengthMismatchError(1, len(answers), 1)
        except GenerationError as exc:
            message = f"Rerun failed: {exc}"
            self.store.close_run(run_id, RunStatus.REVERTED, ProjectStatus.DRAFT, message, revert_reason=message)
            raise
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            self.store.close_run(run_id, RunStatus.FAILED, ProjectStatus.ERROR, message, revert_reason=message)
            raise

        transparency = Transparency(
            run_id=run_id,
            batch_number=1,
            skill_ids=[s.id for s in skills],
            skill_count=len(skills),
            model_speed=model_speed,
            library_id=library_id,
        )
        applied = self.store.apply_outputs(run_id, [row], answers, transparency)
        status = self.store.settled_status(project_id)
        if self.store.close_run(run_id, RunStatus.COMPLETED, status) is None:
            raise ConflictError("Rerun was interrupted; please retry")
        run_row = self.db.get(BatchRun, run_id)
        run_row.completed_batches = 1
        run_row.processed_rows = len(applied.applied)
        self.db.commit()

        record_history(self.db, self.store.completed_rows(run_id), user_id, project_id, library_id, model_speed)
        self.store.release_claims(run_id)
        logger.info("Rerun %s answered row %s; project %s -> %s", run_id[:8], row_id[:8], project_id[:8], status.value)
        return self.db.query(Row).filter(Row.id == row_id).one()
