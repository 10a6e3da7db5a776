"""Batch dispatcher: validates a processing request and starts exactly one run.

The project is moved to PROCESSING with a compare-and-set before any work
is handed off, so a second dispatch for the same project loses with
``ConflictError``. The run then goes to the Celery queue when the broker
is reachable (``mode="async"``) or to the in-process background runner
(``mode="sync-background"``). Neither path blocks on generation.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from skillbase.config import Settings
from skillbase.errors import (
    ConflictError,
    DispatchError,
    ForbiddenError,
    InvalidArgumentError,
)
from skillbase.models import BatchRun
from skillbase.schemas.common import DispatchMode, ModelSpeed, ProjectStatus, RunStatus
from skillbase.services.authorization import AuthorizationService
from skillbase.services.background import BackgroundRunner
from skillbase.services.batch_processor import BatchProcessor
from skillbase.services.http_client_manager import close_all_clients
from skillbase.services.queue_backend import QueueBackend
from skillbase.services.row_store import RowStore
from skillbase.services.skill_selector import SkillSelector

logger = logging.getLogger(__name__)

PROCESS_JOB_TYPE = "batch.process_project_answers"


@dataclass
class DispatchResult:
    mode: DispatchMode
    run_id: str
    project_id: str
    total_questions: int
    batch_size: int
    skill_count: int
    job_id: str | None = None


def validate_request(
    settings: Settings,
    skill_ids: list[str],
    batch_size: int,
    library_id: str,
    model_speed: str,
) -> None:
    """Reject malformed requests before anything is read or written."""
    if not skill_ids:
        raise InvalidArgumentError("skill_ids must contain at least one skill")
    if not settings.BATCH_SIZE_MIN <= batch_size <= settings.BATCH_SIZE_MAX:
        raise InvalidArgumentError(
            f"batch_size must be between {settings.BATCH_SIZE_MIN} and {settings.BATCH_SIZE_MAX}",
            {"batch_size": batch_size},
        )
    if library_id not in settings.library_ids:
        raise InvalidArgumentError(f"Unknown library: {library_id}", {"library_id": library_id})
    if model_speed not in {m.value for m in ModelSpeed}:
        raise InvalidArgumentError(f"Unknown model speed: {model_speed}", {"model_speed": model_speed})


class BatchDispatcher:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        queue: QueueBackend,
        runner: BackgroundRunner,
        processor_factory: Callable[[], BatchProcessor],
        session_factory: Callable[[], Session],
        selector: SkillSelector | None = None,
        authz: AuthorizationService | None = None,
    ):
        self.db = db
        self.settings = settings
        self.queue = queue
        self.runner = runner
        self.processor_factory = processor_factory
        self.session_factory = session_factory
        self.store = RowStore(db)
        self.selector = selector or SkillSelector(db, question_sample=settings.SKILL_QUESTION_SAMPLE)
        self.authz = authz or AuthorizationService(db, settings.reviewer_ids)

    def dispatch(
        self,
        project_id: str,
        user_id: str,
        skill_ids: list[str],
        batch_size: int,
        library_id: str,
        model_speed: str,
    ) -> DispatchResult:
        validate_request(self.settings, skill_ids, batch_size, library_id, model_speed)

        project = self.store.get_project(project_id)
        if not self.authz.can_manage(user_id, project_id):
            raise ForbiddenError("You do not have permission to process this project")

        if not self.store.has_open_rows(project_id):
            raise InvalidArgumentError("Project has no pending questions")

        skills = self.selector.select_manual(library_id, skill_ids, project.customer_id)
        if not skills:
            raise InvalidArgumentError("No valid skills found", {"skill_ids": skill_ids})

        stats = self.store.row_stats(project_id)
        open_rows = stats.pending + stats.processing

        previous = self.store.try_mark_processing(project_id)
        if previous is None:
            raise ConflictError("Project is already being processed")

        mode = DispatchMode.ASYNC if self.queue.is_configured() else DispatchMode.SYNC_BACKGROUND
        run = BatchRun(
            project_id=project_id,
            user_id=user_id,
            mode=mode.value,
            status=RunStatus.QUEUED.value,
            previous_status=previous,
            config={
                "skill_ids": [s.skill_id for s in skills],
                "batch_size": batch_size,
                "library_id": library_id,
                "model_speed": model_speed,
            },
            total_rows=open_rows,
            total_batches=math.ceil(open_rows / batch_size),
        )
        self.db.add(run)
        self.db.commit()
        run_id = run.id

        result = DispatchResult(
            mode=mode,
            run_id=run_id,
            project_id=project_id,
            total_questions=open_rows,
            batch_size=batch_size,
            skill_count=len(skills),
        )

        if mode == DispatchMode.ASYNC:
            result.job_id = self._enqueue(run, previous)
        else:
            self.runner.submit(run_id, self._job(run_id), self.handle_run_failure)

        logger.info(
            "Dispatched project %s run %s (%s): %d question(s), batch size %d, %d skill(s)",
            project_id[:8], run_id[:8], result.mode.value, open_rows, batch_size, len(skills),
        )
        return result

    def _enqueue(self, run: BatchRun, previous: str) -> str:
        try:
            job_id = self.queue.enqueue(
                self.settings.BULK_QUEUE_NAME, PROCESS_JOB_TYPE, {"run_id": run.id},
            )
        except Exception as exc:
            logger.error("Enqueue failed for run %s: %s", run.id[:8], exc)
            self.store.close_run(run.id, RunStatus.FAILED, ProjectStatus(previous), f"Enqueue failed: {exc}")
            raise DispatchError("Could not queue the processing job; please retry") from exc

        run.queue_job_id = job_id
        self.db.commit()
        return job_id

    def _job(self, run_id: str):
        async def job():
            try:
                return await self.processor_factory().run(run_id)
            finally:
                await close_all_clients()
        return job

    def handle_run_failure(self, run_id: str, exc: BaseException) -> None:
        """Error channel for runs that raised past the processor."""
        mark_run_failed(self.session_factory, run_id, f"{type(exc).__name__}: {exc}")

    def get_status(self, project_id: str, user_id: str) -> dict:
        project = self.store.get_project(project_id)
        if not self.authz.can_manage(user_id, project_id):
            raise ForbiddenError("You do not have permission to view this project")
        stats = self.store.row_stats(project_id)
        total = stats.total
        finished = stats.completed + stats.error
        run = self.store.latest_run(project_id)
        last_run = None
        if run is not None:
            last_run = {
                "run_id": run.id,
                "mode": run.mode,
                "status": run.status,
                "job_id": run.queue_job_id,
                "total_batches": run.total_batches,
                "completed_batches": run.completed_batches,
                "processed_rows": run.processed_rows,
                "error_message": run.error_message,
                "started_at": run.started_at,
                "completed_at": run.completed_at,
            }
        return {
            "project_id": project.id,
            "project_name": project.name,
            "status": project.status,
            "row_stats": stats.as_dict(),
            "total_rows": total,
            "completion_percent": round(finished * 100 / total, 1) if total else 0.0,
            "is_processing": project.status == ProjectStatus.PROCESSING.value,
            "last_run": last_run,
        }


def mark_run_failed(session_factory: Callable[[], Session], run_id: str, message: str) -> None:
    """Fail an active run: revert its claimed rows and put the project in ERROR.

    Runs that already reached a terminal status are left alone, so a late
    error report can never overwrite a finished run or a newer dispatch.
    """
    db = session_factory()
    try:
        store = RowStore(db)
        run = db.query(BatchRun).filter(BatchRun.id == run_id).first()
        if run is None:
            logger.error("Cannot record failure for unknown run %s", run_id[:8])
            return
        project_id = run.project_id
        reverted = store.close_run(
            run_id, RunStatus.FAILED, ProjectStatus.ERROR, message, revert_reason=message,
        )
        if reverted is None:
            logger.info("Run %s already finished; failure (%s) not recorded", run_id[:8], message)
            return
        logger.error(
            "Run %s failed (%s); reverted %d row(s), project %s -> ERROR",
            run_id[:8], message, reverted, project_id[:8],
        )
    finally:
        db.close()
