"""Batch processor: answers every claimed row of a project run.

Run lifecycle:
  1. claim open rows for the run (conditional update, row-number order)
  2. partition them into consecutive chunks of ``batch_size``
  3. generate chunks concurrently, at most ``concurrency`` in flight
  4. apply each chunk's answers as it returns, matched by row id
  5. on the first chunk failure stop starting chunks, let in-flight
     ones settle, drop their results, and revert every row of the run
     to PENDING with the project back to DRAFT
  6. on success write one history record per completed row and settle
     the project status from its rows

Generator failures are handled here and end the run as ``reverted``.
Anything else propagates to the caller's error channel.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.orm import Session

from skillbase.errors import BatchLengthMismatchError, InvalidArgumentError
from skillbase.models import QuestionHistory, Row
from skillbase.schemas.common import ProjectStatus, RunStatus
from skillbase.schemas.payloads import GenerationQuestion, SkillContent, Transparency
from skillbase.services.answer_generator import AnswerGenerator
from skillbase.services.progress_tracker import ProgressTracker
from skillbase.services.row_store import ACTIVE_RUN_STATUSES, RowStore
from skillbase.services.skill_selector import SkillSelector

logger = logging.getLogger(__name__)


def partition(rows: list[Row], batch_size: int) -> list[list[Row]]:
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    return [rows[i : i + batch_size] for i in range(0, len(rows), batch_size)]


@dataclass
class BatchRunResult:
    run_id: str
    project_id: str
    status: RunStatus
    project_status: ProjectStatus | None = None
    total_rows: int = 0
    total_batches: int = 0
    completed_batches: int = 0
    processed_rows: int = 0
    reverted_rows: int = 0
    tokens_used: int = 0
    anomalies: list[str] = field(default_factory=list)
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "project_status": self.project_status.value if self.project_status else None,
            "total_rows": self.total_rows,
            "total_batches": self.total_batches,
            "completed_batches": self.completed_batches,
            "processed_rows": self.processed_rows,
            "reverted_rows": self.reverted_rows,
            "tokens_used": self.tokens_used,
            "anomalies": self.anomalies,
            "error": self.error,
        }


class _RunState:
    """Mutable bookkeeping shared by the chunk coroutines of one run."""

    def __init__(self):
        self.failed = asyncio.Event()
        self.error: BaseException | None = None
        self.failed_batch: int | None = None
        self.completed_batches = 0
        self.processed = 0
        self.tokens = 0
        self.anomalies: list[str] = []

    def fail(self, batch_number: int, exc: BaseException) -> None:
        if not self.failed.is_set():
            self.error = exc
            self.failed_batch = batch_number
            self.failed.set()


class BatchProcessor:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        generator: AnswerGenerator,
        concurrency: int = 2,
        redis_url: str = "",
    ):
        self.session_factory = session_factory
        self.generator = generator
        self.concurrency = max(1, min(4, concurrency))
        self.redis_url = redis_url

    async def run(self, run_id: str) -> BatchRunResult:
        db = self.session_factory()
        try:
            return await self._run(db, run_id)
        finally:
            db.close()

    async def _run(self, db: Session, run_id: str) -> BatchRunResult:
        store = RowStore(db)
        run = store.get_run(run_id)
        project_id = run.project_id
        user_id = run.user_id
        if run.status not in ACTIVE_RUN_STATUSES:
            logger.warning("Run %s is already %s; skipping", run_id[:8], run.status)
            return BatchRunResult(run_id, project_id, RunStatus(run.status))

        project = store.get_project(project_id)
        cfg = run.config or {}
        skill_ids: list[str] = list(cfg.get("skill_ids") or [])
        batch_size = int(cfg.get("batch_size") or 25)
        model_speed = str(cfg.get("model_speed") or "quality")
        library_id = str(cfg.get("library_id") or "knowledge")
        file_context = project.file_context

        skills = SkillSelector(db).load_skill_content(skill_ids)
        if not skills:
            raise InvalidArgumentError("No valid skills found")

        tracker = ProgressTracker(db, run_id, self.redis_url)
        rows = store.claim_rows(project_id, run_id)
        chunks = partition(rows, batch_size)
        if not tracker.start(len(rows), len(chunks)):
            store.revert_run_rows(run_id, reason="run closed before it started")
            return self._superseded(store, run_id, project_id)

        if not rows:
            status = store.settled_status(project_id)
            if store.close_run(run_id, RunStatus.COMPLETED, status) is None:
                return self._superseded(store, run_id, project_id)
            tracker.finish(RunStatus.COMPLETED)
            return BatchRunResult(run_id, project_id, RunStatus.COMPLETED, project_status=status)

        state = _RunState()
        semaphore = asyncio.Semaphore(self.concurrency)
        skill_ids = [s.id for s in skills]

        async def _process(batch_number: int, chunk: list[Row]) -> None:
            async with semaphore:
                if state.failed.is_set():
                    return
                await self._process_chunk(
                    store, tracker, state, run_id, batch_number, len(chunks), chunk,
                    skills, Transparency(
                        run_id=run_id,
                        batch_number=batch_number,
                        skill_ids=skill_ids,
                        skill_count=len(skill_ids),
                        model_speed=model_speed,
                        library_id=library_id,
                    ),
                    model_speed, file_context,
                )

        await asyncio.gather(*(_process(i + 1, c) for i, c in enumerate(chunks)))

        if state.failed.is_set():
            return self._revert(store, tracker, state, run_id, project_id, len(rows), len(chunks))

        project_status = store.settled_status(project_id)
        message = None
        if state.anomalies:
            message = f"{len(state.anomalies)} row(s) received no answer and were left PROCESSING"
        if store.close_run(run_id, RunStatus.COMPLETED, project_status, message) is None:
            return self._superseded(store, run_id, project_id)
        record_history(db, store.completed_rows(run_id), user_id, project_id, library_id, model_speed)
        store.release_claims(run_id)
        tracker.finish(RunStatus.COMPLETED, message, extra={"project_status": project_status.value})
        logger.info(
            "Run %s completed: %d/%d rows answered, %d anomalies, project -> %s",
            run_id[:8], state.processed, len(rows), len(state.anomalies), project_status.value,
        )
        return BatchRunResult(
            run_id=run_id,
            project_id=project_id,
            status=RunStatus.COMPLETED,
            project_status=project_status,
            total_rows=len(rows),
            total_batches=len(chunks),
            completed_batches=state.completed_batches,
            processed_rows=state.processed,
            tokens_used=state.tokens,
            anomalies=state.anomalies,
            error=message,
        )

    async def _process_chunk(
        self,
        store: RowStore,
        tracker: ProgressTracker,
        state: _RunState,
        run_id: str,
        batch_number: int,
        total_batches: int,
        chunk: list[Row],
        skills: list[SkillContent],
        transparency: Transparency,
        model_speed: str,
        file_context: str | None,
    ) -> None:
        questions = [GenerationQuestion(id=r.id, question=r.question, context=r.context) for r in chunk]
        try:
            answers = await self.generator.generate(questions, skills, model_speed, file_context)
            if len(answers) != len(chunk):
                raise BatchLengthMismatchError(len(chunk), len(answers), batch_number)
        except Exception as exc:
            logger.error(
                "Run %s batch %d/%d failed (%s): %s",
                run_id[:8], batch_number, total_batches, type(exc).__name__, exc,
            )
            state.fail(batch_number, exc)
            return

        if state.failed.is_set():
            logger.info("Run %s batch %d settled after failure; result discarded", run_id[:8], batch_number)
            return

        applied = store.apply_outputs(run_id, chunk, answers, transparency)
        state.completed_batches += 1
        state.processed += len(applied.applied)
        state.tokens += applied.tokens_used
        state.anomalies.extend(applied.anomalies)
        tracker.batch_done(batch_number, total_batches, state.processed)

    def _revert(
        self,
        store: RowStore,
        tracker: ProgressTracker,
        state: _RunState,
        run_id: str,
        project_id: str,
        total_rows: int,
        total_batches: int,
    ) -> BatchRunResult:
        error = f"Batch {state.failed_batch} failed: {state.error}"
        reverted = store.close_run(
            run_id, RunStatus.REVERTED, ProjectStatus.DRAFT, error, revert_reason=error,
        )
        if reverted is None:
            return self._superseded(store, run_id, project_id)
        tracker.finish(RunStatus.REVERTED, error)
        logger.warning("Run %s reverted %d row(s); project %s -> DRAFT", run_id[:8], reverted, project_id[:8])
        return BatchRunResult(
            run_id=run_id,
            project_id=project_id,
            status=RunStatus.REVERTED,
            project_status=ProjectStatus.DRAFT,
            total_rows=total_rows,
            total_batches=total_batches,
            completed_batches=state.completed_batches,
            reverted_rows=reverted,
            error=error,
        )

    def _superseded(self, store: RowStore, run_id: str, project_id: str) -> BatchRunResult:
        """Result for a run that was closed elsewhere while this worker held it."""
        status = RunStatus(store.get_run(run_id).status)
        logger.warning("Run %s was closed as %s elsewhere; results discarded", run_id[:8], status.value)
        return BatchRunResult(run_id, project_id, status, error="Run was closed by another process")


def record_history(
    db: Session,
    rows: list[Row],
    user_id: str,
    project_id: str,
    library_id: str,
    model_speed: str,
) -> None:
    """Write one ``QuestionHistory`` record per answered row."""
    for row in rows:
        db.add(QuestionHistory(
            user_id=user_id,
            project_id=project_id,
            row_id=row.id,
            question=row.question,
            context=row.context,
            library=library_id,
            model_speed=model_speed,
            source="rfp",
            status=row.status,
            output_data=row.output_data,
            tokens_used=row.tokens_used,
        ))
    db.commit()
