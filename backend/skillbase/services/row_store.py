"""Row/project store: every status transition of the pipeline goes through here.

Transitions that must not race (dispatch guard, row claim, late result
application) are written as conditional UPDATEs so two workers can never
both win. Reads return ORM objects; JSON payloads are validated with the
schemas in ``skillbase.schemas.payloads`` on the way in.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from skillbase.errors import NotFoundError
from skillbase.models import BatchRun, Project, Row
from skillbase.schemas.common import ProjectStatus, RowStatus, RunStatus
from skillbase.schemas.payloads import GeneratedAnswer, HistoryEntry, RowOutput, Transparency

logger = logging.getLogger(__name__)

ACTIVE_RUN_STATUSES = (RunStatus.QUEUED.value, RunStatus.IN_PROGRESS.value)
OPEN_ROW_STATUSES = (RowStatus.PENDING.value, RowStatus.PROCESSING.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def history_entry(action: str, run_id: str | None = None, actor: str | None = None, **detail: Any) -> dict:
    return HistoryEntry(
        at=_now().isoformat(), action=action, run_id=run_id, actor=actor, detail=detail,
    ).model_dump()


@dataclass
class RowStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    error: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.error

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "error": self.error,
        }


@dataclass
class ApplyResult:
    applied: list[str]
    anomalies: list[str]
    tokens_used: int = 0


class RowStore:
    def __init__(self, db: Session):
        self.db = db

    # ── Projects ───────────────────────────────────────────────────────

    def get_project(self, project_id: str) -> Project:
        project = self.db.query(Project).filter(Project.id == project_id).first()
        if not project:
            raise NotFoundError("Project not found")
        return project

    def try_mark_processing(self, project_id: str) -> str | None:
        """Atomically move a project to PROCESSING.

        Returns the status it had before, or ``None`` when it was already
        PROCESSING (or vanished) and the caller lost the race.
        """
        previous = self.db.execute(
            select(Project.status).where(Project.id == project_id)
        ).scalar_one_or_none()
        if previous is None or previous == ProjectStatus.PROCESSING.value:
            return None
        result = self.db.execute(
            update(Project)
            .where(Project.id == project_id, Project.status == previous)
            .values(status=ProjectStatus.PROCESSING.value, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            return None
        return previous

    def set_project_status(
        self,
        project_id: str,
        status: ProjectStatus,
        expected: ProjectStatus | None = None,
    ) -> bool:
        values: dict[str, Any] = {"status": status.value, "updated_at": _now()}
        if status == ProjectStatus.COMPLETED:
            values["completed_at"] = _now()
        stmt = update(Project).where(Project.id == project_id)
        if expected is not None:
            stmt = stmt.where(Project.status == expected.value)
        result = self.db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        self.db.commit()
        return result.rowcount == 1

    def settled_status(self, project_id: str) -> ProjectStatus:
        """Pick the post-run project status from its rows' aggregate state."""
        stats = self.row_stats(project_id)
        if stats.processing:
            return ProjectStatus.ERROR
        if stats.pending:
            return ProjectStatus.DRAFT
        return ProjectStatus.COMPLETED

    # ── Rows ───────────────────────────────────────────────────────────

    def has_open_rows(self, project_id: str) -> bool:
        return (
            self.db.query(Row.id)
            .filter(Row.project_id == project_id, Row.status.in_(OPEN_ROW_STATUSES))
            .first()
            is not None
        )

    def open_questions(self, project_id: str, limit: int | None = None) -> list[str]:
        query = (
            self.db.query(Row)
            .filter(Row.project_id == project_id)
            .order_by(Row.row_number)
        )
        if limit:
            query = query.limit(limit)
        return [r.question for r in query.all() if r.question]

    def row_stats(self, project_id: str) -> RowStats:
        counts = dict(
            self.db.query(Row.status, func.count(Row.id))
            .filter(Row.project_id == project_id)
            .group_by(Row.status)
            .all()
        )
        return RowStats(
            pending=counts.get(RowStatus.PENDING.value, 0),
            processing=counts.get(RowStatus.PROCESSING.value, 0),
            completed=counts.get(RowStatus.COMPLETED.value, 0),
            error=counts.get(RowStatus.ERROR.value, 0),
        )

    def claim_rows(self, project_id: str, run_id: str) -> list[Row]:
        """Claim every open row of the project for *run_id*.

        A row is claimable when it is PENDING, or PROCESSING under a run
        that is no longer active. Only rows this UPDATE actually flipped
        are returned, in row-number order.
        """
        live_runs = select(BatchRun.id).where(
            BatchRun.status.in_(ACTIVE_RUN_STATUSES), BatchRun.id != run_id,
        )
        claimable = or_(
            Row.status == RowStatus.PENDING.value,
            and_(
                Row.status == RowStatus.PROCESSING.value,
                or_(Row.claimed_by_run.is_(None), Row.claimed_by_run.not_in(live_runs)),
            ),
        )
        result = self.db.execute(
            update(Row)
            .where(Row.project_id == project_id, claimable)
            .values(
                status=RowStatus.PROCESSING.value,
                claimed_by_run=run_id,
                error_message=None,
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Run %s claimed %d row(s) of project %s", run_id[:8], result.rowcount, project_id[:8])
        self.db.expire_all()
        return (
            self.db.query(Row)
            .filter(
                Row.project_id == project_id,
                Row.claimed_by_run == run_id,
                Row.status == RowStatus.PROCESSING.value,
            )
            .order_by(Row.row_number)
            .all()
        )

    def claim_row(self, row_id: str, run_id: str) -> bool:
        """Claim a single row for *run_id* whatever its status.

        Callers hold the project in PROCESSING, so no other run can own it.
        """
        result = self.db.execute(
            update(Row)
            .where(Row.id == row_id)
            .values(
                status=RowStatus.PROCESSING.value,
                claimed_by_run=run_id,
                error_message=None,
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return result.rowcount == 1

    def apply_outputs(
        self,
        run_id: str,
        chunk: Iterable[Row],
        answers: list[GeneratedAnswer],
        transparency: Transparency,
    ) -> ApplyResult:
        """Write generator answers onto the chunk's rows, matched by id.

        Rows no longer held by *run_id* are skipped. Rows without a matching
        answer stay PROCESSING and are reported as anomalies.
        """
        by_id = {a.id: a for a in answers}
        chunk_ids = [r.id for r in chunk]
        held = {
            r.id: r
            for r in self.db.query(Row).filter(
                Row.id.in_(chunk_ids),
                Row.claimed_by_run == run_id,
                Row.status == RowStatus.PROCESSING.value,
            )
        }
        applied: list[str] = []
        anomalies: list[str] = []
        tokens = 0
        now = _now()
        for row_id in chunk_ids:
            row = held.get(row_id)
            answer = by_id.get(row_id)
            if row is None:
                logger.warning("Row %s no longer held by run %s; result dropped", row_id[:8], run_id[:8])
                continue
            if answer is None:
                anomalies.append(row_id)
                logger.error(
                    "Anomaly: no answer for row %s (#%d) in run %s; leaving PROCESSING",
                    row_id[:8], row.row_number, run_id[:8],
                )
                continue
            output = RowOutput(
                response=answer.response,
                confidence=answer.confidence,
                sources=answer.sources,
                reasoning=answer.reasoning,
                inference=answer.inference,
                remarks=answer.remarks,
                transparency=transparency,
            )
            row.output_data = output.model_dump()
            row.status = RowStatus.COMPLETED.value
            row.processed_at = now
            row.tokens_used = answer.tokens_used
            row.error_message = None
            row.history = list(row.history or []) + [
                history_entry("completed", run_id=run_id, batch_number=transparency.batch_number)
            ]
            tokens += answer.tokens_used
            applied.append(row_id)
        self.db.commit()
        return ApplyResult(applied=applied, anomalies=anomalies, tokens_used=tokens)

    def revert_run_rows(self, run_id: str, reason: str | None = None) -> int:
        """Return every row claimed by *run_id* to PENDING with output cleared."""
        reverted = self._revert_rows(run_id, reason)
        self.db.commit()
        return reverted

    def _revert_rows(self, run_id: str, reason: str | None) -> int:
        rows = self.db.query(Row).filter(Row.claimed_by_run == run_id).all()
        for row in rows:
            row.status = RowStatus.PENDING.value
            row.output_data = None
            row.processed_at = None
            row.tokens_used = None
            row.error_message = None
            row.claimed_by_run = None
            row.history = list(row.history or []) + [
                history_entry("reverted", run_id=run_id, reason=reason)
            ]
        if rows:
            logger.warning("Reverted %d row(s) claimed by run %s", len(rows), run_id[:8])
        return len(rows)

    def release_claims(self, run_id: str) -> None:
        """Drop the claim token from rows that reached a terminal status."""
        self.db.execute(
            update(Row)
            .where(
                Row.claimed_by_run == run_id,
                Row.status.in_([RowStatus.COMPLETED.value, RowStatus.ERROR.value]),
            )
            .values(claimed_by_run=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def completed_rows(self, run_id: str) -> list[Row]:
        return (
            self.db.query(Row)
            .filter(Row.claimed_by_run == run_id, Row.status == RowStatus.COMPLETED.value)
            .order_by(Row.row_number)
            .all()
        )

    # ── Runs ───────────────────────────────────────────────────────────

    def get_run(self, run_id: str) -> BatchRun:
        run = self.db.query(BatchRun).filter(BatchRun.id == run_id).first()
        if not run:
            raise NotFoundError("Batch run not found")
        return run

    def latest_run(self, project_id: str) -> BatchRun | None:
        return (
            self.db.query(BatchRun)
            .filter(BatchRun.project_id == project_id)
            .order_by(BatchRun.created_at.desc())
            .first()
        )

    def close_run(
        self,
        run_id: str,
        run_status: RunStatus,
        project_status: ProjectStatus,
        error_message: str | None = None,
        revert_reason: str | None = None,
    ) -> int | None:
        """Move an active run to *run_status* and its project out of PROCESSING.

        Both writes happen in one transaction and only while the run is
        still queued or in progress. With *revert_reason* the run's claimed
        rows are returned to PENDING in the same transaction.

        Returns the number of reverted rows, or ``None`` when the run had
        already been closed by someone else and nothing was written.
        """
        values: dict[str, Any] = {"status": run_status.value, "completed_at": _now()}
        if error_message is not None:
            values["error_message"] = error_message
        result = self.db.execute(
            update(BatchRun)
            .where(BatchRun.id == run_id, BatchRun.status.in_(ACTIVE_RUN_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.warning("Run %s was already closed; %s not recorded", run_id[:8], run_status.value)
            return None

        reverted = self._revert_rows(run_id, revert_reason) if revert_reason is not None else 0
        project_id = self.db.execute(
            select(BatchRun.project_id).where(BatchRun.id == run_id)
        ).scalar_one()
        project_values: dict[str, Any] = {"status": project_status.value, "updated_at": _now()}
        if project_status == ProjectStatus.COMPLETED:
            project_values["completed_at"] = _now()
        moved = self.db.execute(
            update(Project)
            .where(Project.id == project_id, Project.status == ProjectStatus.PROCESSING.value)
            .values(**project_values)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            logger.warning(
                "Project %s was not PROCESSING when run %s closed; status left unchanged",
                project_id[:8], run_id[:8],
            )
        self.db.commit()
        self.db.expire_all()
        return reverted
