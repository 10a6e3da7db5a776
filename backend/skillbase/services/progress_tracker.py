"""Progress reporting for batch runs.

Persists counters on the ``BatchRun`` row (the polling surface) and,
when Redis is configured, publishes the same snapshot on the
``run:{run_id}`` pub/sub channel for live listeners. Redis problems
never affect the run.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import redis
from sqlalchemy import update
from sqlalchemy.orm import Session

from skillbase.models import BatchRun
from skillbase.schemas.common import RunStatus
from skillbase.services.row_store import ACTIVE_RUN_STATUSES

logger = logging.getLogger(__name__)


class ProgressTracker:
    def __init__(self, db: Session, run_id: str, redis_url: str = ""):
        self.db = db
        self.run_id = run_id
        self._redis_url = redis_url
        self._redis: redis.Redis | None = None

    @property
    def redis_client(self) -> redis.Redis | None:
        if self._redis is None and self._redis_url:
            try:
                self._redis = redis.from_url(self._redis_url)
            except (redis.RedisError, ValueError) as e:
                logger.warning("Could not connect to Redis for progress updates: %s", e)
        return self._redis

    def _run(self) -> BatchRun | None:
        return self.db.query(BatchRun).filter(BatchRun.id == self.run_id).first()

    def start(self, total_rows: int, total_batches: int) -> bool:
        """Mark the run in progress; ``False`` when it was closed in the meantime."""
        result = self.db.execute(
            update(BatchRun)
            .where(BatchRun.id == self.run_id, BatchRun.status.in_(ACTIVE_RUN_STATUSES))
            .values(
                status=RunStatus.IN_PROGRESS.value,
                started_at=datetime.now(timezone.utc),
                total_rows=total_rows,
                total_batches=total_batches,
                completed_batches=0,
                processed_rows=0,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            return False
        self._publish(RunStatus.IN_PROGRESS.value, 0, total_batches, 0)
        logger.info("Run %s: %d row(s) in %d batch(es)", self.run_id[:8], total_rows, total_batches)
        return True

    def batch_done(self, batch_number: int, total_batches: int, processed_rows: int) -> None:
        completed = 0
        run = self._run()
        if run:
            run.completed_batches = (run.completed_batches or 0) + 1
            run.processed_rows = processed_rows
            completed = run.completed_batches
            self.db.commit()
        self._publish(RunStatus.IN_PROGRESS.value, completed, total_batches, processed_rows)
        logger.info(
            "Run %s: batch %d done (%d/%d, %d rows)",
            self.run_id[:8], batch_number, completed, total_batches, processed_rows,
        )

    def finish(self, status: RunStatus, error_message: str | None = None, extra: dict | None = None) -> None:
        """Publish the final snapshot of a run closed through ``RowStore.close_run``."""
        run = self._run()
        completed = total = processed = 0
        if run:
            completed, total, processed = run.completed_batches, run.total_batches, run.processed_rows
        self._publish(status.value, completed, total, processed, error_message, extra)

    def _publish(
        self,
        status: str,
        completed_batches: int,
        total_batches: int,
        processed_rows: int,
        error: str | None = None,
        extra: dict | None = None,
    ) -> None:
        rc = self.redis_client
        if rc is None:
            return
        payload: dict[str, Any] = {
            "run_id": self.run_id,
            "status": status,
            "completed_batches": completed_batches,
            "total_batches": total_batches,
            "processed_rows": processed_rows,
            "percentage": int(completed_batches * 100 / total_batches) if total_batches else 0,
        }
        if error:
            payload["error"] = error
        if extra:
            payload.update(extra)
        try:
            rc.publish(f"run:{self.run_id}", json.dumps(payload))
        except redis.RedisError as e:
            logger.debug("Progress publish failed for run %s: %s", self.run_id[:8], e)
