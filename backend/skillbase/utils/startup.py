"""Startup recovery shared by the FastAPI lifespan and Celery worker_init.

A process killed mid-run leaves its ``BatchRun`` queued/in_progress, its
rows PROCESSING and the project PROCESSING, which would block every later
dispatch. ``recover_orphaned_runs()`` fails those runs and reverts their
rows before new work is accepted.

Each process only recovers the runs it owns: the API process runs
``sync-background`` runs and row reruns itself, while ``async`` runs belong
to the Celery worker and may still be executing when the API restarts.
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from skillbase.schemas.common import DispatchMode

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Run was interrupted by a server restart. Please dispatch again."
API_RUN_MODES = [DispatchMode.SYNC_BACKGROUND.value, DispatchMode.RERUN.value]


def recover_orphaned_runs(session_factory=None, modes=None, statuses=None) -> int:
    """Fail runs stuck in queued/in_progress; returns how many were recovered.

    With *modes* only runs dispatched in one of those modes are touched, and
    *statuses* narrows which active statuses count as orphaned.
    """
    from skillbase.database import SessionLocal
    from skillbase.models import BatchRun
    from skillbase.services.dispatcher import mark_run_failed
    from skillbase.services.row_store import ACTIVE_RUN_STATUSES

    factory = session_factory or SessionLocal
    db = factory()
    try:
        query = db.query(BatchRun.id).filter(BatchRun.status.in_(statuses or ACTIVE_RUN_STATUSES))
        if modes:
            query = query.filter(BatchRun.mode.in_(modes))
        orphaned = [run_id for (run_id,) in query.all()]
    except SQLAlchemyError as exc:
        logger.warning("Could not look up orphaned runs: %s", exc)
        return 0
    finally:
        db.close()

    for run_id in orphaned:
        logger.warning("Recovering orphaned run %s on startup", run_id[:8])
        mark_run_failed(factory, run_id, INTERRUPTED_MESSAGE)
    if orphaned:
        logger.info("Recovered %d orphaned run(s)", len(orphaned))
    return len(orphaned)
