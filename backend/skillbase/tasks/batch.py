"""Celery task for queued bulk processing.

``process_project_answers`` drives the async ``BatchProcessor`` on a
short-lived event loop. Generator failures are handled inside the
processor; anything that escapes it is recorded through
``mark_run_failed`` so the project ends in ERROR with its rows reverted.
"""
from __future__ import annotations

import asyncio
import logging

from skillbase.celery_app import celery_app
from skillbase.config import get_settings
from skillbase.database import SessionLocal
from skillbase.models import BatchRun
from skillbase.services.answer_generator import LLMAnswerGenerator
from skillbase.services.batch_processor import BatchProcessor
from skillbase.services.dispatcher import PROCESS_JOB_TYPE, mark_run_failed
from skillbase.services.http_client_manager import close_all_clients

logger = logging.getLogger(__name__)


async def _run_and_close(processor: BatchProcessor, run_id: str):
    try:
        return await processor.run(run_id)
    finally:
        await close_all_clients()


@celery_app.task(bind=True, name=PROCESS_JOB_TYPE)
def process_project_answers(self, run_id: str):
    settings = get_settings()
    db = SessionLocal()
    try:
        run = db.query(BatchRun).filter(BatchRun.id == run_id).first()
        if run and not run.queue_job_id:
            run.queue_job_id = self.request.id
            db.commit()
    finally:
        db.close()

    processor = BatchProcessor(
        SessionLocal,
        LLMAnswerGenerator(settings),
        concurrency=settings.BATCH_CONCURRENCY,
        redis_url=settings.REDIS_URL,
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_run_and_close(processor, run_id))
        return result.as_dict()
    except Exception as e:
        logger.exception("Celery task error for run %s: %s", run_id, e)
        mark_run_failed(SessionLocal, run_id, f"{type(e).__name__}: {e}")
        return {"run_id": run_id, "status": "failed", "error": str(e)}
    finally:
        loop.close()
