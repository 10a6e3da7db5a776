"""Shared FastAPI dependencies: caller identity and service wiring.

Infrastructure singletons (cache, queue, background runner, generator)
are built once per process; tests swap them through
``app.dependency_overrides``.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Callable

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from skillbase.config import Settings, get_settings
from skillbase.database import SessionLocal, get_db
from skillbase.services.answer_generator import AnswerGenerator, LLMAnswerGenerator
from skillbase.services.authorization import AuthorizationService
from skillbase.services.background import BackgroundRunner
from skillbase.services.batch_processor import BatchProcessor
from skillbase.services.cache import Cache, build_cache
from skillbase.services.dispatcher import BatchDispatcher
from skillbase.services.queue_backend import QueueBackend, build_queue_backend
from skillbase.services.review_workflow import ReviewWorkflow
from skillbase.services.row_rerun import RowRerunService
from skillbase.services.skill_selector import SkillSelector


def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity; session handling lives in the fronting gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


@lru_cache
def get_cache() -> Cache:
    s = get_settings()
    return build_cache(s.REDIS_URL, s.CACHE_ENABLED, s.CACHE_TTL_SECONDS)


@lru_cache
def get_queue() -> QueueBackend:
    s = get_settings()
    return build_queue_backend(s.REDIS_URL, s.QUEUE_ENABLED)


@lru_cache
def get_runner() -> BackgroundRunner:
    return BackgroundRunner(max_workers=get_settings().BACKGROUND_WORKERS)


def get_generator(settings: Settings = Depends(get_settings)) -> AnswerGenerator:
    return LLMAnswerGenerator(settings)


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_authz(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> AuthorizationService:
    return AuthorizationService(db, settings.reviewer_ids)


def get_selector(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    cache: Cache = Depends(get_cache),
) -> SkillSelector:
    return SkillSelector(
        db, cache=cache, cache_ttl=settings.CACHE_TTL_SECONDS,
        question_sample=settings.SKILL_QUESTION_SAMPLE,
    )


def get_dispatcher(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    queue: QueueBackend = Depends(get_queue),
    runner: BackgroundRunner = Depends(get_runner),
    generator: AnswerGenerator = Depends(get_generator),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    selector: SkillSelector = Depends(get_selector),
    authz: AuthorizationService = Depends(get_authz),
) -> BatchDispatcher:
    def processor_factory() -> BatchProcessor:
        return BatchProcessor(
            session_factory, generator,
            concurrency=settings.BATCH_CONCURRENCY,
            redis_url=settings.REDIS_URL,
        )

    return BatchDispatcher(
        db, settings, queue, runner, processor_factory, session_factory,
        selector=selector, authz=authz,
    )


def get_review_workflow(
    db: Session = Depends(get_db),
    authz: AuthorizationService = Depends(get_authz),
) -> ReviewWorkflow:
    return ReviewWorkflow(db, authz)


def get_rerun_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    generator: AnswerGenerator = Depends(get_generator),
    selector: SkillSelector = Depends(get_selector),
    authz: AuthorizationService = Depends(get_authz),
) -> RowRerunService:
    return RowRerunService(db, settings, generator, selector=selector, authz=authz)
