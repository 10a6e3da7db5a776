"""Queue backend used by the dispatcher for the async execution path."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import redis

logger = logging.getLogger(__name__)


class QueueBackend(ABC):
    @abstractmethod
    def is_configured(self) -> bool:
        """True when jobs can be handed off right now."""

    @abstractmethod
    def enqueue(self, queue_name: str, job_type: str, payload: dict[str, Any]) -> str:
        """Submit one job and return its id. Raises on failure."""


class NoQueueBackend(QueueBackend):
    def is_configured(self) -> bool:
        return False

    def enqueue(self, queue_name: str, job_type: str, payload: dict[str, Any]) -> str:
        raise RuntimeError("No queue backend configured")


class CeleryQueueBackend(QueueBackend):
    """Send jobs to the Celery worker through the Redis broker.

    ``is_configured`` pings the broker so a dead Redis falls back to the
    background path instead of failing every dispatch.
    """

    def __init__(self, redis_url: str, celery_app=None):
        self.redis_url = redis_url
        self._celery_app = celery_app

    @property
    def celery_app(self):
        if self._celery_app is None:
            from skillbase.celery_app import celery_app
            self._celery_app = celery_app
        return self._celery_app

    def is_configured(self) -> bool:
        if not self.redis_url:
            return False
        try:
            client = redis.from_url(self.redis_url, socket_connect_timeout=2)
            try:
                return bool(client.ping())
            finally:
                client.close()
        except redis.RedisError as e:
            logger.warning("Queue broker unreachable, using background path: %s", e)
            return False

    def enqueue(self, queue_name: str, job_type: str, payload: dict[str, Any]) -> str:
        result = self.celery_app.send_task(job_type, kwargs=payload, queue=queue_name)
        logger.info("Enqueued %s on %s as %s", job_type, queue_name, result.id)
        return result.id


def build_queue_backend(redis_url: str, enabled: bool) -> QueueBackend:
    if enabled and redis_url:
        return CeleryQueueBackend(redis_url)
    return NoQueueBackend()
