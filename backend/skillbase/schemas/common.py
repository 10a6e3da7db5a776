"""Shared / common schemas: pagination, enums, base models."""
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar
from pydantic import BaseModel, Field

T = TypeVar("T")


# ── Enums ──────────────────────────────────────────────────────────────

class ProjectStatus(str, Enum):
    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class RowStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class ReviewStatus(str, Enum):
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    CORRECTED = "CORRECTED"


class SkillStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REVERTED = "reverted"
    FAILED = "failed"


class DispatchMode(str, Enum):
    ASYNC = "async"
    SYNC_BACKGROUND = "sync-background"
    RERUN = "rerun"


class ModelSpeed(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    QUALITY = "quality"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReviewSource(str, Enum):
    PROJECT = "project"
    QUESTIONS = "questions"
    ALL = "all"


class ReviewFilter(str, Enum):
    PENDING = "pending"
    FLAGGED = "flagged"
    RESOLVED = "resolved"
    APPROVED = "approved"
    CORRECTED = "corrected"
    ALL = "all"


# ── Pagination ─────────────────────────────────────────────────────────

class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int
    total_pages: int


# ── Common Responses ───────────────────────────────────────────────────

class MessageResponse(BaseModel):
    message: str
    detail: str | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
    queue_configured: bool = False


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None
    code: str = Field(default="error")
