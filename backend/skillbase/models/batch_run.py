"""BatchRun model: tracks one dispatched processing run of a project."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Text, Integer, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from skillbase.database import Base


class BatchRun(Base):
    __tablename__ = "batch_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)  # async | sync-background | rerun
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")  # queued | in_progress | completed | reverted | failed
    queue_job_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    previous_status: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT")
    config: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    total_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_batches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_batches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    project = relationship("Project", back_populates="batch_runs")

    __table_args__ = (
        Index("ix_batch_runs_project_id", "project_id"),
        Index("ix_batch_runs_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<BatchRun {self.id[:8]} ({self.mode}, {self.status})>"
