"""QuestionHistory model: audit log of answered questions (bulk rows and single asks)."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Text, Integer, Boolean, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from skillbase.database import Base


class QuestionHistory(Base):
    __tablename__ = "question_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    row_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    library: Mapped[str] = mapped_column(String(50), nullable=False, default="knowledge")
    model_speed: Mapped[str] = mapped_column(String(20), nullable=False, default="quality")
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="single")  # rfp | single
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="COMPLETED")
    output_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)

    flagged_for_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flagged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    flagged_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    flag_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    flag_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    flag_resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    flag_resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    review_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    review_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user_edited_answer: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_question_history_user_id", "user_id"),
        Index("ix_question_history_project_id", "project_id"),
        Index("ix_question_history_review_status", "review_status"),
    )

    def __repr__(self) -> str:
        return f"<QuestionHistory {self.id[:8]} ({self.source})>"
