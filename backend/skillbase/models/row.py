"""Row model: one question/answer unit within a project."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Text, Integer, Boolean, DateTime, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from skillbase.database import Base


class Row(Base):
    __tablename__ = "project_rows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    input_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    output_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")  # PENDING | PROCESSING | COMPLETED | ERROR
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by_run: Mapped[str | None] = mapped_column(String(36), nullable=True)
    history: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # Flag track
    flagged_for_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flagged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    flagged_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    flag_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    flag_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    flag_resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    flag_resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Review track
    review_status: Mapped[str | None] = mapped_column(String(20), nullable=True)  # REQUESTED | APPROVED | CORRECTED
    review_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user_edited_answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    clarify_conversation: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    project = relationship("Project", back_populates="rows")

    __table_args__ = (
        UniqueConstraint("project_id", "row_number", name="uq_project_rows_number"),
        Index("ix_project_rows_project_status", "project_id", "status"),
        Index("ix_project_rows_claimed_by_run", "claimed_by_run"),
        Index("ix_project_rows_review_status", "review_status"),
    )

    @property
    def question(self) -> str:
        return str((self.input_data or {}).get("question") or "")

    @property
    def context(self) -> str | None:
        return (self.input_data or {}).get("context") or None

    def __repr__(self) -> str:
        return f"<Row #{self.row_number} {self.id[:8]} ({self.status})>"
