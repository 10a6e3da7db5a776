"""Review and flag tracks on answered questions.

Both project rows and single-question history records carry the same two
independent tracks:

  review: none -> REQUESTED -> APPROVED | CORRECTED
          (APPROVED / CORRECTED may also be set directly)
  flag:   unflagged -> flagged(note, actor) -> resolved(note, actor)
          (flagging again clears the resolution)

Repeating a transition is not an error; it refreshes actor, note and
timestamp. Only COMPLETED rows can enter either track.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Union

from sqlalchemy.orm import Session

from skillbase.errors import ForbiddenError, InvalidArgumentError, NotFoundError
from skillbase.models import Project, QuestionHistory, Row
from skillbase.schemas.common import ReviewFilter, ReviewSource, ReviewStatus, RowStatus
from skillbase.services.authorization import AuthorizationService
from skillbase.services.row_store import history_entry

logger = logging.getLogger(__name__)

Reviewable = Union[Row, QuestionHistory]

_UNSET: Any = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ReviewWorkflow:
    def __init__(self, db: Session, authz: AuthorizationService):
        self.db = db
        self.authz = authz

    # ── Lookup ─────────────────────────────────────────────────────────

    def _project_row(self, row_id: str, project_id: str) -> tuple[Row, Project]:
        row = self.db.query(Row).filter(Row.id == row_id, Row.project_id == project_id).first()
        if row is None:
            raise NotFoundError("Row not found")
        return row, row.project

    def _load(self, item_id: str, user_id: str, source: ReviewSource, project_id: str | None):
        """Resolve a review target and its owner id.

        Mismatched project ids and records the caller can neither own nor
        review are reported as not found.
        """
        if source in (ReviewSource.PROJECT, ReviewSource.ALL):
            query = self.db.query(Row).filter(Row.id == item_id)
            if project_id:
                query = query.filter(Row.project_id == project_id)
            row = query.first()
            if row is not None:
                owner = row.project.owner_id
                if not self.authz.can_review(user_id, owner):
                    raise NotFoundError("Review item not found")
                return row, owner
        if source in (ReviewSource.QUESTIONS, ReviewSource.ALL) and not project_id:
            record = self.db.query(QuestionHistory).filter(QuestionHistory.id == item_id).first()
            if record is not None:
                if not self.authz.can_review(user_id, record.user_id):
                    raise NotFoundError("Review item not found")
                return record, record.user_id
        raise NotFoundError("Review item not found")

    # ── Transitions ────────────────────────────────────────────────────

    def _require_completed(self, item: Reviewable) -> None:
        if item.status != RowStatus.COMPLETED.value:
            raise InvalidArgumentError("Only completed answers can be reviewed or flagged")

    def _flag(self, item: Reviewable, actor: str, note: str | None) -> None:
        item.flagged_for_review = True
        item.flagged_at = _now()
        item.flagged_by = actor
        item.flag_note = note
        item.flag_resolved = False
        item.flag_resolved_at = None
        item.flag_resolved_by = None
        item.flag_resolution_note = None

    def _unflag(self, item: Reviewable) -> None:
        item.flagged_for_review = False
        item.flagged_at = None
        item.flagged_by = None
        item.flag_note = None
        item.flag_resolved = False
        item.flag_resolved_at = None
        item.flag_resolved_by = None
        item.flag_resolution_note = None

    def _resolve(self, item: Reviewable, actor: str, note: str | None) -> None:
        if not item.flagged_for_review:
            raise InvalidArgumentError("Item is not flagged")
        item.flag_resolved = True
        item.flag_resolved_at = _now()
        item.flag_resolved_by = actor
        item.flag_resolution_note = note

    def _set_review(
        self,
        item: Reviewable,
        status: ReviewStatus | None,
        actor: str,
        owner_id: str | None,
        note: str | None,
    ) -> None:
        current = item.review_status
        if status is None:
            item.review_status = None
            item.review_note = note
            return
        if status == ReviewStatus.REQUESTED:
            item.review_status = status.value
            item.review_requested_at = _now()
            item.review_requested_by = actor
            item.review_note = note
            item.reviewed_at = None
            item.reviewed_by = None
            return
        if current == ReviewStatus.REQUESTED.value and not self.authz.can_review(actor, owner_id):
            raise ForbiddenError("Only the owner or a reviewer can complete a requested review")
        if status == ReviewStatus.CORRECTED and not (item.user_edited_answer or "").strip():
            raise InvalidArgumentError("A corrected review requires an edited answer")
        item.review_status = status.value
        item.reviewed_at = _now()
        item.reviewed_by = actor
        if note is not None:
            item.review_note = note

    def _audit(self, item: Reviewable, action: str, actor: str, **detail: Any) -> None:
        if isinstance(item, Row):
            item.history = list(item.history or []) + [history_entry(action, actor=actor, **detail)]

    # ── Public API ─────────────────────────────────────────────────────

    def update_row(
        self,
        row_id: str,
        project_id: str,
        user_id: str,
        flagged_for_review: bool | None = None,
        flag_note: str | None = None,
        flag_resolved: bool | None = None,
        resolution_note: str | None = None,
        review_status: Any = _UNSET,
        review_note: str | None = None,
        user_edited_answer: str | None = None,
        clarify_message: dict | None = None,
    ) -> Row:
        """Apply row-level edits from the project screen."""
        row, project = self._project_row(row_id, project_id)
        if not self.authz.can_review(user_id, project.owner_id):
            raise NotFoundError("Row not found")

        if user_edited_answer is not None:
            row.user_edited_answer = user_edited_answer or None
            self._audit(row, "answer_edited", user_id)

        if clarify_message is not None:
            row.clarify_conversation = list(row.clarify_conversation or []) + [
                {**clarify_message, "at": _now().isoformat(), "by": user_id}
            ]

        if flagged_for_review is True:
            self._require_completed(row)
            self._flag(row, user_id, flag_note)
            self._audit(row, "flagged", user_id, note=flag_note)
        elif flagged_for_review is False:
            self._unflag(row)
            self._audit(row, "unflagged", user_id)

        if flag_resolved:
            self._resolve(row, user_id, resolution_note)
            self._audit(row, "flag_resolved", user_id, note=resolution_note)

        if review_status is not _UNSET:
            status = ReviewStatus(review_status) if review_status is not None else None
            if status is not None:
                self._require_completed(row)
            self._set_review(row, status, user_id, project.owner_id, review_note)
            self._audit(row, "review", user_id, status=status.value if status else None)

        self.db.commit()
        self.db.refresh(row)
        return row

    def update_review(
        self,
        item_id: str,
        user_id: str,
        source: ReviewSource = ReviewSource.ALL,
        project_id: str | None = None,
        review_status: ReviewStatus | None = None,
        flag_resolved: bool | None = None,
        note: str | None = None,
    ) -> Reviewable:
        """Settle a review or resolve a flag from the review queue."""
        item, owner_id = self._load(item_id, user_id, source, project_id)
        self._require_completed(item)

        if review_status is not None:
            self._set_review(item, review_status, user_id, owner_id, note)
            self._audit(item, "review", user_id, status=review_status.value)

        if flag_resolved:
            self._resolve(item, user_id, note)
            self._audit(item, "flag_resolved", user_id, note=note)

        self.db.commit()
        self.db.refresh(item)
        logger.info(
            "Review update on %s %s by %s: review=%s resolved=%s",
            type(item).__name__, item_id[:8], user_id, item.review_status, item.flag_resolved,
        )
        return item

    def flag(self, item_id: str, user_id: str, note: str | None = None,
             source: ReviewSource = ReviewSource.ALL) -> Reviewable:
        item, _ = self._load(item_id, user_id, source, None)
        self._require_completed(item)
        self._flag(item, user_id, note)
        self._audit(item, "flagged", user_id, note=note)
        self.db.commit()
        self.db.refresh(item)
        return item

    def list_reviews(
        self,
        user_id: str,
        review_type: ReviewFilter = ReviewFilter.PENDING,
        source: ReviewSource = ReviewSource.ALL,
        library_id: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        """Review queue for *user_id*: their own items, or every item for reviewers."""
        results: list[dict] = []
        reviewer = self.authz.is_reviewer(user_id)

        if source in (ReviewSource.PROJECT, ReviewSource.ALL):
            query = self.db.query(Row, Project).join(Project, Row.project_id == Project.id)
            if not reviewer:
                query = query.filter(Project.owner_id == user_id)
            query = _apply_filter(query, Row, review_type)
            for row, project in query.order_by(Row.updated_at.desc()).limit(limit).all():
                library = (project.config or {}).get("library_id")
                if library_id and library != library_id:
                    continue
                results.append(to_review_item(row, "project", project_id=project.id,
                                        project_name=project.name, library=library))

        if source in (ReviewSource.QUESTIONS, ReviewSource.ALL):
            query = self.db.query(QuestionHistory).filter(QuestionHistory.source == "single")
            if not reviewer:
                query = query.filter(QuestionHistory.user_id == user_id)
            if library_id:
                query = query.filter(QuestionHistory.library == library_id)
            query = _apply_filter(query, QuestionHistory, review_type)
            for record in query.order_by(QuestionHistory.updated_at.desc()).limit(limit).all():
                results.append(to_review_item(record, "questions", library=record.library))

        results.sort(key=lambda r: r["updated_at"] or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return results[:limit]


def _apply_filter(query, model, review_type: ReviewFilter):
    if review_type == ReviewFilter.PENDING:
        return query.filter(model.review_status == ReviewStatus.REQUESTED.value)
    if review_type == ReviewFilter.FLAGGED:
        return query.filter(model.flagged_for_review.is_(True), model.flag_resolved.is_(False))
    if review_type == ReviewFilter.RESOLVED:
        return query.filter(model.flagged_for_review.is_(True), model.flag_resolved.is_(True))
    if review_type == ReviewFilter.APPROVED:
        return query.filter(model.review_status == ReviewStatus.APPROVED.value)
    if review_type == ReviewFilter.CORRECTED:
        return query.filter(model.review_status == ReviewStatus.CORRECTED.value)
    return query.filter(
        (model.review_status.isnot(None)) | (model.flagged_for_review.is_(True))
    )


def to_review_item(item: Reviewable, source: str, **extra: Any) -> dict:
    output = item.output_data or {}
    question = item.question
    updated = item.updated_at
    if updated is not None and updated.tzinfo is None:
        updated = updated.replace(tzinfo=timezone.utc)
    return {
        "id": item.id,
        "source": source,
        "question": question,
        "response": output.get("response"),
        "confidence": output.get("confidence"),
        "user_edited_answer": item.user_edited_answer,
        "review_status": item.review_status,
        "review_note": item.review_note,
        "review_requested_by": item.review_requested_by,
        "reviewed_by": item.reviewed_by,
        "reviewed_at": item.reviewed_at,
        "flagged_for_review": item.flagged_for_review,
        "flag_note": item.flag_note,
        "flagged_by": item.flagged_by,
        "flag_resolved": item.flag_resolved,
        "flag_resolution_note": item.flag_resolution_note,
        "updated_at": updated,
        **extra,
    }
