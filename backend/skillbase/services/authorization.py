"""Who may change a project or settle a review."""
from __future__ import annotations

from sqlalchemy.orm import Session

from skillbase.models import Project


class AuthorizationService:
    def __init__(self, db: Session, reviewer_ids: set[str] | None = None):
        self.db = db
        self.reviewer_ids = reviewer_ids or set()

    def can_manage(self, user_id: str, project_id: str) -> bool:
        owner = self.db.query(Project.owner_id).filter(Project.id == project_id).scalar()
        return owner is not None and owner == user_id

    def is_reviewer(self, user_id: str) -> bool:
        return user_id in self.reviewer_ids

    def can_review(self, user_id: str, owner_id: str | None) -> bool:
        return (owner_id is not None and user_id == owner_id) or self.is_reviewer(user_id)
