"""SQLAlchemy ORM models package."""
from skillbase.models.project import Project
from skillbase.models.row import Row
from skillbase.models.skill import Skill
from skillbase.models.batch_run import BatchRun
from skillbase.models.question_history import QuestionHistory

__all__ = [
    "Project",
    "Row",
    "Skill",
    "BatchRun",
    "QuestionHistory",
]
