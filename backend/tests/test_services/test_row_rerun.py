"""Tests for answering a single row again with its clarify thread."""
import asyncio

import pytest

from skillbase.errors import ConflictError, GenerationError, InvalidArgumentError, NotFoundError
from skillbase.models import BatchRun, Project, QuestionHistory, Row
from skillbase.schemas.common import ProjectStatus, RunStatus
from skillbase.services.row_rerun import RowRerunService, clarify_context
from skillbase.services.row_store import RowStore
from skillbase.utils.startup import API_RUN_MODES, recover_orphaned_runs
from tests.conftest import OWNER, STRANGER, FakeGenerator, make_project

QUESTION = "Is encryption at rest enabled?"


@pytest.fixture
def single(db_session):
    project = make_project(db_session, n_rows=1, status="COMPLETED")
    row = db_session.query(Row).filter(Row.project_id == project.id).one()
    row.input_data = {"question": QUESTION, "context": "Storage layer"}
    row.status = "COMPLETED"
    row.output_data = {"response": "Older answer"}
    row.clarify_conversation = [
        {"role": "user", "content": "Cover key rotation too"},
        {"role": "assistant", "content": "Noted"},
    ]
    db_session.commit()
    return project, row


def rerun(db_session, settings, project, row, generator=None, user_id=OWNER):
    service = RowRerunService(db_session, settings, generator or FakeGenerator())
    return asyncio.run(service.rerun(project.id, row.id, user_id))


class TestClarifyContext:
    def test_joins_context_and_thread(self, single):
        _, row = single
        assert clarify_context(row) == (
            "Storage layer\n\nClarification:\nuser: Cover key rotation too\nassistant: Noted"
        )

    def test_empty(self, db_session, project):
        row = db_session.query(Row).filter(Row.project_id == project.id).first()
        assert clarify_context(row) is None


class TestRerun:
    def test_answers_row_with_clarify_thread(self, db_session, settings, single, skill):
        project, row = single
        gen = FakeGenerator()

        updated = rerun(db_session, settings, project, row, gen)

        assert updated.status == "COMPLETED"
        assert updated.output_data["response"] == f"Answer to {QUESTION}"
        assert updated.output_data["transparency"]["skill_ids"] == [skill.id]
        assert updated.claimed_by_run is None
        assert "Cover key rotation too" in gen.batches[0][0].context
        db_session.expire_all()
        assert db_session.get(Project, project.id).status == ProjectStatus.COMPLETED.value
        run = db_session.query(BatchRun).one()
        assert (run.mode, run.status, run.processed_rows) == ("rerun", RunStatus.COMPLETED.value, 1)
        assert db_session.query(QuestionHistory).filter(QuestionHistory.row_id == row.id).count() == 1

    def test_generation_failure_reverts_row(self, db_session, settings, single, skill):
        project, row = single
        with pytest.raises(GenerationError):
            rerun(db_session, settings, project, row, FakeGenerator(fail_when=QUESTION))

        db_session.expire_all()
        reverted = db_session.get(Row, row.id)
        assert reverted.status == "PENDING"
        assert reverted.output_data is None
        assert db_session.get(Project, project.id).status == ProjectStatus.DRAFT.value
        assert db_session.query(BatchRun).one().status == RunStatus.REVERTED.value

    def test_conflicts_with_running_project(self, db_session, settings, single, skill):
        project, row = single
        RowStore(db_session).try_mark_processing(project.id)
        with pytest.raises(ConflictError):
            rerun(db_session, settings, project, row)
        assert db_session.query(BatchRun).count() == 0

    def test_no_matching_skill(self, db_session, settings, single):
        project, row = single
        with pytest.raises(InvalidArgumentError, match="No skills"):
            rerun(db_session, settings, project, row)
        db_session.expire_all()
        assert db_session.get(Project, project.id).status == ProjectStatus.COMPLETED.value

    def test_stranger_sees_not_found(self, db_session, settings, single, skill):
        project, row = single
        with pytest.raises(NotFoundError):
            rerun(db_session, settings, project, row, user_id=STRANGER)

    def test_row_of_other_project(self, db_session, settings, single, skill):
        _, row = single
        other = make_project(db_session, n_rows=1)
        with pytest.raises(NotFoundError):
            rerun(db_session, settings, other, row)

    def test_interrupted_rerun_is_recovered(self, db_session, session_factory, single):
        project, row = single
        store = RowStore(db_session)
        store.try_mark_processing(project.id)
        run = BatchRun(project_id=project.id, user_id=OWNER, mode="rerun", status="in_progress", config={})
        db_session.add(run)
        db_session.commit()
        store.claim_row(row.id, run.id)

        assert recover_orphaned_runs(session_factory, modes=API_RUN_MODES) == 1

        db_session.expire_all()
        assert db_session.get(Row, row.id).status == "PENDING"
        assert db_session.get(Project, project.id).status == ProjectStatus.ERROR.value
