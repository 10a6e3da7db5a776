"""Tests for the batch processor: claim, partition, generate, apply, revert."""
import asyncio

import pytest

from skillbase.errors import InvalidArgumentError
from skillbase.models import BatchRun, Project, QuestionHistory, Row
from skillbase.schemas.common import ProjectStatus, RunStatus
from skillbase.services.batch_processor import BatchProcessor, partition
from skillbase.services.dispatcher import mark_run_failed
from skillbase.services.row_store import RowStore
from tests.conftest import FakeGenerator, make_project


def make_run(db, project, skill_ids, batch_size=5, status="queued"):
    RowStore(db).try_mark_processing(project.id)
    run = BatchRun(
        project_id=project.id,
        user_id=project.owner_id,
        mode="sync-background",
        status=status,
        previous_status="DRAFT",
        config={
            "skill_ids": skill_ids,
            "batch_size": batch_size,
            "library_id": "knowledge",
            "model_speed": "fast",
        },
    )
    db.add(run)
    db.commit()
    return run


def run_processor(session_factory, generator, run_id, concurrency=2):
    processor = BatchProcessor(session_factory, generator, concurrency=concurrency)
    return asyncio.run(processor.run(run_id))


def rows_of(db, project_id):
    db.expire_all()
    return db.query(Row).filter(Row.project_id == project_id).order_by(Row.row_number).all()


class TestPartition:
    def test_preserves_order_and_sizes(self):
        chunks = partition(list(range(12)), 5)
        assert [len(c) for c in chunks] == [5, 5, 2]
        assert [x for c in chunks for x in c] == list(range(12))

    def test_empty(self):
        assert partition([], 5) == []

    def test_rejects_zero(self):
        with pytest.raises(ValueError):
            partition([1], 0)


class TestSuccessfulRun:
    def test_all_chunks_complete(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id], batch_size=5)
        gen = FakeGenerator()

        result = run_processor(session_factory, gen, run.id)

        assert result.status == RunStatus.COMPLETED
        assert result.total_batches == 3
        assert result.processed_rows == 12
        assert sorted(len(c) for c in gen.calls) == [2, 5, 5]
        rows = rows_of(db_session, project.id)
        assert all(r.status == "COMPLETED" for r in rows)
        assert all(r.output_data and r.output_data["response"] == f"Answer to {r.question}" for r in rows)
        assert RowStore(db_session).row_stats(project.id).as_dict() == {
            "pending": 0, "processing": 0, "completed": 12, "error": 0,
        }
        assert db_session.get(Project, project.id).status == ProjectStatus.COMPLETED.value

    def test_transparency_and_history_recorded(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id])
        run_processor(session_factory, FakeGenerator(), run.id)

        row = rows_of(db_session, project.id)[0]
        assert row.output_data["transparency"]["skill_ids"] == [skill.id]
        assert row.output_data["transparency"]["run_id"] == run.id
        assert row.history[-1]["action"] == "completed"
        assert row.tokens_used == 10
        assert row.claimed_by_run is None
        records = db_session.query(QuestionHistory).filter(QuestionHistory.project_id == project.id).all()
        assert len(records) == 12
        assert {r.source for r in records} == {"rfp"}

    def test_run_progress_persisted(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id])
        run_processor(session_factory, FakeGenerator(), run.id)

        db_session.expire_all()
        stored = db_session.get(BatchRun, run.id)
        assert stored.status == RunStatus.COMPLETED.value
        assert stored.completed_batches == 3
        assert stored.total_batches == 3
        assert stored.processed_rows == 12
        assert stored.completed_at is not None

    def test_concurrency_is_bounded(self, db_session, session_factory, skill):
        project = make_project(db_session, n_rows=30)
        run = make_run(db_session, project, [skill.id], batch_size=5)
        gen = FakeGenerator(delay=0.01)

        run_processor(session_factory, gen, run.id, concurrency=2)

        assert len(gen.calls) == 6
        assert gen.max_in_flight == 2

    def test_finished_run_is_not_reprocessed(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id], status="completed")
        gen = FakeGenerator()
        result = run_processor(session_factory, gen, run.id)
        assert result.status == RunStatus.COMPLETED
        assert gen.calls == []


class TestFailedRun:
    def test_chunk_failure_reverts_whole_run(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id], batch_size=5)
        gen = FakeGenerator(fail_when="Question 6")

        result = run_processor(session_factory, gen, run.id, concurrency=1)

        assert result.status == RunStatus.REVERTED
        assert result.reverted_rows == 12
        rows = rows_of(db_session, project.id)
        assert all(r.status == "PENDING" for r in rows)
        assert all(r.output_data is None for r in rows)
        assert all(r.claimed_by_run is None for r in rows)
        assert RowStore(db_session).row_stats(project.id).as_dict() == {
            "pending": 12, "processing": 0, "completed": 0, "error": 0,
        }
        assert db_session.get(Project, project.id).status == ProjectStatus.DRAFT.value
        stored = db_session.get(BatchRun, run.id)
        assert stored.status == RunStatus.REVERTED.value
        assert "provider unavailable" in stored.error_message
        assert db_session.query(QuestionHistory).count() == 0

    def test_no_new_chunks_after_failure(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id], batch_size=5)
        gen = FakeGenerator(fail_when="Question 6")
        run_processor(session_factory, gen, run.id, concurrency=1)
        assert len(gen.calls) == 2

    def test_late_success_is_discarded(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id], batch_size=5)
        gen = FakeGenerator(fail_when="Question 6", delay_when="Question 1", delay=0.05)

        result = run_processor(session_factory, gen, run.id, concurrency=2)

        assert result.status == RunStatus.REVERTED
        rows = rows_of(db_session, project.id)
        assert all(r.status == "PENDING" and r.output_data is None for r in rows)

    def test_length_mismatch_is_run_fatal(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id], batch_size=5)
        result = run_processor(session_factory, FakeGenerator(short_by=1), run.id)

        assert result.status == RunStatus.REVERTED
        assert "returned 4 answers for a batch of 5" in result.error
        assert all(r.status == "PENDING" for r in rows_of(db_session, project.id))

    def test_run_failed_elsewhere_keeps_its_status(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, [skill.id], batch_size=5)

        class FailedMidway(FakeGenerator):
            async def generate(self, batch, skills, model_speed, file_context=None):
                if not self.calls:
                    mark_run_failed(session_factory, run.id, "worker restarted")
                return await super().generate(batch, skills, model_speed, file_context)

        result = run_processor(session_factory, FailedMidway(), run.id, concurrency=1)

        assert result.status == RunStatus.FAILED
        db_session.expire_all()
        assert db_session.get(BatchRun, run.id).status == RunStatus.FAILED.value
        assert db_session.get(Project, project.id).status == ProjectStatus.ERROR.value
        assert all(r.status == "PENDING" and r.output_data is None for r in rows_of(db_session, project.id))
        assert db_session.query(QuestionHistory).count() == 0

    def test_missing_skills_escape_processor(self, db_session, session_factory, project, skill):
        run = make_run(db_session, project, ["ghost-id"])
        with pytest.raises(InvalidArgumentError):
            run_processor(session_factory, FakeGenerator(), run.id)


class TestAnomalies:
    def test_unmatched_row_left_processing(self, db_session, session_factory, skill):
        project = make_project(db_session, n_rows=5)
        run = make_run(db_session, project, [skill.id], batch_size=5)

        result = run_processor(session_factory, FakeGenerator(wrong_ids=True), run.id)

        assert result.status == RunStatus.COMPLETED
        assert len(result.anomalies) == 1
        rows = rows_of(db_session, project.id)
        stuck = [r for r in rows if r.status == "PROCESSING"]
        assert len(stuck) == 1
        assert stuck[0].output_data is None
        assert sum(r.status == "COMPLETED" for r in rows) == 4
        assert db_session.get(Project, project.id).status == ProjectStatus.ERROR.value


class TestClaim:
    def test_only_claimed_rows_processed(self, db_session, session_factory, project, skill):
        done = rows_of(db_session, project.id)[0]
        done.status = "COMPLETED"
        done.output_data = {"response": "already answered"}
        db_session.commit()
        run = make_run(db_session, project, [skill.id])
        gen = FakeGenerator()

        result = run_processor(session_factory, gen, run.id)

        assert result.total_rows == 11
        assert "Question 1" not in [q for call in gen.calls for q in call]
        db_session.expire_all()
        assert db_session.get(Row, done.id).output_data == {"response": "already answered"}
