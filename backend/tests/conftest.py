"""Test configuration and fixtures."""
import asyncio

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from skillbase.config import Settings
from skillbase.database import Base, build_engine
from skillbase.errors import GenerationError
from skillbase.models import Project, Row, Skill
from skillbase.schemas.payloads import GeneratedAnswer
from skillbase.services.answer_generator import AnswerGenerator
from skillbase.services.background import InlineRunner
from skillbase.services.batch_processor import BatchProcessor
from skillbase.services.dispatcher import BatchDispatcher
from skillbase.services.queue_backend import QueueBackend

OWNER = "owner-1"
REVIEWER = "reviewer-1"
STRANGER = "stranger-1"


@pytest.fixture
def engine():
    """One in-memory SQLite database shared by every session of a test."""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        REDIS_URL="",
        REVIEWER_USER_IDS=REVIEWER,
        BATCH_CONCURRENCY=2,
    )


# ── Seed helpers ───────────────────────────────────────────────────────

def make_project(db, n_rows=12, owner_id=OWNER, status="DRAFT", customer_id=None, config=None):
    project = Project(
        owner_id=owner_id,
        customer_id=customer_id,
        name="Security questionnaire",
        status=status,
        config=config or {"library_id": "knowledge", "model_speed": "fast"},
    )
    db.add(project)
    db.flush()
    for i in range(1, n_rows + 1):
        db.add(Row(project_id=project.id, row_number=i, input_data={"question": f"Question {i}"}))
    db.commit()
    return project


def make_skill(db, title="Encryption", library_id="knowledge", status="ACTIVE",
               covers="encryption at rest, TLS, key management", future="", not_included="",
               customer_id=None, content=None):
    skill = Skill(
        library_id=library_id,
        customer_id=customer_id,
        title=title,
        content=content or f"{title} knowledge. " * 10,
        status=status,
        scope_definition={"covers": covers, "futureAdditions": future, "notIncluded": not_included},
    )
    db.add(skill)
    db.commit()
    return skill


@pytest.fixture
def project(db_session):
    return make_project(db_session)


@pytest.fixture
def skill(db_session):
    return make_skill(db_session)


# ── Fake collaborators ─────────────────────────────────────────────────

class FakeGenerator(AnswerGenerator):
    """Answers every question; can fail, drop answers or sleep per batch."""

    def __init__(self, fail_when=None, short_by=0, wrong_ids=False, delay_when=None, delay=0.0):
        self.fail_when = fail_when
        self.short_by = short_by
        self.wrong_ids = wrong_ids
        self.delay_when = delay_when
        self.delay = delay
        self.calls = []
        self.batches = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, batch, skills, model_speed, file_context=None):
        questions = [q.question for q in batch]
        self.calls.append(questions)
        self.batches.append(batch)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_when is None or self.delay_when in questions:
                await asyncio.sleep(self.delay)
            if self.fail_when and self.fail_when in questions:
                raise GenerationError("provider unavailable")
            answers = [
                GeneratedAnswer(
                    id=("other-" + q.id) if self.wrong_ids and i == 0 else q.id,
                    response=f"Answer to {q.question}",
                    confidence="high",
                    sources=[s.title for s in skills],
                    tokens_used=10,
                )
                for i, q in enumerate(batch)
            ]
            if self.short_by:
                answers = answers[: len(answers) - self.short_by]
            return answers
        finally:
            self.in_flight -= 1


class FakeQueue(QueueBackend):
    def __init__(self, configured=True, fail=False):
        self.configured = configured
        self.fail = fail
        self.jobs = []

    def is_configured(self):
        return self.configured

    def enqueue(self, queue_name, job_type, payload):
        if self.fail:
            raise ConnectionError("broker refused connection")
        self.jobs.append((queue_name, job_type, payload))
        return f"job-{len(self.jobs)}"


class RecordingRunner(InlineRunner):
    """Accepts runs without executing them, like a busy worker pool."""

    def __init__(self):
        super().__init__()
        self.submitted = []

    def submit(self, run_id, factory, on_error):
        self.submitted.append(run_id)
        return None


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def make_dispatcher(db_session, session_factory, settings):
    def _make(generator=None, queue=None, runner=None, processor_factory=None):
        gen = generator or FakeGenerator()

        def default_factory():
            return BatchProcessor(session_factory, gen, concurrency=settings.BATCH_CONCURRENCY)

        return BatchDispatcher(
            db_session,
            settings,
            queue or FakeQueue(configured=False),
            runner or InlineRunner(),
            processor_factory or default_factory,
            session_factory,
        )

    return _make
