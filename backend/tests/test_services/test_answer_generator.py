"""Tests for the LLM-backed answer generator."""
import asyncio
import json

import httpx
import pytest

from skillbase.errors import GenerationError
from skillbase.schemas.payloads import GenerationQuestion, SkillContent
from skillbase.services import answer_generator
from skillbase.services.answer_generator import LLMAnswerGenerator, build_batch_prompt, map_answers
from skillbase.services.llm_http import ProviderReply

BATCH = [
    GenerationQuestion(id="r1", question="Do you encrypt data at rest?"),
    GenerationQuestion(id="r2", question="Which TLS versions are supported?", context="Section 4.2"),
]
SKILLS = [SkillContent(id="s1", title="Encryption", content="AES-256 at rest. TLS 1.2+ in transit.")]


def http_error(status, headers=None):
    request = httpx.Request("POST", "https://api.example.test/v1")
    response = httpx.Response(status, request=request, headers=headers or {}, text="nope")
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


@pytest.fixture
def no_sleep(monkeypatch):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr(answer_generator.asyncio, "sleep", fake_sleep)
    return waits


def stub_provider(monkeypatch, *outcomes):
    """Replace the provider call; each outcome is a reply text or an exception."""
    calls = []
    queue = list(outcomes)

    async def fake_call(system, prompt, provider, model, **kwargs):
        calls.append({"prompt": prompt, "model": model})
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return ProviderReply(outcome, input_tokens=300, output_tokens=100)

    monkeypatch.setattr(answer_generator, "call_provider", fake_call)
    return calls


def reply(*items):
    return json.dumps(list(items))


class TestPrompt:
    def test_prompt_lists_skills_and_numbered_questions(self):
        prompt = build_batch_prompt(BATCH, SKILLS, file_context="Vendor security overview")
        assert "### Encryption" in prompt
        assert "1. Do you encrypt data at rest?" in prompt
        assert "2. Which TLS versions are supported?\n   Context: Section 4.2" in prompt
        assert "Vendor security overview" in prompt

    def test_long_file_context_truncated(self):
        prompt = build_batch_prompt(BATCH, SKILLS, file_context="x" * 20000)
        assert "...(truncated)" in prompt


class TestMapAnswers:
    def test_maps_by_question_index(self):
        items = [
            {"questionIndex": 2, "response": "TLS 1.2 and 1.3", "confidence": "HIGH"},
            {"questionIndex": 1, "response": "Yes, AES-256", "sources": "Encryption, Policy"},
        ]
        answers = map_answers(BATCH, items, total_tokens=400)
        assert [a.id for a in answers] == ["r1", "r2"]
        assert answers[0].sources == ["Encryption", "Policy"]
        assert answers[1].confidence == "high"
        assert all(a.tokens_used == 200 for a in answers)

    def test_missing_index_falls_back_to_position(self):
        answers = map_answers(BATCH, [{"response": "a"}, {"response": "b"}], total_tokens=0)
        assert [a.response for a in answers] == ["a", "b"]

    def test_extra_answers_rejected(self):
        items = [{"questionIndex": i, "response": "x"} for i in (1, 2, 3)]
        with pytest.raises(GenerationError, match="3 answers for 2 questions"):
            map_answers(BATCH, items, total_tokens=10)

    def test_missing_answer_rejected(self):
        with pytest.raises(GenerationError, match="1 answers for 2 questions"):
            map_answers(BATCH, [{"questionIndex": 1, "response": "x"}], total_tokens=10)

    def test_out_of_range_index_rejected(self):
        items = [{"questionIndex": 1, "response": "x"}, {"questionIndex": 7, "response": "?"}]
        with pytest.raises(GenerationError, match="outside the batch"):
            map_answers(BATCH, items, total_tokens=10)

    def test_duplicate_index_rejected(self):
        items = [{"questionIndex": 2, "response": "x"}, {"questionIndex": 2, "response": "y"}]
        with pytest.raises(GenerationError, match="more than once"):
            map_answers(BATCH, items, total_tokens=10)

    def test_non_object_item_rejected(self):
        with pytest.raises(GenerationError, match="not an object"):
            map_answers(BATCH, [{"response": "x"}, "y"], total_tokens=10)


class TestGenerate:
    def test_success(self, monkeypatch, settings):
        calls = stub_provider(monkeypatch, "```json\n" + reply(
            {"questionIndex": 1, "response": "Yes", "confidence": "high"},
            {"questionIndex": 2, "response": "1.2+", "confidence": "medium"},
        ) + "\n```")

        answers = asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "fast"))

        assert [a.response for a in answers] == ["Yes", "1.2+"]
        assert calls[0]["model"] == settings.MODEL_FAST

    def test_wrapped_object_accepted(self, monkeypatch, settings):
        stub_provider(monkeypatch, json.dumps({"answers": [
            {"questionIndex": 1, "response": "Yes"}, {"questionIndex": 2, "response": "1.3"},
        ]}))
        answers = asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "quality"))
        assert [a.id for a in answers] == ["r1", "r2"]

    def test_reply_with_extra_answers_rejected(self, monkeypatch, settings):
        stub_provider(monkeypatch, reply(*({"questionIndex": i, "response": "x"} for i in (1, 2, 3))))
        with pytest.raises(GenerationError, match="3 answers for 2 questions"):
            asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "fast"))

    def test_unparseable_reply(self, monkeypatch, settings):
        stub_provider(monkeypatch, "I'm sorry, I can't help with that.")
        with pytest.raises(GenerationError, match="JSON"):
            asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "fast"))

    def test_empty_batch_skips_provider(self, monkeypatch, settings):
        calls = stub_provider(monkeypatch)
        assert asyncio.run(LLMAnswerGenerator(settings).generate([], SKILLS, "fast")) == []
        assert calls == []


class TestRetry:
    def test_auth_error_not_retried(self, monkeypatch, settings, no_sleep):
        calls = stub_provider(monkeypatch, http_error(401))
        with pytest.raises(GenerationError, match="HTTP 401"):
            asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "fast"))
        assert len(calls) == 1
        assert no_sleep == []

    def test_server_error_retried(self, monkeypatch, settings, no_sleep):
        calls = stub_provider(monkeypatch, http_error(503), reply(
            {"questionIndex": 1, "response": "ok"}, {"questionIndex": 2, "response": "1.3"},
        ))
        answers = asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "fast"))
        assert len(calls) == 2
        assert answers[0].response == "ok"
        assert no_sleep == [2.0]

    def test_rate_limit_honours_retry_after(self, monkeypatch, settings, no_sleep):
        stub_provider(monkeypatch, http_error(429, {"retry-after": "30"}), reply({"response": "ok"}, {"response": "1.3"}))
        asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "fast"))
        assert 24.0 <= no_sleep[0] <= 36.0

    def test_connection_errors_exhaust_retries(self, monkeypatch, settings, no_sleep):
        failures = [httpx.ConnectError("refused") for _ in range(4)]
        calls = stub_provider(monkeypatch, *failures)
        with pytest.raises(GenerationError, match="after 4 attempts"):
            asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "fast"))
        assert len(calls) == 4

    def test_misconfiguration_is_generation_error(self, monkeypatch, settings):
        stub_provider(monkeypatch, ValueError("LLM_API_KEY is not set"))
        with pytest.raises(GenerationError, match="LLM_API_KEY"):
            asyncio.run(LLMAnswerGenerator(settings).generate(BATCH, SKILLS, "fast"))
