"""Answer generator: turns one batch of questions into structured answers.

The batch processor only depends on ``AnswerGenerator.generate()``. The
default ``LLMAnswerGenerator`` sends the whole batch in one request and
parses a JSON array back, retrying transient provider failures:
  - 429: extended backoff honouring Retry-After, with jitter
  - 5xx / connection / timeout: exponential backoff
  - 401 / 403 / other 4xx: fail immediately

Any final failure raises ``GenerationError`` so the run can revert.
"""
from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod

import httpx
from pydantic import ValidationError

from skillbase.config import Settings
from skillbase.errors import GenerationError
from skillbase.schemas.payloads import GeneratedAnswer, GenerationQuestion, SkillContent
from skillbase.services.llm_http import call_provider, ProviderReply
from skillbase.utils.json_utils import parse_json_array

logger = logging.getLogger(__name__)

MAX_RETRIES = 4
BASE_BACKOFF = 2.0
RATE_LIMIT_MAX_RETRIES = 6
RATE_LIMIT_BASE_BACKOFF = 5.0
RATE_LIMIT_MAX_BACKOFF = 60.0
FILE_CONTEXT_LIMIT = 12000

SYSTEM_PROMPT = (
    "You answer security, compliance and product questionnaires on behalf of the company. "
    "Use only the knowledge provided in the skills below. When the skills do not cover a "
    "question, say so and mark confidence low rather than guessing."
)

OUTPUT_INSTRUCTIONS = """Return ONLY a JSON array with exactly one object per question, in the same order:
[
  {
    "questionIndex": 1,
    "response": "answer text",
    "confidence": "high" | "medium" | "low",
    "sources": ["skill titles used"],
    "reasoning": "which skill content supports the answer",
    "inference": "anything inferred rather than stated, or \\"None\\"",
    "remarks": "caveats for the reviewer, or empty"
  }
]"""


class AnswerGenerator(ABC):
    @abstractmethod
    async def generate(
        self,
        batch: list[GenerationQuestion],
        skills: list[SkillContent],
        model_speed: str,
        file_context: str | None = None,
    ) -> list[GeneratedAnswer]:
        """Answer every question of *batch*; raise on infrastructure failure."""


def build_batch_prompt(
    batch: list[GenerationQuestion],
    skills: list[SkillContent],
    file_context: str | None = None,
) -> str:
    parts = ["## Skills"]
    for skill in skills:
        parts.append(f"### {skill.title}\n{skill.content.strip()}")
    if file_context:
        ctx = file_context[:FILE_CONTEXT_LIMIT]
        if len(file_context) > FILE_CONTEXT_LIMIT:
            ctx += "\n...(truncated)"
        parts.append(f"## Source document context\n{ctx}")
    parts.append(f"## Questions ({len(batch)})")
    for idx, item in enumerate(batch, start=1):
        line = f"{idx}. {item.question}"
        if item.context:
            line += f"\n   Context: {item.context}"
        parts.append(line)
    parts.append(OUTPUT_INSTRUCTIONS)
    return "\n\n".join(parts)


def map_answers(batch: list[GenerationQuestion], items: list, total_tokens: int) -> list[GeneratedAnswer]:
    """Attach row ids to parsed answer objects using their 1-based index.

    Items without a usable index fall back to their position. The reply
    must hold exactly one answer per question: extra, missing, duplicate
    or out-of-range items reject the whole batch with ``GenerationError``.
    Tokens are spread evenly across the answers.
    """
    if len(items) != len(batch):
        raise GenerationError(
            f"Model returned {len(items)} answers for {len(batch)} questions",
            {"expected": len(batch), "received": len(items)},
        )

    mapped: dict[int, dict] = {}
    for pos, item in enumerate(items):
        if not isinstance(item, dict):
            raise GenerationError(f"Answer {pos + 1} is not an object")
        try:
            idx = int(item.get("questionIndex", pos + 1)) - 1
        except (TypeError, ValueError):
            idx = pos
        if not 0 <= idx < len(batch):
            raise GenerationError(f"Answer {pos + 1} refers to question {idx + 1} outside the batch")
        if idx in mapped:
            raise GenerationError(f"Question {idx + 1} was answered more than once")
        mapped[idx] = item

    share = total_tokens // len(batch)
    answers: list[GeneratedAnswer] = []
    for idx, question in enumerate(batch):
        item = mapped[idx]
        try:
            answers.append(GeneratedAnswer(
                id=question.id,
                response=str(item.get("response") or ""),
                confidence=item.get("confidence"),
                sources=item.get("sources"),
                reasoning=item.get("reasoning"),
                inference=item.get("inference"),
                remarks=item.get("remarks"),
                tokens_used=share,
            ))
        except ValidationError as e:
            raise GenerationError(f"Malformed answer for question {idx + 1}: {e}") from e
    return answers


class LLMAnswerGenerator(AnswerGenerator):
    def __init__(self, settings: Settings):
        self.settings = settings

    async def _call_with_retry(self, prompt: str, model: str) -> ProviderReply:
        s = self.settings
        last_error: Exception | None = None
        rate_limited = False
        max_attempts = MAX_RETRIES

        for attempt in range(RATE_LIMIT_MAX_RETRIES):
            if attempt >= max_attempts:
                break
            try:
                return await call_provider(
                    SYSTEM_PROMPT, prompt, s.LLM_PROVIDER, model,
                    api_key=s.LLM_API_KEY,
                    ollama_url=s.OLLAMA_URL,
                    max_tokens=s.LLM_MAX_TOKENS,
                    timeout=s.LLM_TIMEOUT_SECONDS,
                )
            except ValueError as e:
                raise GenerationError(str(e)) from e
            except httpx.HTTPStatusError as e:
                last_error = e
                status = e.response.status_code
                body_preview = e.response.text[:200] if e.response.text else "(empty)"
                if status == 429:
                    if not rate_limited:
                        rate_limited = True
                        max_attempts = RATE_LIMIT_MAX_RETRIES
                    wait = min(RATE_LIMIT_BASE_BACKOFF * (2 ** attempt), RATE_LIMIT_MAX_BACKOFF)
                    retry_after = e.response.headers.get("retry-after")
                    if retry_after:
                        try:
                            wait = max(wait, float(retry_after))
                        except (TypeError, ValueError):
                            pass
                    wait = max(1.0, wait + wait * random.uniform(-0.2, 0.2))
                    logger.warning(
                        "429 rate-limit (%s/%s) attempt %d/%d. Waiting %.0fs...",
                        s.LLM_PROVIDER, model, attempt + 1, max_attempts, wait,
                    )
                elif status in (500, 502, 503, 504, 529):
                    wait = BASE_BACKOFF * (2 ** attempt)
                    logger.warning(
                        "Server error %d (%s/%s) attempt %d/%d: %s. Retrying in %.1fs...",
                        status, s.LLM_PROVIDER, model, attempt + 1, max_attempts, body_preview, wait,
                    )
                else:
                    raise GenerationError(
                        f"Provider {s.LLM_PROVIDER} rejected the request (HTTP {status})",
                        {"status": status, "body": body_preview},
                    ) from e
                await asyncio.sleep(wait)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = e
                wait = BASE_BACKOFF * (2 ** attempt)
                logger.warning(
                    "Connection issue (%s/%s) attempt %d/%d: %s: %s. Retrying in %.1fs...",
                    s.LLM_PROVIDER, model, attempt + 1, max_attempts, type(e).__name__, e, wait,
                )
                await asyncio.sleep(wait)

        raise GenerationError(
            f"Generation failed after {max_attempts} attempts: {last_error}",
            {"provider": s.LLM_PROVIDER, "model": model},
        )

    async def generate(
        self,
        batch: list[GenerationQuestion],
        skills: list[SkillContent],
        model_speed: str,
        file_context: str | None = None,
    ) -> list[GeneratedAnswer]:
        if not batch:
            return []
        model = self.settings.model_for_speed(model_speed)
        prompt = build_batch_prompt(batch, skills, file_context)
        reply = await self._call_with_retry(prompt, model)

        parsed = parse_json_array(reply.text)
        if not parsed.ok:
            logger.error("Unparseable batch reply from %s: %s", model, parsed.raw_preview)
            raise GenerationError("Model reply did not contain a JSON answer array")

        answers = map_answers(batch, parsed.data, reply.total_tokens)
        logger.info(
            "Batch of %d answered by %s (%d parsed, %d tokens, parse=%s)",
            len(batch), model, len(answers), reply.total_tokens, parsed.method,
        )
        return answers
