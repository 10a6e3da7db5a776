"""Skill selection: decide which skills a project's questions should use.

Two modes:
  - automatic: score every ACTIVE skill of the library against the
    questions with the scope term matcher and keep the best ones
  - manual: keep only caller-supplied ids that resolve to ACTIVE skills

An empty result is a normal outcome ("no relevant skill"), never an error.
Per-library scope indexes are read through the injected cache.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, asdict
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from skillbase.models import Skill
from skillbase.schemas.common import Confidence, SkillStatus
from skillbase.schemas.payloads import SkillContent
from skillbase.services.cache import Cache, NullCache

logger = logging.getLogger(__name__)

COVERS_WEIGHT = 0.7
FUTURE_WEIGHT = 0.2
NOT_INCLUDED_PENALTY = 0.5
MEAN_WEIGHT = 0.6
MAX_WEIGHT = 0.4
HIGH_THRESHOLD = 0.6
MEDIUM_THRESHOLD = 0.3
CHARS_PER_TOKEN = 4

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9+#.\-]*[a-z0-9+#]|[a-z0-9]")
_STOPWORDS = frozenset(
    "a an and are as at be by can do does for from has have how in is it its of on or "
    "our that the their this to was we what when where which who why will with you your".split()
)


def tokenize(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall((text or "").lower()) if w not in _STOPWORDS and len(w) > 1}


def confidence_for(score: float) -> Confidence:
    if score >= HIGH_THRESHOLD:
        return Confidence.HIGH
    if score >= MEDIUM_THRESHOLD:
        return Confidence.MEDIUM
    return Confidence.LOW


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


@dataclass
class SkillCandidate:
    skill_id: str
    title: str
    score: float
    confidence: str
    is_customer_scoped: bool
    estimated_tokens: int
    matched_terms: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _scope_terms(scope: dict | None, key: str) -> set[str]:
    value = (scope or {}).get(key)
    if isinstance(value, list):
        value = " ".join(str(v) for v in value)
    return tokenize(str(value or ""))


def score_question(question_terms: set[str], entry: dict) -> tuple[float, set[str]]:
    """Score one question against one skill's scope index entry.

    Returns the clamped score and the covered terms that matched.
    """
    if not question_terms:
        return 0.0, set()
    covers = set(entry["covers"])
    future = set(entry["future"])
    excluded = set(entry["not_included"])
    size = len(question_terms)
    hit_covers = question_terms & covers
    hit_future = question_terms & future
    hit_excluded = question_terms & excluded
    raw = (
        COVERS_WEIGHT * len(hit_covers) / size
        + FUTURE_WEIGHT * len(hit_future) / size
        - NOT_INCLUDED_PENALTY * len(hit_excluded) / size
    )
    return max(0.0, min(1.0, raw)), hit_covers


class SkillSelector:
    def __init__(
        self,
        db: Session,
        cache: Cache | None = None,
        cache_ttl: int = 300,
        question_sample: int = 200,
    ):
        self.db = db
        self.cache = cache or NullCache()
        self.cache_ttl = cache_ttl
        self.question_sample = question_sample

    # ── Repository access ──────────────────────────────────────────────

    def _active_skills(self, library_id: str, customer_id: str | None) -> list[Skill]:
        scope = Skill.customer_id.is_(None)
        if customer_id:
            scope = or_(scope, Skill.customer_id == customer_id)
        return (
            self.db.query(Skill)
            .filter(
                Skill.library_id == library_id,
                Skill.status == SkillStatus.ACTIVE.value,
                scope,
            )
            .order_by(Skill.title)
            .all()
        )

    def _scope_index(self, library_id: str, customer_id: str | None) -> list[dict]:
        key = f"skills:scope:{library_id}:{customer_id or '_'}"

        def _build() -> list[dict]:
            return [
                {
                    "id": s.id,
                    "title": s.title,
                    "customer_id": s.customer_id,
                    "tokens": estimate_tokens(s.content),
                    "covers": sorted(_scope_terms(s.scope_definition, "covers") | tokenize(s.title)),
                    "future": sorted(_scope_terms(s.scope_definition, "futureAdditions")),
                    "not_included": sorted(_scope_terms(s.scope_definition, "notIncluded")),
                }
                for s in self._active_skills(library_id, customer_id)
            ]

        return self.cache.get_or_set(key, _build, ttl=self.cache_ttl) or []

    def invalidate(self, library_id: str | None = None) -> int:
        pattern = f"skills:scope:{library_id}:*" if library_id else "skills:scope:*"
        return self.cache.delete_pattern(pattern)

    # ── Selection ──────────────────────────────────────────────────────

    def rank(
        self,
        library_id: str,
        questions: list[str],
        customer_id: str | None = None,
    ) -> list[SkillCandidate]:
        """Score every candidate skill; sorted best first, nothing filtered."""
        sample = [tokenize(q) for q in questions[: self.question_sample]]
        sample = [terms for terms in sample if terms]
        ranked: list[SkillCandidate] = []
        for entry in self._scope_index(library_id, customer_id):
            per_question: list[float] = []
            matched: set[str] = set()
            for terms in sample:
                score, hits = score_question(terms, entry)
                per_question.append(score)
                matched |= hits
            if per_question:
                mean = sum(per_question) / len(per_question)
                aggregate = MEAN_WEIGHT * mean + MAX_WEIGHT * max(per_question)
            else:
                aggregate = 0.0
            aggregate = round(max(0.0, min(1.0, aggregate)), 4)
            ranked.append(SkillCandidate(
                skill_id=entry["id"],
                title=entry["title"],
                score=aggregate,
                confidence=confidence_for(aggregate).value,
                is_customer_scoped=entry["customer_id"] is not None,
                estimated_tokens=entry["tokens"],
                matched_terms=sorted(matched)[:20],
            ))
        ranked.sort(key=lambda c: (-c.score, c.title))
        return ranked

    def select_automatic(
        self,
        library_id: str,
        questions: list[str],
        customer_id: str | None = None,
        min_score: float = 0.1,
        max_skills: int = 10,
    ) -> list[SkillCandidate]:
        selected = [
            c for c in self.rank(library_id, questions, customer_id) if c.score >= min_score
        ][:max_skills]
        logger.info(
            "Automatic selection for library %s: %d skill(s) from %d question(s)",
            library_id, len(selected), min(len(questions), self.question_sample),
        )
        return selected

    def select_manual(
        self,
        library_id: str,
        skill_ids: list[str],
        customer_id: str | None = None,
    ) -> list[SkillCandidate]:
        """Keep the requested ids that resolve to ACTIVE skills, in request order."""
        wanted = list(dict.fromkeys(skill_ids))
        if not wanted:
            return []
        skills = {
            s.id: s
            for s in self.db.query(Skill).filter(
                Skill.id.in_(wanted), Skill.status == SkillStatus.ACTIVE.value,
            )
        }
        selected: list[SkillCandidate] = []
        for skill_id in wanted:
            skill = skills.get(skill_id)
            if skill is None:
                continue
            if skill.customer_id is None:
                if skill.library_id != library_id:
                    continue
            elif skill.customer_id != customer_id:
                continue
            selected.append(SkillCandidate(
                skill_id=skill.id,
                title=skill.title,
                score=1.0,
                confidence=Confidence.HIGH.value,
                is_customer_scoped=skill.customer_id is not None,
                estimated_tokens=estimate_tokens(skill.content),
            ))
        dropped = len(wanted) - len(selected)
        if dropped:
            logger.info("Manual selection dropped %d unknown or inactive skill id(s)", dropped)
        return selected

    def load_skill_content(self, skill_ids: list[str]) -> list[SkillContent]:
        skills = {s.id: s for s in self.db.query(Skill).filter(Skill.id.in_(skill_ids))}
        return [
            SkillContent(id=s.id, title=s.title, content=s.content)
            for sid in skill_ids
            if (s := skills.get(sid)) is not None
        ]

    def preview(
        self,
        library_id: str,
        questions: list[str],
        customer_id: str | None = None,
        min_score: float = 0.1,
        max_skills: int = 10,
    ) -> dict[str, Any]:
        """Recommendations plus the full ranking, for the selection screen."""
        ranked = self.rank(library_id, questions, customer_id)
        recommended = [c for c in ranked if c.score >= min_score][:max_skills]
        by_tier = {tier.value: 0 for tier in Confidence}
        for c in ranked:
            by_tier[c.confidence] += 1
        return {
            "library_id": library_id,
            "question_count": len(questions),
            "questions_sampled": min(len(questions), self.question_sample),
            "recommended": [c.as_dict() for c in recommended],
            "skills": [c.as_dict() for c in ranked],
            "coverage": {
                "total_skills": len(ranked),
                "recommended": len(recommended),
                "estimated_tokens": sum(c.estimated_tokens for c in recommended),
                "by_confidence": by_tier,
            },
        }
