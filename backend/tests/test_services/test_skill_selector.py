"""Tests for skill scoring and selection."""
import pytest

from skillbase.services.cache import Cache
from skillbase.services.skill_selector import (
    SkillSelector,
    confidence_for,
    estimate_tokens,
    score_question,
    tokenize,
)
from tests.conftest import make_skill


class DictCache(Cache):
    def __init__(self):
        self.store = {}
        self.loads = 0

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ttl=None):
        self.loads += 1
        self.store[key] = value

    def delete_pattern(self, pattern):
        prefix = pattern.rstrip("*")
        doomed = [k for k in self.store if k.startswith(prefix)]
        for k in doomed:
            del self.store[k]
        return len(doomed)


def entry(covers=(), future=(), not_included=()):
    return {"covers": list(covers), "future": list(future), "not_included": list(not_included)}


class TestScoring:
    def test_tokenize_drops_stopwords(self):
        assert tokenize("Do you support encryption at rest?") == {"support", "encryption", "rest"}

    def test_covers_terms(self):
        score, hits = score_question({"tls", "encryption"}, entry(covers=["tls", "encryption", "key"]))
        assert score == pytest.approx(0.7)
        assert hits == {"tls", "encryption"}

    def test_future_terms_weigh_less(self):
        score, _ = score_question({"quantum", "encryption"}, entry(covers=["encryption"], future=["quantum"]))
        assert score == pytest.approx(0.35 + 0.1)

    def test_not_included_penalised(self):
        score, _ = score_question({"backup", "encryption"}, entry(covers=["backup"], not_included=["encryption"]))
        assert score == pytest.approx(0.1)

    def test_score_clamped_at_zero(self):
        score, _ = score_question({"encryption"}, entry(not_included=["encryption"]))
        assert score == 0.0

    def test_empty_question(self):
        assert score_question(set(), entry(covers=["tls"])) == (0.0, set())

    @pytest.mark.parametrize("score,tier", [(0.6, "high"), (0.59, "medium"), (0.3, "medium"), (0.29, "low")])
    def test_confidence_tiers(self, score, tier):
        assert confidence_for(score).value == tier

    def test_estimate_tokens(self):
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("") == 0


class TestAutomaticSelection:
    def test_ranks_relevant_skill_first(self, db_session):
        enc = make_skill(db_session, title="Encryption")
        make_skill(db_session, title="Office perks", covers="snacks, gym, parking")

        selected = SkillSelector(db_session).select_automatic(
            "knowledge", ["TLS encryption", "Do you support encryption at rest?"],
        )

        assert [c.skill_id for c in selected] == [enc.id]
        assert selected[0].confidence in ("high", "medium")
        assert "encryption" in selected[0].matched_terms

    def test_no_relevant_skill_is_empty(self, db_session):
        make_skill(db_session, title="Office perks", covers="snacks, gym, parking")
        assert SkillSelector(db_session).select_automatic("knowledge", ["TLS encryption"]) == []

    def test_only_active_skills_in_library(self, db_session):
        make_skill(db_session, title="Encryption draft", status="DRAFT")
        make_skill(db_session, title="Encryption elsewhere", library_id="it")
        assert SkillSelector(db_session).select_automatic("knowledge", ["TLS encryption"]) == []

    def test_customer_scope(self, db_session):
        shared = make_skill(db_session, title="Encryption")
        mine = make_skill(db_session, title="Acme encryption", customer_id="acme")
        make_skill(db_session, title="Globex encryption", customer_id="globex")

        ids = {c.skill_id for c in SkillSelector(db_session).rank("knowledge", ["TLS encryption"], "acme")}
        assert ids == {shared.id, mine.id}

    def test_max_skills(self, db_session):
        for i in range(4):
            make_skill(db_session, title=f"Encryption {i}")
        selected = SkillSelector(db_session).select_automatic("knowledge", ["TLS encryption"], max_skills=2)
        assert len(selected) == 2

    def test_question_sample_limit(self, db_session):
        make_skill(db_session, title="Encryption")
        selector = SkillSelector(db_session, question_sample=2)
        questions = ["TLS encryption"] * 2 + ["snacks"] * 10

        preview = selector.preview("knowledge", questions)

        assert preview["questions_sampled"] == 2
        assert preview["recommended"][0]["score"] == pytest.approx(0.7)


class TestManualSelection:
    def test_drops_unknown_and_inactive_ids(self, db_session):
        a = make_skill(db_session, title="Encryption")
        b = make_skill(db_session, title="Access control", covers="sso, mfa")
        draft = make_skill(db_session, title="Draft", status="DRAFT")
        other = make_skill(db_session, title="IT only", library_id="it")

        selected = SkillSelector(db_session).select_manual(
            "knowledge", [b.id, "ghost-id", draft.id, a.id, other.id, b.id],
        )
        assert [c.skill_id for c in selected] == [b.id, a.id]

    def test_other_customer_dropped(self, db_session):
        theirs = make_skill(db_session, title="Globex", customer_id="globex")
        assert SkillSelector(db_session).select_manual("knowledge", [theirs.id], "acme") == []

    def test_load_skill_content_preserves_order(self, db_session):
        a = make_skill(db_session, title="A")
        b = make_skill(db_session, title="B")
        content = SkillSelector(db_session).load_skill_content([b.id, "ghost", a.id])
        assert [c.title for c in content] == ["B", "A"]


class TestCaching:
    def test_scope_index_read_through_cache(self, db_session):
        make_skill(db_session, title="Encryption")
        cache = DictCache()
        selector = SkillSelector(db_session, cache=cache)

        selector.rank("knowledge", ["TLS encryption"])
        selector.rank("knowledge", ["key management"])

        assert cache.loads == 1
        assert "skills:scope:knowledge:_" in cache.store

    def test_invalidate_library(self, db_session):
        make_skill(db_session, title="Encryption")
        cache = DictCache()
        selector = SkillSelector(db_session, cache=cache)
        selector.rank("knowledge", ["TLS encryption"])

        assert selector.invalidate("knowledge") == 1
        selector.rank("knowledge", ["TLS encryption"])
        assert cache.loads == 2


class TestPreview:
    def test_preview_shape(self, db_session):
        enc = make_skill(db_session, title="Encryption")
        make_skill(db_session, title="Office perks", covers="snacks, gym, parking")

        preview = SkillSelector(db_session).preview("knowledge", ["TLS encryption"])

        assert preview["question_count"] == 1
        assert [s["skill_id"] for s in preview["recommended"]] == [enc.id]
        assert len(preview["skills"]) == 2
        assert preview["coverage"]["recommended"] == 1
        assert preview["coverage"]["by_confidence"] == {"high": 1, "medium": 0, "low": 1}
        assert preview["coverage"]["estimated_tokens"] == preview["recommended"][0]["estimated_tokens"]
