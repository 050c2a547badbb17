"""Тесты памяти паттернов и pattern-оценщика (patterns.py)."""
from __future__ import annotations

import numpy as np
import pytest

NOW = 1_700_000_000.0


def _pattern(speaker, success_rate=1.0, last_used_at=NOW, created_at=NOW, vector=None, pattern_id=None):
    from src.diarization.models import VoicePattern
    from src.diarization.patterns import semantic_blocks

    vector = vector if vector is not None else np.ones(8) / np.sqrt(8)
    return VoicePattern(
        pattern_id=pattern_id or f"p-{speaker.value}-{success_rate}-{last_used_at}",
        embedding=vector,
        semantic=semantic_blocks(vector, "", (), NOW),
        speaker=speaker,
        context="",
        confidence=0.9,
        success_rate=success_rate,
        created_at=created_at,
        last_used_at=last_used_at,
    )


def _embedding(vector):
    from src.diarization.models import VoiceEmbedding
    return VoiceEmbedding(vector=np.asarray(vector, dtype=np.float32))


# ═══════════════════════════════════════════════════════════════════════════
# Кодирование и сходство
# ═══════════════════════════════════════════════════════════════════════════

class TestEncoding:
    def test_context_encoding_stable(self):
        from src.diarization.patterns import encode_context
        a = encode_context("Как ты думаешь?", 64)
        b = encode_context("как ТЫ думаешь", 64)
        assert np.allclose(a, b)
        assert np.linalg.norm(a) == pytest.approx(1.0)

    def test_empty_context_is_zero(self):
        from src.diarization.patterns import encode_context
        assert not np.any(encode_context("", 64))

    def test_history_one_hot(self):
        from src.diarization.models import Speaker
        from src.diarization.patterns import encode_history
        vector = encode_history([Speaker.A, Speaker.B], length=3)
        # [нет] [A] [B]
        assert list(vector) == [0, 0, 1, 1, 0, 0, 0, 1, 0]

    def test_semantic_similarity_skips_empty_blocks(self):
        from src.diarization.patterns import semantic_similarity
        query = {"acoustic": np.array([1.0, 0.0]), "context": np.zeros(4)}
        pattern = {"acoustic": np.array([1.0, 0.0]), "context": np.array([1.0, 0, 0, 0])}
        assert semantic_similarity(query, pattern) == pytest.approx(1.0)

    def test_context_similarity_jaccard(self):
        from src.diarization.patterns import context_similarity
        assert context_similarity("я рад тебя видеть", "рад видеть") == pytest.approx(0.5)
        assert context_similarity("", "рад") == 0.0


# ═══════════════════════════════════════════════════════════════════════════
# Вытеснение
# ═══════════════════════════════════════════════════════════════════════════

class TestEviction:
    def test_eviction_score_prefers_success_and_recency(self):
        from src.diarization.models import Speaker
        from src.diarization.patterns import eviction_score
        good = _pattern(Speaker.A, success_rate=1.0)
        bad = _pattern(Speaker.A, success_rate=0.2)
        old = _pattern(Speaker.A, success_rate=1.0, last_used_at=NOW - 7 * 86400)
        assert eviction_score(good, NOW) > eviction_score(bad, NOW)
        assert eviction_score(good, NOW) > eviction_score(old, NOW)

    def test_no_eviction_under_capacity(self):
        from src.diarization.models import Speaker
        from src.diarization.patterns import select_evictions
        assert select_evictions([_pattern(Speaker.A)], capacity=5, now=NOW) == []

    def test_evicts_lowest_fraction(self):
        from src.diarization.models import Speaker
        from src.diarization.patterns import select_evictions
        patterns = [_pattern(Speaker.A, success_rate=r, pattern_id=f"p{i}") for i, r in enumerate(np.linspace(0.1, 1.0, 11))]
        evicted = select_evictions(patterns, capacity=10, now=NOW, fraction=0.2)
        assert evicted == ["p0", "p1"]

    def test_memory_bounded_per_speaker(self):
        from src.diarization.models import Speaker
        from src.diarization.patterns import PatternMemory
        memory = PatternMemory(capacity_per_speaker=5, eviction_fraction=0.2)
        for i in range(12):
            memory.add(_pattern(Speaker.A, pattern_id=f"a{i}", created_at=NOW + i), now=NOW)
        memory.add(_pattern(Speaker.B, pattern_id="b0"), now=NOW)
        assert len(memory.patterns(Speaker.A)) <= 5
        assert len(memory.patterns(Speaker.B)) == 1
        # при равных оценках уходят самые старые
        assert memory.get("a11") is not None
        assert memory.get("a0") is None


# ═══════════════════════════════════════════════════════════════════════════
# PatternEstimator
# ═══════════════════════════════════════════════════════════════════════════

class TestPatternEstimator:
    @pytest.fixture
    def estimator(self, test_settings):
        from src.diarization.patterns import PatternEstimator
        return PatternEstimator(test_settings)

    @pytest.fixture
    def context(self):
        from src.diarization.base import EstimationContext
        return EstimationContext(text="как прошёл день", now=NOW)

    def test_empty_memory_abstains(self, estimator, context):
        from src.diarization.models import Speaker
        vote = estimator.predict(None, _embedding(np.ones(8)), context)
        assert vote.speaker is Speaker.UNDETERMINED
        assert vote.details["matched_ids"] == []

    def test_stored_patterns_vote(self, estimator, context):
        from src.diarization.models import Speaker
        voice_a = np.array([1.0, 0, 0, 0, 0, 0, 0, 0])
        voice_b = np.array([0, 0, 0, 0, 0, 0, 0, 1.0])
        for _ in range(3):
            estimator.observe(None, _embedding(voice_a), Speaker.A, 0.9, context)
            estimator.observe(None, _embedding(voice_b), Speaker.B, 0.9, context)

        vote = estimator.predict(None, _embedding(voice_a), context)
        assert vote.speaker is Speaker.A
        assert vote.confidence > 0.6
        assert len(vote.details["matched_ids"]) == 3

    def test_low_confidence_not_stored(self, estimator, context):
        from src.diarization.models import Speaker
        estimator.observe(None, _embedding(np.ones(8)), Speaker.A, 0.75, context)
        assert len(estimator.memory) == 0

    def test_correction_stores_actual(self, estimator, context):
        from src.diarization.models import Speaker
        estimator.learn(None, _embedding(np.ones(8)), Speaker.B, context, predicted=Speaker.A)
        stored = estimator.memory.patterns(Speaker.B)
        assert len(stored) == 1
        assert stored[0].confidence == pytest.approx(0.8)

    def test_feedback_updates_success_rate(self, estimator, context):
        from src.diarization.models import Speaker
        voice = np.ones(8)
        estimator.observe(None, _embedding(voice), Speaker.A, 0.9, context)
        estimator.learn(None, _embedding(voice), Speaker.B, context, predicted=Speaker.B)
        assert estimator.memory.patterns(Speaker.A)[0].success_rate == pytest.approx(0.9)

    def test_record_usage_rewards_agreement(self, estimator, context):
        from src.diarization.models import Speaker
        pattern = estimator.store(_embedding(np.ones(8)), Speaker.A, 0.9, context)
        estimator.record_usage([pattern.pattern_id], Speaker.A, NOW + 10)
        assert pattern.usage_count == pytest.approx(1.5)
        estimator.record_usage([pattern.pattern_id], Speaker.B, NOW + 20)
        assert pattern.usage_count == pytest.approx(2.5)
        assert pattern.last_used_at == NOW + 20

    def test_turn_taking_bonus(self, estimator):
        from src.diarization.models import Speaker
        bonuses = estimator.context_bonuses((Speaker.A,))
        assert bonuses[1] > 0 > bonuses[0]

    def test_stats(self, estimator, context):
        from src.diarization.models import Speaker
        estimator.store(_embedding(np.ones(8)), Speaker.A, 0.9, context)
        stats = estimator.stats(NOW)
        assert stats["total_patterns"] == 1
        assert stats["per_speaker"] == {"A": 1, "B": 0}
        assert stats["confidence_distribution"]["high"] == 1
        assert stats["turn_history_size"] == 0
        assert estimator.stats(NOW, turn_history_size=4)["turn_history_size"] == 4
