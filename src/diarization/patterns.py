"""Оценщик по памяти паттернов (retrieval).

Паттерн = (голосовой эмбеддинг, метка, текстовый контекст, исход).
Запрос кодируется семантическими блоками:
    acoustic — голосовой эмбеддинг кадра
    context  — хэшированный мешок слов текущей реплики
    temporal — время суток и день недели (sin/cos)
    history  — последние реплики разговора (one-hot A/B/нет)
Сходство = взвешенное среднее косинусов по блокам, заполненным в обоих векторах.

Память разбита по собеседникам, у каждого своя ограниченная арена.
Вытеснение — чистая функция eviction_score(): 0.7·success_rate + 0.3·свежесть.
"""
from __future__ import annotations

import math
import re
import time
import uuid
import zlib
from datetime import datetime
from typing import Iterable, Optional

import numpy as np

from src.utils.config import Settings, settings
from src.utils.logging import get_logger

from .base import EstimationContext, Estimator
from .models import (
    PARTIES,
    EstimatorVote,
    FeatureVector,
    Method,
    Speaker,
    VoiceEmbedding,
    VoicePattern,
    speaker_slot,
)
from .scoring import cosine_similarity

logger = get_logger("diarization.patterns")

BLOCK_WEIGHTS = {"acoustic": 0.6, "context": 0.2, "temporal": 0.1, "history": 0.1}
HISTORY_TURNS = 5
RECENCY_HALF_DAY_HOURS = 24.0
_WORD_RE = re.compile(r"\w+", re.UNICODE)

# веса итоговой оценки найденного паттерна
RANK_SEMANTIC = 0.5
RANK_CONTEXT = 0.2
RANK_RECENCY = 0.1
RANK_USAGE = 0.1
RANK_SUCCESS = 0.1

# бонусы очерёдности: чередование поощряется, повтор слегка штрафуется
TURN_TAKING_OTHER = 0.3
TURN_TAKING_SAME = -0.1
TURN_TAKING_SCALE = 0.2
CONSISTENCY_STEP = 0.1
CONSISTENCY_SCALE = 0.1


def tokenize(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def encode_context(text: str, dim: int = 64) -> np.ndarray:
    """Хэшированный мешок слов. crc32 стабилен между процессами, в отличие от hash()."""
    vector = np.zeros(dim)
    for token in tokenize(text):
        vector[zlib.crc32(token.encode("utf-8")) % dim] += 1.0
    norm = np.linalg.norm(vector)
    return vector / norm if norm > 0 else vector


def encode_temporal(timestamp: float) -> np.ndarray:
    moment = datetime.fromtimestamp(timestamp)
    hour = (moment.hour + moment.minute / 60.0) / 24.0 * 2 * math.pi
    weekday = moment.weekday() / 7.0 * 2 * math.pi
    return np.array([math.sin(hour), math.cos(hour), math.sin(weekday), math.cos(weekday)])


def encode_history(turns: Iterable[Speaker], length: int = HISTORY_TURNS) -> np.ndarray:
    """Последние length реплик, по три позиции на реплику: [A, B, нет]."""
    recent = [t for t in turns if t.is_party][-length:]
    padded: list[Optional[Speaker]] = [None] * (length - len(recent)) + recent
    vector = np.zeros(length * 3)
    for i, turn in enumerate(padded):
        offset = 2 if turn is None else speaker_slot(turn)
        vector[i * 3 + offset] = 1.0
    return vector


def semantic_blocks(
    voice: np.ndarray,
    text: str,
    turns: Iterable[Speaker],
    timestamp: float,
    context_dim: int = 64,
) -> dict[str, np.ndarray]:
    return {
        "acoustic": np.asarray(voice, dtype=np.float64),
        "context": encode_context(text, context_dim),
        "temporal": encode_temporal(timestamp),
        "history": encode_history(turns),
    }


def semantic_similarity(
    query: dict[str, np.ndarray],
    pattern: dict[str, np.ndarray],
    weights: Optional[dict[str, float]] = None,
) -> float:
    """Взвешенное среднее косинусов по блокам, непустым в обоих векторах, [0, 1]."""
    weights = weights or BLOCK_WEIGHTS
    total = 0.0
    weight_sum = 0.0
    for name, weight in weights.items():
        a = query.get(name)
        b = pattern.get(name)
        if a is None or b is None or not np.any(a) or not np.any(b):
            continue
        total += weight * max(0.0, cosine_similarity(a, b))
        weight_sum += weight
    return total / weight_sum if weight_sum > 0 else 0.0


def context_similarity(a: str, b: str) -> float:
    """Коэффициент Жаккара по множествам слов."""
    words_a, words_b = set(tokenize(a)), set(tokenize(b))
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def recency_score(pattern: VoicePattern, now: float) -> float:
    age_hours = max(0.0, now - pattern.last_used_at) / 3600.0
    return math.exp(-age_hours / RECENCY_HALF_DAY_HOURS)


def eviction_score(pattern: VoicePattern, now: float) -> float:
    """Ценность паттерна для памяти: чем ниже, тем раньше вытесняется."""
    return 0.7 * pattern.success_rate + 0.3 * recency_score(pattern, now)


def select_evictions(
    patterns: list[VoicePattern],
    capacity: int,
    now: float,
    fraction: float = 0.2,
) -> list[str]:
    """ID паттернов на вытеснение при переполнении арены.

    Удаляется нижняя доля fraction (но не меньше переполнения), чтобы
    не пересчитывать вытеснение на каждой вставке.
    """
    overflow = len(patterns) - capacity
    if overflow <= 0:
        return []
    count = min(len(patterns), max(overflow, int(len(patterns) * fraction)))
    ranked = sorted(patterns, key=lambda p: (eviction_score(p, now), p.created_at))
    return [p.pattern_id for p in ranked[:count]]


class PatternMemory:
    """Две ограниченные арены паттернов, по одной на собеседника."""

    def __init__(self, capacity_per_speaker: int = 100, eviction_fraction: float = 0.2):
        self.capacity_per_speaker = capacity_per_speaker
        self.eviction_fraction = eviction_fraction
        self._arenas: tuple[list[VoicePattern], list[VoicePattern]] = ([], [])

    def __len__(self) -> int:
        return sum(len(arena) for arena in self._arenas)

    def patterns(self, speaker: Optional[Speaker] = None) -> list[VoicePattern]:
        if speaker is not None:
            return list(self._arenas[speaker_slot(speaker)])
        return [p for arena in self._arenas for p in arena]

    def get(self, pattern_id: str) -> Optional[VoicePattern]:
        for pattern in self.patterns():
            if pattern.pattern_id == pattern_id:
                return pattern
        return None

    def add(self, pattern: VoicePattern, now: Optional[float] = None) -> list[str]:
        """Добавляет паттерн; возвращает ID вытесненных."""
        now = time.time() if now is None else now
        arena = self._arenas[speaker_slot(pattern.speaker)]
        arena.append(pattern)
        evicted = select_evictions(arena, self.capacity_per_speaker, now, self.eviction_fraction)
        if evicted:
            doomed = set(evicted)
            arena[:] = [p for p in arena if p.pattern_id not in doomed]
            logger.info(
                "patterns_evicted",
                speaker=pattern.speaker.value,
                evicted=len(evicted),
                remaining=len(arena),
            )
        return evicted

    def search(
        self,
        query: dict[str, np.ndarray],
        threshold: float,
        top_k: int,
        weights: Optional[dict[str, float]] = None,
    ) -> list[tuple[VoicePattern, float]]:
        scored = [(p, semantic_similarity(query, p.semantic, weights)) for p in self.patterns()]
        scored = [(p, s) for p, s in scored if s >= threshold]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:top_k]

    def clear(self) -> None:
        for arena in self._arenas:
            arena.clear()


class PatternEstimator(Estimator):
    method = Method.PATTERN

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self.memory = PatternMemory(
            capacity_per_speaker=self.config.PATTERN_CAPACITY_PER_SPEAKER,
            eviction_fraction=self.config.PATTERN_EVICTION_FRACTION,
        )

    def reset(self) -> None:
        self.memory.clear()

    def query_blocks(self, embedding: VoiceEmbedding, context: EstimationContext) -> dict[str, np.ndarray]:
        return semantic_blocks(
            embedding.vector,
            context.text,
            context.recent_turns,
            context.now,
            self.config.PATTERN_CONTEXT_DIM,
        )

    def rank_score(self, pattern: VoicePattern, similarity: float, context: EstimationContext) -> float:
        return (
            RANK_SEMANTIC * similarity
            + RANK_CONTEXT * context_similarity(context.text, pattern.context)
            + RANK_RECENCY * recency_score(pattern, context.now)
            + RANK_USAGE * math.tanh(pattern.usage_count / 10.0)
            + RANK_SUCCESS * pattern.success_rate
        )

    def retrieve(
        self,
        embedding: VoiceEmbedding,
        context: EstimationContext,
    ) -> list[tuple[VoicePattern, float]]:
        """Top-K паттернов: поиск по семантике с запасом, затем переранжирование с контекстом.

        Returns:
            [(pattern, rank_score)] по убыванию rank_score
        """
        cfg = self.config
        candidates = self.memory.search(
            self.query_blocks(embedding, context),
            threshold=cfg.PATTERN_SIMILARITY_MIN,
            top_k=cfg.PATTERN_TOP_K * 2,
        )
        ranked = [(p, self.rank_score(p, s, context)) for p, s in candidates]
        ranked.sort(key=lambda item: item[1], reverse=True)
        return ranked[: cfg.PATTERN_TOP_K]

    def context_bonuses(self, turns: tuple) -> np.ndarray:
        """Бонусы очерёдности и постоянства по последним репликам, по слотам [A, B]."""
        bonuses = np.zeros(2)
        parties = [t for t in turns if t.is_party]
        if not parties:
            return bonuses
        last = parties[-1]
        bonuses[speaker_slot(last.other)] += TURN_TAKING_OTHER * TURN_TAKING_SCALE
        bonuses[speaker_slot(last)] += TURN_TAKING_SAME * TURN_TAKING_SCALE
        recent = parties[-3:]
        for speaker in PARTIES:
            count = recent.count(speaker)
            if count >= 2:
                bonuses[speaker_slot(speaker)] += count * CONSISTENCY_STEP * CONSISTENCY_SCALE
        return bonuses

    def predict(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        context: EstimationContext,
    ) -> EstimatorVote:
        started = time.perf_counter()
        matches = self.retrieve(embedding, context)
        if not matches:
            return EstimatorVote(
                method=self.method,
                speaker=Speaker.UNDETERMINED,
                confidence=0.0,
                processing_ms=(time.perf_counter() - started) * 1000,
                details={"matches": 0, "matched_ids": []},
            )

        totals = np.zeros(2)
        for pattern, rank in matches:
            totals[speaker_slot(pattern.speaker)] += rank * pattern.confidence
        adjusted = np.maximum(totals + self.context_bonuses(context.recent_turns), 0.0)
        total = float(adjusted.sum())

        if total <= 0:
            speaker, confidence, shares = Speaker.UNDETERMINED, 0.0, np.zeros(2)
        else:
            shares = adjusted / total
            best = int(np.argmax(shares))
            confidence = float(np.clip(shares[best], 0.0, 1.0))
            speaker = PARTIES[best] if confidence > self.config.PATTERN_CONFIDENCE_MIN else Speaker.UNDETERMINED

        return EstimatorVote(
            method=self.method,
            speaker=speaker,
            confidence=confidence,
            scores=shares,
            processing_ms=(time.perf_counter() - started) * 1000,
            details={
                "matches": len(matches),
                "matched_ids": [p.pattern_id for p, _ in matches],
            },
        )

    def store(
        self,
        embedding: VoiceEmbedding,
        speaker: Speaker,
        confidence: float,
        context: EstimationContext,
    ) -> VoicePattern:
        pattern = VoicePattern(
            pattern_id=uuid.uuid4().hex,
            embedding=np.asarray(embedding.vector, dtype=np.float32).copy(),
            semantic=self.query_blocks(embedding, context),
            speaker=speaker,
            context=context.text,
            confidence=float(np.clip(confidence, 0.0, 1.0)),
            created_at=context.now,
            last_used_at=context.now,
        )
        self.memory.add(pattern, now=context.now)
        return pattern

    def record_usage(self, pattern_ids: Iterable[str], speaker: Speaker, now: Optional[float] = None) -> None:
        """Учёт использования найденных паттернов; совпавшие с итогом — с бонусом."""
        now = time.time() if now is None else now
        for pattern_id in pattern_ids:
            pattern = self.memory.get(pattern_id)
            if pattern is None:
                continue
            pattern.usage_count += 1.5 if pattern.speaker == speaker else 1.0
            pattern.last_used_at = now

    def observe(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        speaker: Speaker,
        confidence: float,
        context: EstimationContext,
    ) -> None:
        if speaker.is_party and confidence > self.config.PATTERN_STORE_CONFIDENCE:
            self.store(embedding, speaker, confidence, context)

    def learn(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        actual: Speaker,
        context: EstimationContext,
        predicted: Optional[Speaker] = None,
    ) -> None:
        """Обратная связь: сдвигаем success_rate найденных паттернов, при ошибке запоминаем верный."""
        if not actual.is_party:
            return
        cfg = self.config
        alpha = cfg.PATTERN_SUCCESS_ALPHA
        contributors = self.memory.search(
            self.query_blocks(embedding, context),
            threshold=cfg.PATTERN_SIMILARITY_MIN,
            top_k=5,
        )
        for pattern, _ in contributors:
            target = 1.0 if pattern.speaker == actual else 0.0
            pattern.success_rate += alpha * (target - pattern.success_rate)

        if predicted != actual:
            self.store(embedding, actual, cfg.PATTERN_FEEDBACK_CONFIDENCE, context)
            logger.debug(
                "pattern_learned_from_correction",
                actual=actual.value,
                predicted=predicted.value if predicted else None,
                adjusted=len(contributors),
            )

    def stats(self, now: Optional[float] = None, turn_history_size: int = 0) -> dict:
        """Сводка памяти паттернов. История реплик живёт в движке и передаётся им."""
        now = time.time() if now is None else now
        patterns = self.memory.patterns()
        confidences = [p.confidence for p in patterns]
        return {
            "total_patterns": len(patterns),
            "per_speaker": {s.value: len(self.memory.patterns(s)) for s in PARTIES},
            "average_age_hours": round(
                float(np.mean([(now - p.created_at) / 3600.0 for p in patterns])) if patterns else 0.0, 3
            ),
            "confidence_distribution": {
                "high": sum(1 for c in confidences if c >= 0.8),
                "medium": sum(1 for c in confidences if 0.5 <= c < 0.8),
                "low": sum(1 for c in confidences if c < 0.5),
            },
            "turn_history_size": turn_history_size,
        }
