"""Embedding/биометрический оценщик.

Пайплайн:
    FeatureVector → FeatureProjector → 256-dim L2-нормированный эмбеддинг
    Сравнение с каждым собеседником по независимым компонентам:
        learned     — EMA-эмбеддинг по уверенным детекциям и обратной связи
        voiceprint  — средний эмбеддинг профиля калибровки
        formants    — близость формант к профилю
        pitch_range — попадание тона в диапазон профиля
        spectral    — косинус MFCC-сигнатуры профиля
        scorer      — сменный классификатор (по умолчанию воздерживается)
    Сходство собеседника = взвешенное среднее доступных компонент.
    Затем временное сглаживание по последним принятым меткам.

Профиль, которому нужна перекалибровка, учитывается с пониженным доверием
(PROFILE_STALE_TRUST), неполный профиль не учитывается вовсе.
"""
from __future__ import annotations

import time
from collections import deque
from typing import Optional

import numpy as np

from src.utils.config import Settings, settings
from src.utils.logging import get_logger

from .base import EstimationContext, Estimator, scores_to_vote
from .models import (
    PARTIES,
    EstimatorVote,
    FeatureVector,
    Method,
    Speaker,
    SpeakerProfile,
    VoiceEmbedding,
    speaker_slot,
)
from .scoring import (
    AbstainingScorer,
    FeatureProjector,
    OrthonormalProjector,
    SpeakerScorer,
    cosine_similarity,
    l2_normalize,
)

logger = get_logger("diarization.embedding")

PITCH_RANGE_SOFTNESS_HZ = 30.0


def formant_similarity(current: np.ndarray, reference: np.ndarray) -> Optional[float]:
    """Средняя близость формант по позициям, найденным в обоих векторах."""
    both = (np.asarray(current) > 0) & (np.asarray(reference) > 0)
    if not np.any(both):
        return None
    cur = np.asarray(current)[both]
    ref = np.asarray(reference)[both]
    return float(np.mean(np.clip(1.0 - np.abs(cur - ref) / np.maximum(cur, ref), 0.0, 1.0)))


def pitch_range_overlap(pitch: float, pitch_range: tuple[float, float]) -> Optional[float]:
    """1.0 внутри диапазона профиля, экспоненциальный спад снаружи."""
    if pitch <= 0:
        return None
    low, high = pitch_range
    if low <= pitch <= high:
        return 1.0
    distance = low - pitch if pitch < low else pitch - high
    return float(np.exp(-distance / PITCH_RANGE_SOFTNESS_HZ))


def biometric_components(
    features: FeatureVector,
    embedding: VoiceEmbedding,
    profile: SpeakerProfile,
) -> dict[str, float]:
    """Сходства кадра с профилем по каждой биометрической компоненте, [0, 1]."""
    components = {
        "voiceprint": max(0.0, cosine_similarity(embedding.vector, profile.voiceprint)),
        "spectral": max(0.0, cosine_similarity(features.mfcc[1:], profile.spectral_signature[1:])),
    }
    formants = formant_similarity(features.formants, profile.formants)
    if formants is not None:
        components["formants"] = formants
    pitch = pitch_range_overlap(features.pitch, profile.pitch_range)
    if pitch is not None:
        components["pitch_range"] = pitch
    return components


class EmbeddingEstimator(Estimator):
    method = Method.EMBEDDING

    def __init__(
        self,
        config: Optional[Settings] = None,
        projector: Optional[FeatureProjector] = None,
        scorer: Optional[SpeakerScorer] = None,
    ):
        self.config = config or settings
        self.projector = projector or OrthonormalProjector(
            dim=self.config.EMBEDDING_DIM, seed=self.config.EMBEDDING_PROJECTION_SEED
        )
        self.scorer = scorer or AbstainingScorer()
        self._learned: list[Optional[np.ndarray]] = [None, None]
        self._learned_updates = [0, 0]
        self._accepted: deque[Speaker] = deque(maxlen=self.config.SMOOTHING_WINDOW)

    def embed(self, features: FeatureVector) -> VoiceEmbedding:
        return self.projector.embed(features)

    def learned_embedding(self, speaker: Speaker) -> Optional[np.ndarray]:
        return self._learned[speaker_slot(speaker)]

    @property
    def accepted_history(self) -> list[Speaker]:
        return list(self._accepted)

    def reset(self) -> None:
        self._learned = [None, None]
        self._learned_updates = [0, 0]
        self._accepted.clear()

    def _weights(self) -> dict[str, float]:
        cfg = self.config
        return {
            "learned": cfg.EMBEDDING_WEIGHT_LEARNED,
            "voiceprint": cfg.EMBEDDING_WEIGHT_VOICEPRINT,
            "formants": cfg.EMBEDDING_WEIGHT_FORMANTS,
            "pitch_range": cfg.EMBEDDING_WEIGHT_PITCH_RANGE,
            "spectral": cfg.EMBEDDING_WEIGHT_SPECTRAL,
            "scorer": cfg.EMBEDDING_WEIGHT_SCORER,
        }

    def speaker_scores(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        context: EstimationContext,
    ) -> tuple[np.ndarray, list[dict]]:
        """Взвешенное сходство с каждым собеседником + разбивка по компонентам."""
        cfg = self.config
        weights = self._weights()
        scorer_probs = self.scorer.score(features, embedding)
        scores = np.zeros(2)
        breakdown: list[dict] = [{}, {}]

        for speaker in PARTIES:
            slot = speaker_slot(speaker)
            weighted: list[tuple[float, float]] = []

            learned = self._learned[slot]
            if learned is not None:
                similarity = max(0.0, cosine_similarity(embedding.vector, learned))
                weighted.append((weights["learned"], similarity))
                breakdown[slot]["learned"] = similarity

            profile = context.profile_for(slot)
            if profile is not None and profile.is_complete:
                stale = profile.needs_recalibration(
                    context.now, cfg.PROFILE_RETENTION_DAYS, cfg.CALIBRATION_MIN_CLARITY
                )
                trust = cfg.PROFILE_STALE_TRUST if stale else 1.0
                for name, similarity in biometric_components(features, embedding, profile).items():
                    weighted.append((weights[name] * trust, similarity))
                    breakdown[slot][name] = similarity

            if scorer_probs is not None:
                similarity = float(np.clip(scorer_probs[slot], 0.0, 1.0))
                weighted.append((weights["scorer"], similarity))
                breakdown[slot]["scorer"] = similarity

            total_weight = sum(w for w, _ in weighted)
            if total_weight > 0:
                scores[slot] = sum(w * s for w, s in weighted) / total_weight

        return scores, breakdown

    def _smooth(self, raw: np.ndarray) -> np.ndarray:
        """Смешивает покадровые оценки с долей меток в недавней истории.

        Слабый одиночный выброс перекрывается большинством, а сильный
        сигнал другого собеседника (реальная смена реплики) — нет.
        """
        cfg = self.config
        history = list(self._accepted)
        if len(history) < cfg.SMOOTHING_MIN_HISTORY:
            return raw
        shares = np.array([history.count(s) / len(history) for s in PARTIES])
        return (1 - cfg.SMOOTHING_BLEND) * raw + cfg.SMOOTHING_BLEND * shares

    def predict(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        context: EstimationContext,
    ) -> EstimatorVote:
        started = time.perf_counter()
        cfg = self.config
        scores, breakdown = self.speaker_scores(features, embedding, context)

        if not any(breakdown):
            return EstimatorVote(
                method=self.method,
                speaker=Speaker.UNDETERMINED,
                confidence=0.0,
                scores=np.zeros(2),
                processing_ms=(time.perf_counter() - started) * 1000,
                details={"reason": "no_reference"},
            )

        _, _, probs = scores_to_vote(scores, cfg.SCORE_SOFTMAX_TEMPERATURE)
        raw = np.clip(probs * scores, 0.0, 1.0)
        smoothed = np.clip(self._smooth(raw), 0.0, 1.0)
        best = int(np.argmax(smoothed))
        confidence = float(smoothed[best])
        speaker = PARTIES[best] if confidence >= cfg.EMBEDDING_CONFIDENCE_MIN else Speaker.UNDETERMINED

        return EstimatorVote(
            method=self.method,
            speaker=speaker,
            confidence=confidence,
            scores=smoothed,
            processing_ms=(time.perf_counter() - started) * 1000,
            details={
                "raw": [round(float(v), 4) for v in raw],
                "components": breakdown,
            },
        )

    def _update_learned(self, speaker: Speaker, vector: np.ndarray) -> None:
        slot = speaker_slot(speaker)
        current = self._learned[slot]
        if current is None:
            self._learned[slot] = l2_normalize(np.asarray(vector, dtype=np.float64))
        else:
            alpha = self.config.EMBEDDING_EMA_ALPHA
            self._learned[slot] = l2_normalize((1 - alpha) * current + alpha * vector)
        self._learned_updates[slot] += 1
        if self._learned_updates[slot] == 1:
            logger.info("learned_embedding_initialized", speaker=speaker.value)

    def observe(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        speaker: Speaker,
        confidence: float,
        context: EstimationContext,
    ) -> None:
        if not speaker.is_party:
            return
        self._accepted.append(speaker)
        if confidence >= self.config.LEARNING_CONFIDENCE_MIN:
            self._update_learned(speaker, embedding.vector)

    def learn(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        actual: Speaker,
        context: EstimationContext,
        predicted: Optional[Speaker] = None,
    ) -> None:
        if not actual.is_party:
            return
        # исправляем ошибочную метку в истории сглаживания, а не добавляем вторую
        if predicted is not None and predicted != actual and self._accepted and self._accepted[-1] == predicted:
            self._accepted[-1] = actual
        self._update_learned(actual, embedding.vector)
