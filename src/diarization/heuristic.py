"""Эвристический оценщик: высота тона + энергия против бегущих эталонов.

Самый быстрый и самый грубый голос ансамбля. Эталон каждого собеседника —
экспоненциальное среднее (pitch, energy) по уверенно размеченным кадрам.
Пока эталон не набрал HEURISTIC_MIN_STABLE_FRAMES наблюдений, его заменяет
профиль калибровки (если он авторитетен), иначе уверенность заведомо низкая.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

import numpy as np

from src.utils.config import Settings, settings
from src.utils.logging import get_logger

from .base import EstimationContext, Estimator, scores_to_vote
from .models import (
    EstimatorVote,
    FeatureVector,
    Method,
    Speaker,
    VoiceEmbedding,
    speaker_slot,
)

logger = get_logger("diarization.heuristic")


@dataclass
class Baseline:
    pitch: float = 0.0
    energy: float = 0.0
    count: int = 0


class HeuristicEstimator(Estimator):
    method = Method.HEURISTIC

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self._baselines = [Baseline(), Baseline()]

    def baseline(self, speaker: Speaker) -> Baseline:
        return self._baselines[speaker_slot(speaker)]

    def reset(self) -> None:
        self._baselines = [Baseline(), Baseline()]

    def _reference(self, slot: int, context: EstimationContext) -> Optional[tuple[float, float]]:
        cfg = self.config
        baseline = self._baselines[slot]
        if baseline.count >= cfg.HEURISTIC_MIN_STABLE_FRAMES:
            return baseline.pitch, baseline.energy
        profile = context.profile_for(slot)
        if profile is not None and profile.is_authoritative(
            context.now, cfg.PROFILE_RETENTION_DAYS, cfg.CALIBRATION_MIN_CLARITY
        ):
            return profile.pitch_mean, profile.energy_mean
        return None

    def _similarity(self, features: FeatureVector, reference: tuple[float, float]) -> float:
        cfg = self.config
        ref_pitch, ref_energy = reference
        distance = 0.0
        if features.pitch > 0 and ref_pitch > 0:
            distance += cfg.HEURISTIC_PITCH_WEIGHT * abs(features.pitch - ref_pitch) / cfg.HEURISTIC_PITCH_SCALE_HZ
        distance += cfg.HEURISTIC_ENERGY_WEIGHT * abs(features.energy - ref_energy) / max(ref_energy, 1e-3)
        return float(np.exp(-distance))

    def predict(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        context: EstimationContext,
    ) -> EstimatorVote:
        started = time.perf_counter()
        references = [self._reference(slot, context) for slot in (0, 1)]

        if references[0] is None or references[1] is None:
            vote = self._unstable_vote(features, references)
        else:
            scores = np.array([self._similarity(features, ref) for ref in references])
            speaker, confidence, _ = scores_to_vote(scores, self.config.SCORE_SOFTMAX_TEMPERATURE)
            if features.pitch <= 0:
                # без тона различаем только по громкости: ненадёжно
                confidence *= 0.5
            vote = EstimatorVote(
                method=self.method,
                speaker=speaker,
                confidence=confidence,
                scores=scores,
                details={"stable": True},
            )

        vote.processing_ms = (time.perf_counter() - started) * 1000
        return vote

    def _unstable_vote(self, features: FeatureVector, references: list) -> EstimatorVote:
        """Эталоны ещё не сошлись: грубая догадка с уверенностью не выше HEURISTIC_UNSTABLE_CONFIDENCE."""
        cfg = self.config
        cap = cfg.HEURISTIC_UNSTABLE_CONFIDENCE
        known = [slot for slot, ref in enumerate(references) if ref is not None]

        if known:
            slot = known[0]
            similarity = self._similarity(features, references[slot])
            own = (Speaker.A, Speaker.B)[slot]
            speaker = own if similarity >= 0.5 else own.other
            confidence = cap * abs(2 * similarity - 1)
        elif features.pitch > 0:
            speaker = Speaker.A if features.pitch > cfg.HEURISTIC_PITCH_SPLIT_HZ else Speaker.B
            confidence = cap * 0.5
        else:
            speaker, confidence = Speaker.UNDETERMINED, 0.0

        scores = np.zeros(2)
        if speaker.is_party:
            scores[speaker_slot(speaker)] = confidence
        return EstimatorVote(
            method=self.method,
            speaker=speaker,
            confidence=float(confidence),
            scores=scores,
            details={"stable": False},
        )

    def observe(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        speaker: Speaker,
        confidence: float,
        context: EstimationContext,
    ) -> None:
        if not speaker.is_party or confidence < self.config.LEARNING_CONFIDENCE_MIN:
            return
        alpha = self.config.HEURISTIC_EMA_ALPHA
        baseline = self._baselines[speaker_slot(speaker)]

        if baseline.count == 0:
            baseline.energy = features.energy
        else:
            baseline.energy = (1 - alpha) * baseline.energy + alpha * features.energy
        if features.pitch > 0:
            if baseline.pitch <= 0:
                baseline.pitch = features.pitch
            else:
                baseline.pitch = (1 - alpha) * baseline.pitch + alpha * features.pitch
        baseline.count += 1

        if baseline.count == self.config.HEURISTIC_MIN_STABLE_FRAMES:
            logger.info(
                "heuristic_baseline_stable",
                speaker=speaker.value,
                pitch=round(baseline.pitch, 1),
                energy=round(baseline.energy, 4),
            )
