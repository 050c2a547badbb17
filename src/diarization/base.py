"""Общий интерфейс оценщиков ансамбля.

Жизненный цикл оценщика в одном цикле детекции:
    predict()  — только чтение, выполняется в отдельном потоке под таймаутом
    observe()  — запись, вызывается движком ПОСЛЕ слияния голосов (фаза commit)
    learn()    — запись, вызывается из provide_feedback с истинной меткой

ПОЧЕМУ predict не пишет состояние:
    поток, не уложившийся в бюджет, продолжает работать после таймаута.
    Если бы он писал в общее состояние, результат зависел бы от гонки.
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .models import (
    EstimatorVote,
    FeatureVector,
    Method,
    Speaker,
    SpeakerProfile,
    VoiceEmbedding,
)


@dataclass(frozen=True)
class EstimationContext:
    """Снимок состояния разговора для одного цикла (только чтение)."""

    text: str = ""
    profiles: tuple = (None, None)  # (Optional[SpeakerProfile], Optional[SpeakerProfile])
    recent_turns: tuple = ()  # последние принятые метки, старые → новые
    now: float = field(default_factory=time.time)

    def profile_for(self, slot: int) -> Optional[SpeakerProfile]:
        return self.profiles[slot]

    @property
    def last_speaker(self) -> Optional[Speaker]:
        return self.recent_turns[-1] if self.recent_turns else None


def scores_to_vote(scores: np.ndarray, temperature: float = 0.1) -> tuple[Speaker, float, np.ndarray]:
    """Сходства по слотам [A, B] → (лучший, уверенность, вероятности).

    Уверенность = softmax-вероятность лучшего × его сходство:
    равные сходства дают не больше 0.5, далёкие от обоих эталонов — почти 0.
    """
    scores = np.clip(np.asarray(scores, dtype=np.float64), 0.0, 1.0)
    if not np.any(scores > 0):
        return Speaker.UNDETERMINED, 0.0, np.full(2, 0.5)
    z = scores / max(temperature, 1e-6)
    z -= z.max()
    probs = np.exp(z) / np.sum(np.exp(z))
    best = int(np.argmax(scores))
    confidence = float(np.clip(probs[best] * scores[best], 0.0, 1.0))
    return (Speaker.A, Speaker.B)[best], confidence, probs


class Estimator(ABC):
    """Абстрактный оценщик говорящего."""

    method: Method

    @abstractmethod
    def predict(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        context: EstimationContext,
    ) -> EstimatorVote:
        """Голос оценщика за кадр. Не должен менять состояние."""
        pass

    @abstractmethod
    def observe(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        speaker: Speaker,
        confidence: float,
        context: EstimationContext,
    ) -> None:
        """Учитывает принятую движком метку (commit-фаза цикла)."""
        pass

    def learn(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        actual: Speaker,
        context: EstimationContext,
        predicted: Optional[Speaker] = None,
    ) -> None:
        """Корректирующая обратная связь: по умолчанию — наблюдение с полной уверенностью."""
        self.observe(features, embedding, actual, 1.0, context)

    def reset(self) -> None:
        pass
