"""Адаптивные веса оценщиков и скользящая статистика их точности."""
from __future__ import annotations

from collections import deque
from typing import Iterable, Optional

import numpy as np

from .models import METHODS, Method


class MethodStats:
    """Скользящее окно исходов одного оценщика (только по обратной связи)."""

    def __init__(self, window: int = 50):
        self._outcomes: deque[bool] = deque(maxlen=window)
        self._confidences: deque[float] = deque(maxlen=window)
        self._processing_ms: deque[float] = deque(maxlen=window)
        self.total_observations = 0

    def record_outcome(self, correct: bool) -> None:
        self._outcomes.append(bool(correct))
        self.total_observations += 1

    def record_timing(self, confidence: float, processing_ms: float) -> None:
        self._confidences.append(confidence)
        self._processing_ms.append(processing_ms)

    @property
    def observations(self) -> int:
        return len(self._outcomes)

    @property
    def success_rate(self) -> float:
        if not self._outcomes:
            return 0.0
        return sum(self._outcomes) / len(self._outcomes)

    @property
    def avg_confidence(self) -> float:
        return float(np.mean(self._confidences)) if self._confidences else 0.0

    @property
    def avg_processing_ms(self) -> float:
        return float(np.mean(self._processing_ms)) if self._processing_ms else 0.0


class AdaptiveWeights:
    """Веса оценщиков. Инвариант: сумма = 1 после каждого изменения.

    Правило адаптации: w_m += rate · (точность_m − общая точность),
    затем ограничение [floor, ceiling] и перенормировка.
    """

    def __init__(
        self,
        initial: dict[Method, float],
        floor: float = 0.05,
        ceiling: float = 0.8,
        rate: float = 0.05,
    ):
        if set(initial) != set(METHODS):
            raise ValueError("Initial weights must cover every method")
        self.floor = floor
        self.ceiling = ceiling
        self.rate = rate
        self._initial = np.array([initial[m] for m in METHODS], dtype=np.float64)
        self._values = self._normalize(self._initial.copy())

    def __getitem__(self, method: Method) -> float:
        return float(self._values[METHODS.index(method)])

    def as_dict(self) -> dict[Method, float]:
        return {m: float(v) for m, v in zip(METHODS, self._values)}

    @property
    def total(self) -> float:
        return float(self._values.sum())

    def reset(self) -> None:
        self._values = self._normalize(self._initial.copy())

    def _normalize(self, values: np.ndarray) -> np.ndarray:
        """Проекция на {сумма = 1} с ограничениями [floor, ceiling].

        Вес, упёршийся в границу, фиксируется, остаток массы делится между
        свободными пропорционально. Каждый раунд фиксирует хотя бы один вес,
        поэтому раундов не больше числа методов.
        """
        values = np.clip(np.asarray(values, dtype=np.float64), self.floor, self.ceiling)
        fixed = np.zeros(len(values), dtype=bool)
        for _ in range(len(values)):
            free = ~fixed
            if not free.any():
                break
            remaining = 1.0 - values[fixed].sum()
            free_sum = values[free].sum()
            values[free] = values[free] * remaining / free_sum if free_sum > 0 else remaining / free.sum()
            over = free & (values > self.ceiling)
            under = free & (values < self.floor)
            if not over.any() and not under.any():
                return values
            values[over] = self.ceiling
            values[under] = self.floor
            fixed |= over | under
        # границы несовместны с суммой 1: сумма важнее
        return values / values.sum()

    def adapt(
        self,
        accuracies: dict[Method, Optional[float]],
        overall_accuracy: float,
        eligible: Optional[Iterable[Method]] = None,
    ) -> dict[Method, float]:
        """Сдвигает веса к более точным оценщикам.

        Args:
            accuracies: недавняя точность каждого оценщика (None — нет данных)
            overall_accuracy: недавняя точность ансамбля
            eligible: методы с достаточным числом наблюдений; остальные не двигаются

        Returns:
            новые веса
        """
        eligible = set(eligible) if eligible is not None else set(METHODS)
        values = self._values.copy()
        for i, method in enumerate(METHODS):
            accuracy = accuracies.get(method)
            if accuracy is None or method not in eligible:
                continue
            values[i] += self.rate * (accuracy - overall_accuracy)
        self._values = self._normalize(values)
        return self.as_dict()
