"""Сменные стратегии для embedding-оценщика.

FeatureProjector  — FeatureVector → L2-нормированный вектор фиксированной размерности.
SpeakerScorer     — дополнительный классификатор A/B поверх признаков.

ПОЧЕМУ SpeakerScorer по умолчанию воздерживается:
    обученной модели для двух конкретных собеседников у нас нет, а случайные веса
    дают шум, похожий на уверенность. Интерфейс оставлен, чтобы обученный
    классификатор подключался без правок логики слияния.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from .models import FeatureVector, VoiceEmbedding

# (центр, масштаб) типичных значений речи: признаки приводятся к ~[-1, 1]
_PITCH_REF = (165.0, 60.0)
_CENTROID_REF = (1500.0, 800.0)
_ROLLOFF_REF = (2500.0, 1500.0)
_FORMANT_REFS = ((600.0, 300.0), (1600.0, 600.0), (2600.0, 700.0), (3500.0, 800.0))
_ZCR_REF = (0.08, 0.08)
_MFCC_SCALE = 20.0


def _standardize(value: float, ref: tuple[float, float]) -> float:
    center, scale = ref
    return float(np.clip((value - center) / scale, -3.0, 3.0))


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm < 1e-8:
        return np.zeros_like(vector, dtype=np.float32)
    return (vector / norm).astype(np.float32)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Косинусное сходство [-1, 1]; 0.0 для нулевых векторов.

    ПОЧЕМУ косинус, а не евклидово расстояние:
        эмбеддинги лежат на единичной сфере, угол между ними — ключевая метрика.
        Косинус инвариантен к масштабу (громкости сигнала).
    """
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a < 1e-8 or norm_b < 1e-8:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def feature_layout(features: FeatureVector) -> np.ndarray:
    """Конкатенация стандартизованных подпризнаков в фиксированном порядке.

    Порядок: MFCC[1:] (c0 зависит от громкости и отброшен), centroid, rolloff,
    flux, skewness, log-kurtosis, 4 форманты, pitch, std pitch, ZCR.
    Отсутствующие значения (тон, форманта = 0) кодируются нулём = "центр".
    """
    parts = [np.clip(np.asarray(features.mfcc[1:], dtype=np.float64) / _MFCC_SCALE, -3.0, 3.0)]
    formants = [
        _standardize(f, ref) if f > 0 else 0.0
        for f, ref in zip(features.formants, _FORMANT_REFS)
    ]
    scalars = [
        _standardize(features.spectral_centroid, _CENTROID_REF),
        _standardize(features.spectral_rolloff, _ROLLOFF_REF),
        float(np.clip(features.spectral_flux * 10.0, 0.0, 3.0)),
        float(np.clip(features.spectral_skewness / 5.0, -3.0, 3.0)),
        float(np.clip(np.log1p(max(features.spectral_kurtosis, 0.0)) / 3.0, 0.0, 3.0)),
        *formants,
        _standardize(features.pitch, _PITCH_REF) if features.pitch > 0 else 0.0,
        float(np.clip(np.sqrt(max(features.pitch_variance, 0.0)) / 50.0, 0.0, 3.0)),
        _standardize(features.zero_crossing_rate, _ZCR_REF),
    ]
    return np.concatenate([parts[0], np.array(scalars)])


class FeatureProjector(ABC):
    """FeatureVector → эмбеддинг фиксированной размерности."""

    dim: int

    @abstractmethod
    def project(self, features: FeatureVector) -> np.ndarray:
        pass

    def embed(self, features: FeatureVector) -> VoiceEmbedding:
        return VoiceEmbedding(vector=self.project(features))


class OrthonormalProjector(FeatureProjector):
    """Изометрическая проекция в dim измерений фиксированным ортонормальным базисом.

    Базис строится QR-разложением гауссовой матрицы с фиксированным seed:
    одинаков между процессами, поэтому эмбеддинги калибровки и живой детекции
    сравнимы. Изометрия сохраняет углы — косинус в пространстве эмбеддингов
    равен косинусу стандартизованных признаков.
    """

    def __init__(self, dim: int = 256, seed: int = 1337):
        self.dim = dim
        self.seed = seed
        self._basis: Optional[np.ndarray] = None

    def _basis_for(self, input_dim: int) -> np.ndarray:
        if self._basis is None or self._basis.shape[1] != input_dim:
            if input_dim > self.dim:
                raise ValueError(f"Feature layout ({input_dim}) exceeds embedding dim ({self.dim})")
            rng = np.random.default_rng(self.seed)
            q, _ = np.linalg.qr(rng.standard_normal((self.dim, input_dim)))
            self._basis = q
        return self._basis

    def project(self, features: FeatureVector) -> np.ndarray:
        layout = feature_layout(features)
        return l2_normalize(self._basis_for(len(layout)) @ layout)


class SpeakerScorer(ABC):
    """Классификатор A/B. Возвращает вероятности по слотам [A, B] или None (нет мнения)."""

    @abstractmethod
    def score(self, features: FeatureVector, embedding: VoiceEmbedding) -> Optional[np.ndarray]:
        pass


class AbstainingScorer(SpeakerScorer):
    """Скорер по умолчанию: мнения не имеет, на слияние не влияет."""

    def score(self, features: FeatureVector, embedding: VoiceEmbedding) -> Optional[np.ndarray]:
        return None
