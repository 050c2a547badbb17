"""Модели данных для диаризации двух собеседников."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional

import numpy as np


class Speaker(str, Enum):
    """Метка говорящего. Домен фиксирован: ровно два собеседника."""

    A = "A"
    B = "B"
    SILENCE = "silence"
    UNDETERMINED = "undetermined"

    @property
    def is_party(self) -> bool:
        return self in PARTIES

    @property
    def other(self) -> "Speaker":
        """Второй собеседник. Для silence/undetermined — сам себя."""
        if self is Speaker.A:
            return Speaker.B
        if self is Speaker.B:
            return Speaker.A
        return self


PARTIES = (Speaker.A, Speaker.B)


def speaker_slot(speaker: Speaker) -> int:
    """Индекс в двухслотовой структуре (A → 0, B → 1).

    ПОЧЕМУ массив из двух слотов, а не dict:
        собеседников всегда двое, silence/undetermined состояния не имеют.
        Попытка записать состояние для них — ошибка вызывающего кода.
    """
    if speaker is Speaker.A:
        return 0
    if speaker is Speaker.B:
        return 1
    raise ValueError(f"Speaker {speaker.value!r} has no state slot")


class Method(str, Enum):
    """Оценщики ансамбля."""

    HEURISTIC = "heuristic"
    EMBEDDING = "embedding"
    PATTERN = "pattern"


METHODS = (Method.HEURISTIC, Method.EMBEDDING, Method.PATTERN)


@dataclass
class AudioFrame:
    """Фрагмент аудио от внешнего захвата: float32 [-1, 1], моно."""

    samples: np.ndarray
    sample_rate: int = 16000
    timestamp: float = field(default_factory=time.time)

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) * 1000.0 / self.sample_rate

    @classmethod
    def from_pcm16(
        cls,
        data: bytes,
        sample_rate: int = 16000,
        timestamp: Optional[float] = None,
    ) -> "AudioFrame":
        """Собирает кадр из PCM16 little-endian байтов."""
        if len(data) % 2:
            raise ValueError("PCM16 payload must have an even number of bytes")
        pcm = np.frombuffer(data, dtype="<i2")
        return cls(
            samples=pcm.astype(np.float32) / 32768.0,
            sample_rate=sample_rate,
            timestamp=time.time() if timestamp is None else timestamp,
        )


@dataclass
class FeatureVector:
    """Акустические признаки одного кадра (или усреднённые по высказыванию)."""

    mfcc: np.ndarray  # shape (13,)
    spectral_centroid: float
    spectral_rolloff: float
    spectral_flux: float
    spectral_kurtosis: float
    spectral_skewness: float
    formants: np.ndarray  # shape (4,), 0.0 = форманта не найдена
    pitch: float  # Гц, 0.0 = невокализованный кадр
    pitch_variance: float
    zero_crossing_rate: float
    energy: float  # RMS
    timestamp: float = 0.0
    sample_rate: int = 16000

    @property
    def is_voiced(self) -> bool:
        return self.pitch > 0.0


@dataclass
class VoiceEmbedding:
    """L2-нормированный вектор голоса фиксированной размерности."""

    vector: np.ndarray  # shape (256,), float32
    speaker: Optional[Speaker] = None
    confidence: float = 0.0


@dataclass
class QualityAnalysis:
    """Оценка качества записи для калибровки."""

    rms: float
    peak: float
    snr_db: float
    clarity: float
    dynamic_range_db: float
    duration_ms: float

    def to_dict(self) -> dict:
        return {
            "rms": round(self.rms, 4),
            "peak": round(self.peak, 4),
            "snr_db": round(self.snr_db, 2),
            "clarity": round(self.clarity, 3),
            "dynamic_range_db": round(self.dynamic_range_db, 2),
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class SpeakerProfile:
    """Голосовой профиль собеседника, собранный завершённой калибровкой."""

    speaker: Speaker
    pitch_mean: float
    pitch_range: tuple[float, float]
    pitch_variance: float
    spectral_signature: np.ndarray  # средние MFCC
    spectral_shape: np.ndarray  # [centroid, rolloff, kurtosis]
    formants: np.ndarray
    energy_mean: float
    voiceprint: np.ndarray  # средний embedding, перенормированный
    sample_count: int
    avg_quality: float
    consistency: float
    total_duration_ms: float
    is_complete: bool
    created_at: float
    updated_at: float

    def age_days(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.created_at) / 86400.0

    def needs_recalibration(
        self,
        now: Optional[float] = None,
        retention_days: float = 7.0,
        min_quality: float = 0.15,
    ) -> bool:
        """Профиль устарел или записан с низким качеством."""
        return self.age_days(now) > retention_days or self.avg_quality < min_quality

    def is_authoritative(
        self,
        now: Optional[float] = None,
        retention_days: float = 7.0,
        min_quality: float = 0.15,
    ) -> bool:
        return self.is_complete and not self.needs_recalibration(now, retention_days, min_quality)

    def to_dict(self) -> dict:
        return {
            "speaker": self.speaker.value,
            "pitch_mean": round(self.pitch_mean, 2),
            "pitch_range": [round(self.pitch_range[0], 2), round(self.pitch_range[1], 2)],
            "pitch_variance": round(self.pitch_variance, 2),
            "formants": [round(float(f), 1) for f in self.formants],
            "energy_mean": round(self.energy_mean, 4),
            "sample_count": self.sample_count,
            "avg_quality": round(self.avg_quality, 3),
            "consistency": round(self.consistency, 3),
            "total_duration_ms": round(self.total_duration_ms, 1),
            "is_complete": self.is_complete,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class VoicePattern:
    """Запись памяти паттернов: голос + контекст + исход."""

    pattern_id: str
    embedding: np.ndarray  # голосовой embedding (256,)
    semantic: dict  # блоки семантического вектора: {"acoustic": ..., "context": ...}
    speaker: Speaker
    context: str
    confidence: float
    usage_count: float = 0.0
    success_rate: float = 1.0
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)


ContributionStatus = Literal[
    "voted",      # голос учтён в слиянии
    "abstained",  # оценщик не уверен (ниже своего порога или undetermined)
    "timeout",    # превышен бюджет времени
    "failed",     # исключение внутри оценщика
    "disabled",   # временно отключён адаптацией
]


@dataclass
class EstimatorVote:
    """Ответ одного оценщика. scores — уверенность по слотам [A, B]."""

    method: Method
    speaker: Speaker
    confidence: float
    scores: np.ndarray = field(default_factory=lambda: np.zeros(2))
    processing_ms: float = 0.0
    details: dict = field(default_factory=dict)


@dataclass
class MethodContribution:
    method: Method
    status: ContributionStatus
    speaker: Speaker = Speaker.UNDETERMINED
    confidence: float = 0.0
    weight: float = 0.0
    processing_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "status": self.status,
            "speaker": self.speaker.value,
            "confidence": round(self.confidence, 4),
            "weight": round(self.weight, 4),
            "processing_ms": round(self.processing_ms, 2),
        }


@dataclass
class DetectionQuality:
    methods_used: int = 0
    avg_processing_ms: float = 0.0
    confidence_variance: float = 0.0
    consensus: float = 0.0


@dataclass
class DetectionResult:
    """Итог одного цикла детекции. Не сохраняется."""

    speaker: Speaker
    confidence: float
    contributions: list[MethodContribution] = field(default_factory=list)
    reasoning: str = ""
    timestamp: float = field(default_factory=time.time)
    voice_activity: bool = True
    quality: DetectionQuality = field(default_factory=DetectionQuality)

    def to_dict(self) -> dict:
        return {
            "speaker": self.speaker.value,
            "confidence": round(self.confidence, 4),
            "contributions": [c.to_dict() for c in self.contributions],
            "reasoning": self.reasoning,
            "timestamp": self.timestamp,
            "voice_activity": self.voice_activity,
            "quality": {
                "methods_used": self.quality.methods_used,
                "avg_processing_ms": round(self.quality.avg_processing_ms, 2),
                "confidence_variance": round(self.quality.confidence_variance, 4),
                "consensus": round(self.quality.consensus, 3),
            },
        }


class CalibrationStep(str, Enum):
    INSTRUCTIONS = "instructions"
    RECORDING = "recording"
    REVIEW = "review"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


class PromptType(str, Enum):
    """Тип фразы-подсказки: разные интонации дают более устойчивый профиль."""

    NEUTRAL = "neutral"
    HAPPY = "happy"
    FRUSTRATED = "frustrated"
    QUESTION = "question"
    STATEMENT = "statement"
    EMOTIONAL = "emotional"


@dataclass
class CalibrationSample:
    """Принятый образец голоса. Отклонённые образцы сюда не попадают."""

    sample_id: str
    speaker: Speaker
    prompt_type: PromptType
    features: FeatureVector
    embedding: np.ndarray
    quality: QualityAnalysis
    recorded_at: float = field(default_factory=time.time)


@dataclass
class SpeakerProgress:
    samples_collected: int
    samples_needed: int

    @property
    def progress(self) -> float:
        if self.samples_needed <= 0:
            return 1.0
        return min(1.0, self.samples_collected / self.samples_needed)

    @property
    def is_complete(self) -> bool:
        return self.samples_collected >= self.samples_needed

    def to_dict(self) -> dict:
        return {
            "samples_collected": self.samples_collected,
            "samples_needed": self.samples_needed,
            "progress": round(self.progress, 3),
            "is_complete": self.is_complete,
        }


@dataclass
class CalibrationSession:
    """Состояние мастера калибровки одного разговора."""

    session_id: str
    min_samples: int = 3
    step: CalibrationStep = CalibrationStep.INSTRUCTIONS
    current_speaker: Speaker = Speaker.A
    prompt_index: int = 0
    samples: tuple[list, list] = field(default_factory=lambda: ([], []))
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.step is CalibrationStep.COMPLETE

    @property
    def is_active(self) -> bool:
        return self.step not in (CalibrationStep.COMPLETE, CalibrationStep.ABANDONED)

    def samples_for(self, speaker: Speaker) -> list[CalibrationSample]:
        return self.samples[speaker_slot(speaker)]

    def progress_for(self, speaker: Speaker) -> SpeakerProgress:
        return SpeakerProgress(len(self.samples_for(speaker)), self.min_samples)

    def progress(self) -> dict:
        per_speaker = {s.value: self.progress_for(s) for s in PARTIES}
        overall = sum(p.progress for p in per_speaker.values()) / len(PARTIES)
        return {
            "per_speaker": {k: v.to_dict() for k, v in per_speaker.items()},
            "overall_progress": round(overall, 3),
        }

    def quality_metrics(self) -> dict:
        accepted = [s for slot in self.samples for s in slot]
        if not accepted:
            return {
                "total_duration_ms": 0.0,
                "avg_snr_db": 0.0,
                "avg_clarity": 0.0,
                "completion_rate": 0.0,
            }
        needed = self.min_samples * len(PARTIES)
        counted = sum(min(len(slot), self.min_samples) for slot in self.samples)
        return {
            "total_duration_ms": round(sum(s.quality.duration_ms for s in accepted), 1),
            "avg_snr_db": round(float(np.mean([s.quality.snr_db for s in accepted])), 2),
            "avg_clarity": round(float(np.mean([s.quality.clarity for s in accepted])), 3),
            "completion_rate": round(counted / needed, 3),
        }
