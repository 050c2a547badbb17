"""Диаризация двух собеседников — кто говорит сейчас: A или B.

Использование:
    from src.diarization import DiarizationEngine, AudioFrame, Speaker
    from src.diarization.registry import EngineRegistry

Архитектура:
    amplitude.py   — RMS, пик, ZCR, нарезка на кадры
    features.py    — MFCC, спектральная форма, форманты (LPC), тон + VAD
    quality.py     — SNR/чёткость образца калибровки, причины отказа
    heuristic.py   — оценщик 1: тон + энергия против бегущих эталонов (~1ms)
    scoring.py     — проекция признаков в 256-dim эмбеддинг, сменный скорер
    embedding.py   — оценщик 2: learned + биометрия профиля + сглаживание
    patterns.py    — оценщик 3: память голосовых паттернов с контекстом
    weights.py     — адаптивные веса и скользящая точность оценщиков
    engine.py      — ансамбль: параллельный запуск, слияние, обратная связь
    calibration.py — мастер записи образцов и сборка SpeakerProfile
    stream.py      — фоновая детекция для живого потока (слот на один кадр)
    registry.py    — один движок на разговор
"""
from .calibration import CalibrationManager, CalibrationStatus, CompletionResult, SampleResult
from .engine import DiarizationEngine, EngineState
from .errors import (
    CalibrationError,
    CalibrationSessionClosed,
    CalibrationSessionConflict,
    CalibrationSessionExpired,
    CalibrationSessionNotFound,
    DiarizationError,
    LowAudioQuality,
    NoAcceptedSamples,
    NoVoiceActivity,
)
from .models import AudioFrame, DetectionResult, Method, PromptType, Speaker, SpeakerProfile
from .registry import EngineRegistry
from .stream import DetectionWorker

__all__ = [
    "AudioFrame",
    "CalibrationError",
    "CalibrationManager",
    "CalibrationSessionClosed",
    "CalibrationSessionConflict",
    "CalibrationSessionExpired",
    "CalibrationSessionNotFound",
    "CalibrationStatus",
    "CompletionResult",
    "DetectionResult",
    "DetectionWorker",
    "DiarizationEngine",
    "DiarizationError",
    "EngineRegistry",
    "EngineState",
    "LowAudioQuality",
    "Method",
    "NoAcceptedSamples",
    "NoVoiceActivity",
    "PromptType",
    "SampleResult",
    "Speaker",
    "SpeakerProfile",
]
