"""Исключения диаризации и калибровки.

Политика:
    - Проблемы оценщиков и отсутствие консенсуса гасятся внутри DiarizationEngine:
      разговор продолжается даже без единой уверенной детекции.
    - Фатальные условия калибровки (нет сессии, сессия истекла, нет принятых образцов)
      пробрасываются вызывающему коду для повторной попытки пользователем.
"""
from __future__ import annotations

from typing import Optional


class DiarizationError(Exception):
    """Базовое исключение модуля."""


class LowAudioQuality(DiarizationError):
    """Образец отклонён по качеству. Состояние сессии не меняется."""

    def __init__(self, reason: str, recommendation: str, quality=None):
        super().__init__(f"{reason}: {recommendation}")
        self.reason = reason
        self.recommendation = recommendation
        self.quality = quality


class NoVoiceActivity(DiarizationError):
    """В аудио не найдено ни одного речевого кадра."""


class EstimatorTimeout(DiarizationError):
    """Оценщик не уложился в бюджет времени."""

    def __init__(self, method: str, budget_sec: float):
        super().__init__(f"Estimator {method} exceeded {budget_sec * 1000:.0f}ms budget")
        self.method = method
        self.budget_sec = budget_sec


class EstimatorFailure(DiarizationError):
    """Исключение внутри оценщика."""

    def __init__(self, method: str, cause: Optional[BaseException] = None):
        super().__init__(f"Estimator {method} failed: {cause}")
        self.method = method
        self.cause = cause


class CalibrationError(DiarizationError):
    """Фатальная ошибка калибровки."""


class CalibrationSessionNotFound(CalibrationError):
    def __init__(self, session_id: str):
        super().__init__(f"Calibration session not found: {session_id}")
        self.session_id = session_id


class CalibrationSessionExpired(CalibrationError):
    def __init__(self, session_id: str):
        super().__init__(f"Calibration session expired: {session_id}")
        self.session_id = session_id


class CalibrationSessionClosed(CalibrationError):
    """Сессия уже завершена или прервана."""

    def __init__(self, session_id: str, step: str):
        super().__init__(f"Calibration session {session_id} is closed ({step})")
        self.session_id = session_id
        self.step = step


class CalibrationSessionConflict(CalibrationError):
    """В разговоре уже есть активная сессия калибровки."""

    def __init__(self, active_session_id: str):
        super().__init__(f"Another calibration session is active: {active_session_id}")
        self.active_session_id = active_session_id


class NoAcceptedSamples(CalibrationError):
    def __init__(self, session_id: str):
        super().__init__(f"No accepted samples in calibration session {session_id}")
        self.session_id = session_id
