"""Роутер диаризации: детекция говорящего, обратная связь, калибровка голосов.

Аудио передаётся как base64 PCM16 little-endian mono.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from src.diarization.errors import (
    CalibrationSessionClosed,
    CalibrationSessionConflict,
    CalibrationSessionExpired,
    CalibrationSessionNotFound,
    NoAcceptedSamples,
)
from src.diarization.models import AudioFrame, PromptType, Speaker
from src.diarization.registry import get_registry
from src.utils.config import settings
from src.utils.logging import get_logger

logger = get_logger("api.diarization")
router = APIRouter(prefix="/diarization", tags=["diarization"])


class AudioBody(BaseModel):
    audio_b64: str = Field(min_length=1)
    sample_rate: int = Field(default=settings.AUDIO_SAMPLE_RATE, gt=0)
    timestamp: float | None = None


class DetectBody(AudioBody):
    """Тело запроса POST /diarization/{conversation_id}/detect."""
    context: str = ""


class FeedbackBody(AudioBody):
    predicted: Speaker
    actual: Speaker
    context: str = ""


class CalibrationStartBody(BaseModel):
    session_id: str | None = None


class CalibrationSampleBody(AudioBody):
    prompt_type: PromptType | None = None
    speaker: Speaker | None = None


def _decode_frame(body: AudioBody) -> AudioFrame:
    try:
        data = base64.b64decode(body.audio_b64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="audio_b64 is not valid base64")
    try:
        return AudioFrame.from_pcm16(data, sample_rate=body.sample_rate, timestamp=body.timestamp)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _calibration_error(e: Exception) -> HTTPException:
    if isinstance(e, CalibrationSessionNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (CalibrationSessionConflict, CalibrationSessionClosed)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, CalibrationSessionExpired):
        return HTTPException(status_code=410, detail=str(e))
    if isinstance(e, NoAcceptedSamples):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


_CALIBRATION_ERRORS = (
    CalibrationSessionNotFound,
    CalibrationSessionConflict,
    CalibrationSessionClosed,
    CalibrationSessionExpired,
    NoAcceptedSamples,
    ValueError,
)


@router.post("/{conversation_id}/detect")
async def detect_speaker(conversation_id: str, body: DetectBody):
    """
    Определяет говорящего в аудиокадре.

    **Тело запроса:**
    ```json
    {
        "audio_b64": "<base64 PCM16 LE>",
        "sample_rate": 16000,
        "context": "текст вокруг кадра"
    }
    ```

    **Ответ:**
    ```json
    {
        "speaker": "A",
        "confidence": 0.82,
        "contributions": [{"method": "heuristic", "status": "voted", ...}],
        "voice_activity": true
    }
    ```
    """
    frame = _decode_frame(body)
    try:
        engine = get_registry().get_or_create(conversation_id)
        result = await engine.detect(frame, body.context)
        return result.to_dict()
    except Exception as e:
        logger.error("detection_failed", conversation_id=conversation_id, error=str(e))
        raise HTTPException(status_code=500, detail="Speaker detection failed")


@router.post("/{conversation_id}/feedback")
async def provide_feedback(conversation_id: str, body: FeedbackBody):
    """Истинная метка кадра: адаптирует веса и обучает оценщики."""
    frame = _decode_frame(body)
    engine = get_registry().get_or_create(conversation_id)
    try:
        engine.provide_feedback(frame, body.predicted, body.actual, body.context)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("feedback_failed", conversation_id=conversation_id, error=str(e))
        raise HTTPException(status_code=500, detail="Feedback processing failed")
    return {"status": "applied", "stats": engine.stats()}


@router.post("/{conversation_id}/calibration/start")
async def start_calibration(conversation_id: str, body: Optional[CalibrationStartBody] = None):
    """
    Начинает калибровку голосов. Первым записывается собеседник A.

    **Ответ:**
    ```json
    {
        "session_id": "…",
        "step": "instructions",
        "current_speaker": "A",
        "prompt": {"type": "neutral", "text": "…", "instruction": "…"}
    }
    ```
    """
    from src.diarization.calibration import prompt_at

    engine = get_registry().get_or_create(conversation_id)
    try:
        session = engine.start_calibration_session(body.session_id if body else None)
    except _CALIBRATION_ERRORS as e:
        raise _calibration_error(e)

    prompt = prompt_at(session.prompt_index)
    return {
        "session_id": session.session_id,
        "step": session.step.value,
        "current_speaker": session.current_speaker.value,
        "min_samples": session.min_samples,
        "prompt": {"type": prompt.type.value, "text": prompt.text, "instruction": prompt.instruction},
        "progress": session.progress(),
    }


@router.post("/{conversation_id}/calibration/{session_id}/samples")
async def record_calibration_sample(conversation_id: str, session_id: str, body: CalibrationSampleBody):
    """
    Записывает образец голоса. Отклонённый образец не меняет сессию.

    **Ответ (отказ):**
    ```json
    {
        "accepted": false,
        "reason": "too_noisy",
        "recommendation": "Слишком шумно (SNR 7.1 дБ)…"
    }
    ```
    """
    frame = _decode_frame(body)
    engine = get_registry().get(conversation_id)
    if engine is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    try:
        # LPC и FFT по каждому кадру образца: вне цикла событий
        result = await asyncio.to_thread(
            engine.record_calibration_sample, session_id, frame, body.prompt_type, body.speaker
        )
    except _CALIBRATION_ERRORS as e:
        raise _calibration_error(e)
    return result.to_dict()


@router.post("/{conversation_id}/calibration/{session_id}/complete")
async def complete_calibration(conversation_id: str, session_id: str):
    """Собирает профили собеседников, набравших минимум образцов."""
    engine = get_registry().get(conversation_id)
    if engine is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    try:
        result = engine.complete_calibration_session(session_id)
    except _CALIBRATION_ERRORS as e:
        raise _calibration_error(e)
    return result.to_dict()


@router.delete("/{conversation_id}/calibration/{session_id}")
async def abandon_calibration(conversation_id: str, session_id: str):
    engine = get_registry().get(conversation_id)
    if engine is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    try:
        engine.abandon_calibration_session(session_id)
    except _CALIBRATION_ERRORS as e:
        raise _calibration_error(e)
    return {"status": "abandoned", "session_id": session_id}


@router.get("/{conversation_id}/calibration/status")
async def calibration_status(conversation_id: str):
    """Статус калибровки и рекомендация по перекалибровке."""
    engine = get_registry().get_or_create(conversation_id)
    return {
        **engine.get_calibration_status().to_dict(),
        "recalibration": engine.should_recalibrate(),
    }


@router.get("/{conversation_id}/stats")
async def conversation_stats(conversation_id: str):
    engine = get_registry().get(conversation_id)
    if engine is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return engine.stats()


@router.delete("/{conversation_id}")
async def drop_conversation(conversation_id: str):
    """Удаляет разговор: профили, паттерны и веса."""
    if not get_registry().drop(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return {"status": "deleted", "conversation_id": conversation_id}
