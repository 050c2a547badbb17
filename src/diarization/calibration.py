"""Калибровка голосов: мастер записи образцов и сборка профилей.

Процесс:
    1. start_session() — instructions, первым записывается собеседник A
    2. record_sample() — анализ качества (quality.py) + признаки (features.py)
         отклонён → причина + подсказка, сессия НЕ меняется
         принят   → образец в список собеседника, следующая фраза;
                    при наборе квоты — переключение на второго собеседника
    3. Оба набрали квоту → review
    4. complete_session() — профиль для каждого, кто набрал минимум
       abandon_session()  — все образцы выбрасываются, профили не трогаются

ПОЧЕМУ минимум 3 образца:
    Один образец подвержен шуму, вариации тембра и интонации.
    3+ образца → стабильный средний voiceprint и осмысленная оценка consistency.
"""
from __future__ import annotations

import itertools
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from src.utils.config import Settings, settings
from src.utils.logging import get_logger

from .errors import (
    CalibrationSessionClosed,
    CalibrationSessionConflict,
    CalibrationSessionExpired,
    CalibrationSessionNotFound,
    LowAudioQuality,
    NoAcceptedSamples,
    NoVoiceActivity,
)
from .features import average_features, extract_utterance
from .models import (
    PARTIES,
    AudioFrame,
    CalibrationSample,
    CalibrationSession,
    CalibrationStep,
    PromptType,
    QualityAnalysis,
    Speaker,
    SpeakerProfile,
    speaker_slot,
)
from .quality import RejectionReason, analyze_quality, recommendation_for, validate_quality
from .scoring import FeatureProjector, OrthonormalProjector, cosine_similarity, l2_normalize

logger = get_logger("diarization.calibration")


@dataclass(frozen=True)
class CalibrationPrompt:
    type: PromptType
    text: str
    instruction: str


PROMPTS: tuple[CalibrationPrompt, ...] = (
    CalibrationPrompt(
        PromptType.NEUTRAL,
        "Привет, это мой обычный голос для настройки распознавания.",
        "Говорите спокойно и естественно",
    ),
    CalibrationPrompt(
        PromptType.HAPPY,
        "Я правда рад, что мы вместе работаем над нашими отношениями!",
        "Говорите с воодушевлением и радостью",
    ),
    CalibrationPrompt(
        PromptType.FRUSTRATED,
        "Иногда мне кажется, что мы не слышим друг друга.",
        "Говорите с лёгким раздражением (без злости)",
    ),
    CalibrationPrompt(
        PromptType.QUESTION,
        "Как ты думаешь, что поможет нам лучше понимать друг друга?",
        "Задайте вопрос естественно, с интересом",
    ),
    CalibrationPrompt(
        PromptType.STATEMENT,
        "Я уверен, что хорошее общение — основа любых отношений.",
        "Произнесите утверждение чётко и уверенно",
    ),
    CalibrationPrompt(
        PromptType.EMOTIONAL,
        "Ты мне очень дорог, и я хочу, чтобы мы справились с этим вместе.",
        "Говорите с искренним чувством",
    ),
)


def prompt_at(index: int) -> CalibrationPrompt:
    return PROMPTS[index % len(PROMPTS)]


@dataclass
class SampleResult:
    """Ответ на запись образца."""

    accepted: bool
    speaker: Speaker
    quality: QualityAnalysis
    progress: dict
    reason: Optional[str] = None
    recommendation: Optional[str] = None
    sample_id: Optional[str] = None
    step: CalibrationStep = CalibrationStep.RECORDING
    next_speaker: Speaker = Speaker.A
    next_prompt: Optional[CalibrationPrompt] = None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "speaker": self.speaker.value,
            "quality_analysis": self.quality.to_dict(),
            "reason": self.reason,
            "recommendation": self.recommendation,
            "sample_id": self.sample_id,
            "progress": self.progress,
            "step": self.step.value,
            "next_speaker": self.next_speaker.value,
            "next_prompt": (
                {
                    "type": self.next_prompt.type.value,
                    "text": self.next_prompt.text,
                    "instruction": self.next_prompt.instruction,
                }
                if self.next_prompt
                else None
            ),
        }


@dataclass
class SpeakerCalibrationResult:
    success: bool
    sample_count: int
    samples_needed: int
    avg_quality: float = 0.0
    profile: Optional[SpeakerProfile] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "sample_count": self.sample_count,
            "samples_needed": self.samples_needed,
            "avg_quality": round(self.avg_quality, 3),
            "profile": self.profile.to_dict() if self.profile else None,
        }


@dataclass
class CompletionResult:
    success: bool
    per_speaker: dict[str, SpeakerCalibrationResult]
    recommendation: str
    message: str
    session_duration_sec: float
    quality_metrics: dict = field(default_factory=dict)

    @property
    def speakers_needing_samples(self) -> list[str]:
        return [name for name, result in self.per_speaker.items() if not result.success]

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "per_speaker": {k: v.to_dict() for k, v in self.per_speaker.items()},
            "recommendation": self.recommendation,
            "message": self.message,
            "session_duration_sec": round(self.session_duration_sec, 2),
            "quality_metrics": self.quality_metrics,
        }


@dataclass(frozen=True)
class SpeakerCalibrationState:
    is_calibrated: bool
    needs_recalibration: bool


@dataclass(frozen=True)
class CalibrationStatus:
    per_speaker: tuple[tuple[str, SpeakerCalibrationState], ...]
    is_ready: bool
    last_calibration_time: Optional[float]

    def for_speaker(self, speaker: Speaker) -> SpeakerCalibrationState:
        return dict(self.per_speaker)[speaker.value]

    def to_dict(self) -> dict:
        return {
            "per_speaker": {
                name: {
                    "is_calibrated": state.is_calibrated,
                    "needs_recalibration": state.needs_recalibration,
                }
                for name, state in self.per_speaker
            },
            "is_ready": self.is_ready,
            "last_calibration_time": self.last_calibration_time,
        }


def build_profile(
    speaker: Speaker,
    samples: list[CalibrationSample],
    config: Optional[Settings] = None,
    now: Optional[float] = None,
) -> SpeakerProfile:
    """Агрегирует принятые образцы одного собеседника в профиль.

    consistency — среднее попарное косинусное сходство эмбеддингов образцов:
    низкое значение значит, что образцы звучат как разные голоса.
    """
    if not samples:
        raise ValueError("Cannot build a profile without samples")
    cfg = config or settings
    now = time.time() if now is None else now

    features = [s.features for s in samples]
    averaged = average_features(features)

    voiced = [f for f in features if f.pitch > 0]
    if voiced:
        lows = [f.pitch - 2 * np.sqrt(f.pitch_variance) for f in voiced]
        highs = [f.pitch + 2 * np.sqrt(f.pitch_variance) for f in voiced]
        pitch_range = (float(max(0.0, min(lows))), float(max(highs)))
        # полная дисперсия = средняя внутри образцов + разброс средних между образцами
        pitch_variance = float(np.mean([f.pitch_variance for f in voiced]) + np.var([f.pitch for f in voiced]))
    else:
        pitch_range = (0.0, 0.0)
        pitch_variance = 0.0

    embeddings = [np.asarray(s.embedding, dtype=np.float64) for s in samples]
    if len(embeddings) > 1:
        consistency = float(np.mean([
            max(0.0, cosine_similarity(a, b)) for a, b in itertools.combinations(embeddings, 2)
        ]))
    else:
        consistency = 1.0

    avg_quality = float(np.mean([s.quality.clarity for s in samples]))
    return SpeakerProfile(
        speaker=speaker,
        pitch_mean=averaged.pitch,
        pitch_range=pitch_range,
        pitch_variance=pitch_variance,
        spectral_signature=averaged.mfcc,
        spectral_shape=np.array([
            averaged.spectral_centroid,
            averaged.spectral_rolloff,
            averaged.spectral_kurtosis,
        ]),
        formants=averaged.formants,
        energy_mean=averaged.energy,
        voiceprint=l2_normalize(np.mean(np.stack(embeddings), axis=0)),
        sample_count=len(samples),
        avg_quality=avg_quality,
        consistency=consistency,
        total_duration_ms=float(sum(s.quality.duration_ms for s in samples)),
        is_complete=len(samples) >= cfg.CALIBRATION_MIN_SAMPLES and avg_quality >= cfg.CALIBRATION_MIN_CLARITY,
        created_at=now,
        updated_at=now,
    )


class CalibrationManager:
    """Сессии калибровки одного разговора и выпущенные ими профили.

    Единственный писатель профилей: детекция только читает `profiles`.
    Одновременно активна не более одной сессии.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        projector: Optional[FeatureProjector] = None,
    ):
        self.config = config or settings
        self.projector = projector or OrthonormalProjector(
            dim=self.config.EMBEDDING_DIM, seed=self.config.EMBEDDING_PROJECTION_SEED
        )
        self._sessions: dict[str, CalibrationSession] = {}
        self._profiles: list[Optional[SpeakerProfile]] = [None, None]
        self._last_calibration_time: Optional[float] = None
        # record_sample вызывается из рабочих потоков (анализ аудио вне цикла событий)
        self._lock = threading.RLock()

    @property
    def profiles(self) -> tuple[Optional[SpeakerProfile], Optional[SpeakerProfile]]:
        return self._profiles[0], self._profiles[1]

    def profile(self, speaker: Speaker) -> Optional[SpeakerProfile]:
        return self._profiles[speaker_slot(speaker)]

    @property
    def active_session(self) -> Optional[CalibrationSession]:
        for session in self._sessions.values():
            if session.is_active and not self._expire_if_stale(session):
                return session
        return None

    def get_session(self, session_id: str) -> CalibrationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise CalibrationSessionNotFound(session_id)
        return session

    def _expire_if_stale(self, session: CalibrationSession, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        if session.is_active and now - session.started_at > self.config.CALIBRATION_SESSION_TTL_SEC:
            self._discard(session, reason="expired")
            return True
        return False

    def _discard(self, session: CalibrationSession, reason: str) -> None:
        dropped = sum(len(slot) for slot in session.samples)
        for slot in session.samples:
            slot.clear()
        session.step = CalibrationStep.ABANDONED
        session.completed_at = time.time()
        logger.info("calibration_session_discarded", session_id=session.session_id, reason=reason, samples=dropped)

    def _require_active(self, session_id: str) -> CalibrationSession:
        session = self.get_session(session_id)
        if not session.is_active:
            raise CalibrationSessionClosed(session_id, session.step.value)
        if self._expire_if_stale(session):
            raise CalibrationSessionExpired(session_id)
        return session

    def start_session(self, session_id: Optional[str] = None) -> CalibrationSession:
        with self._lock:
            active = self.active_session
            if active is not None:
                raise CalibrationSessionConflict(active.session_id)
            session_id = session_id or uuid.uuid4().hex
            if session_id in self._sessions:
                raise CalibrationSessionClosed(session_id, self._sessions[session_id].step.value)

            session = CalibrationSession(session_id=session_id, min_samples=self.config.CALIBRATION_MIN_SAMPLES)
            self._sessions[session_id] = session
        logger.info("calibration_session_started", session_id=session_id)
        return session

    def record_sample(
        self,
        session_id: str,
        frame: AudioFrame,
        prompt_type: Union[PromptType, str, None] = None,
        speaker: Optional[Speaker] = None,
    ) -> SampleResult:
        """Проверяет и записывает образец голоса.

        Raises:
            CalibrationSessionNotFound / CalibrationSessionExpired / CalibrationSessionClosed
            ValueError: speaker не A/B или неизвестный prompt_type
        """
        cfg = self.config
        with self._lock:
            session = self._require_active(session_id)
            speaker = speaker or session.current_speaker
            if not speaker.is_party:
                raise ValueError(f"Calibration speaker must be A or B, got {speaker.value}")
            if prompt_type is None:
                prompt_type = prompt_at(session.prompt_index).type
            prompt_type = PromptType(prompt_type)

        # анализ без блокировки: секунды аудио, LPC на каждом кадре
        quality = analyze_quality(frame.samples, frame.sample_rate)
        rejection: Optional[tuple[str, str]] = None
        features = None
        try:
            validate_quality(quality, cfg)
            features = extract_utterance(frame.samples, frame.sample_rate, cfg)
            if features is None:
                raise NoVoiceActivity("No voiced frames in calibration sample")
        except LowAudioQuality as e:
            rejection = (e.reason, e.recommendation)
        except NoVoiceActivity:
            reason = RejectionReason.NO_VOICE
            rejection = (reason.value, recommendation_for(reason, quality, cfg))

        with self._lock:
            # сессию могли закрыть, пока шёл анализ
            session = self._require_active(session_id)
            if rejection is not None:
                return self._rejected(session, speaker, quality, *rejection)
            return self._accept(session, speaker, prompt_type, features, quality)

    def _accept(
        self,
        session: CalibrationSession,
        speaker: Speaker,
        prompt_type: PromptType,
        features,
        quality: QualityAnalysis,
    ) -> SampleResult:
        sample = CalibrationSample(
            sample_id=uuid.uuid4().hex,
            speaker=speaker,
            prompt_type=prompt_type,
            features=features,
            embedding=self.projector.project(features),
            quality=quality,
        )
        session.samples_for(speaker).append(sample)
        if session.step is CalibrationStep.INSTRUCTIONS:
            session.step = CalibrationStep.RECORDING
        self._advance(session, speaker)

        logger.info(
            "calibration_sample_accepted",
            session_id=session.session_id,
            speaker=speaker.value,
            prompt=prompt_type.value,
            snr_db=round(quality.snr_db, 1),
            clarity=round(quality.clarity, 3),
            collected=len(session.samples_for(speaker)),
        )
        return SampleResult(
            accepted=True,
            speaker=speaker,
            quality=quality,
            progress=session.progress(),
            sample_id=sample.sample_id,
            step=session.step,
            next_speaker=session.current_speaker,
            next_prompt=prompt_at(session.prompt_index),
        )

    def _rejected(
        self,
        session: CalibrationSession,
        speaker: Speaker,
        quality: QualityAnalysis,
        reason: str,
        recommendation: str,
    ) -> SampleResult:
        logger.info(
            "calibration_sample_rejected",
            session_id=session.session_id,
            speaker=speaker.value,
            reason=reason,
            snr_db=round(quality.snr_db, 1),
            clarity=round(quality.clarity, 3),
        )
        return SampleResult(
            accepted=False,
            speaker=speaker,
            quality=quality,
            progress=session.progress(),
            reason=reason,
            recommendation=recommendation,
            step=session.step,
            next_speaker=session.current_speaker,
            next_prompt=prompt_at(session.prompt_index),
        )

    def _advance(self, session: CalibrationSession, speaker: Speaker) -> None:
        session.prompt_index = (session.prompt_index + 1) % len(PROMPTS)
        if all(session.progress_for(s).is_complete for s in PARTIES):
            session.step = CalibrationStep.REVIEW
        elif speaker == session.current_speaker and session.progress_for(speaker).is_complete:
            session.current_speaker = speaker.other
            session.prompt_index = 0
            logger.info("calibration_speaker_switched", session_id=session.session_id, speaker=speaker.other.value)

    def complete_session(self, session_id: str) -> CompletionResult:
        """Собирает профили для собеседников, набравших минимум образцов.

        Raises:
            NoAcceptedSamples: ни одного принятого образца (сессия остаётся открытой)
        """
        with self._lock:
            return self._complete(session_id)

    def _complete(self, session_id: str) -> CompletionResult:
        cfg = self.config
        session = self._require_active(session_id)
        if not any(session.samples):
            raise NoAcceptedSamples(session_id)

        now = time.time()
        per_speaker: dict[str, SpeakerCalibrationResult] = {}
        for speaker in PARTIES:
            samples = session.samples_for(speaker)
            avg_quality = float(np.mean([s.quality.clarity for s in samples])) if samples else 0.0
            profile = None
            if len(samples) >= session.min_samples:
                profile = build_profile(speaker, samples, cfg, now)
                self._profiles[speaker_slot(speaker)] = profile
                logger.info(
                    "speaker_profile_committed",
                    speaker=speaker.value,
                    samples=profile.sample_count,
                    consistency=round(profile.consistency, 3),
                    is_complete=profile.is_complete,
                )
            per_speaker[speaker.value] = SpeakerCalibrationResult(
                success=profile is not None and profile.is_complete,
                sample_count=len(samples),
                samples_needed=session.min_samples,
                avg_quality=avg_quality,
                profile=profile,
            )

        success = all(r.success for r in per_speaker.values())
        missing = [name for name, r in per_speaker.items() if not r.success]
        if success:
            recommendation = "ready_for_conversation"
            message = "Калибровка завершена. Оба голоса готовы к распознаванию."
            if any(r.sample_count < cfg.CALIBRATION_OPTIMAL_SAMPLES for r in per_speaker.values()):
                message += f" Для большей точности запишите до {cfg.CALIBRATION_OPTIMAL_SAMPLES} образцов."
        else:
            recommendation = "needs_more_samples:" + ",".join(missing)
            message = "Нужно больше образцов для собеседника " + ", ".join(missing) + "."

        metrics = session.quality_metrics()
        session.step = CalibrationStep.COMPLETE
        session.completed_at = now
        if any(r.profile is not None for r in per_speaker.values()):
            self._last_calibration_time = now

        logger.info(
            "calibration_session_completed",
            session_id=session_id,
            success=success,
            missing=missing,
        )
        return CompletionResult(
            success=success,
            per_speaker=per_speaker,
            recommendation=recommendation,
            message=message,
            session_duration_sec=now - session.started_at,
            quality_metrics=metrics,
        )

    def abandon_session(self, session_id: str) -> None:
        with self._lock:
            session = self.get_session(session_id)
            if not session.is_active:
                raise CalibrationSessionClosed(session_id, session.step.value)
            self._discard(session, reason="abandoned")

    def status(self, now: Optional[float] = None) -> CalibrationStatus:
        """Состояние калибровки. Чистое чтение: повторный вызов даёт тот же результат."""
        cfg = self.config
        now = time.time() if now is None else now
        states = []
        for speaker in PARTIES:
            profile = self.profile(speaker)
            if profile is None:
                state = SpeakerCalibrationState(is_calibrated=False, needs_recalibration=True)
            else:
                stale = profile.needs_recalibration(now, cfg.PROFILE_RETENTION_DAYS, cfg.CALIBRATION_MIN_CLARITY)
                state = SpeakerCalibrationState(
                    is_calibrated=profile.is_complete and not stale,
                    needs_recalibration=stale,
                )
            states.append((speaker.value, state))
        return CalibrationStatus(
            per_speaker=tuple(states),
            is_ready=all(state.is_calibrated for _, state in states),
            last_calibration_time=self._last_calibration_time,
        )

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._profiles = [None, None]
            self._last_calibration_time = None
