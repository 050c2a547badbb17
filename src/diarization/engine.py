"""DiarizationEngine — ансамбль оценщиков для одного разговора.

Цикл детекции:
    AudioFrame
      → FeatureExtractor (VAD)         нет речи → undetermined, оценщики не вызываются
      → эмбеддинг (один раз на кадр)
      → снимок контекста (профили, последние реплики, текст)
      → heuristic ┐
        embedding ├ параллельно, каждый в своём бюджете времени
        pattern   ┘
      → взвешенное слияние голосов + бонусы очерёдности
      → commit: обучение оценщиков, история реплик (единственный писатель)

ПОЧЕМУ запись только в commit-фазе:
    predict() выполняется в потоках и может пережить свой таймаут.
    Всё состояние меняется последовательно после слияния, поэтому
    опоздавший оценщик не может ничего испортить.

Обратная связь (provide_feedback) переоценивает каждый оценщик на кадре
с истинной меткой, обновляет скользящую точность и адаптивные веса.
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from enum import Enum
from typing import Optional, Union

import numpy as np

from src.utils.config import Settings, settings
from src.utils.logging import get_logger

from .base import EstimationContext, Estimator
from .calibration import CalibrationManager, CalibrationStatus, CompletionResult, SampleResult
from .embedding import EmbeddingEstimator
from .errors import EstimatorFailure, EstimatorTimeout
from .features import FeatureExtractor
from .heuristic import HeuristicEstimator
from .models import (
    METHODS,
    PARTIES,
    AudioFrame,
    CalibrationSession,
    DetectionQuality,
    DetectionResult,
    EstimatorVote,
    FeatureVector,
    Method,
    MethodContribution,
    PromptType,
    Speaker,
    SpeakerProfile,
    VoiceEmbedding,
    speaker_slot,
)
from .patterns import PatternEstimator
from .weights import AdaptiveWeights, MethodStats

logger = get_logger("diarization.engine")


class EngineState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    FEEDBACK_APPLIED = "feedback_applied"


Outcome = tuple[Method, Optional[EstimatorVote], Optional[Exception]]


class DiarizationEngine:
    """Определение говорящего (A/B) для одного разговора.

    Пример:
        engine = DiarizationEngine("conv-1")
        result = await engine.detect(AudioFrame(samples))
        engine.provide_feedback(frame, result.speaker, Speaker.A)
    """

    def __init__(
        self,
        conversation_id: str = "default",
        config: Optional[Settings] = None,
        heuristic: Optional[Estimator] = None,
        embedding: Optional[EmbeddingEstimator] = None,
        pattern: Optional[Estimator] = None,
    ):
        cfg = config or settings
        self.conversation_id = conversation_id
        self.config = cfg
        self.extractor = FeatureExtractor(cfg)
        # история экстрактора меняется в рабочем потоке detect()
        self._extract_lock = threading.Lock()
        self.heuristic = heuristic or HeuristicEstimator(cfg)
        self.embedding = embedding or EmbeddingEstimator(cfg)
        self.pattern = pattern or PatternEstimator(cfg)
        self._estimators: dict[Method, Estimator] = {
            Method.HEURISTIC: self.heuristic,
            Method.EMBEDDING: self.embedding,
            Method.PATTERN: self.pattern,
        }
        self.calibration = CalibrationManager(cfg, projector=self.embedding.projector)
        self.weights = AdaptiveWeights(
            {
                Method.HEURISTIC: cfg.WEIGHT_INITIAL_HEURISTIC,
                Method.EMBEDDING: cfg.WEIGHT_INITIAL_EMBEDDING,
                Method.PATTERN: cfg.WEIGHT_INITIAL_PATTERN,
            },
            floor=cfg.WEIGHT_FLOOR,
            ceiling=cfg.WEIGHT_CEILING,
            rate=cfg.ADAPTATION_RATE,
        )
        self._init_conversation_state()

    def _init_conversation_state(self) -> None:
        cfg = self.config
        self.state = EngineState.IDLE
        self.total_detections = 0
        self.feedback_count = 0
        self._method_stats = {m: MethodStats(cfg.PERFORMANCE_WINDOW) for m in METHODS}
        self._disabled: set[Method] = set()
        self._ensemble_outcomes: deque[bool] = deque(maxlen=cfg.PERFORMANCE_WINDOW)
        self._detection_confidences: deque[float] = deque(maxlen=cfg.PERFORMANCE_WINDOW)
        self._turns: deque[Speaker] = deque(maxlen=cfg.PATTERN_CONTEXT_WINDOW)
        self._last_accepted: Optional[tuple[Speaker, float]] = None

    # ═══════════════════════════════════════════════════════════
    # Состояние
    # ═══════════════════════════════════════════════════════════

    @property
    def profiles(self) -> tuple[Optional[SpeakerProfile], Optional[SpeakerProfile]]:
        return self.calibration.profiles

    @property
    def disabled_methods(self) -> frozenset[Method]:
        return frozenset(self._disabled)

    @property
    def recent_turns(self) -> list[Speaker]:
        return list(self._turns)

    def method_stats(self, method: Method) -> MethodStats:
        return self._method_stats[method]

    def _snapshot(self, text: str = "", now: Optional[float] = None) -> EstimationContext:
        return EstimationContext(
            text=text or "",
            profiles=self.calibration.profiles,
            recent_turns=tuple(self._turns),
            now=time.time() if now is None else now,
        )

    def _budget(self, method: Method) -> float:
        cfg = self.config
        return {
            Method.HEURISTIC: cfg.FUSION_BUDGET_HEURISTIC_SEC,
            Method.EMBEDDING: cfg.FUSION_BUDGET_EMBEDDING_SEC,
            Method.PATTERN: cfg.FUSION_BUDGET_PATTERN_SEC,
        }[method]

    def _min_confidence(self, method: Method) -> float:
        cfg = self.config
        return {
            Method.HEURISTIC: cfg.FUSION_MIN_CONFIDENCE_HEURISTIC,
            Method.EMBEDDING: cfg.FUSION_MIN_CONFIDENCE_EMBEDDING,
            Method.PATTERN: cfg.FUSION_MIN_CONFIDENCE_PATTERN,
        }[method]

    # ═══════════════════════════════════════════════════════════
    # Детекция
    # ═══════════════════════════════════════════════════════════

    async def detect(self, frame: AudioFrame, context: str = "") -> DetectionResult:
        """Определяет говорящего в кадре.

        Никогда не бросает из-за оценщиков: таймауты и ошибки превращаются
        в статус вклада, отсутствие консенсуса — в undetermined с уверенностью 0.
        """
        self.state = EngineState.DETECTING
        features, embedding = await asyncio.to_thread(self._extract, frame)
        if features is None:
            return DetectionResult(
                speaker=Speaker.UNDETERMINED,
                confidence=0.0,
                reasoning="Нет речевой активности",
                timestamp=frame.timestamp,
                voice_activity=False,
            )

        snapshot = self._snapshot(context)
        outcomes = await asyncio.gather(*(
            self._run_estimator(method, features, embedding, snapshot)
            for method in METHODS
            if method not in self._disabled
        ))
        result = self._fuse(list(outcomes), frame.timestamp)
        self._commit(features, embedding, result, list(outcomes), snapshot)
        return result

    def _extract(self, frame: AudioFrame) -> tuple[Optional[FeatureVector], Optional[VoiceEmbedding]]:
        """FFT, LPC и проекция: CPU-работа, выполняется вне цикла событий."""
        with self._extract_lock:
            features = self.extractor.extract(frame)
        if features is None:
            return None, None
        return features, self.embedding.embed(features)

    async def _run_estimator(
        self,
        method: Method,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        snapshot: EstimationContext,
    ) -> Outcome:
        estimator = self._estimators[method]
        budget = self._budget(method)
        try:
            vote = await asyncio.wait_for(
                asyncio.to_thread(estimator.predict, features, embedding, snapshot),
                timeout=budget,
            )
            return method, vote, None
        except asyncio.TimeoutError:
            logger.warning("estimator_timeout", method=method.value, budget_ms=round(budget * 1000))
            return method, None, EstimatorTimeout(method.value, budget)
        except Exception as e:
            logger.warning("estimator_failed", method=method.value, error=str(e))
            return method, None, EstimatorFailure(method.value, e)

    def _fuse(self, outcomes: list[Outcome], timestamp: float) -> DetectionResult:
        """Взвешенное голосование: score(s) = Σ conf·w / Σ w по проголосовавшим."""
        by_method = {method: (vote, error) for method, vote, error in outcomes}
        contributions: list[MethodContribution] = []
        voters: list[tuple[Method, EstimatorVote, float]] = []
        timings: list[float] = []

        for method in METHODS:
            weight = self.weights[method]
            if method in self._disabled:
                contributions.append(MethodContribution(method, "disabled", weight=weight))
                continue
            vote, error = by_method.get(method, (None, None))
            if vote is None:
                status = "timeout" if isinstance(error, EstimatorTimeout) else "failed"
                contributions.append(MethodContribution(method, status, weight=weight))
                continue

            timings.append(vote.processing_ms)
            voted = vote.speaker.is_party and vote.confidence >= self._min_confidence(method)
            contributions.append(MethodContribution(
                method,
                "voted" if voted else "abstained",
                speaker=vote.speaker,
                confidence=vote.confidence,
                weight=weight,
                processing_ms=vote.processing_ms,
            ))
            if voted:
                voters.append((method, vote, weight))

        quality = DetectionQuality(
            methods_used=len(voters),
            avg_processing_ms=float(np.mean(timings)) if timings else 0.0,
            confidence_variance=float(np.var([v.confidence for _, v, _ in voters])) if voters else 0.0,
        )
        if not voters:
            return DetectionResult(
                speaker=Speaker.UNDETERMINED,
                confidence=0.0,
                contributions=contributions,
                reasoning="Ни один оценщик не уверен",
                timestamp=timestamp,
                quality=quality,
            )

        totals = np.zeros(2)
        weight_sum = sum(w for _, _, w in voters)
        for _, vote, weight in voters:
            totals[speaker_slot(vote.speaker)] += vote.confidence * weight
        scores = totals / weight_sum
        speaker = PARTIES[int(np.argmax(scores))]
        bonus = self._turn_bonus(speaker, timestamp)
        confidence = float(np.clip(scores[speaker_slot(speaker)] + bonus, 0.0, 1.0))
        quality.consensus = sum(1 for _, v, _ in voters if v.speaker == speaker) / len(voters)

        reasoning = ", ".join(f"{m.value}={v.speaker.value}:{v.confidence:.2f}×{w:.2f}" for m, v, w in voters)
        if bonus:
            reasoning += f", контекст +{bonus:.2f}"

        if confidence < self.config.FUSION_CONFIDENCE_MIN:
            return DetectionResult(
                speaker=Speaker.UNDETERMINED,
                confidence=0.0,
                contributions=contributions,
                reasoning=f"Нет консенсуса ({speaker.value}={confidence:.2f}): {reasoning}",
                timestamp=timestamp,
                quality=quality,
            )
        return DetectionResult(
            speaker=speaker,
            confidence=confidence,
            contributions=contributions,
            reasoning=reasoning,
            timestamp=timestamp,
            quality=quality,
        )

    def _turn_bonus(self, speaker: Speaker, timestamp: float) -> float:
        """Бонус продолжения реплики без паузы или смены собеседника после паузы."""
        if self._last_accepted is None:
            return 0.0
        last_speaker, last_at = self._last_accepted
        gap = timestamp - last_at
        if speaker == last_speaker and gap <= self.config.TURN_PAUSE_SEC:
            return self.config.FUSION_RECENCY_BONUS
        if speaker != last_speaker and gap > self.config.TURN_PAUSE_SEC:
            return self.config.FUSION_TURN_BONUS
        return 0.0

    def _commit(
        self,
        features: FeatureVector,
        embedding: VoiceEmbedding,
        result: DetectionResult,
        outcomes: list[Outcome],
        snapshot: EstimationContext,
    ) -> None:
        self.total_detections += 1
        self._detection_confidences.append(result.confidence)
        for method, vote, _ in outcomes:
            if vote is not None:
                self._method_stats[method].record_timing(vote.confidence, vote.processing_ms)

        if not result.speaker.is_party:
            logger.debug("detection_undetermined", conversation_id=self.conversation_id, reasoning=result.reasoning)
            return

        for method, estimator in self._estimators.items():
            try:
                estimator.observe(features, embedding, result.speaker, result.confidence, snapshot)
            except Exception as e:
                logger.error("estimator_observe_failed", method=method.value, error=str(e))

        for method, vote, _ in outcomes:
            if method is Method.PATTERN and vote is not None and isinstance(self.pattern, PatternEstimator):
                self.pattern.record_usage(vote.details.get("matched_ids", []), result.speaker, snapshot.now)

        if not self._turns or self._turns[-1] != result.speaker:
            self._turns.append(result.speaker)
        self._last_accepted = (result.speaker, result.timestamp)
        logger.debug(
            "speaker_detected",
            conversation_id=self.conversation_id,
            speaker=result.speaker.value,
            confidence=round(result.confidence, 3),
            methods_used=result.quality.methods_used,
        )

    # ═══════════════════════════════════════════════════════════
    # Обратная связь
    # ═══════════════════════════════════════════════════════════

    def provide_feedback(
        self,
        frame: AudioFrame,
        predicted: Speaker,
        actual: Speaker,
        context: str = "",
    ) -> None:
        """Учитывает истинную метку кадра.

        Args:
            frame: кадр, по которому была детекция
            predicted: что выдал ансамбль (в т.ч. undetermined)
            actual: истинный собеседник (A или B)
            context: текст/транскрипт вокруг кадра

        Raises:
            ValueError: actual не A/B
        """
        if not actual.is_party:
            raise ValueError(f"Feedback label must be A or B, got {actual.value}")

        self.feedback_count += 1
        self._ensemble_outcomes.append(predicted == actual)

        # отдельный экстрактор: история живого потока не должна зависеть от обратной связи
        features = FeatureExtractor(self.config).extract(frame)
        if features is None:
            logger.info("feedback_without_voice", conversation_id=self.conversation_id)
            self.state = EngineState.FEEDBACK_APPLIED
            return

        embedding = self.embedding.embed(features)
        snapshot = self._snapshot(context)
        for method, estimator in self._estimators.items():
            try:
                vote = estimator.predict(features, embedding, snapshot)
            except Exception as e:
                logger.warning("feedback_evaluation_failed", method=method.value, error=str(e))
                continue
            if vote.speaker.is_party:
                self._method_stats[method].record_outcome(vote.speaker == actual)

        self._adapt_weights()
        self._update_disabled()

        for method, estimator in self._estimators.items():
            try:
                estimator.learn(features, embedding, actual, snapshot, predicted)
            except Exception as e:
                logger.error("estimator_learn_failed", method=method.value, error=str(e))

        self._correct_turns(predicted, actual)
        self.state = EngineState.FEEDBACK_APPLIED
        logger.info(
            "feedback_applied",
            conversation_id=self.conversation_id,
            predicted=predicted.value,
            actual=actual.value,
            weights={m.value: round(w, 3) for m, w in self.weights.as_dict().items()},
        )

    def _adapt_weights(self) -> None:
        cfg = self.config
        if len(self._ensemble_outcomes) < cfg.ADAPTATION_MIN_OBSERVATIONS:
            return
        overall = sum(self._ensemble_outcomes) / len(self._ensemble_outcomes)
        accuracies: dict[Method, Optional[float]] = {}
        for method, stats in self._method_stats.items():
            accuracies[method] = stats.success_rate if stats.observations >= cfg.ADAPTATION_MIN_OBSERVATIONS else None
        self.weights.adapt(accuracies, overall)

    def _update_disabled(self) -> None:
        cfg = self.config
        failing = {
            m for m, stats in self._method_stats.items()
            if stats.observations >= cfg.DISABLE_MIN_OBSERVATIONS and stats.success_rate < cfg.DISABLE_SUCCESS_RATE
        }
        if failing == set(METHODS):
            # хотя бы один оценщик остаётся включённым
            failing.discard(max(METHODS, key=lambda m: self._method_stats[m].success_rate))

        for method in failing - self._disabled:
            logger.warning(
                "estimator_disabled",
                method=method.value,
                success_rate=round(self._method_stats[method].success_rate, 3),
            )
        for method in self._disabled - failing:
            logger.info("estimator_reenabled", method=method.value)
        self._disabled = failing

    def _correct_turns(self, predicted: Speaker, actual: Speaker) -> None:
        if predicted == actual or not self._turns or self._turns[-1] != predicted:
            return
        self._turns[-1] = actual
        if len(self._turns) >= 2 and self._turns[-2] == actual:
            self._turns.pop()
        if self._last_accepted is not None and self._last_accepted[0] == predicted:
            self._last_accepted = (actual, self._last_accepted[1])

    # ═══════════════════════════════════════════════════════════
    # Статистика
    # ═══════════════════════════════════════════════════════════

    def stats(self) -> dict:
        overall = (
            sum(self._ensemble_outcomes) / len(self._ensemble_outcomes) if self._ensemble_outcomes else 0.0
        )
        weights = self.weights.as_dict()
        return {
            "conversation_id": self.conversation_id,
            "state": self.state.value,
            "total_detections": self.total_detections,
            "feedback_count": self.feedback_count,
            "overall_accuracy": round(overall, 3),
            "is_adapting": self.feedback_count >= self.config.ADAPTATION_MIN_OBSERVATIONS,
            "recent_turns": [t.value for t in self._turns],
            "methods": {
                m.value: {
                    "enabled": m not in self._disabled,
                    "weight": round(weights[m], 4),
                    "success_rate": round(self._method_stats[m].success_rate, 3),
                    "observations": self._method_stats[m].observations,
                    "avg_confidence": round(self._method_stats[m].avg_confidence, 3),
                    "avg_processing_ms": round(self._method_stats[m].avg_processing_ms, 2),
                }
                for m in METHODS
            },
            "patterns": (
                self.pattern.stats(turn_history_size=len(self._turns))
                if isinstance(self.pattern, PatternEstimator)
                else {}
            ),
        }

    def should_recalibrate(self, now: Optional[float] = None) -> dict:
        cfg = self.config
        now = time.time() if now is None else now
        profiles = self.calibration.profiles

        # один откалиброванный собеседник ещё не позволяет различать двоих
        if any(p is None or not p.is_complete for p in profiles):
            reason, priority = "no_calibration", "high"
        elif any(
            p.needs_recalibration(now, cfg.PROFILE_RETENTION_DAYS, cfg.CALIBRATION_MIN_CLARITY)
            for p in profiles
        ):
            reason, priority = "profile_expired", "medium"
        elif (
            self.total_detections > cfg.RECALIBRATION_MIN_DETECTIONS
            and float(np.mean(self._detection_confidences)) < cfg.RECALIBRATION_MIN_ACCURACY
        ):
            reason, priority = "low_accuracy", "medium"
        else:
            reason, priority = "profile_current", "low"
        return {
            "should_recalibrate": reason != "profile_current",
            "reason": reason,
            "priority": priority,
        }

    def reset(self) -> None:
        """Сбрасывает обучение разговора. Профили калибровки сохраняются."""
        with self._extract_lock:
            self.extractor.reset()
        for estimator in self._estimators.values():
            estimator.reset()
        self.weights.reset()
        self._init_conversation_state()
        logger.info("engine_reset", conversation_id=self.conversation_id)

    # ═══════════════════════════════════════════════════════════
    # Калибровка
    # ═══════════════════════════════════════════════════════════

    def start_calibration_session(self, session_id: Optional[str] = None) -> CalibrationSession:
        return self.calibration.start_session(session_id)

    def record_calibration_sample(
        self,
        session_id: str,
        frame: AudioFrame,
        prompt_type: Union[PromptType, str, None] = None,
        speaker: Optional[Speaker] = None,
    ) -> SampleResult:
        return self.calibration.record_sample(session_id, frame, prompt_type, speaker)

    def complete_calibration_session(self, session_id: str) -> CompletionResult:
        return self.calibration.complete_session(session_id)

    def abandon_calibration_session(self, session_id: str) -> None:
        self.calibration.abandon_session(session_id)

    def get_calibration_status(self, now: Optional[float] = None) -> CalibrationStatus:
        return self.calibration.status(now)
