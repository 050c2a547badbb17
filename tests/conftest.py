"""Root conftest — общие фикстуры для тестов диаризации.

Сигналы строятся в tests/fixtures/voices.py (синтетические голоса A и B).
"""
from __future__ import annotations

from typing import Callable

import numpy as np
import pytest

from tests.fixtures.voices import FRAME_SAMPLES, SAMPLE_RATE, speaker_frame_samples, speaker_utterance


@pytest.fixture
def test_settings():
    """Копия настроек с щедрыми бюджетами времени.

    ПОЧЕМУ: на медленном CI поток может стартовать дольше 100ms,
    а тесты проверяют логику слияния, а не скорость машины.
    """
    from src.utils.config import settings

    return settings.model_copy(update={
        "FUSION_BUDGET_HEURISTIC_SEC": 2.0,
        "FUSION_BUDGET_EMBEDDING_SEC": 2.0,
        "FUSION_BUDGET_PATTERN_SEC": 2.0,
        "DETECTION_CYCLE_DEADLINE_SEC": 5.0,
    })


@pytest.fixture
def make_utterance() -> Callable[..., np.ndarray]:
    """Фабрика образцов калибровки: 3.5 с речи со слогами и паузами."""
    return speaker_utterance


@pytest.fixture
def make_frame():
    """Фабрика живых 30ms кадров сплошной речи."""
    from src.diarization.models import AudioFrame

    def _make(speaker: str = "A", seed: int = 0, timestamp: float = 0.0) -> AudioFrame:
        return AudioFrame(speaker_frame_samples(speaker, seed), sample_rate=SAMPLE_RATE, timestamp=timestamp)
    return _make


@pytest.fixture
def silence_frame():
    from src.diarization.models import AudioFrame

    return AudioFrame(np.zeros(FRAME_SAMPLES, dtype=np.float32), sample_rate=SAMPLE_RATE, timestamp=0.0)


@pytest.fixture
def noise_frame():
    """Белый шум: громкий, но не речь (ZCR и centroid вне диапазона)."""
    from src.diarization.models import AudioFrame

    rng = np.random.default_rng(7)
    samples = rng.normal(0.0, 0.1, FRAME_SAMPLES).astype(np.float32)
    return AudioFrame(samples, sample_rate=SAMPLE_RATE, timestamp=0.0)


@pytest.fixture
def calibrated_engine(test_settings):
    """Движок, откалиброванный по 3 чистым образцам каждого собеседника."""
    from src.diarization.engine import DiarizationEngine
    from src.diarization.models import AudioFrame, Speaker

    engine = DiarizationEngine("calibrated", config=test_settings)
    session = engine.start_calibration_session()
    for speaker in (Speaker.A, Speaker.B):
        for seed in range(3):
            samples = speaker_utterance(speaker.value, seed=seed)
            result = engine.record_calibration_sample(
                session.session_id, AudioFrame(samples, SAMPLE_RATE), speaker=speaker
            )
            assert result.accepted, result.reason
    assert engine.complete_calibration_session(session.session_id).success
    return engine


@pytest.fixture(autouse=True)
def clean_registry():
    """Глобальный реестр разговоров не переживает тест."""
    from src.diarization.registry import get_registry

    get_registry().clear()
    yield
    get_registry().clear()
