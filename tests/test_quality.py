"""Тесты анализа качества образцов калибровки (quality.py)."""
from __future__ import annotations

import numpy as np
import pytest

from tests.fixtures.voices import SAMPLE_RATE


class TestAnalyzeQuality:
    def test_clean_utterance_metrics(self, make_utterance):
        from src.diarization.quality import analyze_quality
        q = analyze_quality(make_utterance("A"), SAMPLE_RATE)
        assert q.duration_ms == pytest.approx(3500.0)
        assert q.snr_db > 20.0
        assert 0.0 < q.rms < q.peak
        assert 0.0 <= q.clarity <= 1.0

    def test_noisy_utterance_low_snr(self, make_utterance):
        from src.diarization.quality import analyze_quality
        q = analyze_quality(make_utterance("A", noise_std=0.1), SAMPLE_RATE)
        assert q.snr_db < 10.0

    def test_steady_voice_without_pauses_is_clean(self, test_settings):
        """Сплошная речь без пауз: шумовой пол не должен совпасть с голосом."""
        from src.diarization.quality import analyze_quality, validate_quality
        from tests.fixtures.voices import harmonic_voice

        samples = harmonic_voice(120.0, 1.0, int(3.5 * SAMPLE_RATE), pause_ms=0, noise_std=0.002)
        q = analyze_quality(samples, SAMPLE_RATE)
        assert q.snr_db > 25.0
        validate_quality(q, test_settings)

    def test_steady_voice_in_noise_is_noisy(self):
        from src.diarization.quality import estimate_snr_db
        from tests.fixtures.voices import harmonic_voice

        samples = harmonic_voice(220.0, 0.7, int(3.5 * SAMPLE_RATE), pause_ms=0, noise_std=0.1)
        assert estimate_snr_db(samples, SAMPLE_RATE) < 10.0

    def test_constant_noise_has_no_snr(self):
        """Белый шум: весь спектр на уровне пола → SNR около 0."""
        from src.diarization.quality import estimate_snr_db
        rng = np.random.default_rng(0)
        assert estimate_snr_db(rng.normal(0, 0.1, SAMPLE_RATE * 3), SAMPLE_RATE) < 3.0

    def test_silence_snr_clipped(self):
        from src.diarization.quality import SNR_MAX_DB, SNR_MIN_DB, estimate_snr_db
        snr = estimate_snr_db(np.zeros(SAMPLE_RATE), SAMPLE_RATE)
        assert SNR_MIN_DB <= snr <= SNR_MAX_DB


class TestValidateQuality:
    def test_clean_sample_passes(self, make_utterance, test_settings):
        from src.diarization.quality import analyze_quality, validate_quality
        validate_quality(analyze_quality(make_utterance("B"), SAMPLE_RATE), test_settings)

    @pytest.mark.parametrize(
        "samples, reason",
        [
            (lambda u: u("A", seconds=1.0), "too_short"),
            (lambda u: u("A") * 0.01, "too_quiet"),
            (lambda u: u("A", noise_std=0.1), "too_noisy"),
        ],
    )
    def test_rejection_reasons(self, make_utterance, test_settings, samples, reason):
        from src.diarization.errors import LowAudioQuality
        from src.diarization.quality import analyze_quality, validate_quality

        with pytest.raises(LowAudioQuality) as exc_info:
            validate_quality(analyze_quality(samples(make_utterance), SAMPLE_RATE), test_settings)
        assert exc_info.value.reason == reason
        assert exc_info.value.recommendation
        assert exc_info.value.quality is not None

    def test_low_clarity(self, test_settings):
        from src.diarization.errors import LowAudioQuality
        from src.diarization.models import QualityAnalysis
        from src.diarization.quality import validate_quality

        q = QualityAnalysis(rms=0.011, peak=0.012, snr_db=30.0, clarity=0.1, dynamic_range_db=1.0, duration_ms=4000)
        with pytest.raises(LowAudioQuality) as exc_info:
            validate_quality(q, test_settings)
        assert exc_info.value.reason == "low_clarity"

    def test_recommendation_mentions_duration(self, test_settings):
        from src.diarization.models import QualityAnalysis
        from src.diarization.quality import RejectionReason, recommendation_for

        q = QualityAnalysis(rms=0.1, peak=0.3, snr_db=30.0, clarity=1.0, dynamic_range_db=9.5, duration_ms=1200)
        assert "1.2" in recommendation_for(RejectionReason.TOO_SHORT, q, test_settings)
