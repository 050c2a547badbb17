"""Тесты извлечения признаков: amplitude.py, features.py.

Проверяем на синтетике с известными свойствами: f0, тишина, белый шум.
"""
from __future__ import annotations

import numpy as np
import pytest

from tests.fixtures.voices import SAMPLE_RATE, harmonic_voice


# ═══════════════════════════════════════════════════════════════════════════
# amplitude.py
# ═══════════════════════════════════════════════════════════════════════════

class TestAmplitude:
    def test_compute_rms_sine(self):
        from src.diarization.amplitude import compute_rms
        # Синус амплитудой 0.5 → RMS = 0.5/sqrt(2) ≈ 0.354
        t = np.linspace(0, 1.0, 16000, dtype=np.float32)
        audio = 0.5 * np.sin(2 * np.pi * 440 * t)
        assert abs(compute_rms(audio) - 0.5 / (2 ** 0.5)) < 0.01

    def test_compute_rms_empty(self):
        from src.diarization.amplitude import compute_rms
        assert compute_rms(np.array([], dtype=np.float32)) == 0.0

    def test_zero_crossing_rate_of_sine(self):
        from src.diarization.amplitude import zero_crossing_rate
        # 100 Hz за 1 с → ~200 пересечений на 16000 отсчётов
        t = np.arange(16000) / 16000
        audio = np.sin(2 * np.pi * 100 * t + 0.1)
        assert zero_crossing_rate(audio) == pytest.approx(200 / 15999, rel=0.02)

    def test_amplitude_gate(self):
        from src.diarization.amplitude import passes_amplitude_gate
        assert passes_amplitude_gate(np.zeros(100, dtype=np.float32)) is False
        assert passes_amplitude_gate(np.full(100, 0.5, dtype=np.float32)) is True

    def test_frame_signal_drops_tail(self):
        from src.diarization.amplitude import frame_signal
        frames = frame_signal(np.arange(1000, dtype=np.float32), 480)
        assert frames.shape == (2, 480)
        assert frame_signal(np.zeros(100, dtype=np.float32), 480).shape[0] == 0


# ═══════════════════════════════════════════════════════════════════════════
# features.py: примитивы
# ═══════════════════════════════════════════════════════════════════════════

class TestPrimitives:
    @pytest.mark.parametrize("f0", [120.0, 220.0])
    def test_pitch_of_harmonic_voice(self, f0):
        from src.diarization.features import estimate_pitch
        samples = harmonic_voice(f0, 1.0, 480, pause_ms=0)
        assert estimate_pitch(samples, SAMPLE_RATE) == pytest.approx(f0, rel=0.05)

    def test_pitch_of_noise_is_unvoiced(self):
        from src.diarization.features import estimate_pitch
        rng = np.random.default_rng(3)
        noise = rng.normal(0, 0.1, 480)
        assert estimate_pitch(noise, SAMPLE_RATE) == 0.0

    def test_mfcc_shape(self):
        from src.diarization.features import compute_mfcc, magnitude_spectrum
        mags, _, n_fft = magnitude_spectrum(harmonic_voice(120, 1.0, 480, pause_ms=0), SAMPLE_RATE)
        mfcc = compute_mfcc(mags, SAMPLE_RATE, n_fft, n_mfcc=13, n_mels=26)
        assert mfcc.shape == (13,)
        assert np.all(np.isfinite(mfcc))

    def test_centroid_tracks_brightness(self):
        from src.diarization.features import magnitude_spectrum, spectral_shape
        dark, freqs, _ = magnitude_spectrum(harmonic_voice(120, 1.0, 480, pause_ms=0), SAMPLE_RATE)
        bright, _, _ = magnitude_spectrum(harmonic_voice(120, 0.3, 480, pause_ms=0), SAMPLE_RATE)
        assert spectral_shape(bright, freqs)[0] > spectral_shape(dark, freqs)[0]

    def test_spectral_flux_first_frame_zero(self):
        from src.diarization.features import spectral_flux
        assert spectral_flux(np.ones(10), None) == 0.0
        assert spectral_flux(np.ones(10), np.ones(10)) == pytest.approx(0.0)

    def test_formants_in_speech_band(self):
        from src.diarization.features import estimate_formants
        formants = estimate_formants(harmonic_voice(120, 1.0, 480, pause_ms=0), SAMPLE_RATE)
        assert formants.shape == (4,)
        found = formants[formants > 0]
        assert np.all((found > 90) & (found < 5000))
        assert np.all(np.diff(found) >= 0)

    def test_formants_of_silence(self):
        from src.diarization.features import estimate_formants
        assert np.all(estimate_formants(np.zeros(480), SAMPLE_RATE) == 0)


# ═══════════════════════════════════════════════════════════════════════════
# FeatureExtractor + VAD
# ═══════════════════════════════════════════════════════════════════════════

class TestFeatureExtractor:
    def test_voice_frame_extracted(self, make_frame, test_settings):
        from src.diarization.features import FeatureExtractor
        features = FeatureExtractor(test_settings).extract(make_frame("A"))
        assert features is not None
        assert features.is_voiced
        assert features.pitch == pytest.approx(120.0, rel=0.05)
        assert features.mfcc.shape == (13,)
        assert features.formants.shape == (4,)

    def test_silence_rejected(self, silence_frame, test_settings):
        from src.diarization.features import FeatureExtractor
        assert FeatureExtractor(test_settings).extract(silence_frame) is None

    def test_quiet_voice_rejected_by_amplitude_gate(self, make_frame, test_settings):
        """Голос ниже VAD_ENERGY_MIN отсекается до спектрального анализа."""
        from src.diarization.amplitude import passes_amplitude_gate
        from src.diarization.features import FeatureExtractor
        from src.diarization.models import AudioFrame

        loud = make_frame("A")
        quiet = AudioFrame(loud.samples * 0.02, loud.sample_rate)
        assert not passes_amplitude_gate(quiet.samples, test_settings.VAD_ENERGY_MIN)
        assert FeatureExtractor(test_settings).extract(quiet) is None
        # порог берётся из настроек, а не из значения по умолчанию
        lenient = test_settings.model_copy(update={"VAD_ENERGY_MIN": 0.001})
        assert FeatureExtractor(lenient).extract(quiet) is not None

    def test_white_noise_rejected_by_vad(self, noise_frame, test_settings):
        """Громкий шум проходит по энергии, но не по ZCR/centroid."""
        from src.diarization.features import FeatureExtractor
        assert FeatureExtractor(test_settings).extract(noise_frame) is None

    def test_history_bounded(self, make_frame, test_settings):
        from src.diarization.features import FeatureExtractor
        extractor = FeatureExtractor(test_settings)
        for i in range(test_settings.FEATURE_HISTORY_FRAMES + 5):
            extractor.extract(make_frame("A", seed=i))
        assert len(extractor.history) == test_settings.FEATURE_HISTORY_FRAMES

    def test_flux_uses_previous_frame(self, make_frame, test_settings):
        from src.diarization.features import FeatureExtractor
        extractor = FeatureExtractor(test_settings)
        first = extractor.extract(make_frame("A", seed=1))
        second = extractor.extract(make_frame("B", seed=2))
        assert first.spectral_flux == 0.0
        assert second.spectral_flux > 0.0

    def test_reset_clears_history(self, make_frame, test_settings):
        from src.diarization.features import FeatureExtractor
        extractor = FeatureExtractor(test_settings)
        extractor.extract(make_frame("A"))
        extractor.reset()
        assert extractor.history == []


class TestUtterance:
    def test_extract_utterance_averages_voiced_frames(self, make_utterance, test_settings):
        from src.diarization.features import extract_utterance
        features = extract_utterance(make_utterance("B"), SAMPLE_RATE, test_settings)
        assert features is not None
        assert features.pitch == pytest.approx(220.0, rel=0.05)

    def test_extract_utterance_of_silence(self, test_settings):
        from src.diarization.features import extract_utterance
        assert extract_utterance(np.zeros(SAMPLE_RATE, dtype=np.float32), SAMPLE_RATE, test_settings) is None

    def test_average_features_rejects_empty(self):
        from src.diarization.features import average_features
        with pytest.raises(ValueError):
            average_features([])
