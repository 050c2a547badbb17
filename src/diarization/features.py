"""Извлечение акустических признаков + voice-activity gate.

Пайплайн кадра (~30ms, 16kHz):
    1. RMS и ZCR (amplitude.py) — дёшево, отсекают тишину до FFT
    2. Окно Ханна + rfft → спектр → centroid / rolloff / flux / skewness / kurtosis
    3. Mel-фильтры (librosa) + DCT-II (scipy) → 13 MFCC
    4. LPC (scipy.linalg.solve_toeplitz) → корни полинома → до 4 формант
    5. Автокорреляция через FFT → основной тон

ПОЧЕМУ VAD по трём порогам сразу:
    Тишина проваливает энергию, широкополосный шум (шорох, удар) — ZCR и centroid.
    Любой одиночный критерий пропускает один из этих случаев.

Одни и те же функции используются и для калибровки (extract_utterance),
и для живой детекции — признаки сравнимы между собой.
"""
from __future__ import annotations

from collections import deque
from functools import lru_cache
from typing import Optional

import librosa
import numpy as np
from scipy.fft import dct
from scipy.linalg import solve_toeplitz

from src.utils.config import Settings, settings
from src.utils.logging import get_logger

from .amplitude import compute_rms, frame_signal, passes_amplitude_gate, zero_crossing_rate
from .models import AudioFrame, FeatureVector

logger = get_logger("diarization.features")

N_FORMANTS = 4
_PRE_EMPHASIS = 0.63
_FORMANT_MIN_HZ = 90.0
_FORMANT_MAX_HZ = 5000.0
_FORMANT_MAX_BANDWIDTH_HZ = 400.0
_ROLLOFF_FRACTION = 0.85
_EPS = 1e-10


def _next_pow2(n: int) -> int:
    return 1 << max(0, int(n - 1).bit_length())


@lru_cache(maxsize=16)
def mel_filterbank(sample_rate: int, n_fft: int, n_mels: int) -> np.ndarray:
    """Треугольные mel-фильтры, shape (n_mels, n_fft // 2 + 1). Кэшируется."""
    return librosa.filters.mel(
        sr=sample_rate, n_fft=n_fft, n_mels=n_mels, fmin=0.0, fmax=sample_rate / 2.0
    )


def magnitude_spectrum(samples: np.ndarray, sample_rate: int) -> tuple[np.ndarray, np.ndarray, int]:
    """Амплитудный спектр кадра.

    Returns:
        (magnitudes, frequencies_hz, n_fft)
    """
    n_fft = _next_pow2(len(samples))
    windowed = samples.astype(np.float64) * np.hanning(len(samples))
    magnitudes = np.abs(np.fft.rfft(windowed, n=n_fft))
    freqs = np.fft.rfftfreq(n_fft, 1.0 / sample_rate)
    return magnitudes, freqs, n_fft


def spectral_shape(magnitudes: np.ndarray, freqs: np.ndarray) -> tuple[float, float, float]:
    """Центроид, асимметрия и эксцесс частотного распределения спектра."""
    total = float(np.sum(magnitudes))
    if total < _EPS:
        return 0.0, 0.0, 0.0
    p = magnitudes / total
    centroid = float(np.sum(freqs * p))
    deviation = freqs - centroid
    spread = float(np.sqrt(np.sum(deviation ** 2 * p)))
    if spread < _EPS:
        return centroid, 0.0, 0.0
    skewness = float(np.sum(deviation ** 3 * p) / spread ** 3)
    kurtosis = float(np.sum(deviation ** 4 * p) / spread ** 4)
    return centroid, skewness, kurtosis


def spectral_rolloff(magnitudes: np.ndarray, freqs: np.ndarray, fraction: float = _ROLLOFF_FRACTION) -> float:
    cumulative = np.cumsum(magnitudes)
    if cumulative[-1] < _EPS:
        return 0.0
    idx = int(np.searchsorted(cumulative, fraction * cumulative[-1]))
    return float(freqs[min(idx, len(freqs) - 1)])


def spectral_flux(magnitudes: np.ndarray, previous: Optional[np.ndarray]) -> float:
    """L2-расстояние между нормированными спектрами соседних кадров."""
    if previous is None or previous.shape != magnitudes.shape:
        return 0.0
    cur = magnitudes / (np.sum(magnitudes) + _EPS)
    prev = previous / (np.sum(previous) + _EPS)
    return float(np.linalg.norm(cur - prev))


def compute_mfcc(magnitudes: np.ndarray, sample_rate: int, n_fft: int, n_mfcc: int = 13, n_mels: int = 26) -> np.ndarray:
    """MFCC: mel-энергии мощностного спектра → log → DCT-II (ortho)."""
    mel_energies = mel_filterbank(sample_rate, n_fft, n_mels) @ (magnitudes ** 2)
    log_mel = np.log(mel_energies + _EPS)
    return dct(log_mel, type=2, norm="ortho")[:n_mfcc]


def lpc_coefficients(samples: np.ndarray, order: int) -> Optional[np.ndarray]:
    """Коэффициенты предсказания [1, -a1, ..., -ap] методом автокорреляции."""
    n = len(samples)
    if n <= order:
        return None
    full = np.correlate(samples, samples, mode="full")
    r = full[n - 1 : n + order].astype(np.float64)
    if r[0] <= _EPS:
        return None
    # лёгкая регуляризация диагонали: чистые тона делают матрицу почти вырожденной
    r[0] *= 1.0 + 1e-9
    try:
        a = solve_toeplitz(r[:order], r[1 : order + 1])
    except np.linalg.LinAlgError:
        return None
    return np.concatenate(([1.0], -a))


def estimate_formants(samples: np.ndarray, sample_rate: int, n_formants: int = N_FORMANTS) -> np.ndarray:
    """До n_formants резонансов речевого тракта по корням LPC-полинома, 0.0 = не найдена."""
    result = np.zeros(n_formants)
    if len(samples) < 2:
        return result
    x = np.append(samples[0], samples[1:] - _PRE_EMPHASIS * samples[:-1]).astype(np.float64)
    x *= np.hamming(len(x))
    coeffs = lpc_coefficients(x, order=2 + sample_rate // 1000)
    if coeffs is None or not np.all(np.isfinite(coeffs)):
        return result

    roots = np.roots(coeffs)
    roots = roots[np.imag(roots) > 0.01]
    if len(roots) == 0:
        return result
    freqs = np.arctan2(np.imag(roots), np.real(roots)) * sample_rate / (2 * np.pi)
    bandwidths = -0.5 * (sample_rate / (2 * np.pi)) * np.log(np.abs(roots))
    upper = min(_FORMANT_MAX_HZ, sample_rate / 2.0 - 50.0)
    keep = (freqs > _FORMANT_MIN_HZ) & (freqs < upper) & (bandwidths < _FORMANT_MAX_BANDWIDTH_HZ)
    found = np.sort(freqs[keep])[:n_formants]
    result[: len(found)] = found
    return result


def estimate_pitch(
    samples: np.ndarray,
    sample_rate: int,
    fmin: float = 60.0,
    fmax: float = 500.0,
    voicing_threshold: float = 0.3,
) -> float:
    """Основной тон по нормированной автокорреляции (через FFT).

    Returns:
        частота в Гц, 0.0 если пик автокорреляции ниже порога вокализации
    """
    x = samples.astype(np.float64) - float(np.mean(samples))
    n = len(x)
    min_lag = max(1, int(sample_rate / fmax))
    max_lag = min(int(sample_rate / fmin), n - 2)
    if max_lag <= min_lag + 1:
        return 0.0

    spectrum = np.fft.rfft(x, n=_next_pow2(2 * n))
    ac = np.fft.irfft(np.abs(spectrum) ** 2)[:n]
    if ac[0] <= _EPS:
        return 0.0
    ac = ac / ac[0]

    segment = ac[min_lag : max_lag + 1]
    i = int(np.argmax(segment))
    if segment[i] < voicing_threshold:
        return 0.0

    lag = float(min_lag + i)
    # параболическая интерполяция вершины даёт субсэмпловую точность периода
    if 0 < i < len(segment) - 1:
        left, mid, right = segment[i - 1], segment[i], segment[i + 1]
        denom = left - 2 * mid + right
        if abs(denom) > _EPS:
            lag += 0.5 * (left - right) / denom
    return float(sample_rate / lag) if lag > 0 else 0.0


class FeatureExtractor:
    """Извлекает FeatureVector из кадров одного потока.

    Хранит короткую историю (≤16 кадров): спектр предыдущего кадра для flux
    и высоты тона для pitch_variance. Один экземпляр — один поток аудио.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self._history: deque[FeatureVector] = deque(maxlen=self.config.FEATURE_HISTORY_FRAMES)
        self._previous_spectrum: Optional[np.ndarray] = None

    @property
    def history(self) -> list[FeatureVector]:
        return list(self._history)

    def reset(self) -> None:
        self._history.clear()
        self._previous_spectrum = None

    def is_voice(self, energy: float, zcr: float, centroid: float) -> bool:
        cfg = self.config
        return (
            energy >= cfg.VAD_ENERGY_MIN
            and cfg.VAD_ZCR_MIN <= zcr <= cfg.VAD_ZCR_MAX
            and cfg.VAD_CENTROID_MIN_HZ <= centroid <= cfg.VAD_CENTROID_MAX_HZ
        )

    def extract(self, frame: AudioFrame) -> Optional[FeatureVector]:
        """Признаки кадра или None, если в кадре нет речи."""
        cfg = self.config
        samples = np.asarray(frame.samples, dtype=np.float32)
        if len(samples) < 64 or not np.all(np.isfinite(samples)):
            return None

        # уровень 1: тишина отсекается до FFT
        if not passes_amplitude_gate(samples, cfg.VAD_ENERGY_MIN):
            return None
        energy = compute_rms(samples)
        zcr = zero_crossing_rate(samples)

        magnitudes, freqs, n_fft = magnitude_spectrum(samples, frame.sample_rate)
        centroid, skewness, kurtosis = spectral_shape(magnitudes, freqs)
        if not self.is_voice(energy, zcr, centroid):
            logger.debug(
                "vad_rejected",
                energy=round(energy, 4),
                zcr=round(zcr, 4),
                centroid=round(centroid, 1),
            )
            return None

        flux = spectral_flux(magnitudes, self._previous_spectrum)
        self._previous_spectrum = magnitudes

        pitch = estimate_pitch(
            samples,
            frame.sample_rate,
            fmin=cfg.PITCH_MIN_HZ,
            fmax=cfg.PITCH_MAX_HZ,
            voicing_threshold=cfg.PITCH_VOICING_THRESHOLD,
        )
        voiced = [fv.pitch for fv in self._history if fv.pitch > 0]
        if pitch > 0:
            voiced.append(pitch)
        pitch_variance = float(np.var(voiced)) if len(voiced) > 1 else 0.0

        features = FeatureVector(
            mfcc=compute_mfcc(magnitudes, frame.sample_rate, n_fft, cfg.MFCC_COEFFICIENTS, cfg.MEL_BANDS),
            spectral_centroid=centroid,
            spectral_rolloff=spectral_rolloff(magnitudes, freqs),
            spectral_flux=flux,
            spectral_kurtosis=kurtosis,
            spectral_skewness=skewness,
            formants=estimate_formants(samples, frame.sample_rate),
            pitch=pitch,
            pitch_variance=pitch_variance,
            zero_crossing_rate=zcr,
            energy=energy,
            timestamp=frame.timestamp,
            sample_rate=frame.sample_rate,
        )
        self._history.append(features)
        return features


def average_features(vectors: list[FeatureVector]) -> FeatureVector:
    """Усредняет признаки высказывания.

    Высота тона — только по вокализованным кадрам, её дисперсия — между кадрами.
    Форманты усредняются по позиции, нули (не найдена) не учитываются.
    """
    if not vectors:
        raise ValueError("Cannot average an empty list of feature vectors")

    pitches = np.array([v.pitch for v in vectors if v.pitch > 0])
    formant_stack = np.stack([v.formants for v in vectors])
    found = formant_stack > 0
    counts = found.sum(axis=0)
    formants = np.where(counts > 0, formant_stack.sum(axis=0) / np.maximum(counts, 1), 0.0)

    return FeatureVector(
        mfcc=np.mean(np.stack([v.mfcc for v in vectors]), axis=0),
        spectral_centroid=float(np.mean([v.spectral_centroid for v in vectors])),
        spectral_rolloff=float(np.mean([v.spectral_rolloff for v in vectors])),
        spectral_flux=float(np.mean([v.spectral_flux for v in vectors])),
        spectral_kurtosis=float(np.mean([v.spectral_kurtosis for v in vectors])),
        spectral_skewness=float(np.mean([v.spectral_skewness for v in vectors])),
        formants=formants,
        pitch=float(np.mean(pitches)) if len(pitches) else 0.0,
        pitch_variance=float(np.var(pitches)) if len(pitches) > 1 else 0.0,
        zero_crossing_rate=float(np.mean([v.zero_crossing_rate for v in vectors])),
        energy=float(np.mean([v.energy for v in vectors])),
        timestamp=vectors[0].timestamp,
        sample_rate=vectors[0].sample_rate,
    )


def extract_utterance(
    samples: np.ndarray,
    sample_rate: int,
    config: Optional[Settings] = None,
) -> Optional[FeatureVector]:
    """Признаки длинной записи: режем на кадры, усредняем речевые.

    Returns:
        усреднённый FeatureVector или None, если речевых кадров нет
    """
    cfg = config or settings
    frame_length = int(sample_rate * cfg.AUDIO_FRAME_MS / 1000)
    extractor = FeatureExtractor(cfg)
    vectors = []
    for i, chunk in enumerate(frame_signal(np.asarray(samples, dtype=np.float32), frame_length)):
        fv = extractor.extract(AudioFrame(chunk, sample_rate, timestamp=i * frame_length / sample_rate))
        if fv is not None:
            vectors.append(fv)
    if not vectors:
        return None
    logger.debug("utterance_features_extracted", frames=len(vectors))
    return average_features(vectors)
