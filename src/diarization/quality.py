"""Анализ качества записи для калибровки голоса.

SNR оценивается по спектральному шумовому полу (minimum statistics по частоте):
    в каждом кадре берётся 10-й перцентиль мощностей бинов спектра;
    для белого шума мощность бина распределена экспоненциально,
    поэтому пол / 0.105 = средняя мощность шума на бин.
    шум   = медиана этой оценки по кадрам × число бинов,
    сигнал = средняя полная мощность кадра − шум.
ПОЧЕМУ по частоте, а не по времени:
    гармоники голоса занимают малую часть бинов даже в сплошной речи без пауз,
    а энергия кадров во времени у ровного голоса почти постоянна и пол "съедает" сигнал.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

import numpy as np

from src.utils.config import Settings, settings

from .amplitude import compute_peak, compute_rms, frame_signal
from .errors import LowAudioQuality
from .models import QualityAnalysis

SNR_FRAME_MS = 32
SNR_FLOOR_PERCENTILE = 10.0
SNR_MIN_DB = -20.0
SNR_MAX_DB = 40.0
_POWER_EPS = 1e-12
# 10-й перцентиль экспоненциального распределения: -ln(0.9) от среднего
_EXP_FLOOR_RATIO = float(-np.log(1.0 - SNR_FLOOR_PERCENTILE / 100.0))


class RejectionReason(str, Enum):
    TOO_SHORT = "too_short"
    TOO_QUIET = "too_quiet"
    TOO_NOISY = "too_noisy"
    LOW_CLARITY = "low_clarity"
    NO_VOICE = "no_voice"


def recommendation_for(reason: RejectionReason, quality: Optional[QualityAnalysis], config: Settings) -> str:
    """Человекочитаемая подсказка, как исправить запись."""
    if reason is RejectionReason.TOO_SHORT:
        seconds = quality.duration_ms / 1000 if quality else 0.0
        return (
            f"Запись слишком короткая ({seconds:.1f} с). "
            f"Говорите не менее {config.CALIBRATION_MIN_DURATION_MS / 1000:.0f} секунд."
        )
    if reason is RejectionReason.TOO_QUIET:
        return "Микрофон почти не слышит голос. Говорите громче или поднесите микрофон ближе."
    if reason is RejectionReason.TOO_NOISY:
        snr = quality.snr_db if quality else 0.0
        return f"Слишком шумно ({snr:.0f} dB). Переместитесь в тихое место или уберите источник шума."
    if reason is RejectionReason.LOW_CLARITY:
        return "Качество звука низкое. Говорите чётче и ближе к микрофону."
    return "Речь не распознана. Проверьте микрофон и произнесите фразу целиком."


def estimate_snr_db(samples: np.ndarray, sample_rate: int, frame_ms: int = SNR_FRAME_MS) -> float:
    frames = frame_signal(np.asarray(samples, dtype=np.float32), int(sample_rate * frame_ms / 1000))
    if len(frames) < 2:
        return 0.0
    windowed = frames.astype(np.float64) * np.hanning(frames.shape[1])
    spectra = np.abs(np.fft.rfft(windowed, axis=1)) ** 2
    floor_per_bin = np.percentile(spectra, SNR_FLOOR_PERCENTILE, axis=1) / _EXP_FLOOR_RATIO
    noise = float(np.median(floor_per_bin)) * spectra.shape[1]
    signal = float(np.mean(spectra.sum(axis=1))) - noise
    snr = 10.0 * np.log10(max(signal, _POWER_EPS) / max(noise, _POWER_EPS))
    return float(np.clip(snr, SNR_MIN_DB, SNR_MAX_DB))


def analyze_quality(samples: np.ndarray, sample_rate: int) -> QualityAnalysis:
    """Метрики качества записи: RMS, пик, SNR, clarity, динамический диапазон."""
    samples = np.asarray(samples, dtype=np.float32)
    rms = compute_rms(samples)
    peak = compute_peak(samples)
    # clarity: громкость (насыщается на RMS 0.1) + бонус за динамику до 0.3
    clarity = min(1.0, min(1.0, rms * 10.0) + min(0.3, max(0.0, peak - rms) * 2.0))
    return QualityAnalysis(
        rms=rms,
        peak=peak,
        snr_db=estimate_snr_db(samples, sample_rate),
        clarity=clarity,
        dynamic_range_db=float(20.0 * np.log10(max(peak, 1e-6) / max(rms, 1e-3))),
        duration_ms=len(samples) * 1000.0 / sample_rate if sample_rate > 0 else 0.0,
    )


def validate_quality(quality: QualityAnalysis, config: Optional[Settings] = None) -> None:
    """Проверяет пороги калибровки.

    Raises:
        LowAudioQuality: первая нарушенная проверка (длительность, громкость, SNR, clarity)
    """
    cfg = config or settings
    checks = (
        (quality.duration_ms < cfg.CALIBRATION_MIN_DURATION_MS, RejectionReason.TOO_SHORT),
        (quality.rms < cfg.CALIBRATION_MIN_RMS, RejectionReason.TOO_QUIET),
        (quality.snr_db < cfg.CALIBRATION_MIN_SNR_DB, RejectionReason.TOO_NOISY),
        (quality.clarity < cfg.CALIBRATION_MIN_CLARITY, RejectionReason.LOW_CLARITY),
    )
    for failed, reason in checks:
        if failed:
            raise LowAudioQuality(reason.value, recommendation_for(reason, quality, cfg), quality)
