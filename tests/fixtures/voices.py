"""Синтетические голоса для тестов диаризации.

ПОЧЕМУ синтетика, а не записи:
    тестам нужен детерминированный сигнал с известными свойствами.
    Гармонический ряд с паузами между "слогами" проходит VAD (ZCR, centroid)
    и даёт высокий SNR, а два разных f0 и наклона спектра — два различимых голоса.

Голос A: f0 = 120 Hz, амплитуды гармоник 1/k.
Голос B: f0 = 220 Hz, амплитуды гармоник 1/k^0.7 (ярче).
"""
from __future__ import annotations

import base64

import numpy as np

SAMPLE_RATE = 16000
FRAME_SAMPLES = 480  # 30 ms

VOICES = {
    "A": {"f0": 120.0, "tilt": 1.0},
    "B": {"f0": 220.0, "tilt": 0.7},
}


def harmonic_voice(
    f0: float,
    tilt: float,
    n_samples: int,
    seed: int = 0,
    peak: float = 0.3,
    syllable_ms: int = 250,
    pause_ms: int = 100,
    noise_std: float = 0.002,
) -> np.ndarray:
    """Гармонический "голос" с лёгким вибрато, слогами и паузами.

    pause_ms=0 — сплошная вокализация (для коротких живых кадров).
    """
    rng = np.random.default_rng(seed)
    t = np.arange(n_samples) / SAMPLE_RATE
    freq = f0 * (1.0 + 0.01 * np.sin(2 * np.pi * 3.0 * t + rng.uniform(0, 2 * np.pi)))
    phase = 2 * np.pi * np.cumsum(freq) / SAMPLE_RATE + rng.uniform(0, 2 * np.pi)

    voice = np.zeros(n_samples)
    k = 1
    while k * f0 < 4000:
        voice += np.sin(k * phase) / k ** tilt
        k += 1
    voice *= peak / np.max(np.abs(voice))

    if pause_ms > 0:
        syllable = int(SAMPLE_RATE * syllable_ms / 1000)
        period = syllable + int(SAMPLE_RATE * pause_ms / 1000)
        voice *= (np.arange(n_samples) % period) < syllable

    return (voice + rng.normal(0.0, noise_std, n_samples)).astype(np.float32)


def speaker_utterance(speaker: str, seconds: float = 3.5, seed: int = 0, noise_std: float = 0.002) -> np.ndarray:
    voice = VOICES[speaker]
    return harmonic_voice(voice["f0"], voice["tilt"], int(seconds * SAMPLE_RATE), seed=seed, noise_std=noise_std)


def speaker_frame_samples(speaker: str, seed: int = 0) -> np.ndarray:
    voice = VOICES[speaker]
    return harmonic_voice(voice["f0"], voice["tilt"], FRAME_SAMPLES, seed=seed, pause_ms=0)


def to_pcm16_b64(samples: np.ndarray) -> str:
    """float32 [-1, 1] → base64 PCM16 LE, как его шлёт клиент."""
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2")
    return base64.b64encode(pcm.tobytes()).decode("ascii")
