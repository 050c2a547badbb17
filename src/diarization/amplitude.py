"""Амплитудные примитивы: RMS, пик, zero-crossing rate.

ПОЧЕМУ отдельный модуль:
- Считаются за доли миллисекунды и нужны до любого спектрального анализа
- Используются и VAD-гейтом детекции, и анализом качества калибровки
"""
from __future__ import annotations

import numpy as np


def compute_rms(audio: np.ndarray) -> float:
    """Среднеквадратичная амплитуда аудио-сигнала (float32, нормализованный [-1, 1])."""
    if len(audio) == 0:
        return 0.0
    # ПОЧЕМУ float64: накопление ошибок при суммировании большого числа float32 элементов
    return float(np.sqrt(np.mean(audio.astype(np.float64) ** 2)))


def compute_peak(audio: np.ndarray) -> float:
    if len(audio) == 0:
        return 0.0
    return float(np.max(np.abs(audio)))


def zero_crossing_rate(audio: np.ndarray) -> float:
    """Доля соседних отсчётов со сменой знака, [0, 1].

    Тон 120 Гц при 16kHz даёт ~0.015, белый шум ~0.5.
    """
    if len(audio) < 2:
        return 0.0
    signs = np.signbit(audio)
    return float(np.count_nonzero(signs[1:] != signs[:-1]) / (len(audio) - 1))


def passes_amplitude_gate(audio: np.ndarray, threshold: float = 0.01) -> bool:
    """Достаточно ли громкий сигнал для дальнейшего анализа.

    Args:
        audio: float32 [-1, 1]
        threshold: минимальный RMS. 0.01 = ~-40dBFS (тихий, но речь слышна)
    """
    return compute_rms(audio) >= threshold


def frame_signal(audio: np.ndarray, frame_length: int) -> np.ndarray:
    """Режет сигнал на неперекрывающиеся кадры, хвост отбрасывается.

    Returns:
        np.ndarray shape (n_frames, frame_length)
    """
    if frame_length <= 0 or len(audio) < frame_length:
        return np.empty((0, max(frame_length, 0)), dtype=np.float32)
    n_frames = len(audio) // frame_length
    return np.asarray(audio[: n_frames * frame_length]).reshape(n_frames, frame_length)
