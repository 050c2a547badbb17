"""Конфигурация приложения."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Настройки приложения."""

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Audio
    AUDIO_SAMPLE_RATE: int = 16000
    AUDIO_FRAME_MS: int = 30

    # Voice activity: три порога, все должны выполняться одновременно
    VAD_ENERGY_MIN: float = 0.01  # RMS, ~-40dBFS
    VAD_ZCR_MIN: float = 0.005
    VAD_ZCR_MAX: float = 0.3  # белый шум даёт ~0.5
    VAD_CENTROID_MIN_HZ: float = 150.0
    VAD_CENTROID_MAX_HZ: float = 3500.0

    # Feature extraction
    MFCC_COEFFICIENTS: int = 13
    MEL_BANDS: int = 26
    PITCH_MIN_HZ: float = 60.0
    PITCH_MAX_HZ: float = 500.0
    PITCH_VOICING_THRESHOLD: float = 0.3
    FEATURE_HISTORY_FRAMES: int = 16

    # Общая шкала: softmax по сходствам [0, 1] → уверенность
    SCORE_SOFTMAX_TEMPERATURE: float = 0.1

    # Heuristic estimator
    HEURISTIC_EMA_ALPHA: float = 0.1
    HEURISTIC_MIN_STABLE_FRAMES: int = 3
    HEURISTIC_PITCH_SCALE_HZ: float = 50.0
    HEURISTIC_PITCH_WEIGHT: float = 0.7
    HEURISTIC_ENERGY_WEIGHT: float = 0.3
    HEURISTIC_PITCH_SPLIT_HZ: float = 180.0
    HEURISTIC_UNSTABLE_CONFIDENCE: float = 0.3

    # Embedding estimator
    EMBEDDING_DIM: int = 256
    EMBEDDING_PROJECTION_SEED: int = 1337
    EMBEDDING_EMA_ALPHA: float = 0.05
    EMBEDDING_CONFIDENCE_MIN: float = 0.5
    EMBEDDING_WEIGHT_LEARNED: float = 0.35
    EMBEDDING_WEIGHT_VOICEPRINT: float = 0.25
    EMBEDDING_WEIGHT_FORMANTS: float = 0.15
    EMBEDDING_WEIGHT_PITCH_RANGE: float = 0.10
    EMBEDDING_WEIGHT_SPECTRAL: float = 0.15
    EMBEDDING_WEIGHT_SCORER: float = 0.20
    SMOOTHING_WINDOW: int = 5
    SMOOTHING_MIN_HISTORY: int = 3
    SMOOTHING_BLEND: float = 0.3
    PROFILE_STALE_TRUST: float = 0.5

    # Pattern retrieval
    PATTERN_CAPACITY_PER_SPEAKER: int = 100
    PATTERN_EVICTION_FRACTION: float = 0.2
    PATTERN_SIMILARITY_MIN: float = 0.75
    PATTERN_TOP_K: int = 10
    PATTERN_CONFIDENCE_MIN: float = 0.6
    PATTERN_STORE_CONFIDENCE: float = 0.8
    PATTERN_FEEDBACK_CONFIDENCE: float = 0.8
    PATTERN_SUCCESS_ALPHA: float = 0.1
    PATTERN_CONTEXT_WINDOW: int = 10
    PATTERN_CONTEXT_DIM: int = 64

    # Fusion
    FUSION_BUDGET_HEURISTIC_SEC: float = 0.1
    FUSION_BUDGET_EMBEDDING_SEC: float = 0.25
    FUSION_BUDGET_PATTERN_SEC: float = 0.2
    FUSION_MIN_CONFIDENCE_HEURISTIC: float = 0.35
    FUSION_MIN_CONFIDENCE_EMBEDDING: float = 0.4
    FUSION_MIN_CONFIDENCE_PATTERN: float = 0.4
    FUSION_CONFIDENCE_MIN: float = 0.6
    FUSION_TURN_BONUS: float = 0.03
    FUSION_RECENCY_BONUS: float = 0.02
    TURN_PAUSE_SEC: float = 0.3
    LEARNING_CONFIDENCE_MIN: float = 0.7
    DETECTION_CYCLE_DEADLINE_SEC: float = 0.5

    # Adaptive weights
    WEIGHT_INITIAL_HEURISTIC: float = 0.4
    WEIGHT_INITIAL_EMBEDDING: float = 0.35
    WEIGHT_INITIAL_PATTERN: float = 0.25
    WEIGHT_FLOOR: float = 0.05
    WEIGHT_CEILING: float = 0.8
    ADAPTATION_RATE: float = 0.05
    ADAPTATION_MIN_OBSERVATIONS: int = 5
    PERFORMANCE_WINDOW: int = 50
    DISABLE_SUCCESS_RATE: float = 0.3
    DISABLE_MIN_OBSERVATIONS: int = 20

    # Calibration
    CALIBRATION_MIN_SAMPLES: int = 3
    CALIBRATION_OPTIMAL_SAMPLES: int = 8
    CALIBRATION_MIN_DURATION_MS: float = 3000.0
    CALIBRATION_MIN_SNR_DB: float = 10.0
    CALIBRATION_MIN_CLARITY: float = 0.15
    CALIBRATION_MIN_RMS: float = 0.01
    CALIBRATION_SESSION_TTL_SEC: float = 1800.0
    PROFILE_RETENTION_DAYS: float = 7.0
    RECALIBRATION_MIN_ACCURACY: float = 0.7
    RECALIBRATION_MIN_DETECTIONS: int = 20

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Глобальный экземпляр настроек
settings = Settings()
