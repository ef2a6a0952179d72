"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Imagery Authenticity Detection Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Preprocessing
    # ==========================================================================
    MAX_UPLOAD_BYTES: int = 52428800  # 50MB hard upload limit (pre-resize)
    LARGE_IMAGE_THRESHOLD_BYTES: int = 10485760  # 10MB, normalized buffer bound
    MAX_IMAGE_PIXELS: int = 178956970  # Pillow decompression-bomb guard
    FOOD_HINT_THRESHOLD: float = 0.35  # Share of warm, saturated pixels
    ANALYSIS_CROP_SIZE: int = 512  # Centre crop analysed by the scorers

    # ==========================================================================
    # Dispatch Scheduler
    # ==========================================================================
    WORKER_COUNT: int = 16
    MAX_QUEUE_DEPTH: int = 256
    REQUEST_BUDGET_SECONDS: float = 30.0
    MAX_RETRIES: int = 2
    RETRY_BACKOFF_BASE_SECONDS: float = 0.25
    RETRY_BACKOFF_MAX_SECONDS: float = 4.0
    AGING_THRESHOLD_SECONDS: float = 5.0
    DEAD_LETTER_CAPACITY: int = 1000

    # ==========================================================================
    # Model Adapters & Ensemble
    # ==========================================================================
    ADAPTER_TIMEOUT_SECONDS: float = 8.0
    MODEL_WEIGHTS: Dict[str, float] = {"primary": 3.0, "food": 3.0, "backup": 1.0}
    ENSEMBLE_INCLUDE_BACKUP: bool = True  # Backup also votes in the initial fan-out
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_SECONDS: int = 30

    # ==========================================================================
    # Fatal Event Alerting
    # ==========================================================================
    FATAL_ALERT_THRESHOLD: int = 3
    FATAL_ALERT_WINDOW_SECONDS: float = 60.0

    # ==========================================================================
    # Client Configuration (read-only snapshot from the config service)
    # ==========================================================================
    CLIENT_CONFIG_PATH: Optional[str] = None
    DEFAULT_REQUESTS_PER_MINUTE: int = 600
    DEFAULT_REQUESTS_PER_DAY: int = 100000
    DEFAULT_CONCURRENT_LIMIT: int = 100

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
