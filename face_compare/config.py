"""Service configuration.

All tuning values are static: they are read once from the environment
(prefix ``FACE_COMPARE_``) when the process starts and are never taken
from a request.
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings."""

    model_config = SettingsConfigDict(
        env_prefix="FACE_COMPARE_",
        env_file=".env",
        extra="ignore",
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 4000
    log_level: str = "info"
    allowed_origins: List[str] = ["*"]
    max_body_size: int = 10 * 1024 * 1024  # 10MB

    # Model files
    model_dir: str = "models"
    load_model_on_startup: bool = True

    # Inference cost. Smaller sizes are faster but miss small faces.
    max_image_bytes: int = 10 * 1024 * 1024  # cap on a downloaded image body
    max_image_size: int = 128
    detector_input_size: int = 128
    detector_score_threshold: float = 0.5

    # Matching
    match_threshold: float = 0.5
    medium_confidence_distance: float = 0.7

    # Timeouts in seconds
    fetch_timeout: float = 10.0
    decode_timeout: float = 3.0
    request_timeout: float = 45.0


@lru_cache()
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()
