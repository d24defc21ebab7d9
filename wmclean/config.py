"""
Engine Configuration

Environment-based configuration for the watermark engine and its worker.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from WMCLEAN_* environment variables."""

    # Algorithm
    default_profile: str = "enhanced"  # conservative, enhanced, aggressive, region-exact

    # Execution
    execution_mode: Literal["delegated", "cooperative"] = "delegated"
    band_count: int = 20
    timeout_seconds: float = 30.0  # 0 disables the deadline
    worker_start_method: str = "spawn"

    # Limits
    max_pixels: int = 16_000_000
    max_dimension: int = 8192

    # Opt-in repair noise; needs a seed for reproducible output
    noise_amplitude: float = 0.0
    noise_seed: Optional[int] = None

    # Queue worker
    worker_id: str = "wmclean-worker-1"
    redis_url: str = "redis://localhost:6379"
    poll_interval: float = 2.0  # seconds

    # Metrics
    metrics_port: int = 0  # 0 = no metrics server

    class Config:
        env_prefix = "WMCLEAN_"
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
