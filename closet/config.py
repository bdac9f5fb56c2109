"""Application configuration via environment variables."""

import os
import tempfile

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Remote generation endpoint
    api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    image_model: str = "gemini-2.5-flash-image-preview"
    api_key: Optional[str] = None  # bootstrap only; the stored key wins

    # Local state
    data_dir: str = os.path.join(tempfile.gettempdir(), "closet_tryon")
    service_port: int = 8002

    # Job processing
    tryon_timeout_seconds: float = 300.0
    avatar_timeout_seconds: float = 300.0
    min_avatar_photos: int = 3
    fetch_timeout_seconds: float = 15.0
    blob_orphan_ttl_hours: int = 2

    # Monitor
    poll_interval_seconds: float = 2.0
    slow_warning_seconds: float = 30.0

    # Compression: high fidelity (avatar source photos)
    hifi_max_dimension: int = 1200
    hifi_target_max_bytes: int = 1_200_000
    hifi_quality: int = 85
    hifi_min_quality: int = 50

    # Compression: fast transport (per-request uploads)
    fast_max_dimension: int = 1024
    fast_target_max_bytes: int = 100_000
    fast_quality: int = 60
    fast_min_quality: int = 40

    quality_step: int = 10

    model_config = {"env_prefix": "CLOSET_", "env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def store_path(self) -> str:
        return os.path.join(self.data_dir, "status.db")

    @property
    def images_dir(self) -> str:
        return os.path.join(self.data_dir, "images")


settings = Settings()
