"""
Configuration loaded from environment variables
"""
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

MB = 1024 * 1024


class Settings(BaseSettings):
    """Service settings, overridable with UPSCALER_* environment variables"""

    model_config = SettingsConfigDict(env_prefix="UPSCALER_", env_file=".env", extra="ignore")

    app_env: str = "production"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3000

    # Transient storage
    upload_dir: Path = Path("uploads")
    output_dir: Path = Path("outputs")

    # External Real-ESRGAN tool
    executable_path: Path = Path("realesrgan-ncnn-vulkan")
    models_dir: Path = Path("models")
    model_name: str = "realesrgan-x4plus"
    scale: int = 4
    process_timeout_seconds: Optional[float] = None  # None = wait for the tool forever

    # Upload limits
    upload_field: str = "image"
    max_file_size_bytes: int = 20 * MB
    max_files: int = 10
    allowed_content_types: List[str] = ["image/jpeg", "image/png", "image/webp"]

    stream_chunk_size: int = 64 * 1024

    # Eviction sweep: every hour, files older than 30 minutes
    cleanup_interval_seconds: float = 60 * 60
    retention_seconds: float = 30 * 60

    # 100 requests per 15 minutes per client
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 15 * 60
    max_concurrent_jobs: int = 4

    cors_origins: List[str] = ["*"]

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"
