import os
import tempfile
from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from mediajobs.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Broker Configuration
    broker_url: str = "http://localhost:8080"
    broker_host: str = "0.0.0.0"
    broker_port: int = 8080
    job_lease_seconds: float = 0.0
    lease_check_interval: float = 30.0

    # Worker Configuration
    worker_id: Optional[str] = None
    job_poll_interval: float = 5.0
    job_timeout: float = 900.0
    media_tool_timeout: float = 600.0
    temp_dir: str = tempfile.gettempdir()

    # CDN Configuration
    cdn_base_url: str = "https://cdn.example.com"
    cdn_auth_secret: Optional[SecretStr] = None
    cdn_token_ttl: int = 6 * 60 * 60

    # Content Store (Backblaze B2) Configuration
    b2_api_url: str = "https://api.backblazeb2.com"
    b2_key_id: Optional[str] = None
    b2_application_key: Optional[SecretStr] = None
    b2_bucket_id: Optional[str] = None
    upload_max_retries: int = 1

    # Media Tools Configuration
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    whisper_cpp_path: str = "./whisper.cpp/build/bin/whisper-cli"
    whisper_model_path: str = "./models/ggml-base.en.bin"

    # Storage Configuration
    data_dir: str = "./data"

    # Logging Configuration
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def sqlite_path(self) -> str:
        """Return path to the media record database."""
        return os.path.join(self.data_dir, "media.db")

    @property
    def lease_enabled(self) -> bool:
        return self.job_lease_seconds > 0

    def require_worker_settings(self, job_type: str) -> None:
        """Fail fast when a worker of ``job_type`` would start half-configured.

        Every worker signs CDN URLs, so the signing secret is always
        required. Workers that upload artifacts also need content store
        credentials.

        Raises:
            ConfigurationError: Naming every missing setting
        """
        missing = []
        if not self.cdn_auth_secret or not self.cdn_auth_secret.get_secret_value():
            missing.append("CDN_AUTH_SECRET")

        if job_type in ("thumbnail", "transcription"):
            if not self.b2_key_id:
                missing.append("B2_KEY_ID")
            if not self.b2_application_key:
                missing.append("B2_APPLICATION_KEY")
            if not self.b2_bucket_id:
                missing.append("B2_BUCKET_ID")

        if missing:
            raise ConfigurationError(
                f"Missing required settings for {job_type} worker: "
                + ", ".join(missing)
            )


# Global settings instance
settings = Settings()
