"""Configuration management for the capture upload pipeline."""

from pydantic_settings import BaseSettings, SettingsConfigDict

MB = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    ENV: str = "local"
    SERVICE_NAME: str = "capture-upload"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Grant broker
    BROKER_BASE_URL: str = "http://localhost:3001/api"
    BROKER_API_TOKEN: str = ""
    STORAGE_BACKEND: str = "http"  # "http" or "memory"

    # Upload constraints
    MAX_SCREENSHOT_MB: int = 100
    MAX_VIDEO_MB: int = 100
    MIN_UPLOAD_BYTES: int = 1024
    ALLOWED_SCREENSHOT_MIME_TYPES: str = "image/png,image/jpeg,image/webp,image/gif"
    ALLOWED_VIDEO_MIME_TYPES: str = "video/webm,video/mp4,video/quicktime"

    # Multipart transfer
    MULTIPART_THRESHOLD_MB: int = 5  # Artifacts larger than this are sent in parts
    MULTIPART_CHUNK_SIZE_MB: int = 5
    MULTIPART_MAX_CONCURRENCY: int = 4

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0
    RETRY_MAX_JITTER_SECONDS: float = 1.0
    REQUEST_TIMEOUT_SECONDS: float = 600.0  # per attempt

    # Session bookkeeping
    SESSION_RETENTION_SECONDS: float = 5.0
    HISTORY_MAX_ENTRIES: int = 100
    HISTORY_PATH: str = ""  # Empty = keep history in memory only

    @property
    def max_screenshot_bytes(self) -> int:
        """Convert MAX_SCREENSHOT_MB to bytes."""
        return self.MAX_SCREENSHOT_MB * MB

    @property
    def max_video_bytes(self) -> int:
        """Convert MAX_VIDEO_MB to bytes."""
        return self.MAX_VIDEO_MB * MB

    @property
    def allowed_screenshot_mime_types(self) -> list[str]:
        return _split_csv(self.ALLOWED_SCREENSHOT_MIME_TYPES)

    @property
    def allowed_video_mime_types(self) -> list[str]:
        return _split_csv(self.ALLOWED_VIDEO_MIME_TYPES)

    @property
    def multipart_threshold_bytes(self) -> int:
        """Convert MULTIPART_THRESHOLD_MB to bytes."""
        return self.MULTIPART_THRESHOLD_MB * MB

    @property
    def multipart_chunk_size_bytes(self) -> int:
        """Convert MULTIPART_CHUNK_SIZE_MB to bytes."""
        return self.MULTIPART_CHUNK_SIZE_MB * MB


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# Singleton settings instance
settings = Settings()
