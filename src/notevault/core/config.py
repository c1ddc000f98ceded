"""Configuration management for NoteVault Files."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    ENV: str = "local"
    SERVICE_NAME: str = "notevault-files"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Storage Configuration
    STORAGE_BACKEND: str = "b2"  # "b2" or "local"
    LOCAL_STORAGE_PATH: str = "data/objects"

    # Backblaze B2 Configuration
    B2_APPLICATION_KEY_ID: str = ""
    B2_APPLICATION_KEY: str = ""
    B2_BUCKET_ID: str = ""
    B2_BUCKET_NAME: str = ""
    B2_BUCKET_REGION: str = "us-west-004"
    B2_API_URL: str = "https://api.backblazeb2.com"
    B2_REQUEST_TIMEOUT: int = 300  # seconds, covers a 10 MiB part on a slow link
    B2_RETRY_BACKOFF_SECONDS: float = 1.0

    # Upload Constraints
    MAX_UPLOAD_MB: int = 100
    MAX_FILES_PER_REQUEST: int = 5
    ALLOWED_UPLOAD_MIME_TYPES: str = ""  # Comma-separated, empty = allow all
    UPLOAD_SNIFF_BUFFER_BYTES: int = 4096

    @property
    def allowed_mime_types(self) -> list[str] | None:
        """Parse ALLOWED_UPLOAD_MIME_TYPES into a list."""
        if not self.ALLOWED_UPLOAD_MIME_TYPES:
            return None
        return [mt.strip() for mt in self.ALLOWED_UPLOAD_MIME_TYPES.split(",") if mt.strip()]

    @property
    def max_upload_bytes(self) -> int:
        """Convert MAX_UPLOAD_MB to bytes."""
        return self.MAX_UPLOAD_MB * 1024 * 1024


# Singleton settings instance
settings = Settings()
