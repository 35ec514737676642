# services/api/settings.py
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field
from typing import List, Optional
from pathlib import Path

class Settings(BaseSettings):
    # Local storage
    db_url: str = "sqlite:///data/doclib.db"

    # Remote library API (manifest pull / push / server-side render)
    api_base_url: str = "http://localhost:8080"
    api_token: Optional[str] = Field(
        default=None,
        description="Bearer token sent to the remote API (the auth flow lives in the UI shell)",
    )
    request_timeout_seconds: float = 30.0

    # Page cache
    cache_dir: str = "data/page_cache"
    cache_max_size_mb: int = 500
    cache_expiry_days: int = 30
    # In-memory hot layer in front of the disk blobs
    memory_cache_bytes: int = 32 * 1024 * 1024

    # Sync + offline job queue
    sync_interval_seconds: int = 300
    job_retry_interval_seconds: int = 60
    job_max_attempts: int = 5
    # A push that keeps failing marks its jobs failed after this many attempts
    push_max_attempts: int = 3
    backoff_base_seconds: int = 30
    backoff_jitter_seconds: int = 10
    completed_job_retention_days: int = 7
    verify_manifest_checksum: bool = True
    scheduler_enabled: bool = False

    # Page rendering
    render_default_dpi: int = 150
    render_default_format: str = "webp"
    # True = native worker first, server render as fallback
    render_prefer_native: bool = True

    # CORS settings (the UI shell talks to this service over localhost)
    allowed_origins: str = "http://localhost:3000,http://localhost:8000"

    log_level: str = "INFO"

    model_config = ConfigDict(
        # Always load .env from the same folder as this settings.py
        env_file=str(Path(__file__).resolve().parent / ".env"),
        extra="ignore",
    )

    def get_origins_list(self) -> List[str]:
        """Parse comma-separated origins into a list."""
        if not self.allowed_origins:
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def cache_max_size_bytes(self) -> int:
        return self.cache_max_size_mb * 1024 * 1024


_settings_instance = None

def get_settings() -> Settings:
    """Singleton pattern for settings."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
