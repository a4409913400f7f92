from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional, Literal


BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = f"sqlite:///{BASE_DIR}/data/db/momentsync.db"

    # Remote API
    api_base_url: str = "https://1test1.xyz/api/v1"
    api_app_token: Optional[str] = None
    api_user_id: str = "test-user-id"
    app_token_header: str = "x-api-key"
    user_id_header: str = "x-user-id"
    network_timeout_seconds: float = 30.0

    # Local API server
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Optional[Path] = BASE_DIR / "momentsync.log"

    # Sync Engine
    sync_enabled: bool = True
    sync_interval_seconds: float = 30.0
    sync_max_concurrency: int = 4             # worker pool for batch sweeps
    sync_max_attempts: int = 5                # per operation, before giving up until next sweep
    sync_backoff_base_seconds: float = 1.0
    sync_backoff_cap_seconds: float = 60.0
    sync_backoff_jitter: float = 0.25         # ±25%

    # Enrichment polling (create flow)
    praise_poll_interval_seconds: float = 2.0
    max_praise_polls: int = 10

    # Pagination
    page_size_default: int = 20
    page_size_max: int = 100
    refresh_page_size: int = 50

    # Archive
    archive_retention_days: int = 30

    def model_post_init(self, __context):
        db_path = self.sqlite_path
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def sqlite_path(self) -> Optional[Path]:
        """Filesystem path of a file-backed SQLite URL, else None."""
        prefix = "sqlite:///"
        if not self.database_url.startswith(prefix):
            return None
        raw = self.database_url[len(prefix):]
        if not raw or raw == ":memory:":
            return None
        return Path(raw)


settings = Settings()
