import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from cottmv.gateway.transcode.coordinator import AbandonPolicy


class Settings(BaseSettings):
    sqlalchemy_echo: bool = False
    db_drop_and_recreate: bool = False  # If True: drops all tables and recreates (dev mode)

    database_url: str = "sqlite+aiosqlite:///data/cottmv.db"
    cors_origins: list[str] = ["*"]
    admin_token: str | None = None  # X-Admin-Token for /v1/admin; unset means open

    media_dir: Path = Path("data/media")

    cache_dir: Path = Path("data/cache/transcoded")
    cache_index_path: Path | None = None  # defaults to <cache_dir>/cache.db
    cache_max_size_gb: float = 10.0
    cache_ttl_hours: float = 24.0
    cleanup_interval_seconds: int = 3600

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    transcode_timeout_seconds: int = 900
    probe_timeout_seconds: int = 30
    kill_grace_seconds: float = 5.0
    max_concurrent_transcodes: int = 2
    abandon_policy: AbandonPolicy = AbandonPolicy.RUN_TO_COMPLETION
    progress_heartbeat_seconds: float = 15.0
    stream_fallback_to_original: bool = True

    ocr_command: list[str] = ["tesseract", "{input}", "stdout", "-l", "{lang}"]
    ocr_language: str = "eng"
    ocr_max_concurrent: int = 1
    ocr_timeout_seconds: int = 60
    ocr_max_text_length: int = 10_000

    log_dir: Path = Path("data/logs")
    metrics_db_path: Path | None = Path("data/metrics.db")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=[os.getenv("ENV_FILE", ""), ".env"],
        extra="ignore",
        env_nested_delimiter="__",
    )

    @property
    def resolved_cache_index_path(self) -> Path:
        return self.cache_index_path or self.cache_dir / "cache.db"

    @property
    def cache_max_size_bytes(self) -> int:
        return int(self.cache_max_size_gb * 1024**3)

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600


def get_settings() -> Settings:  # ty: ignore[invalid-return-type]
    """This is only used for dependency references, see __init__.py:

    app.dependency_overrides[get_settings] = lambda: Settings()  # type: ignore
    """
    ...
