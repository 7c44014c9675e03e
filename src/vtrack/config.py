from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./vtrack.db"

    # Remote tabular API
    remote_base_url: str = "http://localhost:8080/api/v1"
    remote_token_url: str = "http://localhost:8080/oauth/token"
    credentials_dir: Path = Path.home() / ".vtrack" / "credentials"
    request_timeout_seconds: float = 20.0

    # Scheduling
    sync_interval_minutes: int = 5
    min_sync_interval_seconds: int = 60
    volunteer_pull_interval_seconds: int = 600  # volunteers rarely change remotely
    audit_cleanup_hour: int = 3

    # Queue / retries
    push_batch_size: int = 100
    max_retry_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    max_change_attempts: int = 5

    # Backups and audit
    backup_max_count: int = 10
    backup_min_records: int = 2
    audit_retention_days: int = 30
    audit_max_entries: int = 1000
    audit_level: str = "INFO"

    legacy_state_path: Path = Path("./legacy_sync_state.json")

    api_host: str = "127.0.0.1"
    api_port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "VTRACK_"


MAX_PUSH_BATCH_SIZE = 100

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
