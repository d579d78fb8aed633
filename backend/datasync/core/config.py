"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"

    # Persistence
    snapshot_db_path: str = "./data/snapshots.db"
    storage_key_base: str = "hf_global_data_v1"
    seed_default_drivers: bool = True

    # Cross-instance sync
    channel_prefix: str = "hf-data-sync"
    audit_log_cap: int = 500

    # Remote bootstrap (empty URL disables that domain)
    fleet_data_url: str = ""
    crm_data_url: str = ""
    bootstrap_timeout_seconds: float = 12.0

    # Session / tenant resolution
    auth_enabled: bool = False
    # Comma-separated `token:org:user:role` entries.
    session_tokens: str = ""
    default_org_id: str = ""
    default_user_id: str = ""
    default_role: str = "admin"

    def bootstrap_enabled(self) -> bool:
        return bool((self.fleet_data_url or "").strip() or (self.crm_data_url or "").strip())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
