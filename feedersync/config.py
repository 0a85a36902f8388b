"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Feeder Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str  # postgres connection string for asyncpg
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20

    # --- Device protocol ---
    device_signature_enabled: bool = False
    poll_interval_sec: int = 60
    nonce_window_sec: int = 300
    max_poll_per_minute: int = 120
    command_batch_size: int = 10
    redeliver_unacked_commands: bool = True

    # --- Security ---
    device_secret_encryption_key: str  # base64, decodes to 16/24/32 bytes
    operator_jwt_secret: str  # HS256 key for the management API

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
