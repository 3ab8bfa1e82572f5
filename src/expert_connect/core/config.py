"""Configuration via environment variables.

Database settings follow the individual POSTGRES_* variable pattern; the
dispatch engine knobs are plain fields so a Settings instance can be passed
explicitly into every component (and built directly in tests).
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # --- Database ---
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "postgres"
    postgres_user: str = "postgres"
    postgres_password: str = ""

    # SQLite fallback for local dev and tests (set USE_SQLITE=true)
    use_sqlite: bool = False
    sqlite_path: str = "expert_connect.db"

    @property
    def database_url(self) -> str:
        if self.use_sqlite:
            return f"sqlite:///{self.sqlite_path}"
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # --- Offers ---
    offer_ttl_seconds: int = 30
    max_offers_listed: int = 50
    rejected_reason_max_length: int = 500

    # --- Queue ---
    avg_session_seconds: int = 600  # 10 minutes per wave
    queue_timeout_seconds: int = 0  # 0 disables timed_out

    # --- Dispatcher / control loop ---
    dispatch_interval_seconds: float = 2.0
    dispatch_batch: int = 10
    expire_batch: int = 50
    wake_channel: str = "expert_connect_kick"

    # --- Notification delivery ---
    notify_webhook_url: str = ""
    notify_api_key: str = ""
    notify_timeout_seconds: float = 10.0

    # --- Process ---
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = {"env_prefix": ""}
