"""Configuration via environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Store
    store_backend: str = "json"  # memory | json | encrypted
    data_store_path: Path = Path("data/store.json")
    data_audit_path: Path = Path("data/audit")
    age_recipient: str = ""
    age_identity: str = ""

    # Dosing defaults
    default_max_daily_doses: int = 4
    low_supply_threshold: float = 5.0

    # Locale
    timezone: str = "UTC"
    locale: str = "en-US"

    # App
    app_host: str = "127.0.0.1"
    app_port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "MEDTRACK_"}


settings = Settings()
