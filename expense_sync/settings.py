import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # API Configuration
    api_url: str = Field(default="http://localhost:5000/api", alias="API_URL")
    request_timeout: float = Field(default=8.0, alias="REQUEST_TIMEOUT")
    max_retries: int = Field(default=1, alias="MAX_RETRIES")
    retry_delay: float = Field(default=1.0, alias="RETRY_DELAY")
    session_check_path: str = Field(default="/auth/me", alias="SESSION_CHECK_PATH")
    health_path: str = Field(default="/health", alias="HEALTH_PATH")
    probe_timeout: float = Field(default=3.0, alias="PROBE_TIMEOUT")
    probe_interval: int = Field(default=15, alias="PROBE_INTERVAL")

    # Cache Configuration
    cache_max_age: float = Field(default=30.0, alias="CACHE_MAX_AGE")
    cache_stale_max_age: float = Field(default=300.0, alias="CACHE_STALE_MAX_AGE")
    cache_max_entry_age: float = Field(default=300.0, alias="CACHE_MAX_ENTRY_AGE")
    cache_sweep_interval: int = Field(default=300, alias="CACHE_SWEEP_INTERVAL")
    cache_max_size: int = Field(default=500, alias="CACHE_MAX_SIZE")

    # Offline Queue Configuration
    queue_max_age_hours: int = Field(default=24, alias="QUEUE_MAX_AGE_HOURS")
    drain_settle_delay: float = Field(default=2.0, alias="DRAIN_SETTLE_DELAY")

    # Storage Configuration
    storage_url: str = Field(
        default="sqlite+aiosqlite:///./expense_sync.db", alias="STORAGE_URL"
    )
    storage_echo: bool = Field(default=False, alias="STORAGE_ECHO")

    debug: bool = Field(default=False, alias="DEBUG")


global_settings = Settings(**os.environ)
