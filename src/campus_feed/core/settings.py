"""Application settings and configuration.

This module defines all configuration options for the Campus Feed client.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_COLLEGES = [
    "VIT Vellore",
    "IIT Bombay",
    "IIT Delhi",
    "IIT Madras",
    "IIT Kanpur",
    "IIT Kharagpur",
    "IIT Roorkee",
    "BITS Pilani",
    "NIT Trichy",
    "IIIT Hyderabad",
    "DTU Delhi",
    "NSUT Delhi",
    "MIT",
    "Stanford",
    "Harvard",
    "Caltech",
    "Cambridge",
    "Oxford",
    "ETH Zurich",
    "NUS Singapore",
]


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Campus Feed", alias="APP_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Backend selection: "rest" talks to the hosted project, "local" uses SQLAlchemy
    backend: str = Field(default="rest", alias="CAMPUS_FEED_BACKEND")

    # Hosted project endpoints
    supabase_url: str = Field(default="http://localhost:54321", alias="SUPABASE_URL")
    supabase_anon_key: str = Field(default="", alias="SUPABASE_ANON_KEY")
    rest_path: str = Field(default="/rest/v1", alias="REST_PATH")
    auth_path: str = Field(default="/auth/v1", alias="AUTH_PATH")
    storage_path: str = Field(default="/storage/v1", alias="STORAGE_PATH")
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")

    # Local backend
    local_database_url: str = Field(
        default="sqlite:///./campus_feed.db",
        alias="LOCAL_DATABASE_URL",
    )
    local_storage_dir: str = Field(default="./storage", alias="LOCAL_STORAGE_DIR")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Object storage
    storage_bucket: str = Field(default="post-images", alias="STORAGE_BUCKET")
    image_cache_control_seconds: int = Field(default=3600, alias="IMAGE_CACHE_CONTROL_SECONDS")

    # Feed and comment paging
    feed_limit: int = Field(default=50, alias="FEED_LIMIT")
    comment_page_size: int = Field(default=20, alias="COMMENT_PAGE_SIZE")

    # Realtime delivery
    realtime_queue_size: int = Field(default=256, alias="REALTIME_QUEUE_SIZE")
    realtime_changes_path: str = Field(
        default="/realtime/v1/changes",
        alias="REALTIME_CHANGES_PATH",
    )
    realtime_poll_interval_seconds: float = Field(
        default=1.0,
        alias="REALTIME_POLL_INTERVAL_SECONDS",
    )

    # Onboarding
    colleges: list[str] = Field(default=DEFAULT_COLLEGES, alias="COLLEGES")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def rest_url(self) -> str:
        """Return the base URL of the table API."""
        return self.supabase_url.rstrip("/") + self.rest_path

    @property
    def auth_url(self) -> str:
        """Return the base URL of the identity service."""
        return self.supabase_url.rstrip("/") + self.auth_path

    @property
    def storage_url(self) -> str:
        """Return the base URL of the object storage service."""
        return self.supabase_url.rstrip("/") + self.storage_path

    @property
    def uses_local_backend(self) -> bool:
        return self.backend.lower() == "local"


settings = Settings()
