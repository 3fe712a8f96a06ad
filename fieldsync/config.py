from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    # Core
    environment: str = Field(default="dev")
    app_name: str = Field(default="FieldSync")
    tz_default: str = Field(default="America/Sao_Paulo", alias="TZ_DEFAULT")

    # Local store
    database_url: str = Field(
        default="sqlite:///./var/fieldsync.db",
        alias="DATABASE_URL",
        description="e.g., sqlite:///./var/fieldsync.db or sqlite:// for in-memory",
    )
    reset_on_corruption: bool = Field(default=True, alias="RESET_ON_CORRUPTION")

    # Remote API
    api_base_url: Optional[str] = Field(default=None, alias="API_BASE_URL")
    api_token: Optional[str] = Field(default=None, alias="API_TOKEN")
    technician_id: Optional[str] = Field(default=None, alias="TECHNICIAN_ID")
    http_timeout_s: float = Field(default=30.0, alias="HTTP_TIMEOUT_S")
    upload_timeout_s: float = Field(default=120.0, alias="UPLOAD_TIMEOUT_S")

    # Network probe
    network_probe_url: Optional[str] = Field(default=None, alias="NETWORK_PROBE_URL")
    network_probe_timeout_s: float = Field(default=5.0, alias="NETWORK_PROBE_TIMEOUT_S")

    # Sync
    sync_batch_size: int = Field(default=100, alias="SYNC_BATCH_SIZE")
    outbox_max_attempts: int = Field(default=5, alias="OUTBOX_MAX_ATTEMPTS")
    outbox_cleanup_days: int = Field(default=7, alias="OUTBOX_CLEANUP_DAYS")
    work_order_window_past_days: int = Field(default=30, alias="WORK_ORDER_WINDOW_PAST_DAYS")
    work_order_window_future_days: int = Field(default=60, alias="WORK_ORDER_WINDOW_FUTURE_DAYS")

    # Attachments
    attachment_dir: str = Field(default="var/attachments", alias="ATTACHMENT_DIR")
    attachment_max_upload_attempts: int = Field(default=5, alias="ATTACHMENT_MAX_UPLOAD_ATTEMPTS")
    delete_attachment_after_sync: bool = Field(default=True, alias="DELETE_ATTACHMENT_AFTER_SYNC")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


settings = Settings()
