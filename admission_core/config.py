"""Configuration management using Pydantic Settings"""

from typing import List, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class TenantSettings(BaseModel):
    """Campus store registered at startup (ADMISSION_TENANTS as a JSON list)"""

    tenant_id: str
    display_name: str
    database_url: Optional[str] = None  # falls back to default_database_url
    invoice_prefix: Optional[str] = None
    enabled: bool = True


class Settings(BaseSettings):
    """Application configuration loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    default_database_url: str = "sqlite+aiosqlite:///./admissions.db"
    tenants: List[TenantSettings] = []
    pool_size: int = 5
    max_overflow: int = 5
    pool_recycle_seconds: int = 3600

    # Notifications
    notification_webhook_url: Optional[str] = None
    webhook_max_retries: int = 3
    webhook_backoff_base: float = 0.5  # Exponential backoff base in seconds
    http_timeout_seconds: float = 5.0

    # Numbering
    application_number_width: int = 5
    invoice_number_width: int = 5

    # Service
    service_name: str = "admission-core"
    log_level: str = "INFO"


settings = Settings()
