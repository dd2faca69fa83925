"""
Configuration management for the warehouse sync service
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Warehouse Sync Service"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./warehouse_sync.db"

    # Service account (JSON text). Used when the request carries no key.
    google_service_account_json: Optional[str] = None
    warehouse_project_id: Optional[str] = None

    # OAuth / BigQuery endpoints
    oauth_token_uri: str = "https://oauth2.googleapis.com/token"
    warehouse_scope: str = "https://www.googleapis.com/auth/bigquery.readonly"
    warehouse_api_base: str = "https://bigquery.googleapis.com/bigquery/v2"
    token_lifetime_seconds: int = 3600
    http_timeout_seconds: float = 90.0
    query_timeout_ms: int = 60000

    # Pipeline defaults
    default_channels: List[str] = ["shopee", "lazada", "tiktok", "tiki"]
    default_batch_size: int = 2000
    upsert_batch_size: int = 100
    upsert_max_attempts: int = 3
    upsert_retry_delay_seconds: float = 0.5
    query_max_attempts: int = 2
    query_retry_delay_seconds: float = 1.0
    auxiliary_row_limit: int = 5000  # settlements / products / customers per channel
    generic_row_limit: int = 5000
    sync_all_max_pages: int = 50

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
