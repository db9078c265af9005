"""
Configuration Management Module

Centralized, environment-driven configuration using pydantic-settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class OfflineSyncConfig(BaseSettings):
    """Offline sync service configuration"""

    # Storage configuration
    database_url: str = "sqlite:///offline_sync.db"  # or memory:// for tests

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24
    auth_enabled: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Offline queue policy
    max_offline_transactions: int = 10
    max_offline_amount: str = "1000.00"
    default_currency: str = "USD"

    # Retry policy
    retry_base_delay_ms: int = 60000
    retry_max_attempts: int = 5
    retry_scheduler_enabled: bool = False
    retry_scheduler_interval_seconds: float = 30.0

    # Metrics
    metrics_window: int = 1000
    slow_sync_threshold_ms: int = 2000

    # Demo data
    seed_demo_data: bool = True

    class Config:
        env_prefix = "OFFLINE_SYNC_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = OfflineSyncConfig()


def get_config() -> OfflineSyncConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> OfflineSyncConfig:
    """Reload configuration from environment"""
    global config
    config = OfflineSyncConfig()
    return config
