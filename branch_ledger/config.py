"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Branch ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///branch_ledger.db"  # memory://, sqlite:///path or postgresql://...
    storage_timeout_seconds: float = 10.0  # Bound on any single statement
    lock_timeout_seconds: float = 10.0     # Bound on waiting for a row/transaction lock

    # Business rules configuration
    currency: str = "LKR"
    fd_interest_interval_days: int = 30

    # Scheduler configuration
    scheduler_enabled: bool = True
    scheduler_timezone: str = "Asia/Colombo"
    fd_interest_cron_hour: int = 0   # Daily at 00:00
    fd_maturity_cron_hour: int = 1   # Daily at 01:00
    savings_interest_cron_day: int = 1  # 1st of every month at 00:00

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_logging: bool = True

    model_config = SettingsConfigDict(
        env_prefix="BRANCH_LEDGER_",
        env_file=".env",
        case_sensitive=False
    )


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
