"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ForexConfig(BaseSettings):
    """Forex back-office engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///forex_ledger.db"  # or memory:// for tests

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Default rates, used until an administrator records settings
    usd_rate: str = "600"
    eur_rate: str = "655.96"
    usd_buy_rate: str = "590"
    usd_sell_rate: str = "610"
    eur_buy_rate: str = "650"
    eur_sell_rate: str = "665"

    # Business rules configuration
    transfer_commission_min: str = "0"  # commission must be strictly above this
    settlement_tolerance: str = "0.01"
    settlement_number_prefix: str = "ARR"

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_timeout: float = 5.0

    class Config:
        env_prefix = "FOREX_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ForexConfig()


def get_config() -> ForexConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ForexConfig:
    """Reload configuration from environment"""
    global config
    config = ForexConfig()
    return config
