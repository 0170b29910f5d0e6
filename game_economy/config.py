"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class EconomyConfig(BaseSettings):
    """Game economy service configuration"""

    # Database configuration
    database_url: str = "sqlite:///economy.db"  # sqlite:///path or memory://
    store_retry_attempts: int = 3  # Bounded retries when the store is busy
    store_busy_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8092

    # Security configuration (tokens are issued by the auth service)
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    admin_role: str = "admin"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    max_amount: str = "999999999.9999"  # Largest literal accepted anywhere
    max_transfer_amount: str = "1000000.0000"  # Per-transfer ceiling

    # Tax rates by category, then by currency code
    tax_rates: Dict[str, Dict[str, str]] = {
        "transfer": {"EURO": "0.05", "GOLD": "0.05", "RON": "0.05"},
        "market": {"EURO": "0.10", "GOLD": "0.10", "RON": "0.10"},
        "work": {"EURO": "0.15", "GOLD": "0.15", "RON": "0.15"},
    }

    # Rate limiting: operation class -> "max_requests/window_seconds"
    enable_rate_limiting: bool = True
    rate_limit_strategy: str = "sliding"  # sliding or fixed
    rate_limits: Dict[str, str] = {
        "transfer": "10/60",
    }

    # Query configuration
    history_default_page_size: int = 50
    history_max_page_size: int = 100

    # Migration configuration
    migration_batch_log_every: int = 100
    treasury_id: str = "SINGLETON_TREASURY"

    class Config:
        env_prefix = "ECONOMY_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EconomyConfig()


def get_config() -> EconomyConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EconomyConfig:
    """Reload configuration from environment"""
    global config
    config = EconomyConfig()
    return config
