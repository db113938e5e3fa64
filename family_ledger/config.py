"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Family ledger configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///family_ledger.db"  # memory://, sqlite:///..., postgresql://...
    database_pool_size: int = 5
    database_timeout: float = 30.0  # Seconds to wait for a locked database
    statement_timeout_ms: int = 0  # PostgreSQL only, 0 disables
    
    # Ledger rules
    page_size: int = 10
    max_append_retries: int = 5
    max_description_length: int = 200
    max_transaction_amount: int = 100_000_00  # Minor units
    
    # Display configuration
    currency_marker: str = "€"
    amount_width: int = 8
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


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
