"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class UserBankingConfig(BaseSettings):
    """User banking service configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "user_banking.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_issuer: str = "user-banking"
    jwt_duration_minutes: int = 60
    jwt_algorithm: str = "HS256"
    password_min_length: int = 8

    # Bootstrap superuser (skipped when either is empty)
    root_email: str = ""
    root_password: str = ""

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Ledger configuration
    currency: str = "VND"

    # User lookup cache
    user_cache_enabled: bool = False
    user_cache_ttl_seconds: float = 300.0
    user_cache_max_size: int = 1000

    class Config:
        env_prefix = "USER_BANKING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = UserBankingConfig()


def get_config() -> UserBankingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> UserBankingConfig:
    """Reload configuration from environment"""
    global config
    config = UserBankingConfig()
    return config
