"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class ProvisioningConfig(BaseSettings):
    """Account provisioning service configuration"""

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///provisioning.db"  # memory://, sqlite:///..., postgresql://...
    database_timeout: float = 5.0  # Seconds; bounds every persistence call

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Operator key for the recovery regenerate endpoint. Empty = endpoint disabled.
    operator_api_key: str = ""

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Provisioning rules
    allocation_max_attempts: int = 10

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = ProvisioningConfig()


def get_config() -> ProvisioningConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ProvisioningConfig:
    """Reload configuration from environment"""
    global config
    config = ProvisioningConfig()
    return config
