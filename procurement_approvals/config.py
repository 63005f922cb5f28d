"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ApprovalsConfig(BaseSettings):
    """Approval workflow engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # memory or sqlite
    sqlite_path: str = "approvals.db"

    # SLA configuration
    default_step_sla_hours: int = 72
    escalation_sla_hours: int = 24

    # Collaborator endpoints
    actor_directory_url: str = ""  # Empty = in-process directory
    actor_directory_api_key: str = ""
    notifier_webhook_url: str = ""  # Empty = log notifications only
    http_timeout: float = 2.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    actor_header: str = "X-Actor-Id"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "APPROVALS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ApprovalsConfig()


def get_config() -> ApprovalsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ApprovalsConfig:
    """Reload configuration from environment"""
    global config
    config = ApprovalsConfig()
    return config
