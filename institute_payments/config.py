"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class PaymentsConfig(BaseSettings):
    """Institute payments service configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///institute_payments.db"  # or memory://
    
    # Runtime environment (development exposes internal error detail)
    environment: str = "production"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    cors_origins: str = "*"  # Comma separated
    
    # Security configuration (tokens are issued by the auth service)
    jwt_secret: str = "change-me-in-production-0123456789abcdef"
    jwt_algorithm: str = "HS256"
    auth_enabled: bool = True
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    amount_tolerance: str = "0.01"  # Max installment sum drift at creation
    
    # Overdue sweeper
    sweeper_enabled: bool = True
    sweep_interval_seconds: int = 300
    sweep_on_read: bool = True
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "INSTITUTE_"
        env_file = ".env"
        case_sensitive = False
    
    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")


# Global configuration instance
config = PaymentsConfig()


def get_config() -> PaymentsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PaymentsConfig:
    """Reload configuration from environment"""
    global config
    config = PaymentsConfig()
    return config
