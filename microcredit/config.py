"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class MicrocreditConfig(BaseSettings):
    """Microcredit portal configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///microcredit.db"  # memory:// for in-memory
    transaction_max_attempts: int = 5
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Security configuration
    auth_enabled: bool = False
    jwt_secret: str = "change-me-in-production-with-32-bytes"
    jwt_algorithm: str = "HS256"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    default_currency: str = "USD"
    simulator_min_amount: str = "3000"
    simulator_max_amount: str = "10000"
    simulator_insurance_fee: str = "15"
    simulator_legal_fee_rate: str = "0.02"
    reminder_days_before_due: int = 3
    payment_activity_days: int = 30
    aging_bucket_bounds: List[int] = [30, 60, 90]  # upper bounds of 1-30/31-60/61-90, rest is >90
    
    class Config:
        env_prefix = "MICROCREDIT_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicrocreditConfig()


def get_config() -> MicrocreditConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrocreditConfig:
    """Reload configuration from environment"""
    global config
    config = MicrocreditConfig()
    return config
