"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOANSVC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "loan_servicing.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    frontend_url: str = "http://localhost:3000"

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    cron_secret: str = ""  # Empty = cron endpoints unauthenticated

    # Payment gateway configuration
    gateway_api_key: str = ""  # Empty = mock gateway
    gateway_base_url: str = "https://api.stripe.com"
    gateway_timeout: float = 10.0
    webhook_secret: str = ""  # Empty = signature verification skipped (dev only)
    webhook_tolerance_seconds: int = 300
    session_expiry_seconds: int = 3600
    currency: str = "PKR"

    # Schedule and fine rules
    grace_period_days: int = 10
    daily_fine_rate: str = "0.01"  # 1% of installment amount per day
    max_fine_rate: str = "0.10"    # capped at 10%

    # Loan limits
    min_principal: str = "5000"
    max_principal: str = "500000"
    max_interest_rate: str = "30"
    min_tenure_months: int = 3
    max_tenure_months: int = 60

    # Reminder / overdue sweeps
    reminder_days_before_due: int = 3
    max_reminders: int = 3
    min_hours_between_reminders: int = 24
    sweep_item_delay_seconds: float = 0.1
    reminder_sweep_time: str = "09:00"  # UTC, HH:MM
    overdue_sweep_time: str = "10:00"
    scheduler_enabled: bool = True

    # Notification delivery
    notification_webhook_url: Optional[str] = None  # If None, notifications are logged
    notification_timeout: int = 30

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
