"""
Configuration Management Module

Centralized configuration using pydantic-settings, read from the
environment (LOAN_TRACKER_*) and an optional .env file.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict

from .currency import Currency


class LoanTrackerConfig(BaseSettings):
    """Loan tracker configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_TRACKER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage: "memory://" or "sqlite:///path/to/loans.db"
    database_url: str = "memory://"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules
    default_currency: str = "INR"
    amount_tolerance: str = "0.01"  # Allowed drift for principal + interest == amount
    max_tenure_months: int = 600

    # Feature flags
    enable_audit_logging: bool = True

    @property
    def currency(self) -> Currency:
        return Currency[self.default_currency.upper()]

    @property
    def tolerance(self) -> Decimal:
        return Decimal(self.amount_tolerance)


# Global configuration instance
config = LoanTrackerConfig()


def get_config() -> LoanTrackerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanTrackerConfig:
    """Reload configuration from environment"""
    global config
    config = LoanTrackerConfig()
    return config
