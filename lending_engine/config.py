"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings

from .fees import FeePolicy


class LendingConfig(BaseSettings):
    """Lending engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///lending.db"
    use_sqlite: bool = False    # In-memory storage unless enabled

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    amount_tolerance: str = "0.01"
    business_timezone: str = "America/Santo_Domingo"
    late_fee_overpayment_policy: str = "reject"  # reject or apply_to_balance

    # Tenant-wide default late fee policy
    default_late_fee_enabled: bool = True
    default_late_fee_rate: str = "2"
    default_grace_period_days: int = 0
    default_max_late_fee: str = "0"
    default_late_fee_mode: str = "daily"

    # Feature flags
    record_fee_history: bool = True
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False

    @property
    def tolerance(self) -> Decimal:
        return Decimal(self.amount_tolerance)

    @property
    def overpayment_applies_to_balance(self) -> bool:
        return self.late_fee_overpayment_policy.lower() == "apply_to_balance"

    def default_fee_policy(self) -> FeePolicy:
        """FeePolicy used for loans originated without one"""
        return FeePolicy(
            enabled=self.default_late_fee_enabled,
            rate_per_period=Decimal(self.default_late_fee_rate),
            grace_period_days=self.default_grace_period_days,
            max_late_fee=Decimal(self.default_max_late_fee),
            calculation_mode=self.default_late_fee_mode,
        )

    def business_today(self) -> date:
        """Current calendar date in the business timezone"""
        return datetime.now(ZoneInfo(self.business_timezone)).date()


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
