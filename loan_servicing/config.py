"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration, and the system-config port the core reads its late-fee policy from.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from .currency import Currency, to_decimal
from .late_fees import LateFeePolicy, LateFeeType


class LoanServicingConfig(BaseSettings):
    """Loan servicing core configuration"""

    # Database configuration
    database_url: str = "sqlite:///loans.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    currency: str = "DOP"
    late_fee_type: str = "PERCENTAGE_DAILY"
    late_fee_value: str = "0"  # Percent of the outstanding installment per day, e.g. "1.5"
    grace_period_days: int = 0
    reject_overpayment: bool = False  # False credits excess forward to later installments

    # Concurrency configuration
    max_conflict_retries: int = Field(3, ge=0)
    batch_max_workers: int = Field(4, gt=0)

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOANS_"
        env_file = ".env"
        case_sensitive = False

    @property
    def currency_enum(self) -> Currency:
        return Currency[self.currency.upper()]


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


class SystemConfigProvider(ABC):
    """Source of the active late-fee policy"""

    @abstractmethod
    def get_late_fee_policy(self) -> LateFeePolicy:
        pass


class SettingsConfigProvider(SystemConfigProvider):
    """Reads the late-fee policy from LoanServicingConfig"""

    def __init__(self, settings: Optional[LoanServicingConfig] = None):
        self.settings = settings or get_config()

    def get_late_fee_policy(self) -> LateFeePolicy:
        # Settings express the rate in percent, the policy as a fraction
        percent = to_decimal(self.settings.late_fee_value)
        return LateFeePolicy(
            type=LateFeeType[self.settings.late_fee_type.upper()],
            value=percent / Decimal('100'),
            grace_period_days=self.settings.grace_period_days,
        )


class StaticConfigProvider(SystemConfigProvider):
    """Fixed policy, for tests and embedded use"""

    def __init__(self, policy: LateFeePolicy):
        self.policy = policy

    def get_late_fee_policy(self) -> LateFeePolicy:
        return self.policy
