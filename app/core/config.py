"""Application configuration settings."""

import os
from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.models.enums import EstimationMethod


def _get_default_database_url() -> str:
    """Get the default database URL, using a mounted volume path if available."""
    if os.path.isdir("/data"):
        return "sqlite:////data/utility_billing.db"
    return "sqlite:///./utility_billing.db"


class LateFeePolicy(BaseModel):
    """Late fee rule: zero within the grace period, else a clamped percentage."""

    model_config = ConfigDict(frozen=True)

    grace_period_days: int = 14
    percentage: Decimal = Decimal("5")
    minimum_amount: Decimal = Decimal("50")
    maximum_amount: Decimal = Decimal("5000")


class BillingPolicy(BaseModel):
    """Policy values consumed by the billing and reconciliation engine.

    Built once from settings and passed explicitly into every engine call.
    """

    model_config = ConfigDict(frozen=True)

    min_allocation_epsilon: Decimal = Decimal("0.01")
    prevent_duplicate_bills: bool = True
    estimation_enabled: bool = True
    estimation_method: EstimationMethod = EstimationMethod.TRAILING_AVERAGE
    estimation_window: int = 3
    full_allocation_required: bool = True
    carry_forward_overpayments: bool = True
    late_fee: LateFeePolicy = LateFeePolicy()
    due_days: int = 14
    bulk_fixed_charge_multiplier: Decimal = Decimal("1")
    lock_timeout_seconds: int = 30
    balance_cache_ttl_seconds: int = 300


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    PROJECT_NAME: str = "Utility Billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = True
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Database - defaults to a volume path if /data exists
    DATABASE_URL: str = _get_default_database_url()

    # Billing policy
    BILLING_MIN_ALLOCATION: Decimal = Decimal("0.01")
    BILLING_PREVENT_DUPLICATES: bool = True
    BILLING_ESTIMATION_ENABLED: bool = True
    BILLING_ESTIMATION_METHOD: EstimationMethod = EstimationMethod.TRAILING_AVERAGE
    BILLING_ESTIMATION_WINDOW: int = 3
    BILLING_FULL_ALLOCATION_REQUIRED: bool = True
    BILLING_CARRY_FORWARD_OVERPAYMENTS: bool = True
    BILLING_DUE_DAYS: int = 14
    BILLING_BULK_FIXED_CHARGE_MULTIPLIER: Decimal = Decimal("1")
    BILLING_LOCK_TIMEOUT_SECONDS: int = 30
    BILLING_BALANCE_CACHE_TTL: int = 300

    # Late fees
    BILLING_GRACE_PERIOD_DAYS: int = 14
    BILLING_LATE_FEE_PERCENTAGE: Decimal = Decimal("5")
    BILLING_LATE_FEE_MIN: Decimal = Decimal("50")
    BILLING_LATE_FEE_MAX: Decimal = Decimal("5000")

    def billing_policy(self) -> BillingPolicy:
        """Build the explicit policy object handed to the engine."""
        return BillingPolicy(
            min_allocation_epsilon=self.BILLING_MIN_ALLOCATION,
            prevent_duplicate_bills=self.BILLING_PREVENT_DUPLICATES,
            estimation_enabled=self.BILLING_ESTIMATION_ENABLED,
            estimation_method=self.BILLING_ESTIMATION_METHOD,
            estimation_window=self.BILLING_ESTIMATION_WINDOW,
            full_allocation_required=self.BILLING_FULL_ALLOCATION_REQUIRED,
            carry_forward_overpayments=self.BILLING_CARRY_FORWARD_OVERPAYMENTS,
            late_fee=LateFeePolicy(
                grace_period_days=self.BILLING_GRACE_PERIOD_DAYS,
                percentage=self.BILLING_LATE_FEE_PERCENTAGE,
                minimum_amount=self.BILLING_LATE_FEE_MIN,
                maximum_amount=self.BILLING_LATE_FEE_MAX,
            ),
            due_days=self.BILLING_DUE_DAYS,
            bulk_fixed_charge_multiplier=self.BILLING_BULK_FIXED_CHARGE_MULTIPLIER,
            lock_timeout_seconds=self.BILLING_LOCK_TIMEOUT_SECONDS,
            balance_cache_ttl_seconds=self.BILLING_BALANCE_CACHE_TTL,
        )


settings = Settings()


def get_policy() -> BillingPolicy:
    """Dependency for getting the billing policy."""
    return settings.billing_policy()
