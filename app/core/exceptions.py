"""Domain errors raised by the billing engine.

Each error carries a stable ``code`` the caller can branch on. The HTTP
status is only used by the API layer when translating the error.
"""

from typing import Any


class BillingError(Exception):
    """Base class for all engine errors."""

    code = "billing_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFound(BillingError):
    code = "not_found"
    status_code = 404


class InvalidState(BillingError):
    code = "invalid_state"
    status_code = 409


class DuplicateBill(BillingError):
    code = "duplicate_bill"
    status_code = 409


class NoActiveMeters(BillingError):
    code = "no_active_meters"
    status_code = 422


class NoBillableReadings(BillingError):
    code = "no_billable_readings"
    status_code = 422


class NoTariff(BillingError):
    code = "no_tariff"
    status_code = 422


class AmbiguousTariff(BillingError):
    code = "ambiguous_tariff"
    status_code = 422


class InvalidTariff(BillingError):
    code = "invalid_tariff"
    status_code = 422


class AlreadyReconciled(BillingError):
    code = "already_reconciled"
    status_code = 409


class NotReconciled(BillingError):
    code = "not_reconciled"
    status_code = 409


class AlreadyDistributed(BillingError):
    code = "already_distributed"
    status_code = 409


class NegativeConsumption(BillingError):
    code = "negative_consumption"
    status_code = 422


class InvalidAllocationPercentage(BillingError):
    code = "invalid_allocation_percentage"
    status_code = 422


class InvalidAllocationAmount(BillingError):
    code = "invalid_allocation_amount"
    status_code = 422


class AllocationExceedsBillBalance(BillingError):
    code = "allocation_exceeds_bill_balance"
    status_code = 422


class AllocationExceedsPayment(BillingError):
    code = "allocation_exceeds_payment"
    status_code = 422


class DuplicateReading(BillingError):
    code = "duplicate_reading"
    status_code = 409


class DuplicatePaymentReference(BillingError):
    code = "duplicate_payment_reference"
    status_code = 409


class AccountLocked(BillingError):
    """Another operation holds the account lock; safe to retry with backoff."""

    code = "account_locked"
    status_code = 503
    retryable = True
