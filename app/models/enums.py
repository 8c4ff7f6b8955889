"""Enum definitions for accounts, meters, bills and payments."""

from enum import Enum


class AccountStatus(str, Enum):
    """Lifecycle status of a customer account."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class MeterType(str, Enum):
    """Individual meter vs bulk meter feeding sub-meters."""

    INDIVIDUAL = "individual"
    BULK = "bulk"


class ReadingType(str, Enum):
    """How a meter reading value was obtained."""

    ACTUAL = "actual"
    ESTIMATED = "estimated"
    CALCULATED = "calculated"  # Derived from a bulk meter reading


class BillStatus(str, Enum):
    """Bill lifecycle status."""

    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    VOIDED = "voided"


OUTSTANDING_BILL_STATUSES = (BillStatus.PENDING, BillStatus.PARTIALLY_PAID, BillStatus.OVERDUE)


class PaymentStatus(str, Enum):
    """Capture status of a payment."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ReconciliationStatus(str, Enum):
    """How much of a payment has been matched against bills."""

    PENDING = "pending"
    PARTIALLY_RECONCILED = "partially_reconciled"
    RECONCILED = "reconciled"


class CarryForwardType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class CarryForwardStatus(str, Enum):
    ACTIVE = "active"
    APPLIED = "applied"
    EXPIRED = "expired"


class EstimationMethod(str, Enum):
    """Strategy used when a meter has no reading for the billing period."""

    TRAILING_AVERAGE = "trailing_average"
    REPEAT_LAST = "repeat_last"
    SEASONAL = "seasonal"
