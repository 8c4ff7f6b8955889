"""Read-side schemas: balances, aging and payment history."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel


class AccountBalance(BaseModel):
    """Balance derived from bills, allocations and carry-forwards."""

    account_id: int
    total_billed: Decimal
    total_paid: Decimal
    outstanding_balance: Decimal
    available_credit: Decimal
    outstanding_debit: Decimal
    net_balance: Decimal  # May be negative when credit exceeds what is owed
    current_balance: Decimal  # net_balance floored at zero
    overdue_amount: Decimal
    outstanding_bill_count: int
    overdue_bill_count: int
    as_of: date


class AgingBucket(BaseModel):
    """Outstanding amount falling in one overdue range."""

    label: str
    bill_count: int
    amount: Decimal


class AgingReport(BaseModel):
    """Outstanding balance split by days overdue."""

    account_id: int
    as_of: date
    buckets: list[AgingBucket]
    total: Decimal


class PaymentHistoryEntry(BaseModel):
    """A payment and where it went."""

    payment_id: int
    reference: str
    amount: Decimal
    payment_date: date
    status: str
    reconciliation_status: str
    allocated: Decimal
    bill_ids: list[int]
    reconciled_at: datetime | None


class OutstandingBillsSummary(BaseModel):
    """Outstanding bills grouped by status and by period."""

    account_id: int
    bill_count: int
    total_outstanding: Decimal
    by_status: dict[str, Decimal]
    by_period: dict[str, Decimal]


class ProjectedAllocation(BaseModel):
    """How a hypothetical payment would land on one bill."""

    bill_id: int
    billing_period: str
    balance_before: Decimal
    from_credit: Decimal
    from_payment: Decimal
    balance_after: Decimal


class PaymentImpactProjection(BaseModel):
    """Dry run of FIFO reconciliation for a hypothetical amount."""

    account_id: int
    amount: Decimal
    allocations: list[ProjectedAllocation]
    credit_used: Decimal
    remaining_amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
