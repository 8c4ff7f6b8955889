"""Payment and reconciliation Pydantic schemas."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from app.models.enums import (
    BillStatus,
    CarryForwardStatus,
    CarryForwardType,
    PaymentStatus,
    ReconciliationStatus,
)


class PaymentCreate(BaseModel):
    """Schema for recording a received payment."""

    account_id: int
    amount: Decimal = Field(gt=0)
    method: str = Field(min_length=1, max_length=50)
    reference: str = Field(min_length=1, max_length=100)
    payment_date: date | None = None
    status: PaymentStatus = PaymentStatus.COMPLETED


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    id: int
    account_id: int
    amount: Decimal
    method: str
    reference: str
    payment_date: date
    status: PaymentStatus
    reconciliation_status: ReconciliationStatus
    reconciled_at: datetime | None
    reconciled_by: int | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ManualAllocation(BaseModel):
    """Caller-chosen amount to apply to one bill."""

    bill_id: int
    amount: Decimal


class ReconcileRequest(BaseModel):
    """Schema for reconciling a payment. Omit allocations for FIFO mode."""

    allocations: list[ManualAllocation] | None = None


class AllocationResponse(BaseModel):
    """Schema for one ledger allocation row."""

    id: int
    payment_id: int
    bill_id: int
    allocated_amount: Decimal
    allocation_date: datetime

    model_config = {"from_attributes": True}


class CreditApplicationResponse(BaseModel):
    """Schema for part of a carry-forward credit applied to a bill."""

    id: int
    carry_forward_id: int
    bill_id: int
    applied_during_payment_id: int | None
    amount: Decimal
    applied_at: datetime

    model_config = {"from_attributes": True}


class CarryForwardResponse(BaseModel):
    """Schema for a carry-forward balance."""

    id: int
    account_id: int
    payment_id: int | None
    type: CarryForwardType
    original_amount: Decimal
    balance: Decimal
    status: CarryForwardStatus
    expires_at: datetime | None
    description: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class BillSettlement(BaseModel):
    """A bill touched by a reconciliation, after its status was recomputed."""

    bill_id: int
    status: BillStatus
    balance: Decimal


class ReconciliationResult(BaseModel):
    """Outcome of reconciling one payment."""

    payment_id: int
    account_id: int
    reconciliation_status: ReconciliationStatus
    allocations: list[AllocationResponse]
    credit_applications: list[CreditApplicationResponse]
    total_allocated: Decimal  # Cash from this payment
    credit_applied: Decimal  # Drawn from earlier carry-forward credits
    remaining_amount: Decimal
    carry_forward: CarryForwardResponse | None
    bills: list[BillSettlement]
    account_balance: Decimal


class ReversalResult(BaseModel):
    """Outcome of reversing a reconciliation."""

    payment_id: int
    account_id: int
    allocations_reversed: int
    credit_applications_reversed: int
    amount_reversed: Decimal
    credits_restored: Decimal
    deleted_carry_forward_ids: list[int]
    bills: list[BillSettlement]


class ReconciliationReport(BaseModel):
    """Where a payment's money currently sits."""

    payment: PaymentResponse
    allocations: list[AllocationResponse]
    credit_applications: list[CreditApplicationResponse]
    cash_allocated: Decimal
    credit_applied: Decimal
    unallocated: Decimal
    carry_forwards: list[CarryForwardResponse]
