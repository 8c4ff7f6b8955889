"""Bill Pydantic schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from app.models.enums import BillStatus


def _check_period(v: str) -> str:
    year, sep, month = v.partition("-")
    if sep != "-" or len(year) != 4 or len(month) != 2 or not (year + month).isdigit():
        raise ValueError("Billing period must look like YYYY-MM")
    if not 1 <= int(month) <= 12:
        raise ValueError("Billing period month must be between 01 and 12")
    return v


class BillGenerateRequest(BaseModel):
    """Schema for generating one account's bill."""

    account_id: int
    billing_period: str
    issue_date: date | None = None

    @field_validator("billing_period")
    @classmethod
    def validate_period(cls, v: str) -> str:
        return _check_period(v)


class BulkBillGenerateRequest(BaseModel):
    """Schema for generating bills for many accounts in one run."""

    account_ids: list[int] = Field(min_length=1)
    billing_period: str
    issue_date: date | None = None

    @field_validator("billing_period")
    @classmethod
    def validate_period(cls, v: str) -> str:
        return _check_period(v)


class VoidBillRequest(BaseModel):
    """Schema for voiding a bill, optionally regenerating it."""

    reason: str = Field(min_length=1, max_length=500)
    regenerate: bool = False


class CreditNoteRequest(BaseModel):
    """Schema for reducing a bill's total."""

    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=255)


class BillingDetailResponse(BaseModel):
    """Schema for one meter's line on a bill."""

    id: int
    meter_id: int
    tariff_id: int | None
    previous_reading_value: Decimal
    current_reading_value: Decimal
    units_used: Decimal
    rate: Decimal
    consumption_charge: Decimal
    fixed_charge: Decimal
    tax: Decimal
    amount: Decimal
    description: str | None
    is_estimated: bool
    needs_review: bool

    model_config = {"from_attributes": True}


class BillResponse(BaseModel):
    """Schema for bill response."""

    id: int
    account_id: int
    billing_period: str
    total_amount: Decimal
    status: BillStatus
    is_estimated: bool
    issued_at: datetime
    due_date: date
    paid_at: datetime | None
    voided_at: datetime | None
    void_reason: str | None
    voided_by: int | None
    generated_by: int | None
    replaces_bill_id: int | None
    replaced_by_bill_id: int | None
    details: list[BillingDetailResponse]

    model_config = {"from_attributes": True}


class VoidBillResult(BaseModel):
    """The voided bill and its replacement, if one was generated."""

    voided: BillResponse
    replacement: BillResponse | None
    released_carry_forward_ids: list[int] = []  # Credits opened from payments on the voided bill


class LateFeeResponse(BaseModel):
    """Late fee owed on one bill as of a date."""

    bill_id: int
    days_overdue: int
    balance: Decimal
    late_fee: Decimal


class AccountGenerationOutcome(BaseModel):
    """Per-account result of a bulk generation run."""

    account_id: int
    success: bool
    bill_id: int | None = None
    total_amount: Decimal | None = None
    error_code: str | None = None
    error: str | None = None


class BulkGenerationResult(BaseModel):
    """Tally of a bulk generation run."""

    billing_period: str
    total: int
    succeeded: int
    failed: int
    outcomes: list[AccountGenerationOutcome]
