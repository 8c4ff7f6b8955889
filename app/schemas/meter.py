"""Meter Pydantic schemas for request/response validation."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from app.models.enums import MeterType


class MeterCreate(BaseModel):
    """Schema for creating an individual or bulk meter."""

    account_id: int
    meter_number: str = Field(min_length=1, max_length=50)
    name: str | None = None
    meter_type: MeterType = MeterType.INDIVIDUAL
    category: str | None = None


class SubMeterCreate(BaseModel):
    """Schema for attaching a sub-meter to a bulk meter.

    The sub-meter may belong to a different account than the bulk meter.
    """

    account_id: int
    parent_meter_id: int
    meter_number: str = Field(min_length=1, max_length=50)
    name: str | None = None
    category: str | None = None  # Defaults to the bulk meter's category
    allocation_percentage: Decimal = Field(gt=0, le=100)


class MeterResponse(BaseModel):
    """Schema for meter response."""

    id: int
    account_id: int
    meter_number: str
    name: str | None
    meter_type: MeterType
    category: str | None
    parent_meter_id: int | None
    allocation_percentage: Decimal | None
    created_at: datetime
    is_active: bool

    model_config = {"from_attributes": True}


class MeterUpdate(BaseModel):
    """Schema for updating a meter."""

    name: str | None = None
    category: str | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def check_at_least_one_field(self) -> "MeterUpdate":
        """Ensure at least one field is provided for update."""
        if all(v is None for v in [self.name, self.category, self.is_active]):
            raise ValueError("At least one field must be provided for update")
        return self


class SubMeterAllocationUpdate(BaseModel):
    """New allocation percentages keyed by sub-meter id."""

    allocations: dict[int, Decimal]

    @model_validator(mode="after")
    def check_not_empty(self) -> "SubMeterAllocationUpdate":
        if not self.allocations:
            raise ValueError("At least one allocation must be provided")
        return self


class BulkSetupValidation(BaseModel):
    """Result of checking a bulk meter's sub-meter configuration."""

    meter_id: int
    valid: bool
    errors: list[str]
    total_allocation: Decimal
    sub_meter_count: int
    active_sub_meter_count: int
