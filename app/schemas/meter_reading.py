"""MeterReading Pydantic schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from app.models.enums import ReadingType


class MeterReadingBase(BaseModel):
    """Base meter reading schema."""

    reading_date: date
    value: Decimal = Field(ge=0)


class MeterReadingCreate(MeterReadingBase):
    """Schema for recording a single meter reading."""

    meter_id: int
    reading_type: ReadingType = ReadingType.ACTUAL
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("reading_type")
    @classmethod
    def validate_reading_type(cls, v: ReadingType) -> ReadingType:
        """Calculated readings are only produced by bulk distribution."""
        if v == ReadingType.CALCULATED:
            raise ValueError("Calculated readings cannot be recorded directly")
        return v


class MeterReadingResponse(MeterReadingBase):
    """Schema for meter reading response."""

    id: int
    meter_id: int
    reading_type: ReadingType
    parent_reading_id: int | None
    is_distributed: bool
    needs_review: bool
    notes: str | None
    created_at: datetime
    recorded_by: int | None

    model_config = {"from_attributes": True}


class MeterReadingHistory(BaseModel):
    """Schema for paginated meter reading history."""

    meter_id: int
    readings: list[MeterReadingResponse]
    total: int
    limit: int
    offset: int


class ConsumptionSummary(BaseModel):
    """Average consumption between successive readings of a meter."""

    meter_id: int
    periods: int
    average_consumption: Decimal


# Bulk distribution schemas


class SubMeterDistribution(BaseModel):
    """One sub-meter's share of a distributed bulk reading."""

    meter_id: int
    meter_number: str
    allocation_percentage: Decimal
    allocated_consumption: Decimal
    reading_id: int
    reading_value: Decimal


class DistributionResult(BaseModel):
    """Outcome of distributing one bulk reading to its sub-meters."""

    bulk_reading_id: int
    bulk_meter_id: int
    bulk_consumption: Decimal
    total_distributed: Decimal
    sub_meters: list[SubMeterDistribution]
