"""Tariff Pydantic schemas and charge calculation results."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator


class TariffRateCreate(BaseModel):
    """One consumption tier. ``max_units`` of None means unbounded."""

    name: str | None = None
    min_units: Decimal = Field(ge=0)
    max_units: Decimal | None = None
    rate_per_unit: Decimal = Field(ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "TariffRateCreate":
        if self.max_units is not None and self.max_units <= self.min_units:
            raise ValueError("max_units must be greater than min_units")
        return self


class TariffCreate(BaseModel):
    """Schema for creating a tariff version."""

    code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=100)
    meter_category: str | None = None  # None applies to every meter
    effective_from: date
    effective_to: date | None = None
    fixed_charge: Decimal = Field(default=Decimal("0"), ge=0)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    rates: list[TariffRateCreate]

    @field_validator("rates")
    @classmethod
    def validate_rates(cls, v: list[TariffRateCreate]) -> list[TariffRateCreate]:
        """Tiers must exist and must not overlap."""
        if not v:
            raise ValueError("A tariff needs at least one rate tier")
        ordered = sorted(v, key=lambda r: r.min_units)
        for lower, upper in zip(ordered, ordered[1:]):
            if lower.max_units is None or lower.max_units > upper.min_units:
                raise ValueError(
                    f"Tier starting at {upper.min_units} overlaps the tier starting at {lower.min_units}"
                )
        return ordered

    @model_validator(mode="after")
    def check_effective_range(self) -> "TariffCreate":
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must not be before effective_from")
        return self


class TariffRateResponse(BaseModel):
    """Schema for tariff rate response."""

    id: int
    name: str | None
    min_units: Decimal
    max_units: Decimal | None
    rate_per_unit: Decimal

    model_config = {"from_attributes": True}


class TariffResponse(BaseModel):
    """Schema for tariff response."""

    id: int
    code: str
    name: str
    meter_category: str | None
    effective_from: date
    effective_to: date | None
    fixed_charge: Decimal
    tax_rate: Decimal
    is_active: bool
    created_at: datetime
    rates: list[TariffRateResponse]

    model_config = {"from_attributes": True}


# Charge calculation schemas


class ChargeBreakdownItem(BaseModel):
    """Units and charge attributed to one tier."""

    tier: str
    units: Decimal
    rate: Decimal
    charge: Decimal


class ChargeResult(BaseModel):
    """Charges for one consumption figure under one tariff."""

    consumption: Decimal
    consumption_charge: Decimal
    fixed_charge: Decimal
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    average_rate: Decimal
    breakdown: list[ChargeBreakdownItem]


class ChargeQuote(BaseModel):
    """Request for a charge quote against one tariff."""

    consumption: Decimal = Field(ge=0)
    is_bulk: bool = False


class TariffComparison(BaseModel):
    """The same consumption priced under one candidate tariff."""

    tariff_id: int
    code: str
    name: str
    charges: ChargeResult
