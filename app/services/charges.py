"""Charge calculation - tiered consumption charges, fixed charges, tax and late fees.

Everything in this module is pure: no session, no I/O, no ambient settings.
Intermediate values keep full Decimal precision and are rounded to two
decimals only when the result is assembled.
"""

from collections.abc import Sequence
from decimal import Decimal
from typing import Protocol

from app.core.config import BillingPolicy, LateFeePolicy
from app.core.exceptions import InvalidAllocationPercentage, NegativeConsumption
from app.core.money import ZERO, round_money
from app.schemas.tariff import ChargeBreakdownItem, ChargeResult

HUNDRED = Decimal("100")
RATE_PLACES = Decimal("0.0001")


class RateTier(Protocol):
    name: str | None
    min_units: Decimal
    max_units: Decimal | None
    rate_per_unit: Decimal


class RateSchedule(Protocol):
    fixed_charge: Decimal
    tax_rate: Decimal
    rates: Sequence[RateTier]


def _units_text(units: Decimal) -> str:
    # 100.00 -> "100"
    return format(Decimal(units).normalize(), "f")


def _tier_label(tier: RateTier) -> str:
    if tier.name:
        return tier.name
    low = _units_text(tier.min_units)
    if tier.max_units is None:
        return f"{low}+"
    return f"{low}-{_units_text(tier.max_units)}"


def calculate_consumption_charge(
    consumption: Decimal,
    tiers: Sequence[RateTier],
) -> tuple[Decimal, list[ChargeBreakdownItem]]:
    """Walk the tiers in ascending order, filling each up to its width.

    A tier's width is ``max_units - min_units`` (unbounded when max is None).
    Tiers starting above the total consumption are skipped.
    Returns the unrounded charge and the per-tier breakdown.
    """
    remaining = consumption
    total = ZERO
    breakdown: list[ChargeBreakdownItem] = []

    for tier in sorted(tiers, key=lambda t: t.min_units):
        if remaining <= 0:
            break
        if tier.min_units > consumption:
            continue

        if tier.max_units is None:
            units = remaining
        else:
            units = min(remaining, tier.max_units - tier.min_units)
        if units <= 0:
            continue

        charge = units * tier.rate_per_unit
        total += charge
        remaining -= units
        breakdown.append(
            ChargeBreakdownItem(
                tier=_tier_label(tier),
                units=units,
                rate=tier.rate_per_unit,
                charge=round_money(charge),
            )
        )

    return total, breakdown


def calculate_charges(
    consumption: Decimal,
    tariff: RateSchedule,
    is_bulk: bool = False,
    policy: BillingPolicy | None = None,
) -> ChargeResult:
    """Price one consumption figure under one tariff.

    total = consumption charge + fixed charge + tax, where tax is
    ``tax_rate`` percent of the first two. Bulk meters pay the fixed
    charge times ``policy.bulk_fixed_charge_multiplier``.
    """
    if consumption < 0:
        raise NegativeConsumption(
            "Consumption cannot be negative",
            {"consumption": str(consumption)},
        )
    policy = policy or BillingPolicy()

    consumption_charge, breakdown = calculate_consumption_charge(consumption, tariff.rates)

    fixed = Decimal(tariff.fixed_charge or 0)
    if is_bulk:
        fixed *= policy.bulk_fixed_charge_multiplier

    subtotal = consumption_charge + fixed
    tax = subtotal * Decimal(tariff.tax_rate or 0) / HUNDRED

    if consumption > 0:
        average_rate = (consumption_charge / consumption).quantize(RATE_PLACES)
    else:
        average_rate = ZERO

    return ChargeResult(
        consumption=consumption,
        consumption_charge=round_money(consumption_charge),
        fixed_charge=round_money(fixed),
        subtotal=round_money(subtotal),
        tax=round_money(tax),
        total=round_money(subtotal + tax),
        average_rate=average_rate,
        breakdown=breakdown,
    )


def calculate_distributed_charges(
    bulk_consumption: Decimal,
    allocation_percentage: Decimal,
    tariff: RateSchedule,
    policy: BillingPolicy | None = None,
) -> ChargeResult:
    """Price a sub-meter's share of bulk consumption as an individual meter."""
    if allocation_percentage <= 0 or allocation_percentage > HUNDRED:
        raise InvalidAllocationPercentage(
            "Allocation percentage must be greater than 0 and at most 100",
            {"allocation_percentage": str(allocation_percentage)},
        )
    share = round_money(bulk_consumption * allocation_percentage / HUNDRED)
    return calculate_charges(share, tariff, is_bulk=False, policy=policy)


def calculate_late_fee(
    amount: Decimal,
    days_overdue: int,
    late_fee: LateFeePolicy,
) -> Decimal:
    """Late fee on an overdue amount.

    Zero within the grace period or when nothing is owed; otherwise the
    configured percentage of the amount, clamped to [minimum, maximum].
    """
    if amount <= 0 or days_overdue <= late_fee.grace_period_days:
        return ZERO

    fee = amount * late_fee.percentage / HUNDRED
    fee = max(fee, late_fee.minimum_amount)
    fee = min(fee, late_fee.maximum_amount)
    return round_money(fee)
