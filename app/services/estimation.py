"""Consumption estimation for meters with no reading in a billing period."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
from app.core.money import ZERO, round_money
from app.models.enums import EstimationMethod, ReadingType
from app.models.meter import Meter
from app.models.meter_reading import MeterReading
from app.services.readings import add_reading, average_monthly_consumption

logger = logging.getLogger(__name__)

# Month -> multiplier applied to the trailing average
SEASONAL_FACTORS = {
    6: Decimal("1.2"),
    7: Decimal("1.2"),
    8: Decimal("1.2"),
    12: Decimal("0.9"),
    1: Decimal("0.9"),
    2: Decimal("0.9"),
}


def seasonal_factor(month: int) -> Decimal:
    return SEASONAL_FACTORS.get(month, Decimal("1"))


def estimate_consumption(
    db: Session,
    meter: Meter,
    period_end: date,
    policy: BillingPolicy,
) -> Decimal:
    """Estimated consumption for the period ending ``period_end``.

    ``repeat_last`` estimates no consumption (the last value is repeated).
    ``trailing_average`` uses the mean of the last ``estimation_window``
    intervals and ``seasonal`` scales that mean by the month's factor.
    """
    if policy.estimation_method == EstimationMethod.REPEAT_LAST:
        return ZERO

    average, periods = average_monthly_consumption(
        db, meter.id, period_end, window=policy.estimation_window
    )
    if periods == 0:
        return ZERO
    if policy.estimation_method == EstimationMethod.SEASONAL:
        return round_money(average * seasonal_factor(period_end.month))
    return average


def create_estimated_reading(
    db: Session,
    meter: Meter,
    previous: MeterReading | None,
    period_end: date,
    policy: BillingPolicy,
) -> MeterReading | None:
    """Persist an estimated reading dated ``period_end``.

    Returns None when there is no earlier reading to estimate from.
    Runs inside the caller's transaction.
    """
    if previous is None:
        return None

    consumption = estimate_consumption(db, meter, period_end, policy)
    logger.info(
        "Estimating meter %s for period ending %s: %s units (%s)",
        meter.id,
        period_end,
        consumption,
        policy.estimation_method.value,
    )
    return add_reading(
        db,
        meter.id,
        period_end,
        previous.value + consumption,
        reading_type=ReadingType.ESTIMATED,
        notes=f"Estimated using {policy.estimation_method.value}",
    )
