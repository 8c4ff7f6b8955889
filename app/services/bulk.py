"""Bulk meter distribution - splitting a bulk reading across sub-meters."""

import logging
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
from app.core.database import atomic
from app.core.events import BulkReadingDistributed, dispatcher
from app.core.exceptions import (
    AlreadyDistributed,
    InvalidAllocationPercentage,
    InvalidState,
    NegativeConsumption,
    NotFound,
)
from app.core.money import ZERO, round_money
from app.models.enums import ReadingType
from app.models.meter import Meter
from app.models.meter_reading import MeterReading
from app.schemas.meter import BulkSetupValidation
from app.schemas.meter_reading import DistributionResult, SubMeterDistribution
from app.services.accounts import lock_account
from app.services.meters import get_meter
from app.services.readings import add_reading, get_previous_reading

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def split_consumption(
    bulk_consumption: Decimal,
    sub_meters: list[Meter],
) -> list[tuple[Meter, Decimal]]:
    """Each sub-meter's share: consumption x percentage / 100, to two decimals.

    When the percentages total exactly 100 the last sub-meter absorbs the
    rounding residue so the shares add up to the bulk consumption. The shares
    never add up to more than the bulk consumption.
    """
    shares: list[tuple[Meter, Decimal]] = []
    for meter in sub_meters:
        pct = meter.allocation_percentage
        if pct is None or pct <= 0 or pct > HUNDRED:
            raise InvalidAllocationPercentage(
                f"Sub-meter {meter.id} has an invalid allocation percentage",
                {"meter_id": meter.id, "allocation_percentage": str(pct)},
            )
        shares.append((meter, round_money(bulk_consumption * pct / HUNDRED)))

    if not shares:
        return shares

    total_pct = sum((m.allocation_percentage for m, _ in shares), ZERO)
    distributed = sum((share for _, share in shares), ZERO)
    residue = bulk_consumption - distributed
    if total_pct == HUNDRED or residue < 0:
        last_meter, last_share = shares[-1]
        shares[-1] = (last_meter, max(ZERO, last_share + residue))
    return shares


def validate_bulk_setup(db: Session, meter_id: int, policy: BillingPolicy) -> BulkSetupValidation:
    """Check a bulk meter's sub-meter configuration without changing anything."""
    meter = get_meter(db, meter_id)
    errors: list[str] = []

    active = meter.get_active_sub_meters()
    total = sum((m.allocation_percentage or ZERO for m in active), ZERO)

    if not meter.get_is_bulk():
        errors.append("Meter is not a bulk meter")
    if not active:
        errors.append("Bulk meter has no active sub-meters")
    for sub in active:
        pct = sub.allocation_percentage
        if pct is None or pct <= 0 or pct > HUNDRED:
            errors.append(f"Sub-meter {sub.meter_number} has an invalid allocation percentage")
    if total > HUNDRED:
        errors.append(f"Total allocation {total}% exceeds 100%")
    elif active and policy.full_allocation_required and total != HUNDRED:
        errors.append(f"Total allocation is {total}%, expected 100%")

    return BulkSetupValidation(
        meter_id=meter.id,
        valid=not errors,
        errors=errors,
        total_allocation=total,
        sub_meter_count=len(meter.sub_meters),
        active_sub_meter_count=len(active),
    )


def distribute_bulk_reading(
    db: Session,
    reading_id: int,
    policy: BillingPolicy,
    user_id: int | None = None,
) -> DistributionResult:
    """Turn one bulk reading into calculated readings on its sub-meters.

    Each sub-meter's new reading continues from its own previous reading and
    is dated like the bulk reading. A bulk reading is distributed at most once.
    """
    events = []
    with atomic(db):
        reading = db.query(MeterReading).filter(MeterReading.id == reading_id).first()
        if not reading:
            raise NotFound("Reading not found", {"reading_id": reading_id})
        meter = reading.meter

        lock_account(db, meter.account_id, policy)
        db.refresh(reading)

        if reading.is_distributed:
            raise AlreadyDistributed(
                f"Reading {reading.id} was already distributed at {reading.distributed_at}",
                {"reading_id": reading.id},
            )
        if not meter.get_is_bulk():
            raise InvalidState("Reading does not belong to a bulk meter", {"meter_id": meter.id})

        sub_meters = meter.get_active_sub_meters()
        if not sub_meters:
            raise InvalidState("Bulk meter has no active sub-meters", {"meter_id": meter.id})

        total_pct = sum((m.allocation_percentage or ZERO for m in sub_meters), ZERO)
        if policy.full_allocation_required and total_pct != HUNDRED:
            raise InvalidAllocationPercentage(
                f"Sub-meter allocations total {total_pct}%, expected 100%",
                {"meter_id": meter.id, "total_allocation": str(total_pct)},
            )
        if total_pct > HUNDRED:
            raise InvalidAllocationPercentage(
                f"Sub-meter allocations total {total_pct}%, more than 100%",
                {"meter_id": meter.id, "total_allocation": str(total_pct)},
            )

        previous = get_previous_reading(db, meter.id, reading.reading_date)
        if previous is None:
            raise InvalidState(
                "No earlier bulk reading to measure consumption from",
                {"reading_id": reading.id},
            )

        bulk_consumption = reading.value - previous.value
        if bulk_consumption < 0:
            raise NegativeConsumption(
                f"Bulk reading {reading.value} is below the previous reading {previous.value}",
                {"reading_id": reading.id, "previous_reading_id": previous.id},
            )

        distributions: list[SubMeterDistribution] = []
        for sub, share in split_consumption(bulk_consumption, sub_meters):
            sub_previous = get_previous_reading(db, sub.id, reading.reading_date)
            if sub_previous is None:
                # First distribution: open the sub-meter at zero on the bulk's previous date
                sub_previous = add_reading(
                    db,
                    sub.id,
                    previous.reading_date,
                    ZERO,
                    reading_type=ReadingType.CALCULATED,
                    parent_reading_id=previous.id,
                    recorded_by=user_id,
                    notes=f"Opening reading for bulk meter {meter.id}",
                )
            base = sub_previous.value
            sub_reading = add_reading(
                db,
                sub.id,
                reading.reading_date,
                base + share,
                reading_type=ReadingType.CALCULATED,
                parent_reading_id=reading.id,
                recorded_by=user_id,
                notes=f"{sub.allocation_percentage}% of bulk reading {reading.id}",
            )
            distributions.append(
                SubMeterDistribution(
                    meter_id=sub.id,
                    meter_number=sub.meter_number,
                    allocation_percentage=sub.allocation_percentage,
                    allocated_consumption=share,
                    reading_id=sub_reading.id,
                    reading_value=sub_reading.value,
                )
            )

        reading.is_distributed = True
        reading.distributed_at = datetime.now(UTC)
        db.flush()

        events.append(
            BulkReadingDistributed(
                bulk_reading_id=reading.id,
                meter_id=meter.id,
                bulk_consumption=bulk_consumption,
                sub_reading_ids=tuple(d.reading_id for d in distributions),
            )
        )

    dispatcher.publish(events)
    total = sum((d.allocated_consumption for d in distributions), ZERO)
    logger.info(
        "Distributed bulk reading %s: %s units across %d sub-meters",
        reading_id,
        total,
        len(distributions),
    )
    return DistributionResult(
        bulk_reading_id=reading_id,
        bulk_meter_id=meter.id,
        bulk_consumption=bulk_consumption,
        total_distributed=total,
        sub_meters=distributions,
    )
