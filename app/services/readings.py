"""MeterReading service - the reading ledger operations."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import atomic
from app.core.exceptions import DuplicateReading, InvalidState, NotFound
from app.core.money import ZERO, round_money
from app.models.meter_reading import MeterReading
from app.schemas.meter_reading import MeterReadingCreate
from app.services.meters import get_meter

logger = logging.getLogger(__name__)


def consumption_between(earlier: MeterReading, later: MeterReading) -> tuple[Decimal, bool]:
    """Consumption from ``earlier`` to ``later`` and whether the meter reset.

    A lower later value means the meter rolled over or was replaced; the
    consumption is then zero and the caller should flag it for review.
    """
    delta = later.value - earlier.value
    if delta < 0:
        return ZERO, True
    return delta, False


def get_reading(db: Session, reading_id: int) -> MeterReading:
    """Get a reading by ID."""
    reading = db.query(MeterReading).filter(MeterReading.id == reading_id).first()
    if not reading:
        raise NotFound("Reading not found", {"reading_id": reading_id})
    return reading


def get_reading_on(db: Session, meter_id: int, reading_date: date) -> MeterReading | None:
    """Get the reading a meter has on an exact date."""
    return (
        db.query(MeterReading)
        .filter(MeterReading.meter_id == meter_id, MeterReading.reading_date == reading_date)
        .first()
    )


def get_previous_reading(db: Session, meter_id: int, before: date) -> MeterReading | None:
    """Latest reading strictly before ``before``."""
    return (
        db.query(MeterReading)
        .filter(MeterReading.meter_id == meter_id, MeterReading.reading_date < before)
        .order_by(MeterReading.reading_date.desc())
        .first()
    )


def get_current_reading(
    db: Session,
    meter_id: int,
    period_start: date,
    period_end: date,
) -> MeterReading | None:
    """Latest reading within [period_start, period_end]."""
    return (
        db.query(MeterReading)
        .filter(
            MeterReading.meter_id == meter_id,
            MeterReading.reading_date >= period_start,
            MeterReading.reading_date <= period_end,
        )
        .order_by(MeterReading.reading_date.desc())
        .first()
    )


def add_reading(
    db: Session,
    meter_id: int,
    reading_date: date,
    value: Decimal,
    **fields,
) -> MeterReading:
    """Append a reading inside the caller's transaction.

    Flags the reading for review when its value is below the meter's previous
    reading.
    """
    if get_reading_on(db, meter_id, reading_date):
        raise DuplicateReading(
            f"Meter {meter_id} already has a reading on {reading_date}",
            {"meter_id": meter_id, "reading_date": reading_date.isoformat()},
        )

    previous = get_previous_reading(db, meter_id, reading_date)
    needs_review = fields.pop("needs_review", False)
    if previous is not None and value < previous.value:
        logger.warning(
            "Reading %s on meter %s is below previous %s, flagging for review",
            value,
            meter_id,
            previous.value,
        )
        needs_review = True

    reading = MeterReading(
        meter_id=meter_id,
        reading_date=reading_date,
        value=value,
        needs_review=needs_review,
        **fields,
    )
    db.add(reading)
    db.flush()
    return reading


def record_reading(
    db: Session,
    reading_data: MeterReadingCreate,
    user_id: int | None = None,
) -> MeterReading:
    """Record a single meter reading."""
    meter = get_meter(db, reading_data.meter_id)
    if not meter.is_active:
        raise InvalidState("Cannot record readings on an inactive meter", {"meter_id": meter.id})

    try:
        with atomic(db):
            reading = add_reading(
                db,
                meter.id,
                reading_data.reading_date,
                reading_data.value,
                reading_type=reading_data.reading_type,
                notes=reading_data.notes,
                recorded_by=user_id,
            )
    except IntegrityError as exc:
        raise DuplicateReading(
            f"Meter {meter.id} already has a reading on {reading_data.reading_date}",
            {"meter_id": meter.id},
        ) from exc
    db.refresh(reading)
    return reading


def get_readings_history(
    db: Session,
    meter_id: int,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[MeterReading], int]:
    """Get reading history for a specific meter with pagination."""
    query = db.query(MeterReading).filter(MeterReading.meter_id == meter_id)

    total = query.count()
    readings = query.order_by(MeterReading.reading_date.desc()).offset(offset).limit(limit).all()

    return readings, total


def recent_consumptions(
    db: Session,
    meter_id: int,
    before: date,
    window: int,
) -> list[Decimal]:
    """Consumption between successive readings, most recent ``window`` intervals.

    Intervals where the meter reset are left out.
    """
    readings = (
        db.query(MeterReading)
        .filter(MeterReading.meter_id == meter_id, MeterReading.reading_date < before)
        .order_by(MeterReading.reading_date.desc())
        .limit(window + 1)
        .all()
    )
    readings.reverse()

    consumptions = []
    for earlier, later in zip(readings, readings[1:]):
        units, is_reset = consumption_between(earlier, later)
        if not is_reset:
            consumptions.append(units)
    return consumptions


def average_monthly_consumption(
    db: Session,
    meter_id: int,
    before: date,
    window: int = 3,
) -> tuple[Decimal, int]:
    """Average of the recent consumption intervals and how many were used."""
    consumptions = recent_consumptions(db, meter_id, before, window)
    if not consumptions:
        return ZERO, 0
    return round_money(sum(consumptions, ZERO) / len(consumptions)), len(consumptions)
