"""MeterReading routes for ledger operations and bulk distribution."""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.dependencies import get_actor_id
from app.core.config import BillingPolicy, get_policy
from app.core.database import get_db
from app.schemas.meter_reading import (
    ConsumptionSummary,
    DistributionResult,
    MeterReadingCreate,
    MeterReadingHistory,
    MeterReadingResponse,
)
from app.services import bulk as bulk_service
from app.services import meters as meter_service
from app.services import readings as reading_service

router = APIRouter(prefix="/readings", tags=["meter-readings"])


@router.post(
    "/",
    response_model=MeterReadingResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_reading(
    reading_data: MeterReadingCreate,
    db: Session = Depends(get_db),
    actor_id: int | None = Depends(get_actor_id),
):
    """Record a single meter reading."""
    return reading_service.record_reading(db, reading_data, user_id=actor_id)


@router.get("/meter/{meter_id}/history", response_model=MeterReadingHistory)
def get_meter_history(
    meter_id: int,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> MeterReadingHistory:
    """Get paginated reading history for a specific meter."""
    meter_service.get_meter(db, meter_id)
    readings, total = reading_service.get_readings_history(db, meter_id, limit, offset)
    return MeterReadingHistory(
        meter_id=meter_id,
        readings=[MeterReadingResponse.model_validate(r) for r in readings],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/meter/{meter_id}/average", response_model=ConsumptionSummary)
def get_average_consumption(
    meter_id: int,
    before: date | None = None,
    window: int = Query(3, ge=1, le=24),
    db: Session = Depends(get_db),
) -> ConsumptionSummary:
    """Average consumption over the most recent reading intervals."""
    meter_service.get_meter(db, meter_id)
    average, periods = reading_service.average_monthly_consumption(
        db, meter_id, before or date.max, window
    )
    return ConsumptionSummary(meter_id=meter_id, periods=periods, average_consumption=average)


@router.get("/{reading_id}", response_model=MeterReadingResponse)
def get_reading(reading_id: int, db: Session = Depends(get_db)):
    """Get a reading by ID."""
    return reading_service.get_reading(db, reading_id)


@router.post("/{reading_id}/distribute", response_model=DistributionResult)
def distribute_reading(
    reading_id: int,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    actor_id: int | None = Depends(get_actor_id),
) -> DistributionResult:
    """Distribute a bulk meter reading to its sub-meters."""
    return bulk_service.distribute_bulk_reading(db, reading_id, policy, user_id=actor_id)
