"""Meter routes, including bulk meter setup."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy, get_policy
from app.core.database import get_db
from app.schemas.meter import (
    BulkSetupValidation,
    MeterCreate,
    MeterResponse,
    MeterUpdate,
    SubMeterAllocationUpdate,
    SubMeterCreate,
)
from app.services import bulk as bulk_service
from app.services import meters as meter_service

router = APIRouter(prefix="/meters", tags=["meters"])


@router.post(
    "/",
    response_model=MeterResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_meter(
    meter_data: MeterCreate,
    db: Session = Depends(get_db),
):
    """Create an individual or bulk meter."""
    return meter_service.create_meter(db, meter_data)


@router.post(
    "/sub-meters",
    response_model=MeterResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_sub_meter(
    meter_data: SubMeterCreate,
    db: Session = Depends(get_db),
):
    """Attach a sub-meter to a bulk meter."""
    return meter_service.create_sub_meter(db, meter_data)


@router.get("/{meter_id}", response_model=MeterResponse)
def get_meter(meter_id: int, db: Session = Depends(get_db)):
    """Get a meter by ID."""
    return meter_service.get_meter(db, meter_id)


@router.patch("/{meter_id}", response_model=MeterResponse)
def update_meter(
    meter_id: int,
    meter_data: MeterUpdate,
    db: Session = Depends(get_db),
):
    """Update a meter."""
    return meter_service.update_meter(db, meter_id, meter_data)


@router.get("/{meter_id}/sub-meters", response_model=list[MeterResponse])
def list_sub_meters(meter_id: int, db: Session = Depends(get_db)):
    """Active sub-meters of a bulk meter."""
    return meter_service.get_meter(db, meter_id).get_active_sub_meters()


@router.put("/{meter_id}/allocations", response_model=list[MeterResponse])
def adjust_allocations(
    meter_id: int,
    data: SubMeterAllocationUpdate,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
):
    """Change sub-meter allocation percentages together."""
    return meter_service.adjust_sub_meter_allocations(db, meter_id, data.allocations, policy)


@router.get("/{meter_id}/validate", response_model=BulkSetupValidation)
def validate_bulk_setup(
    meter_id: int,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> BulkSetupValidation:
    """Check a bulk meter's sub-meter configuration."""
    return bulk_service.validate_bulk_setup(db, meter_id, policy)
