"""Tariff routes and charge quotes."""

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy, get_policy
from app.core.database import get_db
from app.schemas.tariff import (
    ChargeQuote,
    ChargeResult,
    TariffComparison,
    TariffCreate,
    TariffResponse,
)
from app.services import meters as meter_service
from app.services import tariffs as tariff_service
from app.services.charges import calculate_charges

router = APIRouter(prefix="/tariffs", tags=["tariffs"])


@router.post(
    "/",
    response_model=TariffResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_tariff(
    tariff_data: TariffCreate,
    db: Session = Depends(get_db),
):
    """Create a tariff version."""
    return tariff_service.create_tariff(db, tariff_data)


@router.get("/", response_model=list[TariffResponse])
def list_tariffs(
    on_date: date | None = None,
    db: Session = Depends(get_db),
):
    """Active tariffs, optionally only those effective on a date."""
    return tariff_service.list_active_tariffs(db, on_date)


@router.get("/compare", response_model=list[TariffComparison])
def compare_tariffs(
    consumption: Decimal = Query(..., ge=0),
    on_date: date | None = None,
    is_bulk: bool = False,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> list[TariffComparison]:
    """Price the same consumption under every effective tariff, cheapest first."""
    return tariff_service.compare_tariffs(
        db, consumption, on_date or date.today(), policy, is_bulk=is_bulk
    )


@router.get("/resolve", response_model=TariffResponse)
def resolve_tariff(
    meter_id: int,
    on_date: date | None = None,
    db: Session = Depends(get_db),
):
    """The tariff that applies to a meter on a date."""
    meter = meter_service.get_meter(db, meter_id)
    return tariff_service.resolve_tariff(db, meter, on_date or date.today())


@router.get("/{tariff_id}", response_model=TariffResponse)
def get_tariff(tariff_id: int, db: Session = Depends(get_db)):
    """Get a tariff by ID."""
    return tariff_service.get_tariff(db, tariff_id)


@router.delete("/{tariff_id}", response_model=TariffResponse)
def deactivate_tariff(tariff_id: int, db: Session = Depends(get_db)):
    """Retire a tariff version."""
    return tariff_service.deactivate_tariff(db, tariff_id)


@router.post("/{tariff_id}/quote", response_model=ChargeResult)
def quote_charges(
    tariff_id: int,
    quote: ChargeQuote,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> ChargeResult:
    """Calculate charges for a consumption figure under one tariff."""
    tariff = tariff_service.get_tariff(db, tariff_id)
    return calculate_charges(quote.consumption, tariff, is_bulk=quote.is_bulk, policy=policy)
