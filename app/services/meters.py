"""Meter service for business logic."""

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
from app.core.database import atomic
from app.core.exceptions import InvalidAllocationPercentage, InvalidState, NotFound
from app.models.enums import MeterType
from app.models.meter import Meter
from app.schemas.meter import MeterCreate, MeterUpdate, SubMeterCreate
from app.services.accounts import get_account

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def _check_meter_number_free(db: Session, meter_number: str) -> None:
    existing = db.query(Meter).filter(Meter.meter_number == meter_number).first()
    if existing:
        raise InvalidState(
            f"Meter number '{meter_number}' already exists",
            {"meter_id": existing.id},
        )


def create_meter(db: Session, meter_data: MeterCreate) -> Meter:
    """Create an individual or bulk meter on an account."""
    get_account(db, meter_data.account_id)
    _check_meter_number_free(db, meter_data.meter_number)

    db_meter = Meter(
        account_id=meter_data.account_id,
        meter_number=meter_data.meter_number,
        name=meter_data.name,
        meter_type=meter_data.meter_type,
        category=meter_data.category,
    )
    with atomic(db):
        db.add(db_meter)
    db.refresh(db_meter)
    logger.info("Created %s meter %s", db_meter.meter_type, db_meter.meter_number)
    return db_meter


def create_sub_meter(db: Session, meter_data: SubMeterCreate) -> Meter:
    """Attach a sub-meter to a bulk meter.

    The combined allocation of the bulk meter's active sub-meters may not
    exceed 100%.
    """
    get_account(db, meter_data.account_id)
    parent = get_meter(db, meter_data.parent_meter_id)
    if not parent.get_is_bulk():
        raise InvalidState(
            "Sub-meters can only be attached to a bulk meter",
            {"meter_id": parent.id},
        )
    _check_meter_number_free(db, meter_data.meter_number)

    allocated = sum(
        (m.allocation_percentage or Decimal("0") for m in parent.get_active_sub_meters()),
        Decimal("0"),
    )
    if allocated + meter_data.allocation_percentage > HUNDRED:
        raise InvalidAllocationPercentage(
            f"Allocation would bring the bulk meter to {allocated + meter_data.allocation_percentage}%",
            {"meter_id": parent.id, "currently_allocated": str(allocated)},
        )

    db_meter = Meter(
        account_id=meter_data.account_id,
        meter_number=meter_data.meter_number,
        name=meter_data.name,
        meter_type=MeterType.INDIVIDUAL,
        category=meter_data.category if meter_data.category is not None else parent.category,
        parent_meter_id=parent.id,
        allocation_percentage=meter_data.allocation_percentage,
    )
    with atomic(db):
        db.add(db_meter)
    db.refresh(db_meter)
    return db_meter


def get_meter(db: Session, meter_id: int) -> Meter:
    """Get a meter by ID."""
    meter = db.query(Meter).filter(Meter.id == meter_id).first()
    if not meter:
        raise NotFound("Meter not found", {"meter_id": meter_id})
    return meter


def get_meters_for_account(db: Session, account_id: int) -> list[Meter]:
    """Get all meters for an account."""
    return db.query(Meter).filter(Meter.account_id == account_id).order_by(Meter.id).all()


def get_billable_meters(db: Session, account_id: int) -> list[Meter]:
    """Active meters billed on the account.

    A bulk meter that feeds active sub-meters is not billed itself; its
    consumption reaches the bill through the sub-meters.
    """
    meters = (
        db.query(Meter)
        .filter(Meter.account_id == account_id, Meter.is_active.is_(True))
        .order_by(Meter.id)
        .all()
    )
    return [m for m in meters if not (m.get_is_bulk() and m.get_active_sub_meters())]


def update_meter(db: Session, meter_id: int, meter_data: MeterUpdate) -> Meter:
    """Update a meter."""
    meter = get_meter(db, meter_id)

    update_data = meter_data.model_dump(exclude_unset=True)
    with atomic(db):
        for field, value in update_data.items():
            setattr(meter, field, value)
    db.refresh(meter)
    return meter


def adjust_sub_meter_allocations(
    db: Session,
    bulk_meter_id: int,
    allocations: dict[int, Decimal],
    policy: BillingPolicy,
) -> list[Meter]:
    """Change several sub-meters' allocation percentages together.

    With ``policy.full_allocation_required`` the active sub-meters must add up
    to exactly 100% afterwards; otherwise they may not exceed it.
    """
    bulk = get_meter(db, bulk_meter_id)
    if not bulk.get_is_bulk():
        raise InvalidState("Meter is not a bulk meter", {"meter_id": bulk.id})

    subs = {m.id: m for m in bulk.sub_meters}
    for sub_id, pct in allocations.items():
        if sub_id not in subs:
            raise InvalidState(
                f"Meter {sub_id} is not a sub-meter of bulk meter {bulk.id}",
                {"meter_id": sub_id},
            )
        if pct <= 0 or pct > HUNDRED:
            raise InvalidAllocationPercentage(
                "Allocation percentage must be greater than 0 and at most 100",
                {"meter_id": sub_id, "allocation_percentage": str(pct)},
            )

    active = bulk.get_active_sub_meters()
    total = sum(
        (allocations.get(m.id, m.allocation_percentage or Decimal("0")) for m in active),
        Decimal("0"),
    )
    if policy.full_allocation_required and total != HUNDRED:
        raise InvalidAllocationPercentage(
            f"Active sub-meter allocations must total 100%, got {total}%",
            {"meter_id": bulk.id, "total_allocation": str(total)},
        )
    if total > HUNDRED:
        raise InvalidAllocationPercentage(
            f"Active sub-meter allocations exceed 100% ({total}%)",
            {"meter_id": bulk.id, "total_allocation": str(total)},
        )

    with atomic(db):
        for sub_id, pct in allocations.items():
            subs[sub_id].allocation_percentage = pct
    for meter in subs.values():
        db.refresh(meter)
    logger.info("Adjusted allocations on bulk meter %s (total %s%%)", bulk.id, total)
    return bulk.get_active_sub_meters()
