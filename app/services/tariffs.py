"""Tariff service - versioned rate schedules and tariff resolution."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
from app.core.database import atomic
from app.core.exceptions import AmbiguousTariff, InvalidTariff, NoTariff, NotFound
from app.models.meter import Meter
from app.models.tariff import Tariff, TariffRate
from app.schemas.tariff import TariffComparison, TariffCreate
from app.services.charges import calculate_charges

logger = logging.getLogger(__name__)


def _same_scope(query, meter_category: str | None):
    if meter_category is None:
        return query.filter(Tariff.meter_category.is_(None))
    return query.filter(Tariff.meter_category == meter_category)


def _effective_on(query, on_date: date):
    return query.filter(
        Tariff.is_active.is_(True),
        Tariff.effective_from <= on_date,
        or_(Tariff.effective_to.is_(None), Tariff.effective_to >= on_date),
    )


def create_tariff(db: Session, tariff_data: TariffCreate) -> Tariff:
    """Create a tariff version.

    Active tariffs of the same scope may not have overlapping effective
    ranges, so resolution on any date yields at most one per scope.
    """
    query = _same_scope(db.query(Tariff), tariff_data.meter_category).filter(
        Tariff.is_active.is_(True)
    )
    if tariff_data.effective_to is not None:
        query = query.filter(Tariff.effective_from <= tariff_data.effective_to)
    query = query.filter(
        or_(Tariff.effective_to.is_(None), Tariff.effective_to >= tariff_data.effective_from)
    )
    overlapping = query.first()
    if overlapping:
        raise InvalidTariff(
            f"Effective range overlaps tariff '{overlapping.code}' from {overlapping.effective_from}",
            {"tariff_id": overlapping.id},
        )

    db_tariff = Tariff(
        code=tariff_data.code,
        name=tariff_data.name,
        meter_category=tariff_data.meter_category,
        effective_from=tariff_data.effective_from,
        effective_to=tariff_data.effective_to,
        fixed_charge=tariff_data.fixed_charge,
        tax_rate=tariff_data.tax_rate,
        rates=[
            TariffRate(
                name=rate.name,
                min_units=rate.min_units,
                max_units=rate.max_units,
                rate_per_unit=rate.rate_per_unit,
            )
            for rate in tariff_data.rates
        ],
    )
    with atomic(db):
        db.add(db_tariff)
    db.refresh(db_tariff)
    logger.info("Created tariff %s effective %s", db_tariff.code, db_tariff.effective_from)
    return db_tariff


def get_tariff(db: Session, tariff_id: int) -> Tariff:
    """Get a tariff by ID."""
    tariff = db.query(Tariff).filter(Tariff.id == tariff_id).first()
    if not tariff:
        raise NotFound("Tariff not found", {"tariff_id": tariff_id})
    return tariff


def list_active_tariffs(db: Session, on_date: date | None = None) -> list[Tariff]:
    """Active tariffs, optionally only those effective on a date."""
    query = db.query(Tariff).filter(Tariff.is_active.is_(True))
    if on_date is not None:
        query = _effective_on(query, on_date)
    return query.order_by(Tariff.code, Tariff.effective_from).all()


def deactivate_tariff(db: Session, tariff_id: int) -> Tariff:
    """Retire a tariff version so it is no longer resolved."""
    tariff = get_tariff(db, tariff_id)
    with atomic(db):
        tariff.is_active = False
    db.refresh(tariff)
    return tariff


def _pick(candidates: list[Tariff], meter: Meter, on_date: date) -> Tariff | None:
    if not candidates:
        return None
    newest = max(t.effective_from for t in candidates)
    latest = [t for t in candidates if t.effective_from == newest]
    if len(latest) > 1:
        raise AmbiguousTariff(
            f"{len(latest)} tariffs apply equally to meter {meter.id} on {on_date}",
            {"meter_id": meter.id, "tariff_ids": sorted(t.id for t in latest)},
        )
    return latest[0]


def resolve_tariff(db: Session, meter: Meter, on_date: date) -> Tariff:
    """The one tariff that applies to a meter on a date.

    A tariff scoped to the meter's category wins over a universal one; within
    a scope the most recently effective version wins.
    """
    effective = _effective_on(db.query(Tariff), on_date)

    if meter.category is not None:
        scoped = _same_scope(effective, meter.category).all()
        tariff = _pick(scoped, meter, on_date)
        if tariff:
            return tariff

    tariff = _pick(_same_scope(effective, None).all(), meter, on_date)
    if tariff:
        return tariff

    raise NoTariff(
        f"No active tariff covers meter {meter.id} on {on_date}",
        {"meter_id": meter.id, "category": meter.category, "date": on_date.isoformat()},
    )


def compare_tariffs(
    db: Session,
    consumption: Decimal,
    on_date: date,
    policy: BillingPolicy,
    is_bulk: bool = False,
) -> list[TariffComparison]:
    """Price the same consumption under every tariff effective on a date."""
    comparisons = [
        TariffComparison(
            tariff_id=tariff.id,
            code=tariff.code,
            name=tariff.name,
            charges=calculate_charges(consumption, tariff, is_bulk=is_bulk, policy=policy),
        )
        for tariff in list_active_tariffs(db, on_date)
    ]
    return sorted(comparisons, key=lambda c: c.charges.total)
