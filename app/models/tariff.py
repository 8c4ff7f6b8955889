"""Tariff and TariffRate database models."""

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


class Tariff(Base):
    """Versioned, effective-dated rate schedule.

    A tariff with ``meter_category`` set applies only to meters of that
    category; a tariff without one is universal. Tiers live in ``rates``.
    """

    __tablename__ = "tariffs"
    __table_args__ = (UniqueConstraint("code", "effective_from", name="uq_tariff_code_version"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(50), index=True)
    name: Mapped[str] = mapped_column(String(100))
    meter_category: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    effective_from: Mapped[date] = mapped_column(index=True)
    effective_to: Mapped[date | None] = mapped_column(nullable=True)
    fixed_charge: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), default=Decimal("0"))
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=2), default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

    # Relationships
    rates: Mapped[list["TariffRate"]] = relationship(
        back_populates="tariff",
        cascade="all, delete-orphan",
        order_by="TariffRate.min_units",
    )

    def is_effective_on(self, on_date: date) -> bool:
        """Check the effective window (both ends inclusive)."""
        if self.effective_from > on_date:
            return False
        return self.effective_to is None or self.effective_to >= on_date


class TariffRate(Base):
    """One consumption tier: units in [min_units, max_units) billed at rate_per_unit."""

    __tablename__ = "tariff_rates"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    tariff_id: Mapped[int] = mapped_column(ForeignKey("tariffs.id"), index=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    min_units: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    max_units: Mapped[Decimal | None] = mapped_column(Numeric(precision=12, scale=2), nullable=True)
    rate_per_unit: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=4))

    tariff: Mapped["Tariff"] = relationship(back_populates="rates")
