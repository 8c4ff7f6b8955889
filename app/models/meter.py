"""Meter database model."""

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.enums import MeterType

if TYPE_CHECKING:
    from app.models.account import Account
    from app.models.meter_reading import MeterReading


class Meter(Base):
    """Meter entity - an individual meter, a bulk meter, or a bulk meter's sub-meter.

    A sub-meter points at its bulk meter through ``parent_meter_id`` and carries
    the share of bulk consumption it receives in ``allocation_percentage``.
    """

    __tablename__ = "meters"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    meter_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    meter_type: Mapped[MeterType] = mapped_column(String(20), default=MeterType.INDIVIDUAL, index=True)
    # Tariff scope, e.g. "residential" or "commercial"
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    allocation_percentage: Mapped[Decimal | None] = mapped_column(
        Numeric(precision=5, scale=2), nullable=True
    )

    # Foreign keys
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), index=True)
    parent_meter_id: Mapped[int | None] = mapped_column(
        ForeignKey("meters.id"), nullable=True, index=True
    )

    # Metadata
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    is_active: Mapped[bool] = mapped_column(default=True)

    # Relationships
    account: Mapped["Account"] = relationship(back_populates="meters")
    parent_meter: Mapped["Meter | None"] = relationship(
        back_populates="sub_meters", remote_side="Meter.id"
    )
    sub_meters: Mapped[list["Meter"]] = relationship(back_populates="parent_meter")
    readings: Mapped[list["MeterReading"]] = relationship(back_populates="meter")

    def get_is_bulk(self) -> bool:
        """Check if this is a bulk meter."""
        return self.meter_type == MeterType.BULK

    def get_active_sub_meters(self) -> list["Meter"]:
        """Active sub-meters in a stable order."""
        return sorted((m for m in self.sub_meters if m.is_active), key=lambda m: m.id)
