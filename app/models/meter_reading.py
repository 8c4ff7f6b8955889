"""MeterReading database model - the reading ledger."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.enums import ReadingType

if TYPE_CHECKING:
    from app.models.meter import Meter


class MeterReading(Base):
    """Meter reading ledger entry.

    Readings are immutable facts. The only flag that changes after creation is
    ``is_distributed`` on a bulk reading, and it only ever goes from False to True.
    """

    __tablename__ = "meter_readings"
    __table_args__ = (UniqueConstraint("meter_id", "reading_date", name="uq_meter_reading_date"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    reading_date: Mapped[date] = mapped_column(index=True)
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

    value: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    reading_type: Mapped[ReadingType] = mapped_column(String(20), default=ReadingType.ACTUAL)

    # Bulk distribution bookkeeping
    parent_reading_id: Mapped[int | None] = mapped_column(
        ForeignKey("meter_readings.id"), nullable=True, index=True
    )
    is_distributed: Mapped[bool] = mapped_column(default=False)
    distributed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Set when the value is lower than the previous reading (meter reset)
    needs_review: Mapped[bool] = mapped_column(default=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    recorded_by: Mapped[int | None] = mapped_column(nullable=True)  # Actor id

    # Foreign keys
    meter_id: Mapped[int] = mapped_column(ForeignKey("meters.id"), index=True)

    # Relationships
    meter: Mapped["Meter"] = relationship(back_populates="readings")
    parent_reading: Mapped["MeterReading | None"] = relationship(
        back_populates="derived_readings", remote_side="MeterReading.id"
    )
    derived_readings: Mapped[list["MeterReading"]] = relationship(back_populates="parent_reading")

    def get_is_estimated(self) -> bool:
        return self.reading_type == ReadingType.ESTIMATED
