"""Bill and BillingDetail database models."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.enums import OUTSTANDING_BILL_STATUSES, BillStatus

if TYPE_CHECKING:
    from app.models.account import Account
    from app.models.ledger import CreditApplication, PaymentAllocation
    from app.models.meter import Meter


class Bill(Base):
    """Bill for one account and one billing period (YYYY-MM).

    ``total_amount`` is set once at generation and only changes through an
    explicit credit note. How much has been paid is never stored here; it is
    the sum of the bill's allocation rows.
    """

    __tablename__ = "bills"
    __table_args__ = (
        # Duplicate-period lookups only consider non-voided bills
        Index(
            "ix_bill_account_period_open",
            "account_id",
            "billing_period",
            sqlite_where=text("status != 'voided'"),
            postgresql_where=text("status != 'voided'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), index=True)
    billing_period: Mapped[str] = mapped_column(String(7), index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    status: Mapped[BillStatus] = mapped_column(String(20), default=BillStatus.PENDING, index=True)
    is_estimated: Mapped[bool] = mapped_column(default=False)

    issued_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    due_date: Mapped[date] = mapped_column(index=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    void_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    voided_by: Mapped[int | None] = mapped_column(nullable=True)
    generated_by: Mapped[int | None] = mapped_column(nullable=True)

    # Void/regenerate links
    replaces_bill_id: Mapped[int | None] = mapped_column(ForeignKey("bills.id"), nullable=True)
    replaced_by_bill_id: Mapped[int | None] = mapped_column(ForeignKey("bills.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC), index=True)

    # Relationships
    account: Mapped["Account"] = relationship(back_populates="bills")
    details: Mapped[list["BillingDetail"]] = relationship(
        back_populates="bill", cascade="all, delete-orphan", order_by="BillingDetail.id"
    )
    allocations: Mapped[list["PaymentAllocation"]] = relationship(back_populates="bill")
    credit_applications: Mapped[list["CreditApplication"]] = relationship(back_populates="bill")

    def get_is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_BILL_STATUSES

    def get_days_overdue(self, as_of: date) -> int:
        """Days past the due date, zero when not yet due."""
        return max(0, (as_of - self.due_date).days)


class BillingDetail(Base):
    """One line item per billed meter."""

    __tablename__ = "billing_details"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), index=True)
    meter_id: Mapped[int] = mapped_column(ForeignKey("meters.id"), index=True)
    tariff_id: Mapped[int | None] = mapped_column(ForeignKey("tariffs.id"), nullable=True)

    previous_reading_value: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    current_reading_value: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    units_used: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    rate: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=4))
    consumption_charge: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    fixed_charge: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    tax: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_estimated: Mapped[bool] = mapped_column(default=False)
    needs_review: Mapped[bool] = mapped_column(default=False)

    # Relationships
    bill: Mapped["Bill"] = relationship(back_populates="details")
    meter: Mapped["Meter"] = relationship()
