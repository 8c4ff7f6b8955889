"""Ledger models: payment allocations, credit applications and carry-forward balances."""

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.enums import CarryForwardStatus, CarryForwardType

if TYPE_CHECKING:
    from app.models.account import Account
    from app.models.billing import Bill
    from app.models.payment import Payment


class PaymentAllocation(Base):
    """Immutable ledger entry assigning part of a payment's cash to part of a bill.

    Rows are never updated, only deleted on reversal or when the bill is voided.
    """

    __tablename__ = "payment_allocations"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), index=True)
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), index=True)
    allocated_amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    allocation_date: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

    # Relationships
    payment: Mapped["Payment"] = relationship(back_populates="allocations")
    bill: Mapped["Bill"] = relationship(back_populates="allocations")


class CreditApplication(Base):
    """Part of a carry-forward credit applied to a bill.

    ``applied_during_payment_id`` is the reconciliation that drew the credit;
    the money itself is not that payment's, so it never counts against the
    payment's amount.
    """

    __tablename__ = "credit_applications"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    carry_forward_id: Mapped[int] = mapped_column(
        ForeignKey("carry_forward_balances.id"), index=True
    )
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), index=True)
    applied_during_payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("payments.id"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    applied_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

    # Relationships
    carry_forward: Mapped["CarryForwardBalance"] = relationship(back_populates="applications")
    bill: Mapped["Bill"] = relationship(back_populates="credit_applications")


class CarryForwardBalance(Base):
    """Account-level credit or debit surviving across billing periods.

    ``balance`` only decreases as it is applied; status moves from active to
    applied (balance reached zero) or to expired.
    """

    __tablename__ = "carry_forward_balances"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), index=True)
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("payments.id"), nullable=True, index=True
    )
    type: Mapped[CarryForwardType] = mapped_column(String(10), default=CarryForwardType.CREDIT)
    original_amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    balance: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    status: Mapped[CarryForwardStatus] = mapped_column(
        String(10), default=CarryForwardStatus.ACTIVE, index=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    # Relationships
    account: Mapped["Account"] = relationship(back_populates="carry_forward_balances")
    applications: Mapped[list["CreditApplication"]] = relationship(
        back_populates="carry_forward", order_by="CreditApplication.id"
    )

    def get_is_usable(self, now: datetime) -> bool:
        """Active, positive and not past its expiry."""
        if self.status != CarryForwardStatus.ACTIVE or self.balance <= 0:
            return False
        return self.expires_at is None or _as_utc(self.expires_at) > now


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=UTC)
