"""Payment database model."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.enums import PaymentStatus, ReconciliationStatus

if TYPE_CHECKING:
    from app.models.account import Account
    from app.models.ledger import PaymentAllocation


class Payment(Base):
    """Money received for an account.

    A payment is linked to bills only through allocation rows; it may be
    reconciled, reversed and reconciled again.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    method: Mapped[str] = mapped_column(String(50))
    reference: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    payment_date: Mapped[date] = mapped_column(default=lambda: datetime.now(UTC).date())
    status: Mapped[PaymentStatus] = mapped_column(String(20), default=PaymentStatus.COMPLETED)
    reconciliation_status: Mapped[ReconciliationStatus] = mapped_column(
        String(30), default=ReconciliationStatus.PENDING, index=True
    )
    reconciled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reconciled_by: Mapped[int | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

    # Relationships
    account: Mapped["Account"] = relationship(back_populates="payments")
    allocations: Mapped[list["PaymentAllocation"]] = relationship(
        back_populates="payment", order_by="PaymentAllocation.id"
    )
