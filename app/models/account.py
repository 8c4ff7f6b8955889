"""Account database model."""

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.enums import AccountStatus

if TYPE_CHECKING:
    from app.models.billing import Bill
    from app.models.ledger import CarryForwardBalance
    from app.models.meter import Meter
    from app.models.payment import Payment


class Account(Base):
    """Customer account that owns meters, bills, payments and credits.

    The balance is never stored here; it is derived from bills, allocations
    and carry-forward balances.
    """

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    account_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    status: Mapped[AccountStatus] = mapped_column(String(20), default=AccountStatus.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

    # Relationships
    meters: Mapped[list["Meter"]] = relationship(back_populates="account")
    bills: Mapped[list["Bill"]] = relationship(back_populates="account")
    payments: Mapped[list["Payment"]] = relationship(back_populates="account")
    carry_forward_balances: Mapped[list["CarryForwardBalance"]] = relationship(
        back_populates="account"
    )

    def get_is_active(self) -> bool:
        """Check if the account can be billed."""
        return self.status == AccountStatus.ACTIVE
