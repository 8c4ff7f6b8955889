"""Payment allocation ledger and carry-forward balances.

The ledger is the only source of truth for how much of a bill has been paid
and how much of a payment has been used. A bill is settled by two kinds of
rows: cash allocations, recorded under the payment that brought the money,
and credit applications, recorded under the carry-forward that was drawn.
Functions here run inside the caller's transaction and never commit.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
from app.core.exceptions import (
    AllocationExceedsBillBalance,
    AllocationExceedsPayment,
    InvalidAllocationAmount,
)
from app.core.money import ZERO, round_money
from app.models.billing import Bill
from app.models.enums import (
    OUTSTANDING_BILL_STATUSES,
    BillStatus,
    CarryForwardStatus,
    CarryForwardType,
)
from app.models.ledger import CarryForwardBalance, CreditApplication, PaymentAllocation
from app.models.payment import Payment

logger = logging.getLogger(__name__)


def allocated_to_bill(db: Session, bill_id: int) -> Decimal:
    """Sum of the cash allocations and credit applications on a bill."""
    cash = (
        db.query(func.coalesce(func.sum(PaymentAllocation.allocated_amount), 0))
        .filter(PaymentAllocation.bill_id == bill_id)
        .scalar()
    )
    credit = (
        db.query(func.coalesce(func.sum(CreditApplication.amount), 0))
        .filter(CreditApplication.bill_id == bill_id)
        .scalar()
    )
    return round_money(round_money(cash) + round_money(credit))


def bill_balance(db: Session, bill: Bill) -> Decimal:
    """What is still owed on a bill."""
    return bill.total_amount - allocated_to_bill(db, bill.id)


def cash_allocated_from_payment(db: Session, payment_id: int) -> Decimal:
    """How much of the payment's money has been allocated."""
    total = (
        db.query(func.coalesce(func.sum(PaymentAllocation.allocated_amount), 0))
        .filter(PaymentAllocation.payment_id == payment_id)
        .scalar()
    )
    return round_money(total)


def outstanding_bills(db: Session, account_id: int) -> list[Bill]:
    """Outstanding bills in FIFO order: due date, then creation, then id."""
    return (
        db.query(Bill)
        .filter(Bill.account_id == account_id, Bill.status.in_(OUTSTANDING_BILL_STATUSES))
        .order_by(Bill.due_date, Bill.created_at, Bill.id)
        .all()
    )


def active_credits(db: Session, account_id: int, now: datetime) -> list[CarryForwardBalance]:
    """Usable credit carry-forwards, oldest first."""
    credits = (
        db.query(CarryForwardBalance)
        .filter(
            CarryForwardBalance.account_id == account_id,
            CarryForwardBalance.type == CarryForwardType.CREDIT,
            CarryForwardBalance.status == CarryForwardStatus.ACTIVE,
        )
        .order_by(CarryForwardBalance.created_at, CarryForwardBalance.id)
        .all()
    )
    return [c for c in credits if c.get_is_usable(now)]


def _check_amount(db: Session, bill: Bill, amount: Decimal, policy: BillingPolicy) -> None:
    if amount <= 0:
        raise InvalidAllocationAmount(
            "Allocation amount must be positive",
            {"bill_id": bill.id, "amount": str(amount)},
        )
    balance = bill_balance(db, bill)
    if amount > balance + policy.min_allocation_epsilon:
        raise AllocationExceedsBillBalance(
            f"Allocation of {amount} exceeds bill {bill.id} balance of {balance}",
            {"bill_id": bill.id, "amount": str(amount), "balance": str(balance)},
        )


def record_allocation(
    db: Session,
    payment: Payment,
    bill: Bill,
    amount: Decimal,
    policy: BillingPolicy,
) -> PaymentAllocation:
    """Append one cash allocation row after checking both sides have room."""
    amount = round_money(amount)
    _check_amount(db, bill, amount, policy)

    available = payment.amount - cash_allocated_from_payment(db, payment.id)
    if amount > available + policy.min_allocation_epsilon:
        raise AllocationExceedsPayment(
            f"Allocation of {amount} exceeds the {available} left on payment {payment.id}",
            {"payment_id": payment.id, "amount": str(amount), "available": str(available)},
        )

    allocation = PaymentAllocation(payment_id=payment.id, bill_id=bill.id, allocated_amount=amount)
    db.add(allocation)
    db.flush()
    return allocation


def apply_credit(
    db: Session,
    carry_forward: CarryForwardBalance,
    bill: Bill,
    amount: Decimal,
    policy: BillingPolicy,
    payment: Payment | None = None,
) -> CreditApplication:
    """Draw ``amount`` from a credit onto a bill.

    ``payment`` is the reconciliation the draw happens in, kept so that
    reversing that reconciliation can give the credit back.
    """
    amount = round_money(amount)
    _check_amount(db, bill, amount, policy)
    if amount > carry_forward.balance + policy.min_allocation_epsilon:
        raise AllocationExceedsPayment(
            f"Application of {amount} exceeds credit {carry_forward.id} balance",
            {"carry_forward_id": carry_forward.id, "balance": str(carry_forward.balance)},
        )

    draw_credit(carry_forward, amount)
    application = CreditApplication(
        carry_forward_id=carry_forward.id,
        bill_id=bill.id,
        applied_during_payment_id=payment.id if payment else None,
        amount=amount,
    )
    db.add(application)
    db.flush()
    return application


def recompute_bill_status(
    db: Session,
    bill: Bill,
    policy: BillingPolicy,
    now: datetime | None = None,
    after_reversal: bool = False,
) -> BillStatus:
    """Derive the bill's status from its allocations.

    Paid when the balance is within epsilon, partially paid when anything is
    allocated. After a reversal a bill with nothing allocated drops back to
    pending; otherwise the status is left alone.
    """
    if bill.status == BillStatus.VOIDED:
        return bill.status

    allocated = allocated_to_bill(db, bill.id)
    balance = bill.total_amount - allocated

    if balance <= policy.min_allocation_epsilon:
        if bill.status != BillStatus.PAID:
            bill.paid_at = now or datetime.now(UTC)
        bill.status = BillStatus.PAID
    elif allocated > 0:
        bill.status = BillStatus.PARTIALLY_PAID
        bill.paid_at = None
    elif after_reversal and bill.status in (BillStatus.PAID, BillStatus.PARTIALLY_PAID):
        bill.status = BillStatus.PENDING
        bill.paid_at = None
    return bill.status


def create_carry_forward(
    db: Session,
    account_id: int,
    amount: Decimal,
    payment: Payment | None = None,
    description: str | None = None,
    credit_type: CarryForwardType = CarryForwardType.CREDIT,
    expires_at: datetime | None = None,
) -> CarryForwardBalance:
    """Open a new carry-forward balance."""
    amount = round_money(amount)
    carry_forward = CarryForwardBalance(
        account_id=account_id,
        payment_id=payment.id if payment else None,
        type=credit_type,
        original_amount=amount,
        balance=amount,
        status=CarryForwardStatus.ACTIVE,
        expires_at=expires_at,
        description=description,
    )
    db.add(carry_forward)
    db.flush()
    logger.info("Carry-forward %s of %s opened on account %s", carry_forward.id, amount, account_id)
    return carry_forward


def draw_credit(carry_forward: CarryForwardBalance, amount: Decimal) -> None:
    """Reduce a credit's balance; it becomes applied once exhausted."""
    remaining = carry_forward.balance - amount
    if remaining <= 0:
        carry_forward.balance = ZERO
        carry_forward.status = CarryForwardStatus.APPLIED
    else:
        carry_forward.balance = remaining


def restore_credit(carry_forward: CarryForwardBalance, amount: Decimal) -> None:
    """Give back an amount drawn from a credit."""
    carry_forward.balance = round_money(carry_forward.balance + amount)
    if carry_forward.status == CarryForwardStatus.APPLIED:
        carry_forward.status = CarryForwardStatus.ACTIVE


def delete_payment_allocations(db: Session, payment_id: int) -> list[PaymentAllocation]:
    """Remove every allocation recorded under a payment and return them."""
    allocations = (
        db.query(PaymentAllocation)
        .filter(PaymentAllocation.payment_id == payment_id)
        .order_by(PaymentAllocation.id)
        .all()
    )
    for allocation in allocations:
        db.delete(allocation)
    db.flush()
    return allocations


def undo_credit_applications(db: Session, applications: list[CreditApplication]) -> Decimal:
    """Delete credit applications, restoring each drawn credit. Returns the total restored."""
    restored = ZERO
    for application in applications:
        restore_credit(application.carry_forward, application.amount)
        restored += application.amount
        db.delete(application)
    db.flush()
    return round_money(restored)


def credit_applications_during(db: Session, payment_id: int) -> list[CreditApplication]:
    """Credit applications made while reconciling a payment."""
    return (
        db.query(CreditApplication)
        .filter(CreditApplication.applied_during_payment_id == payment_id)
        .order_by(CreditApplication.id)
        .all()
    )


def expire_carry_forwards(db: Session, now: datetime | None = None) -> int:
    """Mark active carry-forwards past their expiry as expired.

    Runs inside the caller's transaction. Returns how many were expired.
    """
    now = now or datetime.now(UTC)
    candidates = (
        db.query(CarryForwardBalance)
        .filter(
            CarryForwardBalance.status == CarryForwardStatus.ACTIVE,
            CarryForwardBalance.expires_at.is_not(None),
        )
        .all()
    )
    expired = 0
    for carry_forward in candidates:
        if not carry_forward.get_is_usable(now) and carry_forward.balance > 0:
            carry_forward.status = CarryForwardStatus.EXPIRED
            expired += 1
    db.flush()
    if expired:
        logger.info("Expired %d carry-forward balances", expired)
    return expired
