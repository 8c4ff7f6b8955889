"""Payment reconciliation - recording payments and allocating them to bills.

Reconciliation and its reversal each run as one transaction holding the
account lock. Events are published and the balance cache is invalidated only
after the transaction commits.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
from app.core.database import atomic
from app.core.events import (
    BillPaid,
    CarryForwardCreated,
    PaymentReconciled,
    ReconciliationReversed,
    dispatcher,
)
from app.core.exceptions import (
    AlreadyReconciled,
    DuplicatePaymentReference,
    InvalidAllocationAmount,
    InvalidState,
    NotFound,
    NotReconciled,
)
from app.core.money import ZERO, round_money
from app.models.billing import Bill
from app.models.enums import BillStatus, PaymentStatus, ReconciliationStatus
from app.models.ledger import CarryForwardBalance, CreditApplication, PaymentAllocation
from app.models.payment import Payment
from app.schemas.payment import (
    AllocationResponse,
    BillSettlement,
    CarryForwardResponse,
    CreditApplicationResponse,
    ManualAllocation,
    PaymentCreate,
    PaymentResponse,
    ReconciliationReport,
    ReconciliationResult,
    ReversalResult,
)
from app.services.accounts import get_account, lock_account
from app.services.balances import balance_cache, compute_account_balance
from app.services.ledger import (
    active_credits,
    apply_credit,
    bill_balance,
    cash_allocated_from_payment,
    create_carry_forward,
    credit_applications_during,
    delete_payment_allocations,
    outstanding_bills,
    record_allocation,
    recompute_bill_status,
    undo_credit_applications,
)

logger = logging.getLogger(__name__)


def record_payment(db: Session, payment_data: PaymentCreate) -> Payment:
    """Record a received payment. References are unique."""
    get_account(db, payment_data.account_id)
    existing = db.query(Payment).filter(Payment.reference == payment_data.reference).first()
    if existing:
        raise DuplicatePaymentReference(
            f"Payment reference '{payment_data.reference}' already recorded",
            {"payment_id": existing.id},
        )

    payment = Payment(
        account_id=payment_data.account_id,
        amount=round_money(payment_data.amount),
        method=payment_data.method,
        reference=payment_data.reference,
        status=payment_data.status,
    )
    if payment_data.payment_date is not None:
        payment.payment_date = payment_data.payment_date

    try:
        with atomic(db):
            db.add(payment)
    except IntegrityError as exc:
        raise DuplicatePaymentReference(
            f"Payment reference '{payment_data.reference}' already recorded"
        ) from exc
    db.refresh(payment)
    logger.info("Recorded payment %s of %s on account %s", payment.id, payment.amount, payment.account_id)
    return payment


def get_payment(db: Session, payment_id: int) -> Payment:
    """Get a payment by ID."""
    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if not payment:
        raise NotFound("Payment not found", {"payment_id": payment_id})
    return payment


def get_payments_for_account(db: Session, account_id: int) -> list[Payment]:
    """Payments for an account, newest first."""
    return (
        db.query(Payment)
        .filter(Payment.account_id == account_id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .all()
    )


def _allocate_fifo(
    db: Session,
    payment: Payment,
    cash: Decimal,
    policy: BillingPolicy,
    now: datetime,
) -> tuple[list[PaymentAllocation], list[CreditApplication], list[Bill]]:
    """Apply existing credits, then the payment's cash, oldest bill first.

    Credits are only drawn for what a bill actually still owes, so they are
    never consumed beyond what the bills required. Credit draws go to their
    own ledger; only cash is allocated under the payment.
    """
    epsilon = policy.min_allocation_epsilon
    credits = active_credits(db, payment.account_id, now)
    allocations: list[PaymentAllocation] = []
    applications: list[CreditApplication] = []
    touched: list[Bill] = []

    for bill in outstanding_bills(db, payment.account_id):
        capacity = cash + sum((c.balance for c in credits), ZERO)
        if capacity < epsilon:
            break

        need = bill_balance(db, bill)
        if need <= 0:
            continue

        for credit in credits:
            if need <= 0:
                break
            draw = min(credit.balance, need)
            if draw <= 0:
                continue
            applications.append(apply_credit(db, credit, bill, draw, policy, payment=payment))
            need -= draw

        if need > 0 and cash > 0:
            draw = min(cash, need)
            allocations.append(record_allocation(db, payment, bill, draw, policy))
            cash -= draw

        touched.append(bill)
    return allocations, applications, touched


def _allocate_manual(
    db: Session,
    payment: Payment,
    instructions: list[ManualAllocation],
    cash: Decimal,
    policy: BillingPolicy,
) -> tuple[list[PaymentAllocation], list[Bill]]:
    """Apply the payment's cash to caller-chosen bills, in the order given."""
    epsilon = policy.min_allocation_epsilon
    allocations: list[PaymentAllocation] = []
    touched: list[Bill] = []

    for instruction in instructions:
        if instruction.amount <= 0:
            raise InvalidAllocationAmount(
                "Allocation amount must be positive",
                {"bill_id": instruction.bill_id, "amount": str(instruction.amount)},
            )
        bill = db.query(Bill).filter(Bill.id == instruction.bill_id).first()
        if not bill:
            raise NotFound("Bill not found", {"bill_id": instruction.bill_id})
        if bill.account_id != payment.account_id:
            raise InvalidState(
                f"Bill {bill.id} belongs to a different account",
                {"bill_id": bill.id, "account_id": bill.account_id},
            )
        if not bill.get_is_outstanding():
            raise InvalidState(
                f"Bill {bill.id} is {bill.status} and cannot take payments",
                {"bill_id": bill.id},
            )

        amount = min(instruction.amount, cash)
        if amount < epsilon:
            break
        allocations.append(record_allocation(db, payment, bill, amount, policy))
        cash -= amount
        if bill not in touched:
            touched.append(bill)
    return allocations, touched


def _settlements(db: Session, bills: list[Bill]) -> list[BillSettlement]:
    return [
        BillSettlement(bill_id=b.id, status=b.status, balance=round_money(bill_balance(db, b)))
        for b in bills
    ]


def reconcile_payment(
    db: Session,
    payment_id: int,
    policy: BillingPolicy,
    manual_allocations: list[ManualAllocation] | None = None,
    user_id: int | None = None,
    now: datetime | None = None,
) -> ReconciliationResult:
    """Allocate a payment to its account's bills.

    Without ``manual_allocations`` the payment is applied oldest bill first
    (FIFO), after any active credits. Cash left over becomes a new credit
    when the policy carries overpayments forward.
    """
    now = now or datetime.now(UTC)
    epsilon = policy.min_allocation_epsilon
    events = []

    with atomic(db):
        payment = get_payment(db, payment_id)
        lock_account(db, payment.account_id, policy)
        db.refresh(payment)

        if payment.reconciliation_status == ReconciliationStatus.RECONCILED:
            raise AlreadyReconciled(
                f"Payment {payment.id} is already reconciled",
                {"payment_id": payment.id},
            )
        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidState(
                f"Payment {payment.id} is {payment.status}; only completed payments are reconciled",
                {"payment_id": payment.id},
            )

        cash = payment.amount - cash_allocated_from_payment(db, payment.id)
        applications: list[CreditApplication] = []
        if manual_allocations:
            allocations, bills = _allocate_manual(db, payment, manual_allocations, cash, policy)
        else:
            allocations, applications, bills = _allocate_fifo(db, payment, cash, policy, now)

        paid_before = {b.id for b in bills if b.status == BillStatus.PAID}
        for bill in bills:
            recompute_bill_status(db, bill, policy, now)
            if bill.status == BillStatus.PAID and bill.id not in paid_before:
                events.append(BillPaid(bill_id=bill.id, account_id=bill.account_id))

        cash_used = sum((a.allocated_amount for a in allocations), ZERO)
        credit_used = sum((a.amount for a in applications), ZERO)
        remaining = round_money(cash - cash_used)

        carry_forward = None
        if remaining > epsilon and policy.carry_forward_overpayments:
            carry_forward = create_carry_forward(
                db,
                payment.account_id,
                remaining,
                payment=payment,
                description=f"Overpayment from payment #{payment.id} ({payment.reference})",
            )
            events.append(
                CarryForwardCreated(
                    carry_forward_id=carry_forward.id,
                    account_id=payment.account_id,
                    amount=carry_forward.balance,
                )
            )

        unaccounted = remaining - (carry_forward.balance if carry_forward else ZERO)
        if unaccounted <= epsilon:
            payment.reconciliation_status = ReconciliationStatus.RECONCILED
        else:
            payment.reconciliation_status = ReconciliationStatus.PARTIALLY_RECONCILED
        payment.reconciled_at = now
        payment.reconciled_by = user_id
        db.flush()

        events.insert(
            0,
            PaymentReconciled(
                payment_id=payment.id,
                account_id=payment.account_id,
                total_allocated=cash_used,
                remaining_amount=remaining,
            ),
        )

        # Computed from the locked transaction, never from the cache
        balance = compute_account_balance(db, payment.account_id, now=now)
        result = ReconciliationResult(
            payment_id=payment.id,
            account_id=payment.account_id,
            reconciliation_status=payment.reconciliation_status,
            allocations=[AllocationResponse.model_validate(a) for a in allocations],
            credit_applications=[CreditApplicationResponse.model_validate(a) for a in applications],
            total_allocated=round_money(cash_used),
            credit_applied=round_money(credit_used),
            remaining_amount=remaining,
            carry_forward=CarryForwardResponse.model_validate(carry_forward) if carry_forward else None,
            bills=_settlements(db, bills),
            account_balance=balance.current_balance,
        )

    balance_cache.invalidate(result.account_id)
    dispatcher.publish(events)
    logger.info(
        "Reconciled payment %s: %s allocated across %d bills, %s credit applied, %s remaining",
        payment_id,
        result.total_allocated,
        len(result.bills),
        result.credit_applied,
        result.remaining_amount,
    )
    return result


def reverse_reconciliation(
    db: Session,
    payment_id: int,
    policy: BillingPolicy,
    user_id: int | None = None,
    now: datetime | None = None,
) -> ReversalResult:
    """Undo a reconciliation exactly.

    Deletes the payment's allocations, gives drawn credits back, removes the
    overpayment credit the payment created and returns the payment to
    pending. Fails if that overpayment credit has since been used.
    """
    now = now or datetime.now(UTC)
    with atomic(db):
        payment = get_payment(db, payment_id)
        lock_account(db, payment.account_id, policy)
        db.refresh(payment)

        if payment.reconciliation_status != ReconciliationStatus.RECONCILED:
            raise NotReconciled(
                f"Payment {payment.id} is {payment.reconciliation_status}, not reconciled",
                {"payment_id": payment.id},
            )

        created = (
            db.query(CarryForwardBalance)
            .filter(CarryForwardBalance.payment_id == payment.id)
            .all()
        )
        for carry_forward in created:
            used_by = (
                db.query(CreditApplication)
                .filter(CreditApplication.carry_forward_id == carry_forward.id)
                .first()
            )
            if used_by is not None:
                raise InvalidState(
                    f"Credit from payment {payment.id} was applied to bill "
                    f"{used_by.bill_id}; reverse the payment that applied it first",
                    {
                        "carry_forward_id": carry_forward.id,
                        "bill_id": used_by.bill_id,
                        "payment_id": used_by.applied_during_payment_id,
                    },
                )

        bills: list[Bill] = []
        applications = credit_applications_during(db, payment.id)
        for row in [*payment.allocations, *applications]:
            if row.bill not in bills:
                bills.append(row.bill)

        credits_restored = undo_credit_applications(db, applications)
        allocations = delete_payment_allocations(db, payment.id)
        amount_reversed = sum((a.allocated_amount for a in allocations), ZERO)

        for bill in bills:
            recompute_bill_status(db, bill, policy, now, after_reversal=True)

        deleted_ids = [c.id for c in created]
        for carry_forward in created:
            db.delete(carry_forward)

        payment.reconciliation_status = ReconciliationStatus.PENDING
        payment.reconciled_at = None
        payment.reconciled_by = None
        db.flush()

        result = ReversalResult(
            payment_id=payment.id,
            account_id=payment.account_id,
            allocations_reversed=len(allocations),
            credit_applications_reversed=len(applications),
            amount_reversed=round_money(amount_reversed),
            credits_restored=credits_restored,
            deleted_carry_forward_ids=deleted_ids,
            bills=_settlements(db, bills),
        )
        event = ReconciliationReversed(
            payment_id=payment.id,
            account_id=payment.account_id,
            allocations_reversed=len(allocations),
        )

    balance_cache.invalidate(result.account_id)
    dispatcher.publish([event])
    logger.info(
        "Reversed reconciliation of payment %s by %s: %d allocations, %s restored to credits",
        payment_id,
        user_id,
        result.allocations_reversed,
        result.credits_restored,
    )
    return result


def reconciliation_report(db: Session, payment_id: int) -> ReconciliationReport:
    """Where a payment's money currently sits."""
    payment = get_payment(db, payment_id)
    applications = credit_applications_during(db, payment.id)
    cash = sum((a.allocated_amount for a in payment.allocations), ZERO)
    credit = sum((a.amount for a in applications), ZERO)
    carry_forwards = (
        db.query(CarryForwardBalance)
        .filter(CarryForwardBalance.payment_id == payment.id)
        .order_by(CarryForwardBalance.id)
        .all()
    )
    return ReconciliationReport(
        payment=PaymentResponse.model_validate(payment),
        allocations=[AllocationResponse.model_validate(a) for a in payment.allocations],
        credit_applications=[CreditApplicationResponse.model_validate(a) for a in applications],
        cash_allocated=round_money(cash),
        credit_applied=round_money(credit),
        unallocated=round_money(payment.amount - cash),
        carry_forwards=[CarryForwardResponse.model_validate(c) for c in carry_forwards],
    )
