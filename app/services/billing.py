"""Billing service - bill generation, voiding, credit notes and overdue handling."""

import calendar
import logging
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
from app.core.database import atomic
from app.core.events import BillGenerated, BillPaid, BillVoided, CarryForwardCreated, dispatcher
from app.core.exceptions import (
    BillingError,
    DuplicateBill,
    InvalidAllocationAmount,
    InvalidState,
    NoActiveMeters,
    NoBillableReadings,
    NotFound,
)
from app.core.money import ZERO, round_money
from app.models.billing import Bill, BillingDetail
from app.models.enums import OUTSTANDING_BILL_STATUSES, BillStatus, MeterType, ReconciliationStatus
from app.models.ledger import CarryForwardBalance, CreditApplication, PaymentAllocation
from app.models.meter import Meter
from app.models.payment import Payment
from app.schemas.billing import AccountGenerationOutcome, BulkGenerationResult
from app.services.accounts import lock_account
from app.services.balances import balance_cache
from app.services.charges import calculate_charges, calculate_late_fee
from app.services.estimation import create_estimated_reading
from app.services.ledger import (
    allocated_to_bill,
    bill_balance,
    create_carry_forward,
    recompute_bill_status,
    undo_credit_applications,
)
from app.services.meters import get_billable_meters
from app.services.readings import consumption_between, get_current_reading, get_previous_reading
from app.services.tariffs import resolve_tariff

logger = logging.getLogger(__name__)


def parse_billing_period(billing_period: str) -> tuple[date, date]:
    """First and last day of a YYYY-MM billing period."""
    try:
        year, month = (int(part) for part in billing_period.split("-"))
        first = date(year, month, 1)
    except ValueError as exc:
        raise InvalidState(
            f"Invalid billing period '{billing_period}', expected YYYY-MM",
            {"billing_period": billing_period},
        ) from exc
    last = date(year, month, calendar.monthrange(year, month)[1])
    return first, last


def get_bill(db: Session, bill_id: int) -> Bill:
    """Get a bill by ID."""
    bill = db.query(Bill).filter(Bill.id == bill_id).first()
    if not bill:
        raise NotFound("Bill not found", {"bill_id": bill_id})
    return bill


def get_bills_for_account(
    db: Session,
    account_id: int,
    status: BillStatus | None = None,
) -> list[Bill]:
    """Bills for an account, newest period first."""
    query = db.query(Bill).filter(Bill.account_id == account_id)
    if status is not None:
        query = query.filter(Bill.status == status)
    return query.order_by(Bill.billing_period.desc(), Bill.id.desc()).all()


def find_open_bill(db: Session, account_id: int, billing_period: str) -> Bill | None:
    """The non-voided bill for an account and period, if any."""
    return (
        db.query(Bill)
        .filter(
            Bill.account_id == account_id,
            Bill.billing_period == billing_period,
            Bill.status != BillStatus.VOIDED,
        )
        .first()
    )


def _build_detail(
    db: Session,
    meter: Meter,
    period_start: date,
    period_end: date,
    policy: BillingPolicy,
) -> BillingDetail | None:
    """Bill line for one meter, or None when the meter has nothing to bill."""
    previous = get_previous_reading(db, meter.id, period_start)
    current = get_current_reading(db, meter.id, period_start, period_end)

    if current is None:
        if not policy.estimation_enabled:
            logger.warning("Meter %s has no reading for %s, skipping", meter.id, period_start)
            return None
        current = create_estimated_reading(db, meter, previous, period_end, policy)
        if current is None:
            logger.warning("Meter %s has no reading history to estimate from, skipping", meter.id)
            return None

    needs_review = current.needs_review
    if previous is None:
        # First bill for the meter: the reading only opens it
        consumption = ZERO
        previous_value = current.value
    else:
        consumption, is_reset = consumption_between(previous, current)
        previous_value = previous.value
        if is_reset:
            logger.warning(
                "Meter %s reading dropped from %s to %s, billing zero and flagging for review",
                meter.id,
                previous.value,
                current.value,
            )
            needs_review = True

    tariff = resolve_tariff(db, meter, current.reading_date)
    charges = calculate_charges(
        consumption,
        tariff,
        is_bulk=meter.meter_type == MeterType.BULK,
        policy=policy,
    )

    is_estimated = current.get_is_estimated()
    description = f"{meter.meter_number}: {consumption} units at {tariff.code}"
    if is_estimated:
        description += " (estimated)"

    return BillingDetail(
        meter_id=meter.id,
        tariff_id=tariff.id,
        previous_reading_value=previous_value,
        current_reading_value=current.value,
        units_used=consumption,
        rate=charges.average_rate,
        consumption_charge=charges.consumption_charge,
        fixed_charge=charges.fixed_charge,
        tax=charges.tax,
        amount=charges.total,
        description=description,
        is_estimated=is_estimated,
        needs_review=needs_review,
    )


def _create_bill(
    db: Session,
    account_id: int,
    billing_period: str,
    policy: BillingPolicy,
    issue_date: date | None = None,
    user_id: int | None = None,
    replaces: Bill | None = None,
) -> Bill:
    """Build and flush a bill inside the caller's transaction and account lock."""
    account = lock_account(db, account_id, policy)
    if not account.get_is_active():
        raise InvalidState(
            f"Account {account_id} is {account.status}, only active accounts are billed",
            {"account_id": account_id},
        )

    period_start, period_end = parse_billing_period(billing_period)

    if policy.prevent_duplicate_bills:
        existing = find_open_bill(db, account_id, billing_period)
        if existing:
            raise DuplicateBill(
                f"Account {account_id} already has bill {existing.id} for {billing_period}",
                {"bill_id": existing.id, "billing_period": billing_period},
            )

    meters = get_billable_meters(db, account_id)
    if not meters:
        raise NoActiveMeters(
            f"Account {account_id} has no active meters", {"account_id": account_id}
        )

    details = []
    for meter in meters:
        detail = _build_detail(db, meter, period_start, period_end, policy)
        if detail is not None:
            details.append(detail)
    if not details:
        raise NoBillableReadings(
            f"No meter on account {account_id} has readings for {billing_period}",
            {"account_id": account_id, "billing_period": billing_period},
        )

    issue_date = issue_date or datetime.now(UTC).date()
    bill = Bill(
        account_id=account_id,
        billing_period=billing_period,
        total_amount=round_money(sum((d.amount for d in details), ZERO)),
        status=BillStatus.PENDING,
        is_estimated=any(d.is_estimated for d in details),
        due_date=issue_date + timedelta(days=policy.due_days),
        generated_by=user_id,
        replaces_bill_id=replaces.id if replaces else None,
        details=details,
    )
    db.add(bill)
    db.flush()
    if replaces is not None:
        replaces.replaced_by_bill_id = bill.id
    return bill


def generate_bill(
    db: Session,
    account_id: int,
    billing_period: str,
    policy: BillingPolicy,
    issue_date: date | None = None,
    user_id: int | None = None,
) -> Bill:
    """Generate an account's bill for a period.

    Every billable meter gets one line; the whole bill is written in one
    transaction or not at all.
    """
    with atomic(db):
        bill = _create_bill(db, account_id, billing_period, policy, issue_date, user_id)
        event = BillGenerated(
            bill_id=bill.id,
            account_id=account_id,
            billing_period=billing_period,
            total_amount=bill.total_amount,
        )

    balance_cache.invalidate(account_id)
    dispatcher.publish([event])
    db.refresh(bill)
    logger.info(
        "Generated bill %s for account %s period %s: %s",
        bill.id,
        account_id,
        billing_period,
        bill.total_amount,
    )
    return bill


def generate_bills_for_accounts(
    db: Session,
    account_ids: list[int],
    billing_period: str,
    policy: BillingPolicy,
    issue_date: date | None = None,
    user_id: int | None = None,
) -> BulkGenerationResult:
    """Generate bills for many accounts; one account failing does not stop the rest."""
    outcomes: list[AccountGenerationOutcome] = []
    for account_id in account_ids:
        try:
            bill = generate_bill(db, account_id, billing_period, policy, issue_date, user_id)
        except BillingError as exc:
            logger.warning("Bill generation failed for account %s: %s", account_id, exc.message)
            outcomes.append(
                AccountGenerationOutcome(
                    account_id=account_id,
                    success=False,
                    error_code=exc.code,
                    error=exc.message,
                )
            )
        except SQLAlchemyError as exc:
            logger.exception("Database error generating bill for account %s", account_id)
            outcomes.append(
                AccountGenerationOutcome(
                    account_id=account_id,
                    success=False,
                    error_code="database_error",
                    error=str(exc),
                )
            )
        else:
            outcomes.append(
                AccountGenerationOutcome(
                    account_id=account_id,
                    success=True,
                    bill_id=bill.id,
                    total_amount=bill.total_amount,
                )
            )

    succeeded = sum(1 for o in outcomes if o.success)
    logger.info(
        "Bulk generation for %s: %d succeeded, %d failed",
        billing_period,
        succeeded,
        len(outcomes) - succeeded,
    )
    return BulkGenerationResult(
        billing_period=billing_period,
        total=len(outcomes),
        succeeded=succeeded,
        failed=len(outcomes) - succeeded,
        outcomes=outcomes,
    )


def _release_bill_payments(
    db: Session,
    bill: Bill,
    policy: BillingPolicy,
) -> list[CarryForwardBalance]:
    """Take every payment and credit off a bill that is about to be voided.

    Drawn credits are restored. Cash goes back to its payment: as a new
    credit when overpayments carry forward, otherwise the payment drops to
    partially reconciled so it can be reconciled again.
    """
    released: list[CarryForwardBalance] = []
    applications = (
        db.query(CreditApplication)
        .filter(CreditApplication.bill_id == bill.id)
        .order_by(CreditApplication.id)
        .all()
    )
    undo_credit_applications(db, applications)

    allocations = (
        db.query(PaymentAllocation)
        .filter(PaymentAllocation.bill_id == bill.id)
        .order_by(PaymentAllocation.id)
        .all()
    )
    by_payment: dict[int, tuple[Payment, Decimal]] = {}
    for allocation in allocations:
        payment, amount = by_payment.get(allocation.payment_id, (allocation.payment, ZERO))
        by_payment[allocation.payment_id] = (payment, amount + allocation.allocated_amount)
        db.delete(allocation)
    db.flush()

    for payment, amount in by_payment.values():
        if policy.carry_forward_overpayments:
            released.append(
                create_carry_forward(
                    db,
                    bill.account_id,
                    amount,
                    payment=payment,
                    description=f"Released from voided bill #{bill.id} (payment #{payment.id})",
                )
            )
        else:
            payment.reconciliation_status = ReconciliationStatus.PARTIALLY_RECONCILED
    db.flush()
    return released


def void_bill(
    db: Session,
    bill_id: int,
    reason: str,
    policy: BillingPolicy,
    regenerate: bool = False,
    issue_date: date | None = None,
    user_id: int | None = None,
) -> tuple[Bill, Bill | None, list[CarryForwardBalance]]:
    """Void a bill, optionally generating its replacement in the same transaction.

    Payments already applied to the bill are released first; returns the
    voided bill, its replacement and any credits opened from released cash.
    """
    events = []
    with atomic(db):
        bill = get_bill(db, bill_id)
        lock_account(db, bill.account_id, policy)
        db.refresh(bill)

        if bill.status in (BillStatus.PAID, BillStatus.VOIDED):
            raise InvalidState(
                f"Bill {bill.id} is {bill.status} and cannot be voided",
                {"bill_id": bill.id, "status": bill.status},
            )

        released = _release_bill_payments(db, bill, policy)
        for carry_forward in released:
            events.append(
                CarryForwardCreated(
                    carry_forward_id=carry_forward.id,
                    account_id=carry_forward.account_id,
                    amount=carry_forward.balance,
                )
            )

        bill.status = BillStatus.VOIDED
        bill.voided_at = datetime.now(UTC)
        bill.void_reason = reason
        bill.voided_by = user_id
        db.flush()

        replacement = None
        if regenerate:
            replacement = _create_bill(
                db,
                bill.account_id,
                bill.billing_period,
                policy,
                issue_date=issue_date,
                user_id=user_id,
                replaces=bill,
            )
            events.append(
                BillGenerated(
                    bill_id=replacement.id,
                    account_id=replacement.account_id,
                    billing_period=replacement.billing_period,
                    total_amount=replacement.total_amount,
                )
            )
        events.insert(
            0,
            BillVoided(
                bill_id=bill.id,
                account_id=bill.account_id,
                reason=reason,
                replacement_bill_id=replacement.id if replacement else None,
            ),
        )

    balance_cache.invalidate(bill.account_id)
    dispatcher.publish(events)
    logger.info("Voided bill %s: %s (%d payments released)", bill_id, reason, len(released))
    db.refresh(bill)
    if replacement is not None:
        db.refresh(replacement)
    for carry_forward in released:
        db.refresh(carry_forward)
    return bill, replacement, released


def apply_credit_note(
    db: Session,
    bill_id: int,
    amount: Decimal,
    reason: str,
    policy: BillingPolicy,
    user_id: int | None = None,
) -> Bill:
    """Reduce a bill's total by a credit note.

    The total may not drop below what has already been allocated to the bill.
    """
    amount = round_money(amount)
    events = []
    with atomic(db):
        bill = get_bill(db, bill_id)
        lock_account(db, bill.account_id, policy)
        db.refresh(bill)

        if not bill.get_is_outstanding():
            raise InvalidState(
                f"Bill {bill.id} is {bill.status}, credit notes apply to outstanding bills",
                {"bill_id": bill.id},
            )
        if amount <= 0:
            raise InvalidAllocationAmount("Credit note amount must be positive")

        allocated = allocated_to_bill(db, bill.id)
        new_total = bill.total_amount - amount
        if new_total < allocated:
            raise InvalidAllocationAmount(
                f"Credit note would reduce bill {bill.id} below the {allocated} already paid",
                {"bill_id": bill.id, "allocated": str(allocated), "amount": str(amount)},
            )

        bill.total_amount = new_total
        was_paid = bill.status == BillStatus.PAID
        if recompute_bill_status(db, bill, policy) == BillStatus.PAID and not was_paid:
            events.append(BillPaid(bill_id=bill.id, account_id=bill.account_id))
        db.flush()

    balance_cache.invalidate(bill.account_id)
    dispatcher.publish(events)
    logger.info("Credit note of %s on bill %s by %s: %s", amount, bill_id, user_id, reason)
    db.refresh(bill)
    return bill


def _overdue_candidates(db: Session, as_of: date, account_id: int | None = None):
    query = db.query(Bill).filter(
        Bill.status.in_((BillStatus.PENDING, BillStatus.PARTIALLY_PAID)),
        Bill.due_date < as_of,
    )
    if account_id is not None:
        query = query.filter(Bill.account_id == account_id).populate_existing()
    return query


def mark_overdue_bills(
    db: Session,
    policy: BillingPolicy,
    as_of: date | None = None,
) -> list[int]:
    """Flag pending and partially paid bills past their due date as overdue.

    Each account is handled in its own transaction under the account lock,
    and its bills are re-read once the lock is held.
    """
    as_of = as_of or datetime.now(UTC).date()
    rows = _overdue_candidates(db, as_of).with_entities(Bill.account_id).distinct().all()
    account_ids = sorted(account_id for (account_id,) in rows)

    bill_ids: list[int] = []
    for account_id in account_ids:
        with atomic(db):
            lock_account(db, account_id, policy)
            bills = _overdue_candidates(db, as_of, account_id).all()
            for bill in bills:
                bill.status = BillStatus.OVERDUE
            bill_ids.extend(b.id for b in bills)
        balance_cache.invalidate(account_id)
    if bill_ids:
        logger.info("Marked %d bills overdue as of %s", len(bill_ids), as_of)
    return bill_ids


def late_fee_for_bill(
    db: Session,
    bill_id: int,
    policy: BillingPolicy,
    as_of: date | None = None,
) -> tuple[Bill, int, Decimal, Decimal]:
    """Late fee owed on a bill's unpaid balance: (bill, days overdue, balance, fee)."""
    as_of = as_of or datetime.now(UTC).date()
    bill = get_bill(db, bill_id)
    if bill.status not in OUTSTANDING_BILL_STATUSES:
        return bill, 0, ZERO, ZERO

    balance = bill_balance(db, bill)
    days_overdue = bill.get_days_overdue(as_of)
    fee = calculate_late_fee(balance, days_overdue, policy.late_fee)
    return bill, days_overdue, round_money(balance), fee
