"""Read-side projections: account balance, aging, payment history.

Balances are always derived from bills, allocations and carry-forwards.
``BalanceCache`` only serves reads; reconciliation and billing compute from
the database inside their own transaction and invalidate the cache after
committing.
"""

import logging
import threading
from collections import defaultdict
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
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
from app.schemas.balance import (
    AccountBalance,
    AgingBucket,
    AgingReport,
    OutstandingBillsSummary,
    PaymentHistoryEntry,
    PaymentImpactProjection,
    ProjectedAllocation,
)
from app.services.accounts import get_account
from app.services.ledger import active_credits, outstanding_bills

logger = logging.getLogger(__name__)

# (label, lowest days overdue, highest days overdue)
AGING_BUCKETS = (
    ("0-30", 0, 30),
    ("31-60", 31, 60),
    ("61-90", 61, 90),
    ("90+", 91, None),
)


class BalanceCache:
    """In-memory TTL cache of account balances keyed by account id."""

    def __init__(self) -> None:
        self._entries: dict[int, tuple[AccountBalance, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, account_id: int) -> AccountBalance | None:
        with self._lock:
            entry = self._entries.get(account_id)
            if entry is None:
                return None
            balance, expires_at = entry
            if expires_at > datetime.now(UTC):
                return balance
            del self._entries[account_id]
            return None

    def set(self, account_id: int, balance: AccountBalance, ttl: int) -> None:
        now = datetime.now(UTC)
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            self._entries[account_id] = (balance, now + timedelta(seconds=ttl))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def invalidate(self, account_id: int) -> None:
        with self._lock:
            self._entries.pop(account_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


balance_cache = BalanceCache()


def _allocated_by_bill(db: Session, bill_ids: list[int]) -> dict[int, Decimal]:
    if not bill_ids:
        return {}
    rows = (
        db.query(PaymentAllocation.bill_id, func.sum(PaymentAllocation.allocated_amount))
        .filter(PaymentAllocation.bill_id.in_(bill_ids))
        .group_by(PaymentAllocation.bill_id)
        .all()
    )
    credited = (
        db.query(CreditApplication.bill_id, func.sum(CreditApplication.amount))
        .filter(CreditApplication.bill_id.in_(bill_ids))
        .group_by(CreditApplication.bill_id)
        .all()
    )
    totals: dict[int, Decimal] = {}
    for bill_id, total in [*rows, *credited]:
        totals[bill_id] = totals.get(bill_id, ZERO) + total
    return {bill_id: round_money(total) for bill_id, total in totals.items()}


def compute_account_balance(
    db: Session,
    account_id: int,
    as_of: date | None = None,
    now: datetime | None = None,
) -> AccountBalance:
    """Derive an account's balance straight from the ledger.

    current balance = outstanding bill totals - their allocations
    - active credit balances, floored at zero.
    """
    as_of = as_of or datetime.now(UTC).date()
    now = now or datetime.now(UTC)

    bills = (
        db.query(Bill)
        .filter(Bill.account_id == account_id, Bill.status != BillStatus.VOIDED)
        .all()
    )
    allocated = _allocated_by_bill(db, [b.id for b in bills])

    total_billed = sum((b.total_amount for b in bills), ZERO)
    total_paid = sum(allocated.values(), ZERO)

    outstanding = ZERO
    overdue = ZERO
    outstanding_count = 0
    overdue_count = 0
    for bill in bills:
        if not bill.get_is_outstanding():
            continue
        balance = bill.total_amount - allocated.get(bill.id, ZERO)
        outstanding += balance
        outstanding_count += 1
        if bill.due_date < as_of:
            overdue += balance
            overdue_count += 1

    credit = sum((c.balance for c in active_credits(db, account_id, now)), ZERO)
    debit = (
        db.query(func.coalesce(func.sum(CarryForwardBalance.balance), 0))
        .filter(
            CarryForwardBalance.account_id == account_id,
            CarryForwardBalance.type == CarryForwardType.DEBIT,
            CarryForwardBalance.status == CarryForwardStatus.ACTIVE,
        )
        .scalar()
    )
    debit = round_money(debit)

    net = outstanding + debit - credit
    return AccountBalance(
        account_id=account_id,
        total_billed=round_money(total_billed),
        total_paid=round_money(total_paid),
        outstanding_balance=round_money(outstanding),
        available_credit=round_money(credit),
        outstanding_debit=debit,
        net_balance=round_money(net),
        current_balance=round_money(max(ZERO, net)),
        overdue_amount=round_money(overdue),
        outstanding_bill_count=outstanding_count,
        overdue_bill_count=overdue_count,
        as_of=as_of,
    )


def get_account_balance(
    db: Session,
    account_id: int,
    policy: BillingPolicy,
    use_cache: bool = True,
) -> AccountBalance:
    """Account balance for display, served from the cache when fresh."""
    get_account(db, account_id)
    if use_cache:
        cached = balance_cache.get(account_id)
        if cached is not None:
            return cached

    balance = compute_account_balance(db, account_id)
    if use_cache:
        balance_cache.set(account_id, balance, policy.balance_cache_ttl_seconds)
    return balance


def aging_report(db: Session, account_id: int, as_of: date | None = None) -> AgingReport:
    """Outstanding balance bucketed by days past due."""
    get_account(db, account_id)
    as_of = as_of or datetime.now(UTC).date()

    bills = outstanding_bills(db, account_id)
    allocated = _allocated_by_bill(db, [b.id for b in bills])

    amounts = {label: ZERO for label, _, _ in AGING_BUCKETS}
    counts = {label: 0 for label, _, _ in AGING_BUCKETS}
    for bill in bills:
        days = bill.get_days_overdue(as_of)
        for label, low, high in AGING_BUCKETS:
            if days >= low and (high is None or days <= high):
                amounts[label] += bill.total_amount - allocated.get(bill.id, ZERO)
                counts[label] += 1
                break

    buckets = [
        AgingBucket(label=label, bill_count=counts[label], amount=round_money(amounts[label]))
        for label, _, _ in AGING_BUCKETS
    ]
    return AgingReport(
        account_id=account_id,
        as_of=as_of,
        buckets=buckets,
        total=round_money(sum(amounts.values(), ZERO)),
    )


def payment_history(db: Session, account_id: int, limit: int = 50) -> list[PaymentHistoryEntry]:
    """Most recent payments with what they were allocated to."""
    get_account(db, account_id)
    payments = (
        db.query(Payment)
        .filter(Payment.account_id == account_id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .limit(limit)
        .all()
    )
    return [
        PaymentHistoryEntry(
            payment_id=p.id,
            reference=p.reference,
            amount=p.amount,
            payment_date=p.payment_date,
            status=p.status,
            reconciliation_status=p.reconciliation_status,
            allocated=round_money(
                sum((a.allocated_amount for a in p.allocations), ZERO)
            ),
            bill_ids=sorted({a.bill_id for a in p.allocations}),
            reconciled_at=p.reconciled_at,
        )
        for p in payments
    ]


def outstanding_bills_summary(db: Session, account_id: int) -> OutstandingBillsSummary:
    """Outstanding balance grouped by bill status and by billing period."""
    get_account(db, account_id)
    bills = outstanding_bills(db, account_id)
    allocated = _allocated_by_bill(db, [b.id for b in bills])

    by_status: dict[str, Decimal] = defaultdict(lambda: ZERO)
    by_period: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for bill in bills:
        balance = bill.total_amount - allocated.get(bill.id, ZERO)
        by_status[BillStatus(bill.status).value] += balance
        by_period[bill.billing_period] += balance

    return OutstandingBillsSummary(
        account_id=account_id,
        bill_count=len(bills),
        total_outstanding=round_money(sum(by_status.values(), ZERO)),
        by_status={k: round_money(v) for k, v in by_status.items()},
        by_period={k: round_money(v) for k, v in sorted(by_period.items())},
    )


def project_payment_impact(
    db: Session,
    account_id: int,
    amount: Decimal,
    policy: BillingPolicy,
    now: datetime | None = None,
) -> PaymentImpactProjection:
    """Show how FIFO reconciliation would apply ``amount`` without writing anything."""
    get_account(db, account_id)
    now = now or datetime.now(UTC)
    epsilon = policy.min_allocation_epsilon

    bills = outstanding_bills(db, account_id)
    allocated = _allocated_by_bill(db, [b.id for b in bills])
    credits = [c.balance for c in active_credits(db, account_id, now)]
    credit_before = sum(credits, ZERO)

    cash = amount
    projections: list[ProjectedAllocation] = []
    for bill in bills:
        if cash + sum(credits, ZERO) < epsilon:
            break
        before = bill.total_amount - allocated.get(bill.id, ZERO)
        need = before
        if need <= 0:
            continue

        from_credit = ZERO
        for i, available in enumerate(credits):
            if need <= 0:
                break
            draw = min(available, need)
            credits[i] -= draw
            from_credit += draw
            need -= draw

        from_payment = min(cash, need) if need > 0 else ZERO
        cash -= from_payment
        need -= from_payment

        if from_credit or from_payment:
            projections.append(
                ProjectedAllocation(
                    bill_id=bill.id,
                    billing_period=bill.billing_period,
                    balance_before=round_money(before),
                    from_credit=round_money(from_credit),
                    from_payment=round_money(from_payment),
                    balance_after=round_money(need),
                )
            )

    balance_before = compute_account_balance(db, account_id, now=now)
    credit_used = credit_before - sum(credits, ZERO)
    remaining = cash
    net_after = balance_before.net_balance - amount
    return PaymentImpactProjection(
        account_id=account_id,
        amount=amount,
        allocations=projections,
        credit_used=round_money(credit_used),
        remaining_amount=round_money(remaining),
        balance_before=balance_before.current_balance,
        balance_after=round_money(max(ZERO, net_after)),
    )

