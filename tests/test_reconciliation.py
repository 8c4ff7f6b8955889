"""Tests for payment reconciliation and its reversal."""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Query

from app.core.config import BillingPolicy
from app.core.events import BillPaid, CarryForwardCreated, PaymentReconciled, dispatcher
from app.core.exceptions import (
    AccountLocked,
    AllocationExceedsBillBalance,
    AlreadyReconciled,
    DuplicatePaymentReference,
    InvalidAllocationAmount,
    InvalidState,
    NotReconciled,
)
from app.models.enums import (
    BillStatus,
    CarryForwardStatus,
    PaymentStatus,
    ReconciliationStatus,
)
from app.models.ledger import CarryForwardBalance, CreditApplication, PaymentAllocation
from app.schemas.payment import ManualAllocation, PaymentCreate
from app.services.accounts import lock_account
from app.services.balances import compute_account_balance
from app.services.ledger import allocated_to_bill, create_carry_forward, expire_carry_forwards
from app.services.reconciliation import (
    reconcile_payment,
    reconciliation_report,
    record_payment,
    reverse_reconciliation,
)


@pytest.fixture
def two_bills(build):
    """January bill of 100 and February bill of 150, due in that order."""
    account = build.account()
    january = build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
    february = build.bill(account, "2024-02", "150", due=date(2024, 3, 14))
    return account, january, february


class TestRecordPayment:
    def test_duplicate_reference(self, test_db, build) -> None:
        account = build.account()
        data = PaymentCreate(account_id=account.id, amount=Decimal("10"), method="cash", reference="R-1")
        record_payment(test_db, data)
        with pytest.raises(DuplicatePaymentReference):
            record_payment(test_db, data)


class TestFifoReconciliation:
    """Oldest bill first."""

    def test_pays_oldest_bill_first(self, test_db, policy, build, two_bills) -> None:
        account, january, february = two_bills
        payment = build.payment(account, "200")

        result = reconcile_payment(test_db, payment.id, policy)

        assert [(a.bill_id, a.allocated_amount) for a in result.allocations] == [
            (january.id, Decimal("100.00")),
            (february.id, Decimal("100.00")),
        ]
        assert result.total_allocated == Decimal("200.00")
        assert result.remaining_amount == Decimal("0.00")
        assert result.carry_forward is None
        assert result.reconciliation_status == ReconciliationStatus.RECONCILED
        assert result.account_balance == Decimal("50.00")

        test_db.refresh(january)
        test_db.refresh(february)
        assert january.status == BillStatus.PAID
        assert january.paid_at is not None
        assert february.status == BillStatus.PARTIALLY_PAID

    def test_overpayment_becomes_credit(self, test_db, policy, build) -> None:
        account = build.account()
        bill = build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        payment = build.payment(account, "150")

        result = reconcile_payment(test_db, payment.id, policy)

        assert result.total_allocated == Decimal("100.00")
        assert result.remaining_amount == Decimal("50.00")
        assert result.carry_forward.balance == Decimal("50.00")
        assert result.carry_forward.payment_id == payment.id
        assert str(payment.id) in result.carry_forward.description
        assert result.reconciliation_status == ReconciliationStatus.RECONCILED
        assert result.account_balance == Decimal("0.00")

        test_db.refresh(bill)
        assert bill.status == BillStatus.PAID
        balance = compute_account_balance(test_db, account.id)
        assert balance.net_balance == Decimal("-50.00")

    def test_overpayment_without_carry_forward(self, test_db, build) -> None:
        account = build.account()
        build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        payment = build.payment(account, "150")

        result = reconcile_payment(
            test_db, payment.id, BillingPolicy(carry_forward_overpayments=False)
        )

        assert result.carry_forward is None
        assert result.remaining_amount == Decimal("50.00")
        assert result.reconciliation_status == ReconciliationStatus.PARTIALLY_RECONCILED

    def test_no_bills_means_all_credit(self, test_db, policy, build) -> None:
        account = build.account()
        payment = build.payment(account, "75")

        result = reconcile_payment(test_db, payment.id, policy)

        assert result.allocations == []
        assert result.carry_forward.balance == Decimal("75.00")

    def test_existing_credit_used_before_cash(self, test_db, policy, build) -> None:
        account = build.account()
        build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        first = build.payment(account, "150")
        first_result = reconcile_payment(test_db, first.id, policy)
        credit_id = first_result.carry_forward.id

        bill = build.bill(account, "2024-02", "80", due=date(2024, 3, 14))
        second = build.payment(account, "30")
        result = reconcile_payment(test_db, second.id, policy)

        assert result.credit_applied == Decimal("50.00")
        assert result.total_allocated == Decimal("30.00")
        assert [a.carry_forward_id for a in result.credit_applications] == [credit_id]
        assert [a.allocated_amount for a in result.allocations] == [Decimal("30.00")]
        assert result.remaining_amount == Decimal("0.00")

        credit = test_db.get(CarryForwardBalance, credit_id)
        assert credit.balance == Decimal("0.00")
        assert credit.status == CarryForwardStatus.APPLIED
        test_db.refresh(bill)
        assert bill.status == BillStatus.PAID

    def test_credit_not_consumed_beyond_what_bills_need(self, test_db, policy, build) -> None:
        account = build.account()
        create_carry_forward(test_db, account.id, Decimal("100"), description="Opening credit")
        test_db.commit()
        build.bill(account, "2024-01", "40", due=date(2024, 2, 14))
        payment = build.payment(account, "10")

        result = reconcile_payment(test_db, payment.id, policy)

        assert result.credit_applied == Decimal("40.00")
        assert result.total_allocated == Decimal("0.00")
        assert result.carry_forward.balance == Decimal("10.00")
        assert compute_account_balance(test_db, account.id).available_credit == Decimal("70.00")

    def test_expired_credit_is_ignored(self, test_db, policy, build) -> None:
        account = build.account()
        credit = create_carry_forward(
            test_db,
            account.id,
            Decimal("100"),
            expires_at=datetime.now(UTC) - timedelta(days=1),
        )
        test_db.commit()
        build.bill(account, "2024-01", "40", due=date(2024, 2, 14))
        payment = build.payment(account, "40")

        result = reconcile_payment(test_db, payment.id, policy)

        assert result.credit_applied == Decimal("0.00")
        assert expire_carry_forwards(test_db) == 1
        test_db.commit()
        test_db.refresh(credit)
        assert credit.status == CarryForwardStatus.EXPIRED

    def test_already_reconciled(self, test_db, policy, build, two_bills) -> None:
        account, _, _ = two_bills
        payment = build.payment(account, "200")
        reconcile_payment(test_db, payment.id, policy)
        with pytest.raises(AlreadyReconciled):
            reconcile_payment(test_db, payment.id, policy)

    def test_only_completed_payments(self, test_db, policy, build, two_bills) -> None:
        account, _, _ = two_bills
        payment = build.payment(account, "200", status=PaymentStatus.FAILED)
        with pytest.raises(InvalidState):
            reconcile_payment(test_db, payment.id, policy)

    def test_events_published(self, test_db, policy, build) -> None:
        account = build.account()
        bill = build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        payment = build.payment(account, "120")
        received = []
        for event_type in (PaymentReconciled, BillPaid, CarryForwardCreated):
            dispatcher.subscribe(event_type, received.append)

        reconcile_payment(test_db, payment.id, policy)

        assert [type(e) for e in received] == [PaymentReconciled, BillPaid, CarryForwardCreated]
        assert received[1].bill_id == bill.id

    def test_failing_subscriber_does_not_fail_reconciliation(
        self, test_db, policy, build, caplog
    ) -> None:
        account = build.account()
        bill = build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        payment = build.payment(account, "100")
        received = []

        def broken(event):
            raise RuntimeError("notification service down")

        dispatcher.subscribe(PaymentReconciled, broken)
        dispatcher.subscribe(PaymentReconciled, received.append)
        dispatcher.subscribe(BillPaid, received.append)

        result = reconcile_payment(test_db, payment.id, policy)

        assert result.reconciliation_status == ReconciliationStatus.RECONCILED
        assert [type(e) for e in received] == [PaymentReconciled, BillPaid]
        assert "notification service down" in caplog.text
        test_db.refresh(bill)
        assert bill.status == BillStatus.PAID

    def test_allocations_never_exceed_payment(self, test_db, policy, build, two_bills) -> None:
        account, _, _ = two_bills
        payment = build.payment(account, "120")
        reconcile_payment(test_db, payment.id, policy)

        cash = sum(
            a.allocated_amount
            for a in test_db.query(PaymentAllocation).filter(PaymentAllocation.payment_id == payment.id)
        )
        assert cash <= Decimal("120")

    def test_credit_draws_are_not_allocated_to_the_payment(self, test_db, policy, build) -> None:
        account = build.account()
        credit = create_carry_forward(test_db, account.id, Decimal("300"), description="Opening credit")
        test_db.commit()
        bill = build.bill(account, "2024-01", "400", due=date(2024, 2, 14))
        payment = build.payment(account, "100")

        result = reconcile_payment(test_db, payment.id, policy)

        rows = test_db.query(PaymentAllocation).filter(PaymentAllocation.payment_id == payment.id).all()
        assert sum(a.allocated_amount for a in rows) <= payment.amount
        assert [a.allocated_amount for a in rows] == [Decimal("100.00")]
        applications = test_db.query(CreditApplication).all()
        assert [(a.carry_forward_id, a.bill_id, a.amount) for a in applications] == [
            (credit.id, bill.id, Decimal("300.00"))
        ]
        assert result.credit_applied == Decimal("300.00")
        assert allocated_to_bill(test_db, bill.id) == Decimal("400.00")
        test_db.refresh(bill)
        assert bill.status == BillStatus.PAID

    def test_equal_due_dates_pay_earliest_created_first(self, test_db, policy, build) -> None:
        account = build.account()
        due = date(2024, 2, 14)
        later = build.bill(account, "2024-01", "60", due=due)
        earlier = build.bill(account, "2024-02", "60", due=due)
        later.created_at = datetime(2024, 1, 20, tzinfo=UTC)
        earlier.created_at = datetime(2024, 1, 10, tzinfo=UTC)
        test_db.commit()
        payment = build.payment(account, "60")

        result = reconcile_payment(test_db, payment.id, policy)

        assert [a.bill_id for a in result.allocations] == [earlier.id]
        test_db.refresh(earlier)
        test_db.refresh(later)
        assert earlier.status == BillStatus.PAID
        assert later.status == BillStatus.PENDING


class TestManualReconciliation:
    def test_targets_chosen_bill(self, test_db, policy, build, two_bills) -> None:
        account, january, february = two_bills
        payment = build.payment(account, "200")

        result = reconcile_payment(
            test_db,
            payment.id,
            policy,
            manual_allocations=[ManualAllocation(bill_id=february.id, amount=Decimal("60"))],
        )

        assert [(a.bill_id, a.allocated_amount) for a in result.allocations] == [
            (february.id, Decimal("60.00"))
        ]
        assert allocated_to_bill(test_db, january.id) == Decimal("0")
        assert result.carry_forward.balance == Decimal("140.00")

    def test_amount_clamped_to_payment(self, test_db, policy, build, two_bills) -> None:
        account, january, _ = two_bills
        payment = build.payment(account, "50")

        result = reconcile_payment(
            test_db,
            payment.id,
            policy,
            manual_allocations=[ManualAllocation(bill_id=january.id, amount=Decimal("80"))],
        )

        assert result.total_allocated == Decimal("50.00")

    def test_exceeding_bill_balance_rolls_back(self, test_db, policy, build, two_bills) -> None:
        account, january, _ = two_bills
        payment = build.payment(account, "500")

        with pytest.raises(AllocationExceedsBillBalance):
            reconcile_payment(
                test_db,
                payment.id,
                policy,
                manual_allocations=[ManualAllocation(bill_id=january.id, amount=Decimal("120"))],
            )

        assert test_db.query(PaymentAllocation).count() == 0
        test_db.refresh(payment)
        assert payment.reconciliation_status == ReconciliationStatus.PENDING

    def test_non_positive_amount(self, test_db, policy, build, two_bills) -> None:
        account, january, _ = two_bills
        payment = build.payment(account, "50")
        with pytest.raises(InvalidAllocationAmount):
            reconcile_payment(
                test_db,
                payment.id,
                policy,
                manual_allocations=[ManualAllocation(bill_id=january.id, amount=Decimal("0"))],
            )

    def test_bill_of_another_account(self, test_db, policy, build, two_bills) -> None:
        _, january, _ = two_bills
        other = build.account()
        payment = build.payment(other, "50")
        with pytest.raises(InvalidState):
            reconcile_payment(
                test_db,
                payment.id,
                policy,
                manual_allocations=[ManualAllocation(bill_id=january.id, amount=Decimal("50"))],
            )


class TestReverseReconciliation:
    """Reversal is the exact inverse of reconciliation."""

    def test_restores_previous_state(self, test_db, policy, build, two_bills) -> None:
        account, january, february = two_bills
        before = compute_account_balance(test_db, account.id)
        payment = build.payment(account, "200")
        reconcile_payment(test_db, payment.id, policy)

        result = reverse_reconciliation(test_db, payment.id, policy)

        assert result.allocations_reversed == 2
        assert result.amount_reversed == Decimal("200.00")
        assert test_db.query(PaymentAllocation).count() == 0
        test_db.refresh(january)
        test_db.refresh(february)
        test_db.refresh(payment)
        assert january.status == BillStatus.PENDING
        assert january.paid_at is None
        assert february.status == BillStatus.PENDING
        assert payment.reconciliation_status == ReconciliationStatus.PENDING
        assert payment.reconciled_at is None
        assert compute_account_balance(test_db, account.id) == before

    def test_can_reconcile_again(self, test_db, policy, build, two_bills) -> None:
        account, _, _ = two_bills
        payment = build.payment(account, "200")
        reconcile_payment(test_db, payment.id, policy)
        reverse_reconciliation(test_db, payment.id, policy)

        result = reconcile_payment(test_db, payment.id, policy)
        assert result.total_allocated == Decimal("200.00")

    def test_deletes_overpayment_credit(self, test_db, policy, build) -> None:
        account = build.account()
        build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        payment = build.payment(account, "150")
        reconciled = reconcile_payment(test_db, payment.id, policy)

        result = reverse_reconciliation(test_db, payment.id, policy)

        assert result.deleted_carry_forward_ids == [reconciled.carry_forward.id]
        assert test_db.query(CarryForwardBalance).count() == 0

    def test_restores_drawn_credit(self, test_db, policy, build) -> None:
        account = build.account()
        build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        first = build.payment(account, "150")
        credit_id = reconcile_payment(test_db, first.id, policy).carry_forward.id
        build.bill(account, "2024-02", "80", due=date(2024, 3, 14))
        second = build.payment(account, "30")
        reconcile_payment(test_db, second.id, policy)

        result = reverse_reconciliation(test_db, second.id, policy)

        assert result.credits_restored == Decimal("50.00")
        assert result.credit_applications_reversed == 1
        assert result.allocations_reversed == 1
        assert test_db.query(CreditApplication).count() == 0
        credit = test_db.get(CarryForwardBalance, credit_id)
        test_db.refresh(credit)
        assert credit.balance == Decimal("50.00")
        assert credit.status == CarryForwardStatus.ACTIVE

    def test_used_credit_blocks_reversal(self, test_db, policy, build) -> None:
        account = build.account()
        build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        first = build.payment(account, "150")
        reconcile_payment(test_db, first.id, policy)
        build.bill(account, "2024-02", "80", due=date(2024, 3, 14))
        second = build.payment(account, "30")
        reconcile_payment(test_db, second.id, policy)

        with pytest.raises(InvalidState):
            reverse_reconciliation(test_db, first.id, policy)

    def test_not_reconciled(self, test_db, policy, build, two_bills) -> None:
        account, _, _ = two_bills
        payment = build.payment(account, "200")
        with pytest.raises(NotReconciled):
            reverse_reconciliation(test_db, payment.id, policy)


def test_reconciliation_report(test_db, policy, build, two_bills) -> None:
    account, _, _ = two_bills
    payment = build.payment(account, "300")
    reconcile_payment(test_db, payment.id, policy)

    report = reconciliation_report(test_db, payment.id)

    assert report.cash_allocated == Decimal("250.00")
    assert report.unallocated == Decimal("50.00")
    assert len(report.allocations) == 2
    assert [c.balance for c in report.carry_forwards] == [Decimal("50.00")]


def _lock_timeout(*args, **kwargs):
    raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("lock timeout"))


class TestAccountLock:
    def test_lock_timeout_raises_account_locked(self, test_db, policy, build, monkeypatch) -> None:
        account = build.account()
        monkeypatch.setattr(Query, "with_for_update", _lock_timeout)

        with pytest.raises(AccountLocked) as exc_info:
            lock_account(test_db, account.id, policy)

        assert exc_info.value.retryable
        assert exc_info.value.details == {"account_id": account.id}

    def test_reconciliation_rolls_back_when_locked(
        self, test_db, policy, build, two_bills, monkeypatch
    ) -> None:
        account, january, _ = two_bills
        payment = build.payment(account, "200")
        monkeypatch.setattr(Query, "with_for_update", _lock_timeout)

        with pytest.raises(AccountLocked):
            reconcile_payment(test_db, payment.id, policy)

        monkeypatch.undo()
        assert test_db.query(PaymentAllocation).count() == 0
        test_db.refresh(payment)
        assert payment.reconciliation_status == ReconciliationStatus.PENDING
