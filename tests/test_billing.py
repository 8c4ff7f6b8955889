"""Tests for bill generation, voiding, credit notes and overdue handling."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.core.config import BillingPolicy
from app.core.events import BillGenerated, BillVoided, CarryForwardCreated, dispatcher
from app.core.exceptions import (
    AmbiguousTariff,
    DuplicateBill,
    InvalidAllocationAmount,
    InvalidState,
    InvalidTariff,
    NoActiveMeters,
    NoBillableReadings,
    NoTariff,
)
from app.models.billing import Bill
from app.models.enums import (
    AccountStatus,
    BillStatus,
    CarryForwardStatus,
    EstimationMethod,
    MeterType,
    ReadingType,
    ReconciliationStatus,
)
from app.models.ledger import CreditApplication
from app.models.tariff import Tariff, TariffRate
from app.services import billing as billing_service
from app.services.accounts import lock_account, set_account_status
from app.services.balances import compute_account_balance
from app.services.billing import (
    apply_credit_note,
    generate_bill,
    generate_bills_for_accounts,
    late_fee_for_bill,
    mark_overdue_bills,
    parse_billing_period,
    void_bill,
)
from app.services.bulk import distribute_bulk_reading
from app.services.ledger import allocated_to_bill, create_carry_forward
from app.services.readings import get_reading_on
from app.services.reconciliation import reconcile_payment
from app.services.tariffs import resolve_tariff

ISSUED = date(2024, 3, 1)


@pytest.fixture
def metered_account(build):
    """Account with one meter read at the end of January and February."""
    build.tariff()
    account = build.account()
    meter = build.meter(account)
    build.reading(meter, date(2024, 1, 31), "100")
    build.reading(meter, date(2024, 2, 29), "250")
    return account, meter


def test_parse_billing_period() -> None:
    assert parse_billing_period("2024-02") == (date(2024, 2, 1), date(2024, 2, 29))
    with pytest.raises(InvalidState):
        parse_billing_period("2024-13")


class TestGenerateBill:
    """Bill generation."""

    def test_bills_consumption_between_readings(self, test_db, policy, metered_account) -> None:
        account, meter = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy, issue_date=ISSUED)

        assert bill.status == BillStatus.PENDING
        assert bill.total_amount == Decimal("150.00")
        assert bill.due_date == ISSUED + timedelta(days=14)
        assert len(bill.details) == 1
        detail = bill.details[0]
        assert detail.meter_id == meter.id
        assert detail.previous_reading_value == Decimal("100")
        assert detail.current_reading_value == Decimal("250")
        assert detail.units_used == Decimal("150")
        assert detail.is_estimated is False

    def test_applies_tiers_fixed_charge_and_tax(self, test_db, policy, build) -> None:
        build.tariff(rates=((0, 100, "1.50"), (100, None, "2.00")), fixed_charge="10", tax_rate="10")
        account = build.account()
        meter = build.meter(account)
        build.reading(meter, date(2024, 1, 31), "0")
        build.reading(meter, date(2024, 2, 29), "150")

        bill = generate_bill(test_db, account.id, "2024-02", policy)

        assert bill.total_amount == Decimal("286.00")
        assert bill.details[0].tax == Decimal("26.00")

    def test_first_reading_bills_nothing(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-01", policy)
        assert bill.total_amount == Decimal("0.00")

    def test_duplicate_period_rejected(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        generate_bill(test_db, account.id, "2024-02", policy)
        with pytest.raises(DuplicateBill):
            generate_bill(test_db, account.id, "2024-02", policy)

    def test_duplicate_allowed_when_prevention_disabled(self, test_db, metered_account) -> None:
        account, _ = metered_account
        policy = BillingPolicy(prevent_duplicate_bills=False)
        generate_bill(test_db, account.id, "2024-02", policy)
        generate_bill(test_db, account.id, "2024-02", policy)
        assert test_db.query(Bill).filter(Bill.account_id == account.id).count() == 2

    def test_no_active_meters(self, test_db, policy, build) -> None:
        account = build.account()
        with pytest.raises(NoActiveMeters):
            generate_bill(test_db, account.id, "2024-02", policy)

    def test_inactive_account(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        set_account_status(test_db, account.id, AccountStatus.SUSPENDED)
        with pytest.raises(InvalidState):
            generate_bill(test_db, account.id, "2024-02", policy)

    def test_missing_tariff_rolls_back(self, test_db, policy, build) -> None:
        account = build.account()
        meter = build.meter(account)
        build.reading(meter, date(2024, 1, 31), "100")
        build.reading(meter, date(2024, 2, 29), "250")

        with pytest.raises(NoTariff):
            generate_bill(test_db, account.id, "2024-02", policy)
        assert test_db.query(Bill).count() == 0

    def test_meter_reset_bills_zero_and_flags_review(self, test_db, policy, build) -> None:
        build.tariff()
        account = build.account()
        meter = build.meter(account)
        build.reading(meter, date(2024, 1, 31), "500")
        build.reading(meter, date(2024, 2, 29), "20")

        bill = generate_bill(test_db, account.id, "2024-02", policy)

        assert bill.details[0].units_used == Decimal("0")
        assert bill.details[0].needs_review is True

    def test_sub_meter_billed_instead_of_its_bulk_meter(self, test_db, policy, build) -> None:
        build.tariff()
        account = build.account()
        bulk = build.meter(account, meter_type=MeterType.BULK)
        sub = build.sub_meter(bulk, account, "100")
        build.reading(bulk, date(2024, 1, 31), "1000")
        reading = build.reading(bulk, date(2024, 2, 29), "1080")
        distribute_bulk_reading(test_db, reading.id, policy)

        bill = generate_bill(test_db, account.id, "2024-02", policy)

        assert [d.meter_id for d in bill.details] == [sub.id]
        assert bill.total_amount == Decimal("80.00")

    def test_publishes_bill_generated(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        received = []
        dispatcher.subscribe(BillGenerated, received.append)

        bill = generate_bill(test_db, account.id, "2024-02", policy)

        assert [e.bill_id for e in received] == [bill.id]


class TestEstimation:
    """Meters with no reading in the period."""

    @pytest.fixture
    def history(self, build):
        build.tariff()
        account = build.account()
        meter = build.meter(account)
        build.reading(meter, date(2023, 11, 30), "0")
        build.reading(meter, date(2023, 12, 31), "100")
        build.reading(meter, date(2024, 1, 31), "220")
        return account, meter

    def test_trailing_average(self, test_db, policy, history) -> None:
        account, meter = history
        bill = generate_bill(test_db, account.id, "2024-02", policy)

        assert bill.is_estimated is True
        assert bill.details[0].is_estimated is True
        assert bill.details[0].units_used == Decimal("110.00")

        estimated = get_reading_on(test_db, meter.id, date(2024, 2, 29))
        assert estimated.reading_type == ReadingType.ESTIMATED
        assert estimated.value == Decimal("330.00")

    def test_seasonal_scales_summer_months(self, test_db, history) -> None:
        account, _ = history
        policy = BillingPolicy(estimation_method=EstimationMethod.SEASONAL)
        bill = generate_bill(test_db, account.id, "2024-06", policy)
        assert bill.details[0].units_used == Decimal("132.00")

    def test_repeat_last(self, test_db, history) -> None:
        account, _ = history
        policy = BillingPolicy(estimation_method=EstimationMethod.REPEAT_LAST)
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        assert bill.details[0].units_used == Decimal("0")

    def test_disabled_skips_meter(self, test_db, history) -> None:
        account, _ = history
        with pytest.raises(NoBillableReadings):
            generate_bill(test_db, account.id, "2024-02", BillingPolicy(estimation_enabled=False))


class TestTariffResolution:
    def test_category_tariff_wins(self, test_db, build) -> None:
        build.tariff(code="STD")
        residential = build.tariff(code="RES", meter_category="residential")
        account = build.account()
        meter = build.meter(account, category="residential")

        assert resolve_tariff(test_db, meter, date(2024, 2, 1)).id == residential.id

    def test_version_effective_on_date_selected(self, test_db, build) -> None:
        build.tariff(code="STD", effective_from=date(2023, 1, 1), effective_to=date(2023, 12, 31))
        current = build.tariff(code="STD", effective_from=date(2024, 1, 1))
        account = build.account()
        meter = build.meter(account)

        assert resolve_tariff(test_db, meter, date(2024, 2, 1)).id == current.id

    def test_overlapping_versions_rejected(self, build) -> None:
        build.tariff(code="STD", effective_from=date(2023, 1, 1))
        with pytest.raises(InvalidTariff):
            build.tariff(code="NEW", effective_from=date(2024, 1, 1))

    def test_ambiguous(self, test_db, build) -> None:
        for code in ("A", "B"):
            test_db.add(
                Tariff(
                    code=code,
                    name=code,
                    effective_from=date(2024, 1, 1),
                    rates=[TariffRate(min_units=Decimal("0"), rate_per_unit=Decimal("1"))],
                )
            )
        test_db.commit()
        account = build.account()
        meter = build.meter(account)

        with pytest.raises(AmbiguousTariff):
            resolve_tariff(test_db, meter, date(2024, 2, 1))


class TestVoidBill:
    def test_void(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        received = []
        dispatcher.subscribe(BillVoided, received.append)

        voided, replacement, released = void_bill(test_db, bill.id, "Misread meter", policy)

        assert voided.status == BillStatus.VOIDED
        assert voided.void_reason == "Misread meter"
        assert voided.voided_at is not None
        assert replacement is None
        assert released == []
        assert received[0].bill_id == bill.id

    def test_void_and_regenerate(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)

        voided, replacement, _ = void_bill(test_db, bill.id, "Rebill", policy, regenerate=True)

        assert replacement.status == BillStatus.PENDING
        assert replacement.replaces_bill_id == voided.id
        assert voided.replaced_by_bill_id == replacement.id
        assert replacement.total_amount == voided.total_amount

    def test_period_can_be_billed_again_after_void(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        void_bill(test_db, bill.id, "Wrong", policy)

        again = generate_bill(test_db, account.id, "2024-02", policy)
        assert again.id != bill.id

    def test_cannot_void_twice(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        void_bill(test_db, bill.id, "Wrong", policy)
        with pytest.raises(InvalidState):
            void_bill(test_db, bill.id, "Again", policy)

    def test_paid_bill_cannot_be_voided(self, test_db, policy, build, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        payment = build.payment(account, "150")
        reconcile_payment(test_db, payment.id, policy)

        with pytest.raises(InvalidState):
            void_bill(test_db, bill.id, "Wrong", policy)

    def test_partially_paid_bill_releases_payment_as_credit(
        self, test_db, policy, build, metered_account
    ) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        payment = build.payment(account, "50")
        reconcile_payment(test_db, payment.id, policy)
        received = []
        dispatcher.subscribe(CarryForwardCreated, received.append)

        voided, _, released = void_bill(test_db, bill.id, "Misread meter", policy)

        assert voided.status == BillStatus.VOIDED
        assert allocated_to_bill(test_db, bill.id) == Decimal("0")
        assert [(c.payment_id, c.balance) for c in released] == [(payment.id, Decimal("50.00"))]
        assert received[0].carry_forward_id == released[0].id
        test_db.refresh(payment)
        assert payment.reconciliation_status == ReconciliationStatus.RECONCILED
        assert compute_account_balance(test_db, account.id).available_credit == Decimal("50.00")

        replacement = generate_bill(test_db, account.id, "2024-02", policy)
        second = build.payment(account, "100")
        result = reconcile_payment(test_db, second.id, policy)
        assert result.credit_applied == Decimal("50.00")
        test_db.refresh(replacement)
        assert replacement.status == BillStatus.PAID

    def test_released_cash_can_be_reconciled_again(self, test_db, build, metered_account) -> None:
        policy = BillingPolicy(carry_forward_overpayments=False)
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        payment = build.payment(account, "50")
        reconcile_payment(test_db, payment.id, policy)

        _, replacement, released = void_bill(test_db, bill.id, "Rebill", policy, regenerate=True)

        assert released == []
        test_db.refresh(payment)
        assert payment.reconciliation_status == ReconciliationStatus.PARTIALLY_RECONCILED
        result = reconcile_payment(test_db, payment.id, policy)
        assert [(a.bill_id, a.allocated_amount) for a in result.allocations] == [
            (replacement.id, Decimal("50.00"))
        ]
        assert result.reconciliation_status == ReconciliationStatus.RECONCILED

    def test_credit_applied_to_voided_bill_is_restored(self, test_db, policy, build) -> None:
        account = build.account()
        credit = create_carry_forward(test_db, account.id, Decimal("30"), description="Opening credit")
        test_db.commit()
        bill = build.bill(account, "2024-01", "100", due=date(2024, 2, 14))
        payment = build.payment(account, "20")
        reconcile_payment(test_db, payment.id, policy)
        test_db.refresh(credit)
        assert credit.status == CarryForwardStatus.APPLIED

        void_bill(test_db, bill.id, "Duplicate", policy)

        test_db.refresh(credit)
        assert credit.balance == Decimal("30.00")
        assert credit.status == CarryForwardStatus.ACTIVE
        assert test_db.query(CreditApplication).count() == 0
        assert compute_account_balance(test_db, account.id).available_credit == Decimal("50.00")


class TestCreditNote:
    def test_reduces_total(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        bill = apply_credit_note(test_db, bill.id, Decimal("50"), "Goodwill", policy)
        assert bill.total_amount == Decimal("100.00")

    def test_cannot_go_below_allocated(self, test_db, policy, build, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy)
        payment = build.payment(account, "120")
        reconcile_payment(test_db, payment.id, policy)

        with pytest.raises(InvalidAllocationAmount):
            apply_credit_note(test_db, bill.id, Decimal("40"), "Too much", policy)

        bill = apply_credit_note(test_db, bill.id, Decimal("30"), "Exact", policy)
        assert bill.status == BillStatus.PAID


class TestOverdue:
    def test_mark_overdue(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy, issue_date=ISSUED)

        assert mark_overdue_bills(test_db, policy, as_of=bill.due_date) == []
        assert mark_overdue_bills(test_db, policy, as_of=bill.due_date + timedelta(days=1)) == [bill.id]
        test_db.refresh(bill)
        assert bill.status == BillStatus.OVERDUE

    def test_mark_overdue_locks_each_account(
        self, test_db, policy, build, metered_account, monkeypatch
    ) -> None:
        account, _ = metered_account
        generate_bill(test_db, account.id, "2024-02", policy, issue_date=ISSUED)
        other = build.account()
        build.bill(other, "2024-01", "80", due=date(2024, 2, 14))
        locked = []

        def recording_lock(db, account_id, lock_policy):
            locked.append(account_id)
            return lock_account(db, account_id, lock_policy)

        monkeypatch.setattr(billing_service, "lock_account", recording_lock)

        marked = mark_overdue_bills(test_db, policy, as_of=date(2024, 6, 1))

        assert len(marked) == 2
        assert locked == sorted([account.id, other.id])

    def test_bill_paid_while_waiting_for_lock_is_not_overwritten(
        self, test_db, policy, metered_account, monkeypatch
    ) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy, issue_date=ISSUED)

        def lock_after_payment_commits(db, account_id, lock_policy):
            db.query(Bill).filter(Bill.id == bill.id).update(
                {"status": BillStatus.PAID}, synchronize_session=False
            )
            return lock_account(db, account_id, lock_policy)

        monkeypatch.setattr(billing_service, "lock_account", lock_after_payment_commits)

        assert mark_overdue_bills(test_db, policy, as_of=bill.due_date + timedelta(days=1)) == []
        test_db.refresh(bill)
        assert bill.status == BillStatus.PAID

    def test_late_fee(self, test_db, policy, metered_account) -> None:
        account, _ = metered_account
        bill = generate_bill(test_db, account.id, "2024-02", policy, issue_date=ISSUED)

        _, days, balance, fee = late_fee_for_bill(
            test_db, bill.id, policy, as_of=bill.due_date + timedelta(days=30)
        )
        assert days == 30
        assert balance == Decimal("150.00")
        assert fee == Decimal("50.00")  # 5% of 150 is below the minimum


class TestBulkGeneration:
    def test_failures_do_not_stop_other_accounts(self, test_db, policy, build, metered_account) -> None:
        account, _ = metered_account
        empty = build.account()

        result = generate_bills_for_accounts(test_db, [empty.id, account.id], "2024-02", policy)

        assert result.total == 2
        assert result.succeeded == 1
        assert result.failed == 1
        failed = result.outcomes[0]
        assert failed.account_id == empty.id
        assert failed.error_code == "no_active_meters"
        assert result.outcomes[1].bill_id is not None
