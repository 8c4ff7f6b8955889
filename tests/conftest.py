"""Shared fixtures: an in-memory database and builders for test data."""

from datetime import date
from decimal import Decimal
from itertools import count

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import BillingPolicy
from app.core.database import Base, get_db
from app.core.events import dispatcher
from app.main import app
from app.models.account import Account
from app.models.billing import Bill
from app.models.enums import BillStatus, MeterType, PaymentStatus
from app.models.meter import Meter
from app.models.meter_reading import MeterReading
from app.models.payment import Payment
from app.models.tariff import Tariff
from app.schemas.account import AccountCreate
from app.schemas.meter import MeterCreate, SubMeterCreate
from app.schemas.meter_reading import MeterReadingCreate
from app.schemas.payment import PaymentCreate
from app.schemas.tariff import TariffCreate, TariffRateCreate
from app.services import accounts as account_service
from app.services import meters as meter_service
from app.services import readings as reading_service
from app.services import reconciliation as reconciliation_service
from app.services import tariffs as tariff_service
from app.services.balances import balance_cache


@pytest.fixture
def test_db():
    """Create an in-memory test database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture(autouse=True)
def clean_process_state():
    """The balance cache and event subscriptions are process-wide."""
    balance_cache.clear()
    dispatcher.clear()
    yield
    balance_cache.clear()
    dispatcher.clear()


@pytest.fixture
def policy() -> BillingPolicy:
    return BillingPolicy()


@pytest.fixture
def client(test_db):
    """Create a test client with database override."""

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class Builder:
    """Creates accounts, meters, tariffs, readings, bills and payments."""

    def __init__(self, db: Session):
        self.db = db
        self._seq = count(1)

    def account(self, name: str = "Test Account") -> Account:
        n = next(self._seq)
        return account_service.create_account(
            self.db, AccountCreate(account_number=f"ACC-{n:04d}", name=name)
        )

    def tariff(
        self,
        code: str = "STD",
        rates: tuple = ((0, None, "1.00"),),
        fixed_charge: str = "0",
        tax_rate: str = "0",
        meter_category: str | None = None,
        effective_from: date = date(2023, 1, 1),
        effective_to: date | None = None,
    ) -> Tariff:
        return tariff_service.create_tariff(
            self.db,
            TariffCreate(
                code=code,
                name=code.title(),
                meter_category=meter_category,
                effective_from=effective_from,
                effective_to=effective_to,
                fixed_charge=Decimal(fixed_charge),
                tax_rate=Decimal(tax_rate),
                rates=[
                    TariffRateCreate(
                        min_units=Decimal(low),
                        max_units=Decimal(high) if high is not None else None,
                        rate_per_unit=Decimal(rate),
                    )
                    for low, high, rate in rates
                ],
            ),
        )

    def meter(
        self,
        account: Account,
        meter_type: MeterType = MeterType.INDIVIDUAL,
        category: str | None = None,
    ) -> Meter:
        n = next(self._seq)
        return meter_service.create_meter(
            self.db,
            MeterCreate(
                account_id=account.id,
                meter_number=f"M-{n:04d}",
                meter_type=meter_type,
                category=category,
            ),
        )

    def sub_meter(self, parent: Meter, account: Account, percentage: str) -> Meter:
        n = next(self._seq)
        return meter_service.create_sub_meter(
            self.db,
            SubMeterCreate(
                account_id=account.id,
                parent_meter_id=parent.id,
                meter_number=f"S-{n:04d}",
                allocation_percentage=Decimal(percentage),
            ),
        )

    def reading(self, meter: Meter, on: date, value: str) -> MeterReading:
        return reading_service.record_reading(
            self.db,
            MeterReadingCreate(meter_id=meter.id, reading_date=on, value=Decimal(value)),
        )

    def bill(
        self,
        account: Account,
        period: str,
        amount: str,
        due: date,
        status: BillStatus = BillStatus.PENDING,
    ) -> Bill:
        bill = Bill(
            account_id=account.id,
            billing_period=period,
            total_amount=Decimal(amount),
            status=status,
            due_date=due,
        )
        self.db.add(bill)
        self.db.commit()
        self.db.refresh(bill)
        return bill

    def payment(
        self,
        account: Account,
        amount: str,
        status: PaymentStatus = PaymentStatus.COMPLETED,
    ) -> Payment:
        n = next(self._seq)
        return reconciliation_service.record_payment(
            self.db,
            PaymentCreate(
                account_id=account.id,
                amount=Decimal(amount),
                method="bank_transfer",
                reference=f"REF-{n:05d}",
                status=status,
            ),
        )


@pytest.fixture
def build(test_db) -> Builder:
    return Builder(test_db)
