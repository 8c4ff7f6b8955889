"""Seed script to populate the database with sample data."""

from datetime import date
from decimal import Decimal

from app.core.database import Base, SessionLocal, engine
from app.main import app  # noqa: F401  registers every model
from app.models.account import Account
from app.models.enums import MeterType
from app.schemas.account import AccountCreate
from app.schemas.meter import MeterCreate, SubMeterCreate
from app.schemas.meter_reading import MeterReadingCreate
from app.schemas.tariff import TariffCreate, TariffRateCreate
from app.services import accounts as account_service
from app.services import meters as meter_service
from app.services import readings as reading_service
from app.services import tariffs as tariff_service


def seed_database() -> None:
    """Seed the database with sample data."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if db.query(Account).first():
            print("Database already has data. Skipping seed.")
            return

        print("Seeding database...")

        # Tariffs: a universal one and a residential one that wins for residential meters
        tariff_service.create_tariff(
            db,
            TariffCreate(
                code="STD",
                name="Standard",
                effective_from=date(2024, 1, 1),
                fixed_charge=Decimal("10.00"),
                tax_rate=Decimal("10"),
                rates=[
                    TariffRateCreate(name="Block 1", min_units=0, max_units=100, rate_per_unit=Decimal("1.50")),
                    TariffRateCreate(name="Block 2", min_units=100, rate_per_unit=Decimal("2.00")),
                ],
            ),
        )
        tariff_service.create_tariff(
            db,
            TariffCreate(
                code="RES",
                name="Residential",
                meter_category="residential",
                effective_from=date(2024, 1, 1),
                fixed_charge=Decimal("5.00"),
                tax_rate=Decimal("5"),
                rates=[
                    TariffRateCreate(name="Lifeline", min_units=0, max_units=50, rate_per_unit=Decimal("0.80")),
                    TariffRateCreate(name="Normal", min_units=50, max_units=200, rate_per_unit=Decimal("1.20")),
                    TariffRateCreate(name="High", min_units=200, rate_per_unit=Decimal("1.80")),
                ],
            ),
        )
        print("Created 2 tariffs: STD, RES")

        house = account_service.create_account(db, AccountCreate(account_number="ACC-1001", name="Jane Smith"))
        building = account_service.create_account(
            db, AccountCreate(account_number="ACC-2001", name="Main Street Block")
        )
        tenant = account_service.create_account(
            db, AccountCreate(account_number="ACC-2002", name="John Doe")
        )

        house_meter = meter_service.create_meter(
            db,
            MeterCreate(account_id=house.id, meter_number="M-1001", category="residential"),
        )
        bulk_meter = meter_service.create_meter(
            db,
            MeterCreate(account_id=building.id, meter_number="B-2001", meter_type=MeterType.BULK),
        )
        meter_service.create_sub_meter(
            db,
            SubMeterCreate(
                account_id=building.id,
                parent_meter_id=bulk_meter.id,
                meter_number="S-2001-A",
                allocation_percentage=Decimal("60"),
            ),
        )
        meter_service.create_sub_meter(
            db,
            SubMeterCreate(
                account_id=tenant.id,
                parent_meter_id=bulk_meter.id,
                meter_number="S-2001-B",
                allocation_percentage=Decimal("40"),
            ),
        )
        print("Created 3 accounts, 1 individual meter, 1 bulk meter with 2 sub-meters")

        month_ends = [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]
        for i, reading_date in enumerate(month_ends):
            reading_service.record_reading(
                db,
                MeterReadingCreate(
                    meter_id=house_meter.id,
                    reading_date=reading_date,
                    value=Decimal("1000") + Decimal("120") * i,
                ),
            )
            reading_service.record_reading(
                db,
                MeterReadingCreate(
                    meter_id=bulk_meter.id,
                    reading_date=reading_date,
                    value=Decimal("5000") + Decimal("300") * i,
                ),
            )

        print(f"Created {2 * len(month_ends)} readings")
        print("\nSeed data created successfully!")
        print(f"\nBulk meter ID: {bulk_meter.id} - distribute its readings before billing tenants")
    finally:
        db.close()


if __name__ == "__main__":
    seed_database()
