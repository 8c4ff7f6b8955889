"""Account routes, including balance and aging projections."""

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy, get_policy
from app.core.database import get_db
from app.models.enums import AccountStatus, BillStatus
from app.schemas.account import AccountCreate, AccountResponse, AccountStatusUpdate
from app.schemas.balance import (
    AccountBalance,
    AgingReport,
    OutstandingBillsSummary,
    PaymentHistoryEntry,
    PaymentImpactProjection,
)
from app.schemas.billing import BillResponse
from app.schemas.meter import MeterResponse
from app.services import accounts as account_service
from app.services import balances as balance_service
from app.services import billing as billing_service
from app.services import meters as meter_service

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post(
    "/",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_account(
    account_data: AccountCreate,
    db: Session = Depends(get_db),
):
    """Create a customer account."""
    return account_service.create_account(db, account_data)


@router.get("/", response_model=list[AccountResponse])
def list_accounts(
    status: AccountStatus | None = None,
    db: Session = Depends(get_db),
):
    """List accounts, optionally filtered by status."""
    return account_service.list_accounts(db, status)


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(account_id: int, db: Session = Depends(get_db)):
    """Get an account by ID."""
    return account_service.get_account(db, account_id)


@router.patch("/{account_id}/status", response_model=AccountResponse)
def set_account_status(
    account_id: int,
    data: AccountStatusUpdate,
    db: Session = Depends(get_db),
):
    """Activate, suspend or deactivate an account."""
    return account_service.set_account_status(db, account_id, data.status)


@router.get("/{account_id}/meters", response_model=list[MeterResponse])
def list_account_meters(account_id: int, db: Session = Depends(get_db)):
    """All meters registered on an account."""
    account_service.get_account(db, account_id)
    return meter_service.get_meters_for_account(db, account_id)


@router.get("/{account_id}/bills", response_model=list[BillResponse])
def list_account_bills(
    account_id: int,
    status: BillStatus | None = None,
    db: Session = Depends(get_db),
):
    """Bills for an account, newest period first."""
    account_service.get_account(db, account_id)
    return billing_service.get_bills_for_account(db, account_id, status)


@router.get("/{account_id}/balance", response_model=AccountBalance)
def get_balance(
    account_id: int,
    fresh: bool = Query(False, description="Bypass the balance cache"),
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> AccountBalance:
    """Current account balance derived from the ledger."""
    return balance_service.get_account_balance(db, account_id, policy, use_cache=not fresh)


@router.get("/{account_id}/aging", response_model=AgingReport)
def get_aging_report(
    account_id: int,
    as_of: date | None = None,
    db: Session = Depends(get_db),
) -> AgingReport:
    """Outstanding balance split by days overdue."""
    return balance_service.aging_report(db, account_id, as_of)


@router.get("/{account_id}/outstanding", response_model=OutstandingBillsSummary)
def get_outstanding_summary(
    account_id: int,
    db: Session = Depends(get_db),
) -> OutstandingBillsSummary:
    """Outstanding balance grouped by status and period."""
    return balance_service.outstanding_bills_summary(db, account_id)


@router.get("/{account_id}/payment-history", response_model=list[PaymentHistoryEntry])
def get_payment_history(
    account_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[PaymentHistoryEntry]:
    """Most recent payments and the bills they went to."""
    return balance_service.payment_history(db, account_id, limit)


@router.get("/{account_id}/payment-impact", response_model=PaymentImpactProjection)
def get_payment_impact(
    account_id: int,
    amount: Decimal = Query(..., gt=0),
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> PaymentImpactProjection:
    """Preview how a payment of ``amount`` would be allocated."""
    return balance_service.project_payment_impact(db, account_id, amount, policy)
