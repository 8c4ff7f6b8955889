"""Payment routes: recording, reconciliation and reversal."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.dependencies import get_actor_id
from app.core.config import BillingPolicy, get_policy
from app.core.database import get_db
from app.schemas.payment import (
    PaymentCreate,
    PaymentResponse,
    ReconciliationReport,
    ReconciliationResult,
    ReconcileRequest,
    ReversalResult,
)
from app.services import reconciliation as reconciliation_service

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
def record_payment(
    payment_data: PaymentCreate,
    db: Session = Depends(get_db),
):
    """Record a received payment."""
    return reconciliation_service.record_payment(db, payment_data)


@router.get("/account/{account_id}", response_model=list[PaymentResponse])
def list_account_payments(account_id: int, db: Session = Depends(get_db)):
    """Payments received on an account, newest first."""
    return reconciliation_service.get_payments_for_account(db, account_id)


@router.get("/{payment_id}", response_model=ReconciliationReport)
def get_payment(payment_id: int, db: Session = Depends(get_db)) -> ReconciliationReport:
    """A payment and where its money currently sits."""
    return reconciliation_service.reconciliation_report(db, payment_id)


@router.post("/{payment_id}/reconcile", response_model=ReconciliationResult)
def reconcile_payment(
    payment_id: int,
    data: ReconcileRequest | None = None,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    actor_id: int | None = Depends(get_actor_id),
) -> ReconciliationResult:
    """Allocate a payment to bills, FIFO unless allocations are given."""
    return reconciliation_service.reconcile_payment(
        db,
        payment_id,
        policy,
        manual_allocations=data.allocations if data else None,
        user_id=actor_id,
    )


@router.post("/{payment_id}/reverse", response_model=ReversalResult)
def reverse_reconciliation(
    payment_id: int,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    actor_id: int | None = Depends(get_actor_id),
) -> ReversalResult:
    """Undo a payment's reconciliation."""
    return reconciliation_service.reverse_reconciliation(db, payment_id, policy, user_id=actor_id)
