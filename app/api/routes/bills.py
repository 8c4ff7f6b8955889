"""Bill routes: generation, voiding, credit notes and late fees."""

from datetime import date

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.dependencies import get_actor_id
from app.core.config import BillingPolicy, get_policy
from app.core.database import get_db
from app.schemas.billing import (
    BillGenerateRequest,
    BillResponse,
    BulkBillGenerateRequest,
    BulkGenerationResult,
    CreditNoteRequest,
    LateFeeResponse,
    VoidBillRequest,
    VoidBillResult,
)
from app.services import billing as billing_service

router = APIRouter(prefix="/bills", tags=["bills"])


@router.post(
    "/",
    response_model=BillResponse,
    status_code=status.HTTP_201_CREATED,
)
def generate_bill(
    data: BillGenerateRequest,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    actor_id: int | None = Depends(get_actor_id),
):
    """Generate one account's bill for a period."""
    return billing_service.generate_bill(
        db, data.account_id, data.billing_period, policy, data.issue_date, actor_id
    )


@router.post("/bulk", response_model=BulkGenerationResult)
def generate_bills(
    data: BulkBillGenerateRequest,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    actor_id: int | None = Depends(get_actor_id),
) -> BulkGenerationResult:
    """Generate bills for many accounts; failures are reported per account."""
    return billing_service.generate_bills_for_accounts(
        db, data.account_ids, data.billing_period, policy, data.issue_date, actor_id
    )


@router.post("/mark-overdue", response_model=list[int])
def mark_overdue(
    as_of: date | None = None,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> list[int]:
    """Flag bills past their due date as overdue and return their ids."""
    return billing_service.mark_overdue_bills(db, policy, as_of)


@router.get("/{bill_id}", response_model=BillResponse)
def get_bill(bill_id: int, db: Session = Depends(get_db)):
    """Get a bill with its line items."""
    return billing_service.get_bill(db, bill_id)


@router.post("/{bill_id}/void", response_model=VoidBillResult)
def void_bill(
    bill_id: int,
    data: VoidBillRequest,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    actor_id: int | None = Depends(get_actor_id),
) -> VoidBillResult:
    """Void a bill, optionally regenerating it."""
    voided, replacement, released = billing_service.void_bill(
        db, bill_id, data.reason, policy, regenerate=data.regenerate, user_id=actor_id
    )
    return VoidBillResult(
        voided=BillResponse.model_validate(voided),
        replacement=BillResponse.model_validate(replacement) if replacement else None,
        released_carry_forward_ids=[c.id for c in released],
    )


@router.post("/{bill_id}/credit-note", response_model=BillResponse)
def apply_credit_note(
    bill_id: int,
    data: CreditNoteRequest,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    actor_id: int | None = Depends(get_actor_id),
):
    """Reduce a bill's total by a credit note."""
    return billing_service.apply_credit_note(
        db, bill_id, data.amount, data.reason, policy, user_id=actor_id
    )


@router.get("/{bill_id}/late-fee", response_model=LateFeeResponse)
def get_late_fee(
    bill_id: int,
    as_of: date | None = None,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> LateFeeResponse:
    """Late fee owed on a bill as of a date."""
    bill, days_overdue, balance, fee = billing_service.late_fee_for_bill(db, bill_id, policy, as_of)
    return LateFeeResponse(
        bill_id=bill.id, days_overdue=days_overdue, balance=balance, late_fee=fee
    )
