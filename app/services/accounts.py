"""Account service - account records and the per-account write lock."""

import logging

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import BillingPolicy
from app.core.database import atomic
from app.core.exceptions import AccountLocked, InvalidState, NotFound
from app.models.account import Account
from app.models.enums import AccountStatus
from app.schemas.account import AccountCreate

logger = logging.getLogger(__name__)


def create_account(db: Session, account_data: AccountCreate) -> Account:
    """Create a customer account."""
    existing = (
        db.query(Account).filter(Account.account_number == account_data.account_number).first()
    )
    if existing:
        raise InvalidState(
            f"Account number '{account_data.account_number}' already exists",
            {"account_id": existing.id},
        )

    db_account = Account(account_number=account_data.account_number, name=account_data.name)
    try:
        with atomic(db):
            db.add(db_account)
    except IntegrityError as exc:
        raise InvalidState(
            f"Account number '{account_data.account_number}' already exists"
        ) from exc
    db.refresh(db_account)
    logger.info("Created account %s (%s)", db_account.id, db_account.account_number)
    return db_account


def get_account(db: Session, account_id: int) -> Account:
    """Get an account by ID."""
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise NotFound("Account not found", {"account_id": account_id})
    return account


def list_accounts(db: Session, status: AccountStatus | None = None) -> list[Account]:
    """List accounts, optionally filtered by status."""
    query = db.query(Account)
    if status is not None:
        query = query.filter(Account.status == status)
    return query.order_by(Account.id).all()


def set_account_status(db: Session, account_id: int, status: AccountStatus) -> Account:
    """Activate, suspend or deactivate an account."""
    account = get_account(db, account_id)
    with atomic(db):
        account.status = status
    db.refresh(account)
    logger.info("Account %s status set to %s", account_id, status.value)
    return account


def lock_account(db: Session, account_id: int, policy: BillingPolicy) -> Account:
    """Take the exclusive per-account lock for the current transaction.

    Every operation that reads-then-writes an account's bills, allocations or
    carry-forwards holds this lock until its transaction ends. The lock is a
    ``SELECT ... FOR UPDATE`` on the account row; waiting longer than the
    policy's lock timeout raises AccountLocked.
    """
    bind = db.get_bind()
    if bind.dialect.name == "postgresql":
        timeout_ms = int(policy.lock_timeout_seconds * 1000)
        db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))

    try:
        account = (
            db.query(Account)
            .filter(Account.id == account_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
    except OperationalError as exc:
        logger.warning("Timed out waiting for lock on account %s", account_id)
        raise AccountLocked(
            "Account is locked by another operation, retry later",
            {"account_id": account_id},
        ) from exc

    if not account:
        raise NotFound("Account not found", {"account_id": account_id})
    return account
