import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import ACCOUNT_PREFIX, DEFAULT_CREDITS
from app.errors import NotFoundError, StoreError, ValidationError
from db.database import open_session
from db.models import CreditAccount

logger = logging.getLogger(__name__)


@dataclass
class Account:
    session_id: str
    user_id: Optional[str]
    is_user_account: bool
    credits: int
    created_at: datetime
    last_updated: datetime


# Largest balance the INTEGER column holds
MAX_CREDITS = 2 ** 31 - 1


def positive_amount(value, message: str) -> int:
    """Whole credits from a JSON number. Fractions are truncated; anything not above zero is rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(message)
    if not math.isfinite(value) or value <= 0 or value > MAX_CREDITS or int(value) <= 0:
        raise ValidationError(message)
    return int(value)


def account_identity(session_id: str, prefix: str = ACCOUNT_PREFIX) -> tuple[bool, Optional[str]]:
    """Sessions named `<prefix><id>` belong to signed-in users."""
    if session_id.startswith(prefix):
        return True, session_id[len(prefix):]
    return False, None


def new_account(session_id: str, credits: int, prefix: str = ACCOUNT_PREFIX) -> CreditAccount:
    is_user_account, user_id = account_identity(session_id, prefix)
    now = datetime.utcnow()
    return CreditAccount(
        session_id=session_id,
        user_id=user_id,
        is_user_account=is_user_account,
        credits=credits,
        created_at=now,
        last_updated=now
    )


def credit_account(db: Session, session_id: str, amount: int,
                   prefix: str = ACCOUNT_PREFIX, create_missing: bool = False) -> int:
    """
    Add `amount` credits inside the caller's transaction and return the new balance.
    The caller commits.
    """
    updated = (
        db.query(CreditAccount)
        .filter_by(session_id=session_id)
        .update(
            {
                CreditAccount.credits: CreditAccount.credits + amount,
                CreditAccount.last_updated: datetime.utcnow()
            },
            synchronize_session=False
        )
    )
    if not updated:
        if not create_missing:
            raise NotFoundError("User not found.")
        db.add(new_account(session_id, amount, prefix))
        db.flush()
    return db.query(CreditAccount.credits).filter_by(session_id=session_id).scalar()


def _to_account(row: CreditAccount) -> Account:
    return Account(
        session_id=row.session_id,
        user_id=row.user_id,
        is_user_account=row.is_user_account,
        credits=row.credits,
        created_at=row.created_at,
        last_updated=row.last_updated
    )


class SqlCreditLedger:
    def __init__(self, session_factory: sessionmaker,
                 default_credits: int = DEFAULT_CREDITS, account_prefix: str = ACCOUNT_PREFIX,
                 lock=None):
        self.session_factory = session_factory
        self.default_credits = default_credits
        self.account_prefix = account_prefix
        self.lock = lock

    def get_balance(self, session_id: str) -> int:
        """
        Current balance, creating the account with the default balance on first sight.
        Never fails: a store error is logged and the default balance is returned.
        """
        with open_session(self.session_factory, self.lock) as db:
            try:
                credits = db.query(CreditAccount.credits).filter_by(session_id=session_id).scalar()
                if credits is not None:
                    return credits
                db.add(new_account(session_id, self.default_credits, self.account_prefix))
                db.commit()
                return self.default_credits
            except IntegrityError:
                # created concurrently by another request
                db.rollback()
                return db.query(CreditAccount.credits).filter_by(session_id=session_id).scalar()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Error getting credits for %s: %s", session_id, e)
                return self.default_credits

    def has_sufficient_balance(self, session_id: str) -> bool:
        return self.get_balance(session_id) > 0

    def get_account(self, session_id: str) -> Optional[Account]:
        with open_session(self.session_factory, self.lock) as db:
            try:
                row = db.query(CreditAccount).filter_by(session_id=session_id).first()
                return _to_account(row) if row else None
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to read account {session_id}: {e}") from e

    def decrement(self, session_id: str) -> bool:
        """Consume one credit. Returns False when the balance is already 0 or the account is missing."""
        with open_session(self.session_factory, self.lock) as db:
            try:
                updated = (
                    db.query(CreditAccount)
                    .filter(CreditAccount.session_id == session_id, CreditAccount.credits > 0)
                    .update(
                        {
                            CreditAccount.credits: CreditAccount.credits - 1,
                            CreditAccount.last_updated: datetime.utcnow()
                        },
                        synchronize_session=False
                    )
                )
                db.commit()
                return updated > 0
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to update credits for {session_id}: {e}") from e

    def increment(self, session_id: str, amount: int, create_missing: bool = False) -> int:
        with open_session(self.session_factory, self.lock) as db:
            try:
                total = credit_account(db, session_id, amount, self.account_prefix, create_missing)
                db.commit()
                return total
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to add credits for {session_id}: {e}") from e


class MemoryCreditLedger:
    """Process-local ledger used when no database is configured."""

    def __init__(self, default_credits: int = DEFAULT_CREDITS, account_prefix: str = ACCOUNT_PREFIX):
        self.default_credits = default_credits
        self.account_prefix = account_prefix
        self._lock = threading.Lock()
        self._accounts: dict[str, Account] = {}

    def _create_unlocked(self, session_id: str, credits: int) -> Account:
        is_user_account, user_id = account_identity(session_id, self.account_prefix)
        now = datetime.utcnow()
        account = Account(session_id, user_id, is_user_account, credits, now, now)
        self._accounts[session_id] = account
        return account

    def get_balance(self, session_id: str) -> int:
        with self._lock:
            account = self._accounts.get(session_id)
            if account is None:
                account = self._create_unlocked(session_id, self.default_credits)
            return account.credits

    def has_sufficient_balance(self, session_id: str) -> bool:
        return self.get_balance(session_id) > 0

    def get_account(self, session_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(session_id)
            return Account(**vars(account)) if account else None

    def decrement(self, session_id: str) -> bool:
        with self._lock:
            account = self._accounts.get(session_id)
            if account is None or account.credits <= 0:
                return False
            account.credits -= 1
            account.last_updated = datetime.utcnow()
            return True

    def increment(self, session_id: str, amount: int, create_missing: bool = False) -> int:
        with self._lock:
            account = self._accounts.get(session_id)
            if account is None:
                if not create_missing:
                    raise NotFoundError("User not found.")
                return self._create_unlocked(session_id, amount).credits
            account.credits += amount
            account.last_updated = datetime.utcnow()
            return account.credits
