import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import ACCOUNT_PREFIX
from app.credit_ledger import credit_account, positive_amount
from app.errors import NotFoundError, PlanMismatchError, StoreError, ValidationError
from db.database import open_session
from db.models import Coupon

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 5


@dataclass
class CouponRecord:
    code: str
    credits: int
    plan_title: str
    is_used: bool
    created_at: datetime
    used_by: Optional[str] = None
    used_at: Optional[datetime] = None


@dataclass
class Redemption:
    code: str
    credits_added: int
    new_total_credits: int


def new_coupon_code() -> str:
    """8 upper-case hex characters from 4 random bytes."""
    return secrets.token_hex(4).upper()


def _to_record(row: Coupon) -> CouponRecord:
    return CouponRecord(
        code=row.code,
        credits=row.credits,
        plan_title=row.plan_title,
        is_used=row.is_used,
        created_at=row.created_at,
        used_by=row.used_by,
        used_at=row.used_at
    )


class SqlCouponRegistry:
    def __init__(self, session_factory: sessionmaker, account_prefix: str = ACCOUNT_PREFIX, lock=None):
        self.session_factory = session_factory
        self.account_prefix = account_prefix
        self.lock = lock

    def generate(self, credits, plan_title: Optional[str]) -> CouponRecord:
        message = "A positive number of credits and a planTitle are required."
        credits = positive_amount(credits, message)
        if not plan_title:
            raise ValidationError(message)

        for _ in range(CODE_ATTEMPTS):
            with open_session(self.session_factory, self.lock) as db:
                try:
                    coupon = Coupon(
                        code=new_coupon_code(),
                        credits=credits,
                        plan_title=plan_title,
                        is_used=False,
                        created_at=datetime.utcnow()
                    )
                    db.add(coupon)
                    db.commit()
                    db.refresh(coupon)
                    logger.info('Generated new coupon for plan "%s": %s', plan_title, coupon.code)
                    return _to_record(coupon)
                except IntegrityError:
                    db.rollback()
                    logger.warning("Coupon code collision, retrying")
                except SQLAlchemyError as e:
                    db.rollback()
                    raise StoreError(f"Failed to generate coupon: {e}") from e
        raise StoreError(f"Could not find a free coupon code after {CODE_ATTEMPTS} attempts")

    def get(self, code: str) -> Optional[CouponRecord]:
        with open_session(self.session_factory, self.lock) as db:
            try:
                row = db.query(Coupon).filter_by(code=code.upper()).first()
                return _to_record(row) if row else None
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to read coupon {code}: {e}") from e

    def redeem(self, code: str, session_id: str, plan_title: str) -> Redemption:
        """
        Claim an unused coupon for `session_id` and add its credits to the session's
        account (created if missing). Claim and credit commit together.
        """
        code = code.upper()
        with open_session(self.session_factory, self.lock) as db:
            try:
                coupon = db.query(Coupon).filter_by(code=code, is_used=False).first()
                if coupon is None:
                    raise NotFoundError("Invalid or already used coupon code.")
                if coupon.plan_title != plan_title:
                    raise PlanMismatchError(f'This coupon is only valid for the "{coupon.plan_title}" plan.')

                credits_to_add = coupon.credits
                claimed = (
                    db.query(Coupon)
                    .filter_by(id=coupon.id, is_used=False)
                    .update(
                        {
                            Coupon.is_used: True,
                            Coupon.used_by: session_id,
                            Coupon.used_at: datetime.utcnow()
                        },
                        synchronize_session=False
                    )
                )
                if not claimed:
                    raise NotFoundError("Invalid or already used coupon code.")

                total = credit_account(db, session_id, credits_to_add, self.account_prefix, create_missing=True)
                db.commit()
                logger.info('Coupon %s redeemed by %s for plan "%s". Credits added: %d.',
                            code, session_id, plan_title, credits_to_add)
                return Redemption(code=code, credits_added=credits_to_add, new_total_credits=total)
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to redeem coupon {code}: {e}") from e
