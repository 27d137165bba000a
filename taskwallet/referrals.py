import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .config import FIRST_TASK_REFERRAL_BONUS, SIGNUP_REFERRAL_BONUS
from .db import Database
from .ledger import LedgerService
from .models import ReferralRecord, TransactionCategory
from .tables import Referral, User

logger = logging.getLogger(__name__)


class ReferralService:
    """Referral bonuses: an instant bonus at signup, a second one when the
    referred user gets their first task approved."""

    def __init__(self, db: Database, ledger: LedgerService):
        self.db = db
        self.ledger = ledger

    def apply_signup_code(self, new_user_id: int, invite_code: Optional[str], session: Session) -> Optional[ReferralRecord]:
        """Link ``new_user_id`` to the owner of ``invite_code`` and pay the instant bonus.

        Unknown, self-referential and banned codes are skipped without error.
        """
        if not invite_code or not invite_code.strip():
            return None

        code = invite_code.strip().upper()
        referrer = session.scalar(select(User).where(User.referral_code == code))
        if referrer is None:
            logger.info("signup referral skipped for user=%s: unknown code %r", new_user_id, code)
            return None
        if referrer.id == new_user_id:
            logger.info("signup referral skipped for user=%s: self referral", new_user_id)
            return None
        if referrer.banned:
            logger.info("signup referral skipped for user=%s: referrer %s is banned", new_user_id, referrer.id)
            return None

        linked = session.execute(
            update(User)
            .where(User.id == new_user_id)
            .where(User.referrer_id.is_(None))
            .values(referrer_id=referrer.id)
            .execution_options(synchronize_session="evaluate")
        )
        if linked.rowcount == 0:
            logger.warning("signup referral skipped for user=%s: referrer already set", new_user_id)
            return None

        referral = Referral(
            referrer_id=referrer.id,
            referred_id=new_user_id,
            reward_amount=SIGNUP_REFERRAL_BONUS,
            created_at=self.ledger.clock(),
        )
        session.add(referral)
        session.flush()

        self.ledger.credit(
            referrer.id,
            SIGNUP_REFERRAL_BONUS,
            TransactionCategory.REFERRAL,
            "Referral bonus (instant)",
            session=session,
        )
        logger.info("referral created referrer=%s referred=%s", referrer.id, new_user_id)
        return ReferralRecord.model_validate(referral)

    def fire_first_task_bonus(self, user_id: int, session: Session) -> bool:
        """Pay the referrer once, the first time ``user_id`` has a task approved.

        The ``first_task_completed`` flag is flipped with a guarded update
        before any money moves; only the caller that flips it pays.
        """
        referrer_id = session.scalar(select(User.referrer_id).where(User.id == user_id))
        if referrer_id is None:
            return False

        flipped = session.execute(
            update(User)
            .where(User.id == user_id)
            .where(User.first_task_completed.is_(False))
            .values(first_task_completed=True)
            .execution_options(synchronize_session="evaluate")
        )
        if flipped.rowcount == 0:
            return False

        self.ledger.credit(
            referrer_id,
            FIRST_TASK_REFERRAL_BONUS,
            TransactionCategory.REFERRAL,
            "Referral bonus (first task completed by referred user)",
            session=session,
        )
        session.execute(
            update(Referral)
            .where(Referral.referrer_id == referrer_id)
            .where(Referral.referred_id == user_id)
            .values(reward_amount=Referral.reward_amount + FIRST_TASK_REFERRAL_BONUS)
            .execution_options(synchronize_session="evaluate")
        )
        logger.info("first task referral bonus paid referrer=%s referred=%s", referrer_id, user_id)
        return True

    def list_referrals(self, referrer_id: int) -> list[ReferralRecord]:
        with self.db.transaction() as s:
            rows = s.execute(
                select(Referral, User.username, User.name)
                .join(User, User.id == Referral.referred_id)
                .where(Referral.referrer_id == referrer_id)
                .order_by(Referral.created_at.desc(), Referral.id.desc())
            ).all()
            records = []
            for referral, username, name in rows:
                record = ReferralRecord.model_validate(referral)
                record.username = username
                record.name = name
                records.append(record)
            return records
