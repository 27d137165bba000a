import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import CHECKIN_COOLDOWN_HOURS, CHECKIN_CYCLE_DAYS, CHECKIN_MAX_REWARD, CHECKIN_MIN_REWARD
from .db import as_utc
from .errors import TooSoonError
from .ledger import LedgerService
from .models import CheckinClaimResponse, CheckinRecord, CheckinStatus, TransactionCategory
from .tables import DailyCheckin
from .users import load_active_user, load_user

logger = logging.getLogger(__name__)

COOLDOWN = timedelta(hours=CHECKIN_COOLDOWN_HOURS)


def next_day_after(last_day: Optional[int]) -> int:
    if last_day is None or last_day >= CHECKIN_CYCLE_DAYS:
        return 1
    return last_day + 1


class CheckinService:
    def __init__(self, ledger: LedgerService, rng: Optional[random.Random] = None):
        self.db = ledger.db
        self.ledger = ledger
        self.rng = rng or random.Random()

    @staticmethod
    def _last(session: Session, user_id: int) -> Optional[DailyCheckin]:
        return session.scalar(
            select(DailyCheckin)
            .where(DailyCheckin.user_id == user_id)
            .order_by(DailyCheckin.claimed_at.desc(), DailyCheckin.id.desc())
            .limit(1)
        )

    def _remaining(self, last: Optional[DailyCheckin], now: datetime) -> timedelta:
        if last is None:
            return timedelta(0)
        return max(timedelta(0), as_utc(last.claimed_at) + COOLDOWN - now)

    def status(self, user_id: int) -> CheckinStatus:
        now = self.ledger.clock()
        with self.db.transaction() as s:
            load_user(s, user_id)
            last = self._last(s, user_id)
            history = s.scalars(
                select(DailyCheckin)
                .where(DailyCheckin.user_id == user_id)
                .order_by(DailyCheckin.claimed_at.asc(), DailyCheckin.id.asc())
            ).all()
            remaining = self._remaining(last, now)
            return CheckinStatus(
                can_claim=remaining == timedelta(0),
                next_day=next_day_after(last.day if last else None),
                hours_remaining=round(remaining.total_seconds() / 3600, 2),
                last_checkin=CheckinRecord.model_validate(last) if last else None,
                history=[CheckinRecord.model_validate(c) for c in history],
            )

    def claim(self, user_id: int) -> CheckinClaimResponse:
        now = self.ledger.clock()
        with self.db.transaction() as s:
            load_active_user(s, user_id)
            last = self._last(s, user_id)
            remaining = self._remaining(last, now)
            if remaining > timedelta(0):
                raise TooSoonError(
                    f"You can claim again after 24 hours! ({remaining.total_seconds() / 3600:.1f}h left)"
                )

            day = next_day_after(last.day if last else None)
            amount = Decimal(self.rng.randint(CHECKIN_MIN_REWARD, CHECKIN_MAX_REWARD))
            checkin = DailyCheckin(user_id=user_id, day=day, amount=amount, claimed_at=now)
            s.add(checkin)
            s.flush()
            self.ledger.credit(
                user_id, amount, TransactionCategory.DAILY_CHECKIN, f"Day {day} daily check-in", session=s,
            )
            logger.info("check-in claimed user=%s day=%s amount=%s", user_id, day, amount)
            return CheckinClaimResponse(amount=amount, day=day, checkin=CheckinRecord.model_validate(checkin))
