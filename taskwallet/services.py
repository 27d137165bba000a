import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .admin import AdminService
from .checkin import CheckinService
from .db import Database, utcnow
from .ledger import LedgerService
from .notifications import NotificationStore
from .referrals import ReferralService
from .tasks import TaskService
from .users import UserService
from .withdrawals import WithdrawalService


@dataclass
class Services:
    db: Database
    ledger: LedgerService
    referrals: ReferralService
    users: UserService
    tasks: TaskService
    withdrawals: WithdrawalService
    checkin: CheckinService
    admin: AdminService
    notifications: NotificationStore

    @classmethod
    def build(
        cls,
        db: Database,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ) -> "Services":
        rng = rng or random.Random()
        ledger = LedgerService(db, clock=clock)
        referrals = ReferralService(db, ledger)
        notifications = NotificationStore()
        return cls(
            db=db,
            ledger=ledger,
            referrals=referrals,
            users=UserService(ledger, referrals, rng=rng),
            tasks=TaskService(ledger, referrals, notifications, rng=rng),
            withdrawals=WithdrawalService(ledger),
            checkin=CheckinService(ledger, rng=rng),
            admin=AdminService(ledger),
            notifications=notifications,
        )
