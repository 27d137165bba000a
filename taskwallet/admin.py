import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select

from .db import money
from .errors import InvalidAmountError
from .ledger import LedgerService
from .models import Analytics, LedgerEntry, SubmissionStatus, TransactionCategory, WithdrawalStatus
from .tables import Task, TaskSubmission, User, Withdrawal

logger = logging.getLogger(__name__)


class AdminService:
    """Admin-only money tools and dashboard numbers. Every balance change
    still goes through the ledger."""

    def __init__(self, ledger: LedgerService):
        self.db = ledger.db
        self.ledger = ledger

    def adjust_balance(self, user_id: int, amount: Decimal, reason: Optional[str] = None) -> LedgerEntry:
        amount = Decimal(str(amount))
        reason = reason or "Admin adjustment"
        if amount > 0:
            return self.ledger.credit(user_id, amount, TransactionCategory.ADMIN_CREDIT, reason)
        if amount < 0:
            return self.ledger.debit(user_id, -amount, TransactionCategory.ADMIN_DEBIT, reason)
        raise InvalidAmountError("Amount must be non-zero")

    def bulk_bonus(self, amount: Decimal, reason: Optional[str] = None) -> int:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise InvalidAmountError("Bulk bonus amount must be positive")
        reason = reason or "Bulk bonus from admin"
        with self.db.transaction() as s:
            user_ids = s.scalars(select(User.id).where(User.banned.is_(False))).all()
            for user_id in user_ids:
                self.ledger.credit(user_id, amount, TransactionCategory.ADMIN_CREDIT, reason, session=s)
        logger.info("bulk bonus of %s credited to %d users", amount, len(user_ids))
        return len(user_ids)

    def analytics(self) -> Analytics:
        now = self.ledger.clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        yesterday = today - timedelta(days=1)

        def withdrawal_total(s, status):
            return money(s.scalar(
                select(func.coalesce(func.sum(Withdrawal.amount), 0)).where(Withdrawal.status == status.value)
            ))

        with self.db.transaction() as s:
            return Analytics(
                total_users=s.scalar(select(func.count(User.id))),
                users_today=s.scalar(select(func.count(User.id)).where(User.created_at >= today)),
                users_yesterday=s.scalar(
                    select(func.count(User.id))
                    .where(User.created_at >= yesterday)
                    .where(User.created_at < today)
                ),
                total_balance=money(s.scalar(select(func.coalesce(func.sum(User.balance), 0)))),
                total_withdrawals=withdrawal_total(s, WithdrawalStatus.APPROVED),
                pending_withdrawals=withdrawal_total(s, WithdrawalStatus.PENDING),
                active_tasks=s.scalar(select(func.count(Task.id)).where(Task.enabled.is_(True))),
                pending_tasks=s.scalar(
                    select(func.count(TaskSubmission.id))
                    .where(TaskSubmission.status == SubmissionStatus.PENDING.value)
                ),
            )
