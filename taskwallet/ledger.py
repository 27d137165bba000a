import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .db import Database, money, utcnow
from .errors import InvalidAmountError, NotFoundError
from .models import (
    LedgerEntry,
    LedgerHistoryResponse,
    TransactionCategory,
    UserBalance,
    WithdrawalStatus,
)
from .tables import Transaction, User, Withdrawal

logger = logging.getLogger(__name__)


class LedgerService:
    """Single entry point for every balance movement.

    A credit or debit is one signed adjustment of ``users.balance`` plus one
    immutable row in ``transactions`` holding the unsigned amount; the
    category tells the direction. Both writes share a database transaction,
    so the stored balance can always be rebuilt from the log.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def credit(
        self,
        user_id: int,
        amount: Decimal,
        category: TransactionCategory,
        reason: str = "",
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        category = TransactionCategory(category)
        if category.is_debit:
            raise ValueError(f"{category.value} is a debit category")
        return self._apply(user_id, amount, category, reason, session)

    def debit(
        self,
        user_id: int,
        amount: Decimal,
        category: TransactionCategory,
        reason: str = "",
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        category = TransactionCategory(category)
        if not category.is_debit:
            raise ValueError(f"{category.value} is a credit category")
        return self._apply(user_id, amount, category, reason, session)

    def _apply(
        self,
        user_id: int,
        amount: Decimal,
        category: TransactionCategory,
        reason: str,
        session: Optional[Session],
    ) -> LedgerEntry:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise InvalidAmountError(f"Ledger amount must be positive, got {amount}")
        # stored columns keep two decimal places; anything finer would drift from the log
        if amount != money(amount):
            raise InvalidAmountError(f"Ledger amount must be in whole paise, got {amount}")
        delta = category.signed(amount)

        with self.db.join(session) as s:
            result = s.execute(
                update(User)
                .where(User.id == user_id)
                .values(balance=User.balance + delta)
                .execution_options(synchronize_session="evaluate")
            )
            if result.rowcount == 0:
                raise NotFoundError(f"User {user_id} not found")

            entry = Transaction(
                user_id=user_id,
                category=category.value,
                amount=amount,
                reason=reason,
                created_at=self.clock(),
            )
            s.add(entry)
            s.flush()
            logger.info("ledger %s user=%s amount=%s delta=%s reason=%r",
                        category.value, user_id, amount, delta, reason)
            return LedgerEntry.model_validate(entry)

    def get_balance(self, user_id: int, session: Optional[Session] = None) -> UserBalance:
        with self.db.join(session) as s:
            user = s.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            pending = self.pending_withdrawal_total(user_id, session=s)
            total_entries, last_at = s.execute(
                select(func.count(Transaction.id), func.max(Transaction.created_at))
                .where(Transaction.user_id == user_id)
            ).one()
            return UserBalance(
                user_id=user_id,
                current_balance=user.balance,
                pending_withdrawals=pending,
                available_balance=user.balance - pending,
                total_entries=total_entries,
                last_transaction_at=last_at,
            )

    def pending_withdrawal_total(self, user_id: int, session: Optional[Session] = None) -> Decimal:
        with self.db.join(session) as s:
            total = s.scalar(
                select(func.coalesce(func.sum(Withdrawal.amount), 0))
                .where(Withdrawal.user_id == user_id)
                .where(Withdrawal.status == WithdrawalStatus.PENDING.value)
            )
            return money(total)

    def get_ledger_history(self, user_id: int, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.db.transaction() as s:
            user = s.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            total_count = s.scalar(
                select(func.count(Transaction.id)).where(Transaction.user_id == user_id)
            )
            rows = s.scalars(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return LedgerHistoryResponse(
                user_id=user_id,
                entries=[LedgerEntry.model_validate(row) for row in rows],
                total_count=total_count,
                current_balance=user.balance,
            )

    def recent_transactions(self, limit: int = 100) -> list[LedgerEntry]:
        with self.db.transaction() as s:
            rows = s.scalars(
                select(Transaction)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(limit)
            ).all()
            return [LedgerEntry.model_validate(row) for row in rows]

    def recompute_balance(self, user_id: int, session: Optional[Session] = None) -> Decimal:
        """Balance rebuilt from the transaction log alone."""
        with self.db.join(session) as s:
            rows = s.execute(
                select(Transaction.category, Transaction.amount).where(Transaction.user_id == user_id)
            ).all()
            total = Decimal("0")
            for category, amount in rows:
                total += TransactionCategory(category).signed(Decimal(str(amount)))
            return total

    def audit(self) -> dict[int, tuple[Decimal, Decimal]]:
        """Users whose stored balance disagrees with their log, as {id: (stored, derived)}."""
        mismatches = {}
        with self.db.transaction() as s:
            for user_id, stored in s.execute(select(User.id, User.balance)).all():
                derived = self.recompute_balance(user_id, session=s)
                if money(stored) != derived:
                    mismatches[user_id] = (stored, derived)
        if mismatches:
            logger.warning("ledger audit found %d mismatched balances", len(mismatches))
        return mismatches
