import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .config import MIN_WITHDRAWAL
from .errors import AlreadyProcessedError, BelowMinimumError, InsufficientBalanceError, NotFoundError
from .ledger import LedgerService
from .models import (
    TransactionCategory,
    WithdrawalApprovalResult,
    WithdrawalRecord,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .tables import User, Withdrawal
from .users import load_active_user, load_user

logger = logging.getLogger(__name__)


class WithdrawalService:
    """Withdrawal requests and their one-shot review.

    The first approved withdrawal pins the user's payout identity: its
    payment details become ``registered_upi`` and ``upi_locked`` turns on for
    good. Later approvals never touch ``registered_upi``.
    """

    def __init__(self, ledger: LedgerService, minimum: Decimal = MIN_WITHDRAWAL):
        self.db = ledger.db
        self.ledger = ledger
        self.minimum = minimum

    def request(self, user_id: int, request: WithdrawalRequest) -> WithdrawalRecord:
        amount = Decimal(str(request.amount))
        if amount < self.minimum:
            raise BelowMinimumError(f"Minimum withdrawal amount is Rs {self.minimum}")

        with self.db.transaction() as s:
            user = load_active_user(s, user_id)
            pending = self.ledger.pending_withdrawal_total(user_id, session=s)
            available = user.balance - pending
            if amount > available:
                logger.warning("withdrawal refused user=%s amount=%s balance=%s pending=%s",
                               user_id, amount, user.balance, pending)
                raise InsufficientBalanceError(
                    f"Insufficient available balance. You have Rs {pending:.2f} in pending withdrawals."
                    if pending else "Insufficient balance"
                )

            withdrawal = Withdrawal(
                user_id=user_id,
                amount=amount,
                payment_method=request.payment_method.strip(),
                payment_details=request.payment_details.strip(),
                status=WithdrawalStatus.PENDING.value,
                requested_at=self.ledger.clock(),
            )
            s.add(withdrawal)
            s.flush()
            logger.info("withdrawal requested id=%s user=%s amount=%s method=%s",
                        withdrawal.id, user_id, amount, withdrawal.payment_method)
            return WithdrawalRecord.model_validate(withdrawal)

    def approve(self, withdrawal_id: int, admin_notes: Optional[str] = None) -> WithdrawalApprovalResult:
        with self.db.transaction() as s:
            withdrawal = self._transition(
                s,
                withdrawal_id,
                status=WithdrawalStatus.APPROVED.value,
                processed_at=self.ledger.clock(),
                admin_notes=admin_notes or "Approved by admin",
            )
            entry = self.ledger.debit(
                withdrawal.user_id,
                withdrawal.amount,
                TransactionCategory.WITHDRAWAL,
                "Withdrawal approved",
                session=s,
            )
            locked_now = self._lock_upi(s, withdrawal.user_id, withdrawal.payment_details)
            user = load_user(s, withdrawal.user_id)
            s.refresh(user)
            logger.info("withdrawal %s approved user=%s amount=%s upi_locked_now=%s",
                        withdrawal_id, withdrawal.user_id, withdrawal.amount, locked_now)
            return WithdrawalApprovalResult(
                withdrawal=WithdrawalRecord.model_validate(withdrawal),
                upi_locked_now=locked_now,
                registered_upi=user.registered_upi,
                ledger_entry=entry,
            )

    def reject(self, withdrawal_id: int, admin_notes: Optional[str] = None) -> WithdrawalRecord:
        with self.db.transaction() as s:
            withdrawal = self._transition(
                s,
                withdrawal_id,
                status=WithdrawalStatus.REJECTED.value,
                processed_at=self.ledger.clock(),
                admin_notes=admin_notes or "Rejected by admin",
            )
            logger.info("withdrawal %s rejected notes=%r", withdrawal_id, withdrawal.admin_notes)
            return WithdrawalRecord.model_validate(withdrawal)

    @staticmethod
    def _lock_upi(session: Session, user_id: int, upi: str) -> bool:
        # one-way: the WHERE clause keeps an existing lock untouched
        result = session.execute(
            update(User)
            .where(User.id == user_id)
            .where(User.upi_locked.is_(False))
            .values(upi_locked=True, registered_upi=upi, upi=upi)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount > 0

    @staticmethod
    def _transition(session: Session, withdrawal_id: int, **values) -> Withdrawal:
        result = session.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id)
            .where(Withdrawal.status == WithdrawalStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session="evaluate")
        )
        withdrawal = session.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal request {withdrawal_id} not found")
        if result.rowcount == 0:
            logger.warning("withdrawal %s already %s", withdrawal_id, withdrawal.status)
            raise AlreadyProcessedError(f"Withdrawal {withdrawal_id} already processed ({withdrawal.status})")
        return withdrawal

    def list_for_user(self, user_id: int) -> list[WithdrawalRecord]:
        return self._list(select(Withdrawal).where(Withdrawal.user_id == user_id)
                          .order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc()))

    def list_all(self, status: Optional[WithdrawalStatus] = None) -> list[WithdrawalRecord]:
        query = select(Withdrawal)
        if status is not None:
            query = query.where(Withdrawal.status == WithdrawalStatus(status).value)
            # pending queue is worked oldest first
            query = query.order_by(Withdrawal.requested_at.asc(), Withdrawal.id.asc())
        else:
            query = query.order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
        return self._list(query)

    def _list(self, query) -> list[WithdrawalRecord]:
        with self.db.transaction() as s:
            return [WithdrawalRecord.model_validate(w) for w in s.scalars(query).all()]
