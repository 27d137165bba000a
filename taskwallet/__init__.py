"""
Task Reward Wallet

This package provides:
- An append-only ledger that every balance change goes through
- Task submissions reviewed by an admin: pending → approved / rejected
- Referral bonuses paid at signup and on the referred user's first approved task
- Daily check-ins on a 7-day cycle with a 24-hour cooldown
- Withdrawals that lock the user's UPI on the first approval
"""

from .db import Database
from .errors import (
    TaskWalletError,
    NotFoundError,
    InvalidStateError,
    AlreadyProcessedError,
    ConflictError,
    InsufficientBalanceError,
    BelowMinimumError,
    TooSoonError,
)
from .ledger import LedgerService
from .models import (
    TransactionCategory,
    SubmissionStatus,
    WithdrawalStatus,
    LedgerEntry,
    UserBalance,
)
from .services import Services

__all__ = [
    "Database",
    "Services",
    "LedgerService",
    "TransactionCategory",
    "SubmissionStatus",
    "WithdrawalStatus",
    "LedgerEntry",
    "UserBalance",
    "TaskWalletError",
    "NotFoundError",
    "InvalidStateError",
    "AlreadyProcessedError",
    "ConflictError",
    "InsufficientBalanceError",
    "BelowMinimumError",
    "TooSoonError",
]
