from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator


class TransactionCategory(str, Enum):
    TASK_REWARD = "task_reward"
    REFERRAL = "referral"
    DAILY_CHECKIN = "daily_checkin"
    TELEGRAM_JOIN = "telegram_join"
    ADMIN_CREDIT = "admin_credit"
    ADMIN_DEBIT = "admin_debit"
    WITHDRAWAL = "withdrawal"

    @property
    def is_debit(self) -> bool:
        return self in (TransactionCategory.ADMIN_DEBIT, TransactionCategory.WITHDRAWAL)

    def signed(self, amount: Decimal) -> Decimal:
        return -amount if self.is_debit else amount


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BanType(str, Enum):
    PERMANENT = "permanent"
    TEMPORARY = "temporary"


# Requests

class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: str = Field(..., min_length=8, description="At least 8 characters, international formats allowed")
    username: Optional[str] = None
    upi: Optional[str] = None
    invite_code: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Asha Verma",
            "email": "asha@example.com",
            "phone": "+919800000001",
            "upi": "asha@okbank",
            "invite_code": "K7M2QX9P",
        }
    })


class SubmitTaskRequest(BaseModel):
    task_id: int


class ApproveTaskRequest(BaseModel):
    pending_id: int
    user_id: Optional[int] = None
    task_id: Optional[int] = None
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)


class RejectTaskRequest(BaseModel):
    pending_id: int
    reason: Optional[str] = None


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_method: str = Field(..., min_length=1)
    payment_details: str = Field(..., min_length=1)


class ProcessWithdrawalRequest(BaseModel):
    withdrawal_id: int
    admin_notes: Optional[str] = None


class BalanceAdjustmentRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(..., decimal_places=2)
    reason: Optional[str] = None


class BulkBonusRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reason: Optional[str] = None


class BanRequest(BaseModel):
    user_id: int
    banned: bool = True
    reason: str = ""
    ban_type: BanType = BanType.PERMANENT
    ban_days: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def temporary_ban_needs_days(self) -> "BanRequest":
        if self.banned and self.ban_type == BanType.TEMPORARY and not self.ban_days:
            raise ValueError("Temporary bans need ban_days")
        return self


class VerifyBadgeRequest(BaseModel):
    user_id: int
    verified: bool


class CustomBadgeRequest(BaseModel):
    user_id: int
    badge_text: str = Field(default="", max_length=64)


class UpdateProfileRequest(BaseModel):
    name: str = Field(..., min_length=1)
    profile_photo: Optional[str] = None


class VerifyTelegramRequest(BaseModel):
    user_id: int


class TaskCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str
    instruction: str
    price: Decimal = Field(..., ge=0, decimal_places=2)
    thumbnail: str = ""
    timer: int = Field(default=0, ge=0)
    steps: str = ""
    task_url: str = ""
    send_notification: bool = False


class TaskUpdateRequest(BaseModel):
    task_id: int
    title: Optional[str] = None
    description: Optional[str] = None
    instruction: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    thumbnail: Optional[str] = None
    timer: Optional[int] = Field(default=None, ge=0)
    steps: Optional[str] = None
    task_url: Optional[str] = None


class TaskToggleRequest(BaseModel):
    task_id: int
    enabled: bool


class TaskDeleteRequest(BaseModel):
    task_id: int


class LikeTaskRequest(BaseModel):
    task_id: int


class MarkNotificationReadRequest(BaseModel):
    notification_id: str


# Records

class LedgerEntry(BaseModel):
    id: int
    user_id: int
    category: TransactionCategory
    amount: Decimal
    reason: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> Decimal:
        return self.category.signed(self.amount)


class UserBalance(BaseModel):
    user_id: int
    current_balance: Decimal
    pending_withdrawals: Decimal = Decimal("0")
    available_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: int
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class UserProfile(BaseModel):
    id: int
    username: str
    name: str
    email: str
    phone: str
    upi: str
    referral_code: str
    balance: Decimal
    referrer_id: Optional[int] = None
    first_task_completed: bool
    upi_locked: bool
    registered_upi: str
    banned: bool
    banned_reason: str = ""
    ban_type: BanType = BanType.PERMANENT
    ban_expiry: Optional[datetime] = None
    telegram_joined: bool = False
    telegram_reward_claimed: bool = False
    verified_badge: bool = False
    custom_badge_text: str = ""
    profile_photo: str = ""
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserStats(BaseModel):
    total_tasks_completed: int
    total_referrals: int
    total_earnings: Decimal


class UserOverview(BaseModel):
    user: UserProfile
    stats: UserStats


class TaskDetail(BaseModel):
    id: int
    title: str
    description: str
    instruction: str
    thumbnail: str
    price: Decimal
    timer: int
    steps: str
    task_url: str
    initial_likes: int = 0
    enabled: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AvailableTask(TaskDetail):
    like_count: int = 0
    is_liked: bool = False


class LikeResult(BaseModel):
    task_id: int
    liked: bool
    like_count: int


class SubmissionRecord(BaseModel):
    id: int
    user_id: int
    task_id: int
    status: SubmissionStatus
    reason: str = ""
    submitted_at: datetime
    reviewed_at: Optional[datetime] = None
    task_title: Optional[str] = None
    price: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class ApprovalResult(BaseModel):
    submission: SubmissionRecord
    credited: Decimal
    referral_bonus_paid: bool
    ledger_entry: Optional[LedgerEntry] = None


class ReferralRecord(BaseModel):
    id: int
    referrer_id: int
    referred_id: int
    reward_amount: Decimal
    created_at: datetime
    username: Optional[str] = None
    name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class WithdrawalRecord(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    payment_method: str
    payment_details: str
    status: WithdrawalStatus
    requested_at: datetime
    processed_at: Optional[datetime] = None
    admin_notes: str = ""

    model_config = ConfigDict(from_attributes=True)


class WithdrawalApprovalResult(BaseModel):
    withdrawal: WithdrawalRecord
    upi_locked_now: bool
    registered_upi: str
    ledger_entry: LedgerEntry


class CheckinRecord(BaseModel):
    id: int
    user_id: int
    day: int
    amount: Decimal
    claimed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckinStatus(BaseModel):
    can_claim: bool
    next_day: int
    hours_remaining: float = 0.0
    last_checkin: Optional[CheckinRecord] = None
    history: list[CheckinRecord] = Field(default_factory=list)


class CheckinClaimResponse(BaseModel):
    amount: Decimal
    day: int
    checkin: CheckinRecord


class Analytics(BaseModel):
    total_users: int
    users_today: int
    users_yesterday: int
    total_balance: Decimal
    total_withdrawals: Decimal
    pending_withdrawals: Decimal
    active_tasks: int
    pending_tasks: int


class Notification(BaseModel):
    id: str
    message: str
    timestamp: datetime
    read: bool = False
    type: str = "new_task"
    task_title: Optional[str] = None
    task_price: Optional[Decimal] = None
