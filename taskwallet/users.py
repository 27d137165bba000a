import logging
import random
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import REFERRAL_CODE_ALPHABET, REFERRAL_CODE_LENGTH
from .db import as_utc, money
from .errors import ConflictError, ForbiddenError, NotFoundError
from .ledger import LedgerService
from .models import (
    BanRequest,
    BanType,
    SignupRequest,
    TransactionCategory,
    UpdateProfileRequest,
    UserOverview,
    UserProfile,
    UserStats,
)
from .referrals import ReferralService
from .tables import CompletedTask, Referral, Transaction, User

logger = logging.getLogger(__name__)

EARNING_CATEGORIES = [c.value for c in TransactionCategory if not c.is_debit]


def generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def load_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def load_active_user(session: Session, user_id: int) -> User:
    user = load_user(session, user_id)
    if user.banned:
        raise ForbiddenError(user.banned_reason or "Account banned")
    return user


class UserService:
    def __init__(self, ledger: LedgerService, referrals: ReferralService, rng: Optional[random.Random] = None):
        self.db = ledger.db
        self.ledger = ledger
        self.referrals = referrals
        self.rng = rng or random.Random()

    def signup(self, request: SignupRequest) -> UserProfile:
        email = request.email.strip().lower()
        phone = request.phone.strip()

        with self.db.transaction() as s:
            if s.scalar(select(User.id).where(User.email == email)) is not None:
                raise ConflictError("This email is already registered. Please login instead.")
            if s.scalar(select(User.id).where(User.phone == phone)) is not None:
                raise ConflictError("This phone number is already registered. One account per person only!")

            username = (request.username or "").strip()
            if username:
                if s.scalar(select(User.id).where(User.username == username)) is not None:
                    raise ConflictError(f"Username {username!r} is already taken")
            else:
                username = self._unique_username(s, email.split("@")[0])

            user = User(
                username=username,
                name=request.name.strip(),
                email=email,
                phone=phone,
                upi=(request.upi or "").strip() or "pending",
                referral_code=self._unique_referral_code(s),
                balance=Decimal("0"),
                created_at=self.ledger.clock(),
            )
            s.add(user)
            try:
                s.flush()
            except IntegrityError as e:
                raise ConflictError("Email, phone or username already registered") from e

            self.referrals.apply_signup_code(user.id, request.invite_code, session=s)
            # the referral link is written with a guarded bulk update
            s.refresh(user)
            logger.info("user signed up id=%s username=%s referral_code=%s", user.id, user.username, user.referral_code)
            return UserProfile.model_validate(user)

    def _unique_username(self, session: Session, base: str) -> str:
        base = base or "user"
        username = base
        for _ in range(100):
            if session.scalar(select(User.id).where(User.username == username)) is None:
                return username
            username = f"{base}{self.rng.randint(0, 99999)}"
        raise ConflictError("Failed to generate unique username. Please try again.")

    def _unique_referral_code(self, session: Session) -> str:
        for _ in range(10):
            code = generate_referral_code()
            if session.scalar(select(User.id).where(User.referral_code == code)) is None:
                return code
        raise ConflictError("Failed to generate a unique referral code")

    def get_user(self, user_id: int) -> UserProfile:
        with self.db.transaction() as s:
            return UserProfile.model_validate(load_user(s, user_id))

    def list_users(self) -> list[UserProfile]:
        with self.db.transaction() as s:
            users = s.scalars(select(User).order_by(User.created_at.desc(), User.id.desc())).all()
            return [UserProfile.model_validate(u) for u in users]

    def overview(self, user_id: int) -> UserOverview:
        with self.db.transaction() as s:
            user = load_user(s, user_id)
            completed = s.scalar(select(func.count(CompletedTask.id)).where(CompletedTask.user_id == user_id))
            referrals = s.scalar(select(func.count(Referral.id)).where(Referral.referrer_id == user_id))
            earnings = s.scalar(
                select(func.coalesce(func.sum(Transaction.amount), 0))
                .where(Transaction.user_id == user_id)
                .where(Transaction.category.in_(EARNING_CATEGORIES))
            )
            return UserOverview(
                user=UserProfile.model_validate(user),
                stats=UserStats(
                    total_tasks_completed=completed,
                    total_referrals=referrals,
                    total_earnings=money(earnings),
                ),
            )

    def ban(self, request: BanRequest) -> UserProfile:
        if not request.banned:
            return self.unban(request.user_id)

        with self.db.transaction() as s:
            user = load_user(s, request.user_id)
            user.banned = True
            user.banned_reason = request.reason
            user.ban_type = request.ban_type.value
            user.ban_expiry = None
            if request.ban_type == BanType.TEMPORARY:
                user.ban_expiry = self.ledger.clock() + timedelta(days=request.ban_days)
            s.flush()
            logger.warning("user %s banned type=%s expiry=%s reason=%r",
                           user.id, user.ban_type, user.ban_expiry, user.banned_reason)
            return UserProfile.model_validate(user)

    def unban(self, user_id: int) -> UserProfile:
        with self.db.transaction() as s:
            user = load_user(s, user_id)
            self._clear_ban(user)
            s.flush()
            logger.info("user %s unbanned", user_id)
            return UserProfile.model_validate(user)

    @staticmethod
    def _clear_ban(user: User) -> None:
        user.banned = False
        user.banned_reason = ""
        user.ban_type = BanType.PERMANENT.value
        user.ban_expiry = None

    def lift_expired_bans(self) -> int:
        """Lift temporary bans whose expiry has passed. Safe to call repeatedly."""
        now = self.ledger.clock()
        lifted = 0
        with self.db.transaction() as s:
            candidates = s.scalars(
                select(User)
                .where(User.banned.is_(True))
                .where(User.ban_type == BanType.TEMPORARY.value)
                .where(User.ban_expiry.is_not(None))
            ).all()
            for user in candidates:
                if as_utc(user.ban_expiry) <= now:
                    self._clear_ban(user)
                    lifted += 1
        if lifted:
            logger.info("lifted %d expired temporary bans", lifted)
        return lifted

    def mark_telegram_joined(self, user_id: int) -> UserProfile:
        with self.db.transaction() as s:
            user = load_active_user(s, user_id)
            if user.telegram_reward_claimed:
                raise ConflictError("Telegram reward already claimed")
            user.telegram_joined = True
            s.flush()
            return UserProfile.model_validate(user)

    def verify_telegram(self, user_id: int, reward: Decimal) -> UserProfile:
        with self.db.transaction() as s:
            user = load_user(s, user_id)
            claimed = s.execute(
                update(User)
                .where(User.id == user_id)
                .where(User.telegram_reward_claimed.is_(False))
                .values(telegram_joined=True, telegram_reward_claimed=True)
                .execution_options(synchronize_session="evaluate")
            )
            if claimed.rowcount == 0:
                raise ConflictError("Reward already claimed")
            self.ledger.credit(user_id, reward, TransactionCategory.TELEGRAM_JOIN, "Telegram join reward", session=s)
            s.refresh(user)
            return UserProfile.model_validate(user)

    def update_profile(self, user_id: int, request: UpdateProfileRequest) -> UserProfile:
        with self.db.transaction() as s:
            user = load_active_user(s, user_id)
            user.name = request.name.strip()
            if request.profile_photo is not None:
                user.profile_photo = request.profile_photo.strip()
            s.flush()
            return UserProfile.model_validate(user)

    def set_verified_badge(self, user_id: int, verified: bool) -> UserProfile:
        with self.db.transaction() as s:
            user = load_user(s, user_id)
            user.verified_badge = verified
            s.flush()
            logger.info("user %s verified badge set to %s", user_id, verified)
            return UserProfile.model_validate(user)

    def set_custom_badge(self, user_id: int, badge_text: str) -> UserProfile:
        with self.db.transaction() as s:
            user = load_user(s, user_id)
            user.custom_badge_text = (badge_text or "").strip()
            s.flush()
            return UserProfile.model_validate(user)
