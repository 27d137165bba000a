import os
from dataclasses import dataclass, field
from decimal import Decimal


SIGNUP_REFERRAL_BONUS = Decimal("5")
FIRST_TASK_REFERRAL_BONUS = Decimal("15")
TELEGRAM_JOIN_REWARD = Decimal("5")
MIN_WITHDRAWAL = Decimal("50")

CHECKIN_COOLDOWN_HOURS = 24
CHECKIN_CYCLE_DAYS = 7
CHECKIN_MIN_REWARD = 1
CHECKIN_MAX_REWARD = 10

REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 8

MAX_NOTIFICATIONS_PER_USER = 50

# seeded like count shown on a new task
INITIAL_LIKES_MIN = 50
INITIAL_LIKES_MAX = 200


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    database_url: str = "sqlite:///taskwallet.db"
    admin_password: str = ""
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///taskwallet.db"),
            admin_password=os.getenv("ADMIN_PASSWORD", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=_split(os.getenv("CORS_ORIGINS", "*")),
        )
