import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .config import TELEGRAM_JOIN_REWARD, Settings
from .db import Database
from .errors import ForbiddenError, NotFoundError, TaskWalletError, UnauthorizedError
from .models import (
    Analytics,
    ApprovalResult,
    ApproveTaskRequest,
    AvailableTask,
    BalanceAdjustmentRequest,
    BanRequest,
    BulkBonusRequest,
    CheckinClaimResponse,
    CheckinStatus,
    CustomBadgeRequest,
    LedgerEntry,
    LedgerHistoryResponse,
    LikeResult,
    LikeTaskRequest,
    MarkNotificationReadRequest,
    Notification,
    ProcessWithdrawalRequest,
    ReferralRecord,
    RejectTaskRequest,
    SignupRequest,
    SubmissionRecord,
    SubmissionStatus,
    SubmitTaskRequest,
    TaskCreateRequest,
    TaskDeleteRequest,
    TaskDetail,
    TaskToggleRequest,
    TaskUpdateRequest,
    UpdateProfileRequest,
    UserBalance,
    UserOverview,
    UserProfile,
    VerifyBadgeRequest,
    VerifyTelegramRequest,
    WithdrawalApprovalResult,
    WithdrawalRecord,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .services import Services

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(
    x_user_id: Optional[int] = Header(default=None),
    services: Services = Depends(get_services),
) -> UserProfile:
    if x_user_id is None:
        raise UnauthorizedError("Not authenticated")
    try:
        user = services.users.get_user(x_user_id)
    except NotFoundError:
        raise UnauthorizedError("User not found")
    if user.banned:
        raise ForbiddenError(user.banned_reason or "Account banned")
    return user


def require_admin(request: Request, admin_password: Optional[str] = Header(default=None)) -> None:
    expected = request.app.state.settings.admin_password
    if not expected or not admin_password or not secrets.compare_digest(admin_password, expected):
        raise ForbiddenError("Invalid admin password")


auth = APIRouter(prefix="/api/auth", tags=["Auth"])
user_router = APIRouter(prefix="/api/user", tags=["User"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["Tasks"])
checkin_router = APIRouter(prefix="/api/checkin", tags=["Check-in"])
referrals_router = APIRouter(prefix="/api/referrals", tags=["Referrals"])
wallet = APIRouter(prefix="/api/wallet", tags=["Wallet"])
admin = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@auth.post("/signup", response_model=UserProfile, status_code=status.HTTP_201_CREATED)
def signup(request: SignupRequest, services: Services = Depends(get_services)):
    return services.users.signup(request)


@user_router.get("/me", response_model=UserProfile)
def me(user: UserProfile = Depends(current_user)):
    return user


@user_router.get("/overview", response_model=UserOverview)
def overview(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.users.overview(user.id)


@user_router.get("/balance", response_model=UserBalance)
def balance(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.ledger.get_balance(user.id)


@user_router.get("/transactions", response_model=LedgerHistoryResponse)
def transactions(
    limit: int = 50,
    offset: int = 0,
    user: UserProfile = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.ledger.get_ledger_history(user.id, limit, offset)


@user_router.post("/telegram-joined", response_model=UserProfile)
def telegram_joined(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.users.mark_telegram_joined(user.id)


@user_router.post("/update-profile", response_model=UserProfile)
def update_profile(
    request: UpdateProfileRequest,
    user: UserProfile = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.users.update_profile(user.id, request)


@user_router.get("/notifications", response_model=list[Notification])
def notifications(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.notifications.list(user.id)


@user_router.post("/notifications/read")
def mark_notification_read(
    request: MarkNotificationReadRequest,
    user: UserProfile = Depends(current_user),
    services: Services = Depends(get_services),
):
    return {"success": services.notifications.mark_read(user.id, request.notification_id)}


@tasks_router.get("/available", response_model=list[AvailableTask])
def available_tasks(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.tasks.available_for(user.id)


@tasks_router.post("/submit", response_model=SubmissionRecord, status_code=status.HTTP_201_CREATED)
def submit_task(
    request: SubmitTaskRequest,
    user: UserProfile = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.tasks.submit(user.id, request.task_id)


@tasks_router.post("/like", response_model=LikeResult)
def like_task(
    request: LikeTaskRequest,
    user: UserProfile = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.tasks.toggle_like(user.id, request.task_id)


@tasks_router.get("/pending", response_model=list[SubmissionRecord])
def my_submissions(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.tasks.list_submissions(user_id=user.id)


@checkin_router.get("/status", response_model=CheckinStatus)
def checkin_status(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.checkin.status(user.id)


@checkin_router.post("/claim", response_model=CheckinClaimResponse)
def claim_checkin(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.checkin.claim(user.id)


@referrals_router.get("/my", response_model=list[ReferralRecord])
def my_referrals(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.referrals.list_referrals(user.id)


@wallet.post("/withdraw", response_model=WithdrawalRecord, status_code=status.HTTP_201_CREATED)
def request_withdrawal(
    request: WithdrawalRequest,
    user: UserProfile = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.withdrawals.request(user.id, request)


@wallet.get("/withdrawals", response_model=list[WithdrawalRecord])
def my_withdrawals(user: UserProfile = Depends(current_user), services: Services = Depends(get_services)):
    return services.withdrawals.list_for_user(user.id)


@admin.get("/users", response_model=list[UserProfile])
def list_users(services: Services = Depends(get_services)):
    return services.users.list_users()


@admin.post("/user/balance", response_model=LedgerEntry)
def adjust_balance(request: BalanceAdjustmentRequest, services: Services = Depends(get_services)):
    return services.admin.adjust_balance(request.user_id, request.amount, request.reason)


@admin.post("/user/ban", response_model=UserProfile)
def ban_user(request: BanRequest, services: Services = Depends(get_services)):
    return services.users.ban(request)


@admin.post("/user/verify-badge", response_model=UserProfile)
def verify_badge(request: VerifyBadgeRequest, services: Services = Depends(get_services)):
    return services.users.set_verified_badge(request.user_id, request.verified)


@admin.post("/user/custom-badge", response_model=UserProfile)
def custom_badge(request: CustomBadgeRequest, services: Services = Depends(get_services)):
    return services.users.set_custom_badge(request.user_id, request.badge_text)


@admin.get("/analytics", response_model=Analytics)
def analytics(services: Services = Depends(get_services)):
    return services.admin.analytics()


@admin.post("/bulk-bonus")
def bulk_bonus(request: BulkBonusRequest, services: Services = Depends(get_services)):
    count = services.admin.bulk_bonus(request.amount, request.reason)
    return {"success": True, "affected_users": count}


@admin.post("/verify-telegram", response_model=UserProfile)
def verify_telegram(request: VerifyTelegramRequest, services: Services = Depends(get_services)):
    return services.users.verify_telegram(request.user_id, TELEGRAM_JOIN_REWARD)


@admin.get("/tasks", response_model=list[TaskDetail])
def list_tasks(services: Services = Depends(get_services)):
    return services.tasks.list_all()


@admin.post("/tasks/create", status_code=status.HTTP_201_CREATED)
def create_task(request: TaskCreateRequest, services: Services = Depends(get_services)):
    task, sent = services.tasks.create_task(request)
    return {"success": True, "task": task, "notifications_sent": sent}


@admin.post("/tasks/update", response_model=TaskDetail)
def update_task(request: TaskUpdateRequest, services: Services = Depends(get_services)):
    return services.tasks.update_task(request)


@admin.post("/tasks/toggle", response_model=TaskDetail)
def toggle_task(request: TaskToggleRequest, services: Services = Depends(get_services)):
    return services.tasks.set_enabled(request.task_id, request.enabled)


@admin.post("/tasks/delete")
def delete_task(request: TaskDeleteRequest, services: Services = Depends(get_services)):
    services.tasks.delete_task(request.task_id)
    return {"success": True}


@admin.get("/pending-tasks", response_model=list[SubmissionRecord])
def pending_tasks(status: Optional[SubmissionStatus] = None, services: Services = Depends(get_services)):
    return services.tasks.list_submissions(status=status)


@admin.post("/pending-tasks/approve", response_model=ApprovalResult)
def approve_task(request: ApproveTaskRequest, services: Services = Depends(get_services)):
    return services.tasks.approve(request.pending_id, request.user_id, request.task_id, request.price)


@admin.post("/pending-tasks/reject", response_model=SubmissionRecord)
def reject_task(request: RejectTaskRequest, services: Services = Depends(get_services)):
    return services.tasks.reject(request.pending_id, request.reason)


@admin.get("/transactions", response_model=list[LedgerEntry])
def all_transactions(services: Services = Depends(get_services)):
    return services.ledger.recent_transactions()


@admin.get("/withdrawals", response_model=list[WithdrawalRecord])
def all_withdrawals(status: Optional[WithdrawalStatus] = None, services: Services = Depends(get_services)):
    return services.withdrawals.list_all(status)


@admin.post("/withdrawals/approve", response_model=WithdrawalApprovalResult)
def approve_withdrawal(request: ProcessWithdrawalRequest, services: Services = Depends(get_services)):
    return services.withdrawals.approve(request.withdrawal_id, request.admin_notes)


@admin.post("/withdrawals/reject", response_model=WithdrawalRecord)
def reject_withdrawal(request: ProcessWithdrawalRequest, services: Services = Depends(get_services)):
    return services.withdrawals.reject(request.withdrawal_id, request.admin_notes)


@admin.get("/audit")
def audit(services: Services = Depends(get_services)):
    mismatches = services.ledger.audit()
    return {
        "consistent": not mismatches,
        "mismatches": [
            {"user_id": user_id, "stored": stored, "derived": derived}
            for user_id, (stored, derived) in mismatches.items()
        ],
    }


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    services = services or Services.build(Database(settings.database_url))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.db.create_all()
        yield

    app = FastAPI(
        title="TaskWallet API",
        description="Task rewards, referral bonuses, daily check-ins and UPI-locked withdrawals on a single ledger",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def lift_expired_bans(request: Request, call_next):
        await run_in_threadpool(services.users.lift_expired_bans)
        return await call_next(request)

    @app.exception_handler(TaskWalletError)
    async def handle_service_error(request: Request, exc: TaskWalletError):
        logger.warning("%s %s refused (%s): %s", request.method, request.url.path, exc.code, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.code, "message": str(exc)},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "taskwallet"}

    for router in (auth, user_router, tasks_router, checkin_router, referrals_router, wallet, admin):
        app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level,
    )
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=8000)
