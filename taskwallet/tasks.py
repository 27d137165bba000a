import logging
import random
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from .config import INITIAL_LIKES_MAX, INITIAL_LIKES_MIN
from .errors import AlreadyProcessedError, ConflictError, InvalidStateError, NotFoundError
from .ledger import LedgerService
from .models import (
    ApprovalResult,
    AvailableTask,
    LikeResult,
    SubmissionRecord,
    SubmissionStatus,
    TaskCreateRequest,
    TaskDetail,
    TaskUpdateRequest,
    TransactionCategory,
)
from .notifications import NEW_TASK_MESSAGES, NotificationStore
from .referrals import ReferralService
from .tables import CompletedTask, Task, TaskLike, TaskSubmission, User
from .users import load_active_user

logger = logging.getLogger(__name__)


class TaskService:
    """Task catalog plus the submission review state machine.

    A submission moves ``pending -> approved`` or ``pending -> rejected``
    exactly once. Both transitions are conditional updates on
    ``status = 'pending'``; losing that race raises ``AlreadyProcessedError``
    and nothing else is written.
    """

    def __init__(
        self,
        ledger: LedgerService,
        referrals: ReferralService,
        notifications: Optional[NotificationStore] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = ledger.db
        self.ledger = ledger
        self.referrals = referrals
        self.notifications = notifications or NotificationStore()
        self.rng = rng or random.Random()

    # Catalog

    def create_task(self, request: TaskCreateRequest) -> tuple[TaskDetail, int]:
        with self.db.transaction() as s:
            task = Task(
                title=request.title,
                description=request.description,
                instruction=request.instruction,
                thumbnail=request.thumbnail,
                price=request.price,
                timer=request.timer,
                steps=request.steps,
                task_url=request.task_url,
                initial_likes=self.rng.randint(INITIAL_LIKES_MIN, INITIAL_LIKES_MAX),
                enabled=True,
                created_at=self.ledger.clock(),
            )
            s.add(task)
            s.flush()
            detail = TaskDetail.model_validate(task)
            user_ids = s.scalars(select(User.id)).all() if request.send_notification else []

        sent = 0
        if request.send_notification:
            message = self.rng.choice(NEW_TASK_MESSAGES).format(title=detail.title, price=detail.price)
            sent = self.notifications.broadcast_new_task(user_ids, detail.title, detail.price, message)
            logger.info("new task %s announced to %d users", detail.id, sent)
        logger.info("task created id=%s title=%r price=%s", detail.id, detail.title, detail.price)
        return detail, sent

    def update_task(self, request: TaskUpdateRequest) -> TaskDetail:
        changes = request.model_dump(exclude={"task_id"}, exclude_none=True)
        with self.db.transaction() as s:
            task = self._load_task(s, request.task_id)
            for field, value in changes.items():
                setattr(task, field, value)
            s.flush()
            return TaskDetail.model_validate(task)

    def set_enabled(self, task_id: int, enabled: bool) -> TaskDetail:
        with self.db.transaction() as s:
            task = self._load_task(s, task_id)
            task.enabled = enabled
            s.flush()
            return TaskDetail.model_validate(task)

    def delete_task(self, task_id: int) -> None:
        with self.db.transaction() as s:
            task = self._load_task(s, task_id)
            referenced = s.scalar(select(func.count(TaskSubmission.id)).where(TaskSubmission.task_id == task_id))
            if referenced:
                raise ConflictError(f"Task {task_id} has {referenced} submissions; disable it instead")
            s.execute(delete(TaskLike).where(TaskLike.task_id == task_id))
            s.delete(task)
        logger.info("task %s deleted", task_id)

    def get_task(self, task_id: int) -> TaskDetail:
        with self.db.transaction() as s:
            return TaskDetail.model_validate(self._load_task(s, task_id))

    def list_all(self) -> list[TaskDetail]:
        with self.db.transaction() as s:
            tasks = s.scalars(select(Task).order_by(Task.created_at.desc(), Task.id.desc())).all()
            return [TaskDetail.model_validate(t) for t in tasks]

    def available_for(self, user_id: int) -> list[AvailableTask]:
        """Enabled tasks the user has not completed, with like counts and the user's own like."""
        completed = select(CompletedTask.task_id).where(CompletedTask.user_id == user_id)
        with self.db.transaction() as s:
            tasks = s.scalars(
                select(Task)
                .where(Task.enabled.is_(True))
                .where(Task.id.not_in(completed))
                .order_by(Task.created_at.desc(), Task.id.desc())
            ).all()
            task_ids = [t.id for t in tasks]
            counts = dict(s.execute(
                select(TaskLike.task_id, func.count(TaskLike.id))
                .where(TaskLike.task_id.in_(task_ids))
                .group_by(TaskLike.task_id)
            ).all())
            liked = set(s.scalars(
                select(TaskLike.task_id)
                .where(TaskLike.user_id == user_id)
                .where(TaskLike.task_id.in_(task_ids))
            ).all())

            available = []
            for task in tasks:
                item = AvailableTask.model_validate(task)
                item.like_count = task.initial_likes + counts.get(task.id, 0)
                item.is_liked = task.id in liked
                available.append(item)
            return available

    def toggle_like(self, user_id: int, task_id: int) -> LikeResult:
        with self.db.transaction() as s:
            load_active_user(s, user_id)
            task = self._load_task(s, task_id)
            removed = s.execute(
                delete(TaskLike).where(TaskLike.task_id == task_id).where(TaskLike.user_id == user_id)
            )
            liked = removed.rowcount == 0
            if liked:
                s.add(TaskLike(task_id=task_id, user_id=user_id, created_at=self.ledger.clock()))
                s.flush()
            return LikeResult(task_id=task_id, liked=liked, like_count=self._like_count(s, task))

    @staticmethod
    def _like_count(session: Session, task: Task) -> int:
        likes = session.scalar(select(func.count(TaskLike.id)).where(TaskLike.task_id == task.id))
        return task.initial_likes + likes

    @staticmethod
    def _load_task(session: Session, task_id: int) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    # Submissions

    def submit(self, user_id: int, task_id: int) -> SubmissionRecord:
        with self.db.transaction() as s:
            load_active_user(s, user_id)
            task = s.get(Task, task_id)
            if task is None or not task.enabled:
                raise NotFoundError(f"Task {task_id} not found or disabled")

            done = s.scalar(
                select(CompletedTask.id)
                .where(CompletedTask.user_id == user_id)
                .where(CompletedTask.task_id == task_id)
            )
            if done is not None:
                raise ConflictError("Task already completed")

            waiting = s.scalar(
                select(TaskSubmission.id)
                .where(TaskSubmission.user_id == user_id)
                .where(TaskSubmission.task_id == task_id)
                .where(TaskSubmission.status == SubmissionStatus.PENDING.value)
            )
            if waiting is not None:
                raise ConflictError(f"Task already submitted and awaiting review (submission {waiting})")

            submission = TaskSubmission(
                user_id=user_id,
                task_id=task_id,
                status=SubmissionStatus.PENDING.value,
                submitted_at=self.ledger.clock(),
            )
            s.add(submission)
            s.flush()
            logger.info("task submitted id=%s user=%s task=%s", submission.id, user_id, task_id)
            return self._record(submission, task)

    def list_submissions(self, user_id: Optional[int] = None, status: Optional[SubmissionStatus] = None) -> list[SubmissionRecord]:
        query = select(TaskSubmission, Task).join(Task, Task.id == TaskSubmission.task_id)
        if user_id is not None:
            query = query.where(TaskSubmission.user_id == user_id)
        if status is not None:
            query = query.where(TaskSubmission.status == SubmissionStatus(status).value)
        query = query.order_by(TaskSubmission.submitted_at.desc(), TaskSubmission.id.desc())
        with self.db.transaction() as s:
            return [self._record(sub, task) for sub, task in s.execute(query).all()]

    def approve(
        self,
        pending_id: int,
        user_id: Optional[int] = None,
        task_id: Optional[int] = None,
        price: Optional[Decimal] = None,
    ) -> ApprovalResult:
        """Approve a pending submission, credit the reward and maybe pay the referrer.

        Status change, completion record, credit and referral bonus commit
        together or not at all.
        """
        with self.db.transaction() as s:
            now = self.ledger.clock()
            submission = self._transition(
                s, pending_id, status=SubmissionStatus.APPROVED.value, reviewed_at=now,
            )
            if user_id is not None and user_id != submission.user_id:
                raise InvalidStateError(f"Submission {pending_id} belongs to user {submission.user_id}, not {user_id}")
            if task_id is not None and task_id != submission.task_id:
                raise InvalidStateError(f"Submission {pending_id} is for task {submission.task_id}, not {task_id}")

            task = self._load_task(s, submission.task_id)
            amount = Decimal(str(price)) if price is not None else task.price

            completed = s.scalar(
                select(CompletedTask.id)
                .where(CompletedTask.user_id == submission.user_id)
                .where(CompletedTask.task_id == submission.task_id)
            )
            if completed is None:
                s.add(CompletedTask(user_id=submission.user_id, task_id=submission.task_id, completed_at=now))

            entry = None
            if amount > 0:
                entry = self.ledger.credit(
                    submission.user_id,
                    amount,
                    TransactionCategory.TASK_REWARD,
                    "Task completed and approved",
                    session=s,
                )
            bonus_paid = self.referrals.fire_first_task_bonus(submission.user_id, session=s)
            logger.info("submission %s approved user=%s task=%s credited=%s referral_bonus=%s",
                        pending_id, submission.user_id, submission.task_id, amount, bonus_paid)
            return ApprovalResult(
                submission=self._record(submission, task),
                credited=amount,
                referral_bonus_paid=bonus_paid,
                ledger_entry=entry,
            )

    def reject(self, pending_id: int, reason: Optional[str] = None) -> SubmissionRecord:
        with self.db.transaction() as s:
            submission = self._transition(
                s,
                pending_id,
                status=SubmissionStatus.REJECTED.value,
                reason=reason or "Task rejected",
                reviewed_at=self.ledger.clock(),
            )
            task = s.get(Task, submission.task_id)
            logger.info("submission %s rejected reason=%r", pending_id, submission.reason)
            return self._record(submission, task)

    @staticmethod
    def _transition(session: Session, pending_id: int, **values) -> TaskSubmission:
        result = session.execute(
            update(TaskSubmission)
            .where(TaskSubmission.id == pending_id)
            .where(TaskSubmission.status == SubmissionStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session="evaluate")
        )
        submission = session.get(TaskSubmission, pending_id)
        if submission is None:
            raise NotFoundError(f"Submission {pending_id} not found")
        if result.rowcount == 0:
            logger.warning("submission %s already %s, refusing to %s it again",
                           pending_id, submission.status, values["status"])
            raise AlreadyProcessedError(f"Submission {pending_id} already {submission.status}")
        return submission

    @staticmethod
    def _record(submission: TaskSubmission, task: Optional[Task]) -> SubmissionRecord:
        record = SubmissionRecord.model_validate(submission)
        if task is not None:
            record.task_title = task.title
            record.price = task.price
        return record
