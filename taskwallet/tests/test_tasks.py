"""
Tests for task submissions and their review state machine.
"""

import pytest
from decimal import Decimal
from pydantic import ValidationError
from sqlalchemy import func, select

from taskwallet.config import INITIAL_LIKES_MAX, INITIAL_LIKES_MIN
from taskwallet.errors import (
    AlreadyProcessedError,
    ConflictError,
    ForbiddenError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
)
from taskwallet.models import BanRequest, SubmissionStatus, TaskCreateRequest, TaskUpdateRequest
from taskwallet.tables import TaskLike


class TestSubmit:

    def test_submit_creates_pending_submission(self, services, make_user, make_task):
        user = make_user("anu")
        task = make_task(price="20")

        submission = services.tasks.submit(user.id, task.id)

        assert submission.status == SubmissionStatus.PENDING
        assert submission.task_title == task.title
        assert submission.price == Decimal("20")
        assert services.users.get_user(user.id).balance == Decimal("0")

    def test_unknown_task(self, services, make_user):
        user = make_user("bala")

        with pytest.raises(NotFoundError):
            services.tasks.submit(user.id, 404)

    def test_disabled_task(self, services, make_user, make_task):
        user = make_user("cheta")
        task = make_task()
        services.tasks.set_enabled(task.id, False)

        with pytest.raises(NotFoundError):
            services.tasks.submit(user.id, task.id)

    def test_banned_user_cannot_submit(self, services, make_user, make_task):
        user = make_user("dinesh")
        task = make_task()
        services.users.ban(BanRequest(user_id=user.id, reason="spam"))

        with pytest.raises(ForbiddenError):
            services.tasks.submit(user.id, task.id)

    def test_one_pending_submission_per_user_and_task(self, services, make_user, make_task):
        """Duplicate pending submissions are refused rather than queued twice."""
        user = make_user("esha")
        task = make_task()
        services.tasks.submit(user.id, task.id)

        with pytest.raises(ConflictError):
            services.tasks.submit(user.id, task.id)

        assert len(services.tasks.list_submissions(user_id=user.id)) == 1

    def test_resubmit_allowed_after_rejection(self, services, make_user, make_task):
        user = make_user("faiz")
        task = make_task()
        first = services.tasks.submit(user.id, task.id)
        services.tasks.reject(first.id, "wrong screenshot")

        second = services.tasks.submit(user.id, task.id)

        assert second.id != first.id
        assert second.status == SubmissionStatus.PENDING

    def test_completed_task_cannot_be_resubmitted(self, services, make_user, make_task):
        user = make_user("gopal")
        task = make_task()
        services.tasks.approve(services.tasks.submit(user.id, task.id).id)

        with pytest.raises(ConflictError):
            services.tasks.submit(user.id, task.id)

    def test_completed_task_leaves_available_list(self, services, make_user, make_task):
        user = make_user("hema")
        done = make_task(title="Done")
        open_task = make_task(title="Open")
        disabled = make_task(title="Disabled")
        services.tasks.set_enabled(disabled.id, False)
        services.tasks.approve(services.tasks.submit(user.id, done.id).id)

        available = services.tasks.available_for(user.id)

        assert [t.id for t in available] == [open_task.id]


class TestApprove:

    def test_approve_credits_price_and_records_completion(self, services, make_user, make_task):
        user = make_user("indu")
        task = make_task(price="20")
        submission = services.tasks.submit(user.id, task.id)

        result = services.tasks.approve(submission.id, user_id=user.id, task_id=task.id)

        assert result.submission.status == SubmissionStatus.APPROVED
        assert result.submission.reviewed_at is not None
        assert result.credited == Decimal("20")
        assert result.ledger_entry.category.value == "task_reward"
        assert services.users.get_user(user.id).balance == Decimal("20")
        assert services.users.overview(user.id).stats.total_tasks_completed == 1

    def test_price_override(self, services, make_user, make_task):
        user = make_user("jatin")
        task = make_task(price="20")
        submission = services.tasks.submit(user.id, task.id)

        result = services.tasks.approve(submission.id, price=Decimal("25"))

        assert result.credited == Decimal("25")
        assert services.users.get_user(user.id).balance == Decimal("25")

    def test_sub_paise_override_leaves_submission_pending(self, services, make_user, make_task):
        user = make_user("jaya")
        task = make_task(price="20")
        submission = services.tasks.submit(user.id, task.id)

        with pytest.raises(InvalidAmountError):
            services.tasks.approve(submission.id, price=Decimal("1.005"))

        [pending] = services.tasks.list_submissions(user_id=user.id)
        assert pending.status == SubmissionStatus.PENDING
        assert services.users.get_user(user.id).balance == Decimal("0")
        assert services.ledger.audit() == {}

    def test_double_approve_is_refused(self, services, make_user, make_task):
        user = make_user("komal")
        task = make_task(price="20")
        submission = services.tasks.submit(user.id, task.id)
        services.tasks.approve(submission.id)
        entries_before = services.ledger.get_balance(user.id).total_entries

        with pytest.raises(InvalidStateError):
            services.tasks.approve(submission.id)

        assert services.ledger.get_balance(user.id).total_entries == entries_before
        assert services.users.get_user(user.id).balance == Decimal("20")

    def test_approve_after_reject_is_refused(self, services, make_user, make_task):
        user = make_user("lalit")
        task = make_task()
        submission = services.tasks.submit(user.id, task.id)
        services.tasks.reject(submission.id, "not done")

        with pytest.raises(AlreadyProcessedError):
            services.tasks.approve(submission.id)

        assert services.ledger.get_balance(user.id).total_entries == 0

    def test_unknown_submission(self, services):
        with pytest.raises(NotFoundError):
            services.tasks.approve(12345)

    def test_mismatched_user_rolls_back(self, services, make_user, make_task):
        user = make_user("mira")
        other = make_user("neel")
        task = make_task()
        submission = services.tasks.submit(user.id, task.id)

        with pytest.raises(InvalidStateError):
            services.tasks.approve(submission.id, user_id=other.id)

        pending = services.tasks.list_submissions(user_id=user.id)
        assert pending[0].status == SubmissionStatus.PENDING
        assert services.users.get_user(user.id).balance == Decimal("0")

    def test_zero_price_task_completes_without_ledger_entry(self, services, make_user, make_task):
        user = make_user("ojas")
        task = make_task(price="0")

        result = services.tasks.approve(services.tasks.submit(user.id, task.id).id)

        assert result.ledger_entry is None
        assert services.tasks.available_for(user.id) == []


class TestReject:

    def test_reject_sets_reason_without_balance_effect(self, services, make_user, make_task):
        user = make_user("pooja")
        task = make_task()
        submission = services.tasks.submit(user.id, task.id)

        record = services.tasks.reject(submission.id, "Screenshot missing")

        assert record.status == SubmissionStatus.REJECTED
        assert record.reason == "Screenshot missing"
        assert record.reviewed_at is not None
        assert services.ledger.get_balance(user.id).total_entries == 0

    def test_default_reason(self, services, make_user, make_task):
        user = make_user("quinn")
        task = make_task()

        record = services.tasks.reject(services.tasks.submit(user.id, task.id).id)

        assert record.reason == "Task rejected"

    def test_double_reject_is_refused(self, services, make_user, make_task):
        user = make_user("rohan")
        task = make_task()
        submission = services.tasks.submit(user.id, task.id)
        services.tasks.reject(submission.id, "first")

        with pytest.raises(InvalidStateError):
            services.tasks.reject(submission.id, "second")

        assert services.tasks.list_submissions(user_id=user.id)[0].reason == "first"

    def test_reject_after_approve_keeps_payout(self, services, make_user, make_task):
        user = make_user("sana")
        task = make_task(price="20")
        submission = services.tasks.submit(user.id, task.id)
        services.tasks.approve(submission.id)

        with pytest.raises(InvalidStateError):
            services.tasks.reject(submission.id)

        assert services.tasks.list_submissions(user_id=user.id)[0].status == SubmissionStatus.APPROVED


class TestCatalog:

    def test_update_changes_only_given_fields(self, services, make_task):
        task = make_task(price="20", title="Old")

        updated = services.tasks.update_task(TaskUpdateRequest(task_id=task.id, price=Decimal("30")))

        assert updated.price == Decimal("30")
        assert updated.title == "Old"

    def test_delete_unused_task(self, services, make_task):
        task = make_task()

        services.tasks.delete_task(task.id)

        with pytest.raises(NotFoundError):
            services.tasks.get_task(task.id)

    def test_delete_removes_likes(self, services, db, make_user, make_task):
        user = make_user("tara")
        task = make_task()
        services.tasks.toggle_like(user.id, task.id)

        services.tasks.delete_task(task.id)

        with db.transaction() as s:
            assert s.scalar(select(func.count(TaskLike.id))) == 0

    def test_price_keeps_two_places(self):
        with pytest.raises(ValidationError):
            TaskCreateRequest(title="T", description="d", instruction="i", price="1.999")

    def test_delete_refused_once_submitted(self, services, make_user, make_task):
        user = make_user("tanvi")
        task = make_task()
        services.tasks.submit(user.id, task.id)

        with pytest.raises(ConflictError):
            services.tasks.delete_task(task.id)

    def test_admin_pending_queue_filter(self, services, make_user, make_task):
        user = make_user("uday")
        a = make_task(title="A")
        b = make_task(title="B")
        services.tasks.submit(user.id, a.id)
        services.tasks.approve(services.tasks.submit(user.id, b.id).id)

        pending = services.tasks.list_submissions(status=SubmissionStatus.PENDING)

        assert [p.task_id for p in pending] == [a.id]


class TestLikes:

    def test_new_task_gets_seeded_like_count(self, make_task):
        task = make_task()

        assert INITIAL_LIKES_MIN <= task.initial_likes <= INITIAL_LIKES_MAX

    def test_toggle_like_on_and_off(self, services, make_user, make_task):
        user = make_user("vani")
        task = make_task()

        liked = services.tasks.toggle_like(user.id, task.id)
        unliked = services.tasks.toggle_like(user.id, task.id)

        assert liked.liked is True
        assert liked.like_count == task.initial_likes + 1
        assert unliked.liked is False
        assert unliked.like_count == task.initial_likes

    def test_available_list_shows_likes(self, services, make_user, make_task):
        fan = make_user("varun")
        other = make_user("vidya")
        liked_task = make_task(title="Liked")
        plain_task = make_task(title="Plain")
        services.tasks.toggle_like(fan.id, liked_task.id)
        services.tasks.toggle_like(other.id, liked_task.id)

        by_id = {t.id: t for t in services.tasks.available_for(fan.id)}

        assert by_id[liked_task.id].like_count == liked_task.initial_likes + 2
        assert by_id[liked_task.id].is_liked is True
        assert by_id[plain_task.id].like_count == plain_task.initial_likes
        assert by_id[plain_task.id].is_liked is False
        assert services.tasks.available_for(make_user("veer").id)[0].is_liked is False

    def test_like_unknown_task(self, services, make_user):
        user = make_user("vikas")

        with pytest.raises(NotFoundError):
            services.tasks.toggle_like(user.id, 9999)

    def test_banned_user_cannot_like(self, services, make_user, make_task):
        user = make_user("vinay")
        task = make_task()
        services.users.ban(BanRequest(user_id=user.id, reason="spam"))

        with pytest.raises(ForbiddenError):
            services.tasks.toggle_like(user.id, task.id)
