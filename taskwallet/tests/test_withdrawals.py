"""
Tests for withdrawal requests, approval and the one-way UPI lock.
"""

import pytest
from decimal import Decimal

from taskwallet.errors import (
    AlreadyProcessedError,
    BelowMinimumError,
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
)
from taskwallet.models import BanRequest, TransactionCategory, WithdrawalRequest, WithdrawalStatus


def upi_request(amount, upi="asha@okbank"):
    return WithdrawalRequest(amount=Decimal(amount), payment_method="UPI", payment_details=upi)


class TestRequest:

    def test_below_minimum(self, services, make_user):
        user = make_user("arun", balance="500")

        with pytest.raises(BelowMinimumError):
            services.withdrawals.request(user.id, upi_request("49.99"))

        assert services.withdrawals.list_for_user(user.id) == []

    def test_exactly_minimum_is_allowed(self, services, make_user):
        user = make_user("bhavna", balance="50")

        record = services.withdrawals.request(user.id, upi_request("50"))

        assert record.status == WithdrawalStatus.PENDING
        assert record.amount == Decimal("50")

    def test_request_does_not_touch_balance(self, services, make_user):
        user = make_user("chirag", balance="80")

        services.withdrawals.request(user.id, upi_request("60"))

        balance = services.ledger.get_balance(user.id)
        assert balance.current_balance == Decimal("80")
        assert balance.pending_withdrawals == Decimal("60")
        assert balance.available_balance == Decimal("20")

    def test_insufficient_balance(self, services, make_user):
        user = make_user("divya", balance="40")

        with pytest.raises(InsufficientBalanceError):
            services.withdrawals.request(user.id, upi_request("50"))

    def test_pending_withdrawals_reduce_available_funds(self, services, make_user):
        user = make_user("ekta", balance="120")
        services.withdrawals.request(user.id, upi_request("70"))

        with pytest.raises(InsufficientBalanceError) as exc_info:
            services.withdrawals.request(user.id, upi_request("60"))

        assert "pending withdrawals" in str(exc_info.value)
        assert len(services.withdrawals.list_for_user(user.id)) == 1

    def test_banned_user_cannot_withdraw(self, services, make_user):
        user = make_user("feroz", balance="100")
        services.users.ban(BanRequest(user_id=user.id, reason="multiple accounts"))

        with pytest.raises(ForbiddenError):
            services.withdrawals.request(user.id, upi_request("50"))


class TestApprove:

    def test_first_approval_debits_and_locks_upi(self, services, make_user):
        user = make_user("gauri", balance="100")
        withdrawal = services.withdrawals.request(user.id, upi_request("50", upi="x@y"))

        result = services.withdrawals.approve(withdrawal.id)

        assert result.withdrawal.status == WithdrawalStatus.APPROVED
        assert result.withdrawal.processed_at is not None
        assert result.withdrawal.admin_notes == "Approved by admin"
        assert result.upi_locked_now is True
        assert result.registered_upi == "x@y"
        assert result.ledger_entry.category == TransactionCategory.WITHDRAWAL
        assert result.ledger_entry.signed_amount == Decimal("-50")

        profile = services.users.get_user(user.id)
        assert profile.balance == Decimal("50")
        assert profile.upi_locked is True
        assert profile.registered_upi == "x@y"

    def test_later_approval_keeps_registered_upi(self, services, make_user):
        user = make_user("harsh", balance="200")
        first = services.withdrawals.request(user.id, upi_request("50", upi="x@y"))
        services.withdrawals.approve(first.id)
        second = services.withdrawals.request(user.id, upi_request("60", upi="other@bank"))

        result = services.withdrawals.approve(second.id)

        assert result.upi_locked_now is False
        assert result.registered_upi == "x@y"
        profile = services.users.get_user(user.id)
        assert profile.registered_upi == "x@y"
        assert profile.balance == Decimal("90")

    def test_double_approve_debits_once(self, services, make_user):
        user = make_user("ira", balance="100")
        withdrawal = services.withdrawals.request(user.id, upi_request("50"))
        services.withdrawals.approve(withdrawal.id)

        with pytest.raises(AlreadyProcessedError):
            services.withdrawals.approve(withdrawal.id)

        assert services.users.get_user(user.id).balance == Decimal("50")
        debits = [
            e for e in services.ledger.get_ledger_history(user.id).entries
            if e.category == TransactionCategory.WITHDRAWAL
        ]
        assert len(debits) == 1

    def test_unknown_withdrawal(self, services):
        with pytest.raises(NotFoundError):
            services.withdrawals.approve(777)
        with pytest.raises(NotFoundError):
            services.withdrawals.reject(777)


class TestReject:

    def test_reject_has_no_balance_effect(self, services, make_user):
        user = make_user("jai", balance="100")
        withdrawal = services.withdrawals.request(user.id, upi_request("50"))

        record = services.withdrawals.reject(withdrawal.id, "UPI handle invalid")

        assert record.status == WithdrawalStatus.REJECTED
        assert record.admin_notes == "UPI handle invalid"
        profile = services.users.get_user(user.id)
        assert profile.balance == Decimal("100")
        assert profile.upi_locked is False
        assert services.ledger.get_balance(user.id).pending_withdrawals == Decimal("0")

    def test_approve_after_reject_is_refused(self, services, make_user):
        user = make_user("kavya", balance="100")
        withdrawal = services.withdrawals.request(user.id, upi_request("50"))
        services.withdrawals.reject(withdrawal.id)

        with pytest.raises(AlreadyProcessedError):
            services.withdrawals.approve(withdrawal.id)

        assert services.users.get_user(user.id).balance == Decimal("100")


class TestListing:

    def test_pending_queue_is_oldest_first(self, services, clock, make_user):
        a = make_user("lokesh", balance="100")
        b = make_user("maya", balance="100")
        first = services.withdrawals.request(a.id, upi_request("50"))
        clock.advance(minutes=5)
        second = services.withdrawals.request(b.id, upi_request("60"))
        clock.advance(minutes=5)
        services.withdrawals.reject(services.withdrawals.request(a.id, upi_request("50")).id)

        pending = services.withdrawals.list_all(WithdrawalStatus.PENDING)

        assert [w.id for w in pending] == [first.id, second.id]
        assert len(services.withdrawals.list_all()) == 3
