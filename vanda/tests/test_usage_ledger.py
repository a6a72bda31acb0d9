"""
Prompt quota ledger: lazy creation, consumption, rollover.

Time is passed explicitly (now_ms) so period boundaries are deterministic.
"""
import logging

import pytest
from sqlalchemy import func, select, update

from vanda.conftest import MID_MARCH_MS
from vanda.core.database import get_db_session, user_subscriptions, users
from vanda.core.errors import (
    NotAuthenticatedError,
    QuotaExceededError,
    SubscriptionNotFoundError,
    ValidationError,
)
from vanda.features.billing.period import MS_PER_DAY, compute_billing_period
from vanda.features.usage.service import (
    check_quota,
    consume_prompt,
    ensure_subscription,
    get_subscription,
)

APRIL_1_MS = compute_billing_period(MID_MARCH_MS).end


def _subscription_count(user_id: str) -> int:
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(user_subscriptions).where(user_subscriptions.c.user_id == user_id)
        ).scalar_one()


def _set_used(user_id: str, used: int):
    with get_db_session() as session:
        session.execute(
            update(user_subscriptions).where(user_subscriptions.c.user_id == user_id).values(prompts_used=used)
        )


class TestEnsureSubscription:
    def test_first_use_creates_free_plan_record(self):
        """A new user gets a free record for the current month."""
        sub_id = ensure_subscription("u1", now_ms=MID_MARCH_MS)

        record = get_subscription("u1")
        assert record.subscription_id == sub_id
        assert record.plan == "free"
        assert record.prompts_limit == 10
        assert record.prompts_used == 0
        assert record.period_start <= MID_MARCH_MS < record.period_end
        assert record.period_end == APRIL_1_MS
        assert record.created_at == MID_MARCH_MS

        quota = check_quota("u1", now_ms=MID_MARCH_MS)
        assert quota.has_quota is True
        assert quota.remaining == 10
        assert quota.limit == 10
        assert quota.used == 0
        assert quota.plan == "free"

    def test_creates_user_row(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        with get_db_session() as session:
            row = session.execute(select(users).where(users.c.user_id == "u1")).first()
        assert row is not None

    def test_idempotent_within_period(self):
        first = ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 3, now_ms=MID_MARCH_MS)
        second = ensure_subscription("u1", now_ms=MID_MARCH_MS + 1000)

        assert first == second
        assert _subscription_count("u1") == 1
        assert get_subscription("u1").prompts_used == 3

    def test_rolls_over_stale_record(self):
        """Ensure after month end resets usage and advances the period."""
        sub_id = ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 10, now_ms=MID_MARCH_MS)

        later = APRIL_1_MS + 2 * MS_PER_DAY
        assert ensure_subscription("u1", now_ms=later) == sub_id

        record = get_subscription("u1")
        assert record.prompts_used == 0
        assert record.period_start == APRIL_1_MS
        assert record.period_start <= later < record.period_end
        assert check_quota("u1", now_ms=later).remaining == 10

    def test_rollover_keeps_plan_and_limit(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        with get_db_session() as session:
            session.execute(
                update(user_subscriptions)
                .where(user_subscriptions.c.user_id == "u1")
                .values(plan="pro", prompts_limit=100, prompts_used=42)
            )

        ensure_subscription("u1", now_ms=APRIL_1_MS)
        record = get_subscription("u1")
        assert record.plan == "pro"
        assert record.prompts_limit == 100
        assert record.prompts_used == 0

    def test_rollover_logged(self, caplog):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        with caplog.at_level(logging.INFO, logger="vanda"):
            ensure_subscription("u1", now_ms=APRIL_1_MS)
        assert any(r.getMessage() == "quota.rollover" for r in caplog.records)

    def test_requires_identity(self):
        with pytest.raises(NotAuthenticatedError):
            ensure_subscription(None)
        with pytest.raises(NotAuthenticatedError):
            ensure_subscription("")


class TestCheckQuota:
    def test_anonymous_returns_none(self):
        assert check_quota(None) is None

    def test_missing_record_shows_defaults_without_writing(self):
        quota = check_quota("ghost", now_ms=MID_MARCH_MS)
        assert quota.remaining == 10
        assert quota.used == 0
        assert quota.plan == "free"
        assert quota.period_end == APRIL_1_MS
        assert get_subscription("ghost") is None

    def test_stale_record_predicts_rollover_without_writing(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 7, now_ms=MID_MARCH_MS)

        later = APRIL_1_MS + 5
        quota = check_quota("u1", now_ms=later)
        assert quota.remaining == 10
        assert quota.used == 0
        assert quota.period_end == compute_billing_period(later).end

        stored = get_subscription("u1")
        assert stored.prompts_used == 7
        assert stored.period_end == APRIL_1_MS

    def test_exhausted_has_no_quota(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 10, now_ms=MID_MARCH_MS)
        quota = check_quota("u1", now_ms=MID_MARCH_MS)
        assert quota.has_quota is False
        assert quota.remaining == 0

    def test_over_limit_reports_zero_remaining(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        _set_used("u1", 15)
        quota = check_quota("u1", now_ms=MID_MARCH_MS)
        assert quota.remaining == 0
        assert quota.has_quota is False


class TestConsumePrompt:
    def test_single_consume(self):
        """Used goes 3 -> 4, remaining 6."""
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        _set_used("u1", 3)

        result = consume_prompt("u1", now_ms=MID_MARCH_MS)
        assert result.remaining == 6
        assert get_subscription("u1").prompts_used == 4

    def test_multi_unit_consume(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        assert consume_prompt("u1", 2, now_ms=MID_MARCH_MS).remaining == 8

    def test_exact_limit_allowed(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        _set_used("u1", 8)
        assert consume_prompt("u1", 2, now_ms=MID_MARCH_MS).remaining == 0

    def test_exceeding_limit_changes_nothing(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        _set_used("u1", 9)

        with pytest.raises(QuotaExceededError) as exc_info:
            consume_prompt("u1", 2, now_ms=MID_MARCH_MS)

        err = exc_info.value
        assert err.remaining == 1
        assert err.requested == 2
        assert err.status_code == 403
        assert "1 prompts remaining" in err.message
        assert get_subscription("u1").prompts_used == 9

    def test_exhausted_rejects(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 10, now_ms=MID_MARCH_MS)
        with pytest.raises(QuotaExceededError):
            consume_prompt("u1", now_ms=MID_MARCH_MS)
        assert get_subscription("u1").prompts_used == 10

    def test_stale_record_rolls_over_before_consuming(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 10, now_ms=MID_MARCH_MS)

        later = APRIL_1_MS + MS_PER_DAY
        result = consume_prompt("u1", now_ms=later)
        assert result.remaining == 9

        record = get_subscription("u1")
        assert record.prompts_used == 1
        assert record.period_start <= later < record.period_end

    def test_failed_consume_after_rollover_leaves_record_untouched(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 4, now_ms=MID_MARCH_MS)

        with pytest.raises(QuotaExceededError):
            consume_prompt("u1", 11, now_ms=APRIL_1_MS)

        record = get_subscription("u1")
        assert record.prompts_used == 4
        assert record.period_end == APRIL_1_MS

    def test_without_subscription_is_integration_error(self):
        with pytest.raises(SubscriptionNotFoundError):
            consume_prompt("nobody", now_ms=MID_MARCH_MS)

    @pytest.mark.parametrize("count", [0, -1, 1.5, True, "2"])
    def test_rejects_non_positive_or_non_integer_count(self, count):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        with pytest.raises(ValidationError):
            consume_prompt("u1", count, now_ms=MID_MARCH_MS)
        assert get_subscription("u1").prompts_used == 0

    def test_requires_identity(self):
        with pytest.raises(NotAuthenticatedError):
            consume_prompt(None)

    def test_invariant_holds_across_mixed_counts(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        for count in [3, 4, 5, 2, 1, 1]:
            try:
                consume_prompt("u1", count, now_ms=MID_MARCH_MS)
            except QuotaExceededError:
                pass
            record = get_subscription("u1")
            assert 0 <= record.prompts_used <= record.prompts_limit
        assert get_subscription("u1").prompts_used == 10

    def test_consume_logged_with_remaining(self, caplog):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        with caplog.at_level(logging.INFO, logger="vanda"):
            consume_prompt("u1", 2, now_ms=MID_MARCH_MS)
        records = [r for r in caplog.records if r.getMessage() == "quota.consumed"]
        assert records
        assert records[0].user_id == "u1"
        assert records[0].remaining == "8"
