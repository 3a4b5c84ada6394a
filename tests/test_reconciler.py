"""
Subscription Reconciler Tests
=============================

Tests for ``decide``:
- Active-guard and the always-allowed transitions
- Period-end freshness for same-status updates
- Fail-closed rejections
- Full replacement of the snapshot on allow
- Invalid candidate statuses
- Unknown stored statuses
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.models.subscription import SubscriptionStatus
from app.services.reconciler import (
    CandidateUpdate,
    DecisionReason,
    InvalidCandidate,
    InvalidSnapshot,
    SubscriptionSnapshot,
    decide,
    parse_status,
)

D = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
NOW = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)

ALL_STATUSES = list(SubscriptionStatus)
NON_ACTIVE = [s for s in SubscriptionStatus if s != SubscriptionStatus.ACTIVE]
PERIOD_ENDS = [None, D - timedelta(days=30), D, D + timedelta(days=365)]


def snapshot(status, period_end=None, **kwargs) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(status=SubscriptionStatus(status), period_end=period_end, **kwargs)


def candidate(status, period_end=None, **kwargs) -> CandidateUpdate:
    return CandidateUpdate(status=status, period_end=period_end, **kwargs)


class TestActiveGuard:
    """An active snapshot is never replaced by another active update."""

    @pytest.mark.parametrize("current_end", PERIOD_ENDS)
    @pytest.mark.parametrize("candidate_end", PERIOD_ENDS)
    def test_active_never_replaced_by_active(self, current_end, candidate_end):
        decision = decide(snapshot("active", current_end), candidate("active", candidate_end), now=NOW)

        assert decision.allow is False
        assert decision.reason == DecisionReason.ACTIVE_GUARD
        assert decision.next_snapshot is None

    def test_older_duplicate_rejected(self):
        """Out-of-order delivery of an older renewal."""
        decision = decide(
            snapshot("active", D + timedelta(days=30)),
            candidate("active", D + timedelta(days=15)),
            now=NOW,
        )
        assert decision.allow is False

    def test_newer_active_still_rejected(self):
        """Even a strictly newer period end cannot replace active with active."""
        decision = decide(
            snapshot("active", D + timedelta(days=30)),
            candidate("active", D + timedelta(days=90)),
            now=NOW,
        )
        assert decision.allow is False
        assert decision.reason == DecisionReason.ACTIVE_GUARD


class TestAlwaysAllowed:
    """Activation and cancellation of an active subscription always apply."""

    @pytest.mark.parametrize("current_status", NON_ACTIVE)
    @pytest.mark.parametrize("current_end", PERIOD_ENDS)
    @pytest.mark.parametrize("candidate_end", PERIOD_ENDS)
    def test_activation_from_any_non_active_status(self, current_status, current_end, candidate_end):
        decision = decide(
            snapshot(current_status, current_end),
            candidate("active", candidate_end),
            now=NOW,
        )

        assert decision.allow is True
        assert decision.reason == DecisionReason.ACTIVATION
        assert decision.next_snapshot.status == SubscriptionStatus.ACTIVE
        assert decision.next_snapshot.period_end == candidate_end

    @pytest.mark.parametrize("current_end", PERIOD_ENDS)
    @pytest.mark.parametrize("candidate_end", PERIOD_ENDS)
    def test_cancellation_of_active(self, current_end, candidate_end):
        decision = decide(
            snapshot("active", current_end),
            candidate("cancelled", candidate_end),
            now=NOW,
        )

        assert decision.allow is True
        assert decision.reason == DecisionReason.CANCELLATION
        assert decision.next_snapshot.status == SubscriptionStatus.CANCELLED

    def test_first_activation(self):
        decision = decide(
            SubscriptionSnapshot.empty(),
            candidate("active", D + timedelta(days=30)),
            now=NOW,
        )

        assert decision.allow is True
        assert decision.next_snapshot.status == SubscriptionStatus.ACTIVE
        assert decision.next_snapshot.period_end == D + timedelta(days=30)

    def test_reactivation_after_cancellation(self):
        decision = decide(
            snapshot("cancelled", D),
            candidate("active", D + timedelta(days=365)),
            now=NOW,
        )
        assert decision.allow is True


class TestFreshness:
    """Same-status and non-activating updates need a newer period end."""

    @pytest.mark.parametrize("status", NON_ACTIVE)
    def test_strictly_newer_period_end_allowed(self, status):
        decision = decide(
            snapshot(status, D),
            candidate(status.value, D + timedelta(seconds=1)),
            now=NOW,
        )
        assert decision.allow is True
        assert decision.reason == DecisionReason.NEWER_PERIOD_END

    @pytest.mark.parametrize("status", NON_ACTIVE)
    @pytest.mark.parametrize("candidate_end", [D, D - timedelta(days=1)])
    def test_equal_or_older_period_end_rejected(self, status, candidate_end):
        decision = decide(snapshot(status, D), candidate(status.value, candidate_end), now=NOW)

        assert decision.allow is False
        assert decision.reason == DecisionReason.STALE_PERIOD_END

    def test_first_period_end_allowed(self):
        decision = decide(
            snapshot("past_due", None),
            candidate("past_due", D),
            now=NOW,
        )
        assert decision.allow is True
        assert decision.reason == DecisionReason.FIRST_PERIOD_END

    def test_status_change_without_period_end_allowed(self):
        decision = decide(snapshot("trialing", D), candidate("past_due", None), now=NOW)

        assert decision.allow is True
        assert decision.reason == DecisionReason.STATUS_CHANGE
        assert decision.next_snapshot.period_end is None

    def test_same_status_without_period_end_rejected(self):
        """No date and no status change carries no new information."""
        decision = decide(snapshot("cancelled", D), candidate("cancelled", None), now=NOW)

        assert decision.allow is False
        assert decision.reason == DecisionReason.NO_NEW_INFORMATION

    def test_inactive_to_inactive_without_dates_rejected(self):
        decision = decide(SubscriptionSnapshot.empty(), candidate("inactive", None), now=NOW)
        assert decision.allow is False

    def test_status_change_with_older_period_end_rejected(self):
        decision = decide(
            snapshot("past_due", D),
            candidate("cancelled", D - timedelta(days=1)),
            now=NOW,
        )
        assert decision.allow is False
        assert decision.reason == DecisionReason.STALE_PERIOD_END

    def test_naive_period_ends_compared_as_utc(self):
        naive = D.replace(tzinfo=None)
        decision = decide(
            snapshot("past_due", D),
            candidate("past_due", naive + timedelta(hours=1)),
            now=NOW,
        )
        assert decision.allow is True
        assert decision.next_snapshot.period_end.tzinfo is not None


class TestNextSnapshot:
    """Allowed decisions fully replace the snapshot."""

    def test_replaces_every_field_and_stamps_now(self):
        current = snapshot(
            "cancelled",
            D,
            customer_id="cus_old",
            plan="monthly",
            updated_at=D - timedelta(days=10),
        )
        decision = decide(
            current,
            candidate("active", D + timedelta(days=30), customer_id="cus_new", plan=None),
            now=NOW,
        )

        assert decision.next_snapshot == SubscriptionSnapshot(
            status=SubscriptionStatus.ACTIVE,
            period_end=D + timedelta(days=30),
            customer_id="cus_new",
            plan=None,
            updated_at=NOW,
        )

    def test_current_is_not_mutated(self):
        current = snapshot("active", D + timedelta(days=30))
        before = current

        decide(current, candidate("cancelled", D), now=NOW)

        assert current == before

    def test_rejection_is_repeatable(self):
        current = snapshot("active", D + timedelta(days=30))
        update = candidate("active", D + timedelta(days=15))

        first = decide(current, update, now=NOW)
        second = decide(current, update, now=NOW)

        assert first == second
        assert first.allow is False

    def test_now_defaults_to_current_time(self):
        decision = decide(SubscriptionSnapshot.empty(), candidate("active", None))

        stamp = decision.next_snapshot.updated_at
        assert stamp is not None
        assert abs(datetime.now(timezone.utc) - stamp) < timedelta(minutes=1)


class TestInvalidCandidate:
    """Only a missing or unknown candidate status is an error."""

    @pytest.mark.parametrize("status", [None, "", "canceled", "expired", "ACTIVE", 1])
    def test_unknown_status_raises(self, status):
        with pytest.raises(InvalidCandidate) as exc_info:
            decide(SubscriptionSnapshot.empty(), candidate(status, D), now=NOW)

        assert exc_info.value.status == status

    def test_invalid_candidate_is_value_error(self):
        with pytest.raises(ValueError):
            decide(SubscriptionSnapshot.empty(), candidate("bogus"), now=NOW)

    def test_missing_period_end_is_not_an_error(self):
        decision = decide(snapshot("active", D), candidate("cancelled", None), now=NOW)
        assert decision.allow is True

    def test_parse_status_accepts_enum_and_value(self):
        assert parse_status(SubscriptionStatus.TRIALING) == SubscriptionStatus.TRIALING
        assert parse_status("past_due") == SubscriptionStatus.PAST_DUE


class TestInvalidSnapshot:
    """A corrupt stored status is reported against the snapshot, not the candidate."""

    def test_unknown_stored_status_raises_invalid_snapshot(self):
        corrupt = SubscriptionSnapshot(status="expired", period_end=D)

        with pytest.raises(InvalidSnapshot) as exc_info:
            decide(corrupt, candidate("active", D + timedelta(days=30)), now=NOW)

        assert exc_info.value.status == "expired"
        assert not isinstance(exc_info.value, InvalidCandidate)

    def test_invalid_candidate_checked_first(self):
        corrupt = SubscriptionSnapshot(status="expired", period_end=D)

        with pytest.raises(InvalidCandidate):
            decide(corrupt, candidate("bogus"), now=NOW)

    def test_stored_status_as_plain_string_is_accepted(self):
        decision = decide(SubscriptionSnapshot(status="active", period_end=D), candidate("cancelled"), now=NOW)

        assert decision.allow is True
        assert decision.reason == DecisionReason.CANCELLATION


@pytest.mark.parametrize("current_status", ALL_STATUSES)
@pytest.mark.parametrize("candidate_status", ALL_STATUSES)
def test_allowed_decisions_always_carry_next_snapshot(current_status, candidate_status):
    decision = decide(
        snapshot(current_status, D),
        candidate(candidate_status.value, D + timedelta(days=1)),
        now=NOW,
    )

    if decision.allow:
        assert decision.next_snapshot.status == candidate_status
    else:
        assert decision.next_snapshot is None
