"""
Subscription Reconciler
=======================

Decides whether a subscription update derived from a payment-provider
event may overwrite the user's persisted subscription snapshot.

Provider webhooks arrive unordered, duplicated and concurrently, so the
rules below are evaluated in strict precedence order:

1. Active-guard: an ``active`` snapshot is never replaced by another
   ``active`` update, whatever its period end.
2. Activation from any non-active status, and cancellation of an active
   subscription, are always allowed.
3. Freshness: otherwise the update must carry a strictly later period
   end, or be the first to carry one, or (when it carries none) change
   the status.
4. Anything else is rejected.

``decide`` performs no I/O and holds no state; persisting the result is
the caller's job (see ``app.services.subscription_service``).
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from app.models.subscription import SubscriptionStatus
from app.utils.helpers import ensure_utc, utc_now


class InvalidCandidate(ValueError):
    """Raised when a candidate update has a missing or unknown status."""

    def __init__(self, status: Any):
        self.status = status
        super().__init__(f"Invalid candidate subscription status: {status!r}")


class InvalidSnapshot(ValueError):
    """Raised when the persisted snapshot carries an unknown status."""

    def __init__(self, status: Any):
        self.status = status
        super().__init__(f"Stored subscription has an unknown status: {status!r}")


class DecisionReason(str, Enum):
    """Why a candidate was allowed or rejected (logged and audited)."""

    # Allowed
    ACTIVATION = "activation"
    CANCELLATION = "cancellation"
    FIRST_PERIOD_END = "first_period_end"
    NEWER_PERIOD_END = "newer_period_end"
    STATUS_CHANGE = "status_change"

    # Rejected
    ACTIVE_GUARD = "active_guard"
    STALE_PERIOD_END = "stale_period_end"
    NO_NEW_INFORMATION = "no_new_information"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Persisted subscription state for one user."""

    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    period_end: Optional[datetime] = None
    customer_id: Optional[str] = None
    plan: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def empty(cls) -> "SubscriptionSnapshot":
        """Snapshot for a user who has never had a provider event."""
        return cls()


@dataclass(frozen=True)
class CandidateUpdate:
    """Proposed new state derived from one incoming provider event."""

    status: Any
    period_end: Optional[datetime] = None
    customer_id: Optional[str] = None
    plan: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    """Outcome of ``decide``; ``next_snapshot`` is set only when allowed."""

    allow: bool
    reason: DecisionReason
    next_snapshot: Optional[SubscriptionSnapshot] = None


def parse_status(value: Any) -> SubscriptionStatus:
    """
    Coerce a raw status into ``SubscriptionStatus``.

    Raises:
        InvalidCandidate: If the value is empty or not a known status.
    """
    if isinstance(value, SubscriptionStatus):
        return value
    if not value or not isinstance(value, str):
        raise InvalidCandidate(value)
    try:
        return SubscriptionStatus(value)
    except ValueError:
        raise InvalidCandidate(value) from None


def _stored_status(value: Any) -> SubscriptionStatus:
    try:
        return parse_status(value)
    except InvalidCandidate:
        raise InvalidSnapshot(value) from None


def _allow(
    candidate: CandidateUpdate,
    status: SubscriptionStatus,
    period_end: Optional[datetime],
    reason: DecisionReason,
    now: datetime,
) -> Decision:
    next_snapshot = SubscriptionSnapshot(
        status=status,
        period_end=period_end,
        customer_id=candidate.customer_id,
        plan=candidate.plan,
        updated_at=now,
    )
    return Decision(allow=True, reason=reason, next_snapshot=next_snapshot)


def _reject(reason: DecisionReason) -> Decision:
    return Decision(allow=False, reason=reason)


def decide(
    current: SubscriptionSnapshot,
    candidate: CandidateUpdate,
    now: Optional[datetime] = None,
) -> Decision:
    """
    Decide whether ``candidate`` may replace ``current``.

    Args:
        current: The user's persisted snapshot (``SubscriptionSnapshot.empty()``
            if the user has never had a provider event).
        candidate: The normalized update from one provider event.
        now: Timestamp stamped on the allowed snapshot's ``updated_at``.
            Defaults to the current UTC time.

    Returns:
        A ``Decision``.  On allow, ``next_snapshot`` fully replaces status,
        period end, customer id and plan with the candidate's values.

    Raises:
        InvalidCandidate: If the candidate status is missing or unknown.
        InvalidSnapshot: If the stored status is unknown.
    """
    new_status = parse_status(candidate.status)
    current_status = _stored_status(current.status)
    current_end = ensure_utc(current.period_end)
    candidate_end = ensure_utc(candidate.period_end)
    stamp = ensure_utc(now) if now is not None else utc_now()

    # 1. Active-guard
    if (
        current_status == SubscriptionStatus.ACTIVE
        and new_status == SubscriptionStatus.ACTIVE
    ):
        return _reject(DecisionReason.ACTIVE_GUARD)

    # 2. Always-allowed transitions
    if new_status == SubscriptionStatus.ACTIVE:
        return _allow(candidate, new_status, candidate_end, DecisionReason.ACTIVATION, stamp)
    if (
        current_status == SubscriptionStatus.ACTIVE
        and new_status == SubscriptionStatus.CANCELLED
    ):
        return _allow(candidate, new_status, candidate_end, DecisionReason.CANCELLATION, stamp)

    # 3. Freshness
    if candidate_end is None:
        if new_status != current_status:
            return _allow(candidate, new_status, None, DecisionReason.STATUS_CHANGE, stamp)
        return _reject(DecisionReason.NO_NEW_INFORMATION)

    if current_end is None:
        return _allow(candidate, new_status, candidate_end, DecisionReason.FIRST_PERIOD_END, stamp)

    if candidate_end > current_end:
        return _allow(candidate, new_status, candidate_end, DecisionReason.NEWER_PERIOD_END, stamp)

    # 4. Stale or ambiguous: fail closed
    return _reject(DecisionReason.STALE_PERIOD_END)
