"""
Subscription Service
====================

Read-decide-write orchestration around the reconciler.

The store's read and write are separate calls, so two webhook deliveries
for the same user can both read the same snapshot.  Writes are
compare-and-swap on the snapshot ``version``; a lost race re-reads the
snapshot and runs ``decide`` again against it, up to
``RECONCILE_MAX_ATTEMPTS`` times.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
import uuid

from app.config import settings
from app.models.subscription import SubscriptionProvider, SubscriptionStatus
from app.services.reconciler import (
    CandidateUpdate,
    DecisionReason,
    SubscriptionSnapshot,
    decide,
    parse_status,
)
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class SubscriptionConflictError(Exception):
    """Every attempt lost the write race to a concurrent update."""

    def __init__(self, user_id: uuid.UUID, attempts: int):
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(
            f"Subscription for user {user_id} kept changing; gave up after {attempts} attempts"
        )


@dataclass(frozen=True)
class ReconcileResult:
    """
    Outcome of ``apply_update``.

    ``snapshot`` is the new state when ``applied``, otherwise the unchanged
    current state.
    """

    applied: bool
    snapshot: SubscriptionSnapshot
    reason: DecisionReason
    attempts: int = 1


def has_active_access(
    snapshot: SubscriptionSnapshot,
    now: Optional[datetime] = None,
) -> bool:
    """Check whether ``snapshot`` currently grants VPN access."""
    if snapshot.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        return False
    period_end = ensure_utc(snapshot.period_end)
    if period_end is None:
        return True
    return period_end >= (ensure_utc(now) if now is not None else utc_now())


class SubscriptionService:
    """Applies candidate updates to a user's persisted snapshot."""

    def __init__(
        self,
        store: SubscriptionStore,
        max_attempts: Optional[int] = None,
    ):
        if max_attempts is None:
            max_attempts = settings.RECONCILE_MAX_ATTEMPTS
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts

    async def get_snapshot(self, user_id: uuid.UUID) -> SubscriptionSnapshot:
        """Current snapshot, or the default ``inactive`` one."""
        stored = await self.store.load(user_id)
        return stored.snapshot if stored else SubscriptionSnapshot.empty()

    async def apply_update(
        self,
        user_id: uuid.UUID,
        candidate: CandidateUpdate,
        provider: Optional[SubscriptionProvider] = None,
        event_id: Optional[str] = None,
        event_data: Optional[dict[str, Any]] = None,
    ) -> ReconcileResult:
        """
        Reconcile ``candidate`` against the user's stored snapshot.

        Args:
            user_id: Owner of the snapshot.
            candidate: Normalized update from one provider event.
            provider: Provider the event came from (stored and audited).
            event_id: Provider event id, for the audit trail.
            event_data: Raw provider payload, for the audit trail.

        Returns:
            ReconcileResult; a rejected candidate is not an error.

        Raises:
            InvalidCandidate: If the candidate status is missing or unknown.
            InvalidSnapshot: If the stored row has an unknown status.
            SubscriptionConflictError: If every attempt lost a write race.
        """
        for attempt in range(1, self.max_attempts + 1):
            stored = await self.store.load(user_id)
            current = stored.snapshot if stored else SubscriptionSnapshot.empty()

            decision = decide(current, candidate)

            if not decision.allow:
                logger.info(
                    "Subscription update rejected: user=%s current=%s candidate=%s reason=%s event_id=%s",
                    user_id,
                    current.status.value,
                    parse_status(candidate.status).value,
                    decision.reason.value,
                    event_id,
                )
                return ReconcileResult(
                    applied=False,
                    snapshot=current,
                    reason=decision.reason,
                    attempts=attempt,
                )

            next_snapshot = decision.next_snapshot
            if stored is None:
                written = await self.store.insert(user_id, next_snapshot, provider)
            else:
                written = await self.store.compare_and_swap(
                    user_id, stored.version, next_snapshot, provider
                )

            if written:
                await self.store.record_history(
                    user_id,
                    current,
                    next_snapshot,
                    decision.reason,
                    provider,
                    event_id=event_id,
                    event_data=event_data,
                )
                logger.info(
                    "Subscription updated: user=%s %s -> %s period_end=%s reason=%s event_id=%s",
                    user_id,
                    current.status.value,
                    next_snapshot.status.value,
                    next_snapshot.period_end,
                    decision.reason.value,
                    event_id,
                )
                return ReconcileResult(
                    applied=True,
                    snapshot=next_snapshot,
                    reason=decision.reason,
                    attempts=attempt,
                )

            logger.warning(
                "Subscription write conflict: user=%s attempt=%d/%d event_id=%s",
                user_id,
                attempt,
                self.max_attempts,
                event_id,
            )

        raise SubscriptionConflictError(user_id, self.max_attempts)
