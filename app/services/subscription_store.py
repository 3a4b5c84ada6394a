"""
Subscription Store
==================

Async SQLAlchemy access to users and their subscription snapshot.

Every call is atomic on its own, but calls do not compose into one
atomic unit: the snapshot read and the snapshot write are separate
statements.  Writes therefore carry the ``version`` that was read and
report whether they won, so the caller can re-read and re-decide.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import (
    Subscription,
    SubscriptionHistory,
    SubscriptionProvider,
)
from app.models.user import User
from app.services.reconciler import DecisionReason, SubscriptionSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredSubscription:
    """A snapshot together with the version it was read at."""

    snapshot: SubscriptionSnapshot
    version: int
    provider: Optional[SubscriptionProvider] = None


@dataclass(frozen=True)
class BillingContact:
    """What checkout needs to know about a user."""

    email: Optional[str]
    stripe_customer_id: Optional[str]


class SubscriptionStore:
    """Database operations used by the reconciliation flow."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -------------------------------------------------------------------------
    # User lookups
    # -------------------------------------------------------------------------

    async def user_exists(self, user_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(User.user_id).where(User.user_id == user_id)
        )
        return result.scalar_one_or_none() is not None

    async def get_billing_contact(self, user_id: uuid.UUID) -> Optional[BillingContact]:
        result = await self.db.execute(
            select(User.email, User.stripe_customer_id).where(User.user_id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return BillingContact(email=row.email, stripe_customer_id=row.stripe_customer_id)

    async def find_user_id_by_stripe_customer(self, customer_id: str) -> Optional[uuid.UUID]:
        result = await self.db.execute(
            select(User.user_id).where(User.stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def find_user_id_by_email(self, email: str) -> Optional[uuid.UUID]:
        result = await self.db.execute(
            select(User.user_id).where(User.email == email.lower())
        )
        return result.scalar_one_or_none()

    async def find_user_id_by_firebase_uid(self, firebase_uid: str) -> Optional[uuid.UUID]:
        result = await self.db.execute(
            select(User.user_id).where(User.firebase_uid == firebase_uid)
        )
        return result.scalar_one_or_none()

    async def find_user_id_by_subscription_customer(
        self,
        customer_id: str,
    ) -> Optional[uuid.UUID]:
        """Find the user whose snapshot derives from ``customer_id``."""
        result = await self.db.execute(
            select(Subscription.user_id)
            .where(Subscription.customer_id == customer_id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def link_stripe_customer(self, user_id: uuid.UUID, customer_id: str) -> None:
        """Remember which Stripe customer belongs to ``user_id``."""
        await self.db.execute(
            update(User)
            .where(User.user_id == user_id)
            .values(stripe_customer_id=customer_id)
        )
        logger.info("Linked Stripe customer %s to user=%s", customer_id, user_id)

    # -------------------------------------------------------------------------
    # Snapshot read / write
    # -------------------------------------------------------------------------

    async def load(self, user_id: uuid.UUID) -> Optional[StoredSubscription]:
        """
        Read the current snapshot straight from the database.

        Selects columns rather than the ORM entity so a retry never sees a
        stale copy from the session's identity map.
        """
        result = await self.db.execute(
            select(
                Subscription.status,
                Subscription.current_period_end,
                Subscription.customer_id,
                Subscription.plan,
                Subscription.updated_at,
                Subscription.version,
                Subscription.provider,
            ).where(Subscription.user_id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            return None

        return StoredSubscription(
            snapshot=SubscriptionSnapshot(
                status=row.status,
                period_end=row.current_period_end,
                customer_id=row.customer_id,
                plan=row.plan,
                updated_at=row.updated_at,
            ),
            version=row.version,
            provider=row.provider,
        )

    async def insert(
        self,
        user_id: uuid.UUID,
        snapshot: SubscriptionSnapshot,
        provider: Optional[SubscriptionProvider],
    ) -> bool:
        """
        Create the user's first snapshot row.

        Returns:
            False if another writer created the row first.
        """
        try:
            async with self.db.begin_nested():
                self.db.add(
                    Subscription(
                        user_id=user_id,
                        status=snapshot.status,
                        current_period_end=snapshot.period_end,
                        customer_id=snapshot.customer_id,
                        plan=snapshot.plan,
                        provider=provider,
                        updated_at=snapshot.updated_at,
                        version=1,
                    )
                )
        except IntegrityError:
            logger.info("Concurrent snapshot insert for user=%s", user_id)
            return False
        return True

    async def compare_and_swap(
        self,
        user_id: uuid.UUID,
        expected_version: int,
        snapshot: SubscriptionSnapshot,
        provider: Optional[SubscriptionProvider],
    ) -> bool:
        """
        Overwrite the snapshot only if it is still at ``expected_version``.

        Returns:
            False if another writer got there first.
        """
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.version == expected_version,
            )
            .values(
                status=snapshot.status,
                current_period_end=snapshot.period_end,
                customer_id=snapshot.customer_id,
                plan=snapshot.plan,
                provider=provider,
                updated_at=snapshot.updated_at,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_history(
        self,
        user_id: uuid.UUID,
        previous: SubscriptionSnapshot,
        new: SubscriptionSnapshot,
        reason: DecisionReason,
        provider: Optional[SubscriptionProvider],
        event_id: Optional[str] = None,
        event_data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append an audit row for an applied transition."""
        self.db.add(
            SubscriptionHistory(
                user_id=user_id,
                previous_status=previous.status.value,
                new_status=new.status.value,
                previous_period_end=previous.period_end,
                new_period_end=new.period_end,
                reason=reason.value,
                provider=provider.value if provider else None,
                provider_event_id=event_id,
                event_data=event_data,
            )
        )
        await self.db.flush()
