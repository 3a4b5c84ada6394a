"""
Subscription Models
===================

SQLAlchemy models for the per-user subscription snapshot and its audit trail.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    func,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.user import User


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


class SubscriptionProvider(str, Enum):
    """Payment provider the snapshot was last written from."""
    STRIPE = "stripe"
    APPLE_IAP = "apple_iap"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Subscription(Base, TimestampMixin):
    """
    Current subscription snapshot for one user.

    Only the reconciler's decisions write to this row.  ``version`` is
    bumped on every write and compared at write time so two webhook
    deliveries racing on the same user cannot both win.
    """

    __tablename__ = "subscriptions"

    # Primary Key
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Snapshot
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(
            SubscriptionStatus,
            name="subscriptionstatus",
            values_callable=_enum_values,
        ),
        default=SubscriptionStatus.INACTIVE,
        nullable=False,
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,  # Null means no known expiry
    )
    customer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    plan: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    provider: Mapped[Optional[SubscriptionProvider]] = mapped_column(
        SQLEnum(
            SubscriptionProvider,
            name="subscriptionprovider",
            values_callable=_enum_values,
        ),
        nullable=True,
    )

    # Optimistic concurrency stamp
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        back_populates="subscription",
    )

    # Indexes
    __table_args__ = (
        Index("idx_subscription_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(user_id={self.user_id}, status={self.status}, version={self.version})>"


class SubscriptionHistory(Base):
    """
    Subscription history model.

    One row per applied transition, for audit and ordering diagnostics.
    """

    __tablename__ = "subscription_history"

    # Primary Key
    history_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Transition
    previous_status: Mapped[str] = mapped_column(String(50), nullable=False)
    new_status: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    new_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    reason: Mapped[str] = mapped_column(String(50), nullable=False)

    # Provider event
    provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    provider_event_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    event_data: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # Indexes
    __table_args__ = (
        Index("idx_sub_history_user_created", "user_id", "created_at"),
        Index("idx_sub_history_event", "provider_event_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistory(user_id={self.user_id}, "
            f"{self.previous_status}->{self.new_status})>"
        )
