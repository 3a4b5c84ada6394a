"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.user import User
from app.models.subscription import (
    Subscription,
    SubscriptionHistory,
    SubscriptionProvider,
    SubscriptionStatus,
)

__all__ = [
    # User
    "User",
    # Subscription
    "Subscription",
    "SubscriptionHistory",
    "SubscriptionProvider",
    "SubscriptionStatus",
]
