"""
Subscription Schemas
====================

Pydantic schemas for subscription endpoints.
"""

from datetime import datetime
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field

from app.models.subscription import SubscriptionStatus


class SubscriptionSnapshotResponse(BaseModel):
    """A user's persisted subscription snapshot."""

    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    customer_id: Optional[str] = None
    plan: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        use_enum_values = True


class SubscriptionStatusResponse(BaseModel):
    """Response for the internal status lookup."""

    user_id: uuid.UUID
    subscription: SubscriptionSnapshotResponse
    has_active_subscription: bool


# ─── Apple In-App Purchase ───────────────────────────────────────────────────


class AppleLinkPurchaseRequest(BaseModel):
    """Link an App Store purchase to a user."""

    user_id: uuid.UUID
    transaction_id: str = Field(min_length=1)
    original_transaction_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    receipt_data: Optional[str] = Field(default=None, description="Base64 App Store receipt")


class AppleLinkPurchaseResponse(BaseModel):
    """Result of linking an App Store purchase."""

    user_id: uuid.UUID
    applied: bool
    reason: str
    subscription: SubscriptionSnapshotResponse


class AppleRestoreRequest(BaseModel):
    """Restore every unclaimed purchase in a receipt."""

    user_id: uuid.UUID
    receipt_data: str = Field(min_length=1, description="Base64 App Store receipt")


class RestoredPurchaseResponse(BaseModel):
    """One purchase considered by a restore."""

    original_transaction_id: str
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    applied: bool
    reason: str


class AppleRestoreResponse(BaseModel):
    """Result of a restore."""

    user_id: uuid.UUID
    restored_count: int
    purchases: List[RestoredPurchaseResponse]
    subscription: SubscriptionSnapshotResponse
    has_active_subscription: bool


class AppleCheckStatusRequest(BaseModel):
    """Expire a lapsed App Store snapshot."""

    user_id: uuid.UUID


class AppleSyncStatusRequest(BaseModel):
    """Re-verify the linked App Store purchase."""

    user_id: uuid.UUID
    receipt_data: str = Field(min_length=1, description="Base64 App Store receipt")


class AppleStatusResponse(BaseModel):
    """Result of a status check or sync."""

    user_id: uuid.UUID
    applied: bool
    reason: Optional[str] = None
    subscription: SubscriptionSnapshotResponse
    has_active_subscription: bool


# ─── Stripe billing ──────────────────────────────────────────────────────────


class PlanResponse(BaseModel):
    """A purchasable plan."""

    id: str
    name: str
    price: float
    currency: str
    interval: str
    features: List[str] = []
    checkout_link: Optional[str] = None


class PlansResponse(BaseModel):
    plans: List[PlanResponse]


class SubscriptionUserRequest(BaseModel):
    """Body for actions on one user's subscription."""

    user_id: uuid.UUID


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    """Result of cancelling at period end."""

    user_id: uuid.UUID
    cancel_at_period_end: bool
    subscription: SubscriptionSnapshotResponse
