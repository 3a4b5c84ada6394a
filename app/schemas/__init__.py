"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.common import (
    BaseResponse,
    ErrorDetail,
    ErrorResponse,
)
from app.schemas.subscription import (
    AppleCheckStatusRequest,
    AppleLinkPurchaseRequest,
    AppleLinkPurchaseResponse,
    AppleRestoreRequest,
    AppleRestoreResponse,
    AppleStatusResponse,
    AppleSyncStatusRequest,
    CancelSubscriptionResponse,
    CheckoutSessionResponse,
    PlanResponse,
    PlansResponse,
    RestoredPurchaseResponse,
    SubscriptionSnapshotResponse,
    SubscriptionStatusResponse,
    SubscriptionUserRequest,
)

__all__ = [
    "BaseResponse",
    "ErrorDetail",
    "ErrorResponse",
    "AppleCheckStatusRequest",
    "AppleLinkPurchaseRequest",
    "AppleLinkPurchaseResponse",
    "AppleRestoreRequest",
    "AppleRestoreResponse",
    "AppleStatusResponse",
    "AppleSyncStatusRequest",
    "CancelSubscriptionResponse",
    "CheckoutSessionResponse",
    "PlanResponse",
    "PlansResponse",
    "RestoredPurchaseResponse",
    "SubscriptionSnapshotResponse",
    "SubscriptionStatusResponse",
    "SubscriptionUserRequest",
]
