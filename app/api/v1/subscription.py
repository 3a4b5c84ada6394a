"""
Subscription API Endpoints
==========================

Internal subscription endpoints for other services (VPN gateways,
account pages): status lookup, plans, checkout and cancellation.
Requires the internal bearer token.
"""

import logging
import uuid

from fastapi import APIRouter, Query

from app.core.errors import ConflictError, ErrorCodes, NotFoundError
from app.dependencies import DBSession, InternalAuth
from app.schemas.common import BaseResponse
from app.schemas.subscription import (
    CancelSubscriptionResponse,
    CheckoutSessionResponse,
    PlanResponse,
    PlansResponse,
    SubscriptionSnapshotResponse,
    SubscriptionStatusResponse,
    SubscriptionUserRequest,
)
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from app.services.reconciler import SubscriptionSnapshot
from app.services.stripe_billing import StripeBillingService, list_plans
from app.services.subscription_service import (
    SubscriptionConflictError,
    SubscriptionService,
    has_active_access,
)
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter()


def snapshot_response(snapshot: SubscriptionSnapshot) -> SubscriptionSnapshotResponse:
    """Convert a reconciler snapshot into its API shape."""
    return SubscriptionSnapshotResponse(
        status=snapshot.status,
        current_period_end=snapshot.period_end,
        customer_id=snapshot.customer_id,
        plan=snapshot.plan,
        updated_at=snapshot.updated_at,
    )


@router.get(
    "/{user_id}/status",
    response_model=BaseResponse[SubscriptionStatusResponse],
    dependencies=[InternalAuth],
)
async def get_subscription_status(
    user_id: uuid.UUID,
    db: DBSession,
    force_refresh: bool = Query(default=False),
):
    """
    Get a user's subscription snapshot and whether it grants access.

    Served from Redis when cached; use force_refresh=true to read the
    database directly.
    """
    cache_key = CacheKeys.subscription_status(str(user_id))

    if not force_refresh:
        cached = await CacheManager.get(cache_key)
        if cached:
            return BaseResponse[SubscriptionStatusResponse](data=SubscriptionStatusResponse(**cached))

    store = SubscriptionStore(db)
    if not await store.user_exists(user_id):
        raise NotFoundError(code=ErrorCodes.USER_NOT_FOUND, message="User not found")

    snapshot = await SubscriptionService(store).get_snapshot(user_id)
    response = SubscriptionStatusResponse(
        user_id=user_id,
        subscription=snapshot_response(snapshot),
        has_active_subscription=has_active_access(snapshot),
    )

    await CacheManager.set(
        cache_key,
        response.model_dump(mode="json"),
        ttl=CacheManager.TTL_SHORT,
    )
    return BaseResponse[SubscriptionStatusResponse](data=response)


@router.get(
    "/plans",
    response_model=BaseResponse[PlansResponse],
    dependencies=[InternalAuth],
)
async def get_plans():
    """Get the purchasable plans (cached for an hour)."""
    cache_key = CacheKeys.plans()

    cached = await CacheManager.get(cache_key)
    if cached:
        return BaseResponse[PlansResponse](data=PlansResponse(**cached))

    response = PlansResponse(plans=[PlanResponse(**plan) for plan in list_plans()])
    await CacheManager.set(
        cache_key,
        response.model_dump(mode="json"),
        ttl=CacheManager.TTL_HOUR,
    )
    return BaseResponse[PlansResponse](data=response)


@router.post(
    "/checkout-session",
    response_model=BaseResponse[CheckoutSessionResponse],
    dependencies=[InternalAuth],
)
async def create_checkout_session(
    payload: SubscriptionUserRequest,
    db: DBSession,
):
    """
    Create a Stripe Checkout session for the configured plan.

    - 400 if the user has no email
    - 404 if the user does not exist
    - 503 if Stripe is not configured or unavailable
    """
    session = await StripeBillingService(db).create_checkout_session(payload.user_id)
    return BaseResponse[CheckoutSessionResponse](
        data=CheckoutSessionResponse(session_id=session.session_id, url=session.url),
    )


@router.post(
    "/cancel",
    response_model=BaseResponse[CancelSubscriptionResponse],
    dependencies=[InternalAuth],
)
async def cancel_subscription(
    payload: SubscriptionUserRequest,
    db: DBSession,
):
    """
    Cancel the user's Stripe subscription at the end of its period.

    - 404 if the user does not exist or has no active subscription
    - 409 if the subscription is an App Store one, or changed meanwhile
    - 503 if Stripe is not configured or unavailable
    """
    try:
        result = await StripeBillingService(db).cancel_subscription(payload.user_id)
    except SubscriptionConflictError as e:
        logger.error("Cancellation for user=%s lost every write race: %s", payload.user_id, e)
        raise ConflictError(
            code=ErrorCodes.SUB_UPDATE_CONFLICT,
            message="Subscription is being updated, try again",
        )

    await db.commit()
    await CacheInvalidator.on_subscription_change(str(payload.user_id))

    return BaseResponse[CancelSubscriptionResponse](
        data=CancelSubscriptionResponse(
            user_id=payload.user_id,
            cancel_at_period_end=True,
            subscription=snapshot_response(result.snapshot),
        ),
        message="Subscription auto-renewal cancelled",
    )
