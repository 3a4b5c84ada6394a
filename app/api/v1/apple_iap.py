"""
Apple In-App Purchase API Endpoints
===================================

Links App Store purchases to user accounts and keeps them in step with
Apple.  Called by the account service on behalf of the iOS app.
"""

import logging
import uuid

from fastapi import APIRouter

from app.api.v1.subscription import snapshot_response
from app.core.errors import ConflictError, ErrorCodes
from app.dependencies import DBSession, InternalAuth
from app.schemas.common import BaseResponse
from app.schemas.subscription import (
    AppleCheckStatusRequest,
    AppleLinkPurchaseRequest,
    AppleLinkPurchaseResponse,
    AppleRestoreRequest,
    AppleRestoreResponse,
    AppleStatusResponse,
    AppleSyncStatusRequest,
    RestoredPurchaseResponse,
)
from app.services.apple_iap import AppleIAPService, AppleStatusResult
from app.services.cache import CacheInvalidator
from app.services.subscription_service import SubscriptionConflictError, has_active_access

logger = logging.getLogger(__name__)

router = APIRouter()


def _write_conflict(user_id: uuid.UUID, e: SubscriptionConflictError) -> ConflictError:
    logger.error("Apple update for user=%s lost every write race: %s", user_id, e)
    return ConflictError(
        code=ErrorCodes.SUB_UPDATE_CONFLICT,
        message="Subscription is being updated, try again",
    )


def _status_response(user_id: uuid.UUID, result: AppleStatusResult) -> AppleStatusResponse:
    return AppleStatusResponse(
        user_id=user_id,
        applied=result.applied,
        reason=result.reason.value if result.reason else None,
        subscription=snapshot_response(result.snapshot),
        has_active_subscription=has_active_access(result.snapshot),
    )


@router.post(
    "/link-purchase",
    response_model=BaseResponse[AppleLinkPurchaseResponse],
    dependencies=[InternalAuth],
)
async def link_purchase(
    payload: AppleLinkPurchaseRequest,
    db: DBSession,
):
    """
    Link an App Store purchase to a user.

    - 400 if the receipt's product does not match ``product_id``
    - 404 if the user does not exist
    - 409 if the purchase belongs to someone else or the user is already active
    """
    service = AppleIAPService(db)

    try:
        result = await service.link_purchase(
            user_id=payload.user_id,
            transaction_id=payload.transaction_id,
            original_transaction_id=payload.original_transaction_id,
            product_id=payload.product_id,
            receipt_data=payload.receipt_data,
        )
    except SubscriptionConflictError as e:
        raise _write_conflict(payload.user_id, e)

    await db.commit()
    await CacheInvalidator.on_subscription_change(str(payload.user_id))

    return BaseResponse[AppleLinkPurchaseResponse](
        data=AppleLinkPurchaseResponse(
            user_id=payload.user_id,
            applied=result.applied,
            reason=result.reason.value,
            subscription=snapshot_response(result.snapshot),
        ),
        message="Apple IAP purchase linked successfully",
    )


@router.post(
    "/restore",
    response_model=BaseResponse[AppleRestoreResponse],
    dependencies=[InternalAuth],
)
async def restore_purchases(
    payload: AppleRestoreRequest,
    db: DBSession,
):
    """
    Restore the purchases in a receipt that no account holds yet.

    - 400 if Apple rejects the receipt
    - 404 if the user does not exist
    - 503 if Apple cannot be reached
    """
    service = AppleIAPService(db)

    try:
        restored = await service.restore_purchases(payload.user_id, payload.receipt_data)
    except SubscriptionConflictError as e:
        raise _write_conflict(payload.user_id, e)

    applied_count = sum(1 for purchase in restored if purchase.applied)
    await db.commit()
    if applied_count:
        await CacheInvalidator.on_subscription_change(str(payload.user_id))

    snapshot = await service.subscriptions.get_snapshot(payload.user_id)
    return BaseResponse[AppleRestoreResponse](
        data=AppleRestoreResponse(
            user_id=payload.user_id,
            restored_count=applied_count,
            purchases=[
                RestoredPurchaseResponse(
                    original_transaction_id=purchase.original_transaction_id,
                    transaction_id=purchase.transaction_id,
                    product_id=purchase.product_id,
                    expires_at=purchase.expires_at,
                    applied=purchase.applied,
                    reason=purchase.reason.value,
                )
                for purchase in restored
            ],
            subscription=snapshot_response(snapshot),
            has_active_subscription=has_active_access(snapshot),
        ),
        message=f"Restored {applied_count} purchases",
    )


@router.post(
    "/check-status",
    response_model=BaseResponse[AppleStatusResponse],
    dependencies=[InternalAuth],
)
async def check_status(
    payload: AppleCheckStatusRequest,
    db: DBSession,
):
    """Expire the user's App Store subscription if its period end has passed."""
    service = AppleIAPService(db)

    try:
        result = await service.check_status(payload.user_id)
    except SubscriptionConflictError as e:
        raise _write_conflict(payload.user_id, e)

    if result.applied:
        await db.commit()
        await CacheInvalidator.on_subscription_change(str(payload.user_id))

    return BaseResponse[AppleStatusResponse](data=_status_response(payload.user_id, result))


@router.post(
    "/sync-status",
    response_model=BaseResponse[AppleStatusResponse],
    dependencies=[InternalAuth],
)
async def sync_status(
    payload: AppleSyncStatusRequest,
    db: DBSession,
):
    """
    Re-verify the linked purchase with Apple and reconcile the result.

    - 400 if Apple rejects the receipt
    - 404 if the user does not exist or the receipt lacks the linked purchase
    - 503 if Apple cannot be reached
    """
    service = AppleIAPService(db)

    try:
        result = await service.sync_status(payload.user_id, payload.receipt_data)
    except SubscriptionConflictError as e:
        raise _write_conflict(payload.user_id, e)

    if result.applied:
        await db.commit()
        await CacheInvalidator.on_subscription_change(str(payload.user_id))

    return BaseResponse[AppleStatusResponse](data=_status_response(payload.user_id, result))
