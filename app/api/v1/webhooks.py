"""
Webhooks API Endpoints
======================

Handles webhooks from external services (Stripe).

Authentication:
    Stripe signs each delivery; the ``Stripe-Signature`` header is checked
    against STRIPE_WEBHOOK_SECRET using the raw request body.

Idempotency:
    Each Stripe event has a unique ``id``. We store processed event IDs
    in Redis (with TTL) to prevent duplicate processing.  Redis only saves
    work: the reconciler already rejects replayed updates.
"""

import asyncio
import json
import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
import stripe

from app.config import settings
from app.core.errors import AppException, ErrorCodes, ValidationError
from app.dependencies import DBSession
from app.models.subscription import SubscriptionProvider
from app.services.cache import (
    CacheInvalidator,
    is_event_processed,
    mark_event_processed,
)
from app.services.reconciler import InvalidCandidate
from app.services.stripe_events import StripeWebhookService

logger = logging.getLogger(__name__)

router = APIRouter()

_PROVIDER = SubscriptionProvider.STRIPE.value


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: DBSession,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
):
    """
    Handle Stripe webhook events.

    Events handled:
    - checkout.session.completed (links the Stripe customer)
    - customer.subscription.created / updated / deleted
    - invoice.payment_succeeded / invoice.paid / invoice_payment.paid
    - invoice.payment_failed (logged only)

    Other events are acknowledged.  A 500 makes Stripe retry; anything
    Stripe should not retry is acknowledged with 200.
    """
    payload = await request.body()

    # ── Verify signature ──────────────────────────────────────────────────
    try:
        StripeWebhookService.verify_event(payload, stripe_signature)
        event = json.loads(payload)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise ValidationError(
            message="Invalid signature",
            code=ErrorCodes.WEBHOOK_INVALID_SIGNATURE,
        )
    except ValueError as e:
        logger.warning("Invalid Stripe webhook: %s", e)
        raise ValidationError(
            message=str(e),
            code=ErrorCodes.WEBHOOK_INVALID_PAYLOAD,
        )

    event_id = event.get("id")
    event_type = event.get("type")

    logger.info("Webhook received: type=%s event_id=%s", event_type, event_id)

    # ── Idempotency check ─────────────────────────────────────────────────
    if event_id and await is_event_processed(_PROVIDER, event_id):
        logger.info("Duplicate webhook event %s, skipping", event_id)
        return {"received": True, "duplicate": True}

    # ── Process event ─────────────────────────────────────────────────────
    service = StripeWebhookService(db)
    try:
        processed = await asyncio.wait_for(
            service.process_event(event),
            timeout=settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
        )
        await db.commit()
    except asyncio.TimeoutError:
        await db.rollback()
        logger.error(
            "Webhook processing timed out after %.1fs: type=%s event_id=%s",
            settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
            event_type,
            event_id,
        )
        return {"received": True, "warning": "processing timed out"}
    except InvalidCandidate as e:
        await db.rollback()
        # A redelivery would carry the same status, so do not ask for one.
        logger.error(
            "Webhook carried an invalid subscription status: type=%s event_id=%s status=%r",
            event_type,
            event_id,
            e.status,
        )
        return {"received": True, "warning": "invalid subscription status"}
    except AppException:
        await db.rollback()
        raise
    except Exception:
        logger.exception(
            "Webhook processing error: type=%s event_id=%s",
            event_type,
            event_id,
        )
        await db.rollback()
        # Return 500 so Stripe will retry
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {
                    "code": ErrorCodes.WEBHOOK_PROCESSING_FAILED,
                    "message": "Error processing webhook",
                },
            },
        )

    # Mark event as processed (after successful commit)
    if event_id:
        await mark_event_processed(_PROVIDER, event_id)

    if processed is not None and processed.result.applied:
        await CacheInvalidator.on_subscription_change(str(processed.user_id))

    logger.info(
        "Webhook processed: type=%s event_id=%s applied=%s",
        event_type,
        event_id,
        processed.result.applied if processed else False,
    )
    return {"received": True}
