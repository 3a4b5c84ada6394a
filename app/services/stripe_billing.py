"""
Stripe Billing Service
======================

Account-side Stripe operations:
- Plan catalogue
- Checkout session creation
- Cancelling at period end

Stripe SDK calls are blocking, so they run in a worker thread.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional
import uuid

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    ConflictError,
    ErrorCodes,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from app.models.subscription import SubscriptionProvider, SubscriptionStatus
from app.services.reconciler import CandidateUpdate
from app.services.subscription_service import ReconcileResult, SubscriptionService
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: Optional[str]


def list_plans() -> list[dict[str, Any]]:
    """The single yearly plan, as configured."""
    return [
        {
            "id": settings.PLAN_ID,
            "name": settings.PLAN_NAME,
            "price": settings.PLAN_PRICE,
            "currency": settings.PLAN_CURRENCY,
            "interval": settings.PLAN_INTERVAL,
            "features": settings.plan_features_list,
            "checkout_link": settings.STRIPE_CHECKOUT_LINK or None,
        }
    ]


class StripeBillingService:
    """Service for checkout and cancellation against Stripe."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = SubscriptionStore(db)
        self.subscriptions = SubscriptionService(self.store)
        stripe.api_key = settings.STRIPE_SECRET_KEY or None

    # -------------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------------

    async def create_checkout_session(self, user_id: uuid.UUID) -> CheckoutSession:
        """
        Start a Stripe Checkout for the configured plan.

        The user id travels in the session and subscription metadata so
        webhooks can find the user before the customer is linked.

        Raises:
            NotFoundError: If the user does not exist.
            ValidationError: If the user has neither email nor Stripe customer.
            ServiceUnavailableError: If Stripe is not configured or fails.
        """
        contact = await self.store.get_billing_contact(user_id)
        if contact is None:
            raise NotFoundError(code=ErrorCodes.USER_NOT_FOUND, message="User not found")
        if not contact.email and not contact.stripe_customer_id:
            raise ValidationError(
                message="User email required",
                field="email",
                code=ErrorCodes.SUB_EMAIL_REQUIRED,
            )
        if not (
            stripe.api_key
            and settings.STRIPE_PRICE_ID
            and settings.CHECKOUT_SUCCESS_URL
            and settings.CHECKOUT_CANCEL_URL
        ):
            raise ServiceUnavailableError(
                code=ErrorCodes.STRIPE_NOT_CONFIGURED,
                message="Stripe checkout is not configured",
            )

        metadata = {"user_id": str(user_id), "plan": settings.PLAN_NAME}
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": settings.STRIPE_PRICE_ID, "quantity": 1}],
            "success_url": settings.CHECKOUT_SUCCESS_URL,
            "cancel_url": settings.CHECKOUT_CANCEL_URL,
            "client_reference_id": str(user_id),
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if contact.stripe_customer_id:
            params["customer"] = contact.stripe_customer_id
        else:
            params["customer_email"] = contact.email

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except stripe.StripeError as e:
            logger.error("Stripe checkout session failed for user=%s: %s", user_id, e)
            raise ServiceUnavailableError(
                code=ErrorCodes.STRIPE_UNAVAILABLE,
                message="Could not create checkout session",
            ) from e

        logger.info("Checkout session %s created for user=%s", session["id"], user_id)
        return CheckoutSession(session_id=session["id"], url=session["url"])

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    async def _cancel_at_period_end(self, customer_id: str) -> list[str]:
        """Stop renewal of every active Stripe subscription of a customer."""
        if not stripe.api_key:
            raise ServiceUnavailableError(
                code=ErrorCodes.STRIPE_NOT_CONFIGURED,
                message="Stripe is not configured",
            )

        try:
            listing = await asyncio.to_thread(
                stripe.Subscription.list, customer=customer_id, status="active"
            )
            subscription_ids = [subscription["id"] for subscription in listing["data"]]
            for subscription_id in subscription_ids:
                await asyncio.to_thread(
                    stripe.Subscription.modify,
                    subscription_id,
                    cancel_at_period_end=True,
                )
        except stripe.StripeError as e:
            logger.error("Stripe cancellation failed for customer %s: %s", customer_id, e)
            raise ServiceUnavailableError(
                code=ErrorCodes.STRIPE_UNAVAILABLE,
                message="Could not cancel the subscription with Stripe",
            ) from e

        return subscription_ids

    async def cancel_subscription(self, user_id: uuid.UUID) -> ReconcileResult:
        """
        Cancel a user's Stripe subscription at the end of its period.

        Stripe is told first; the local cancellation is written only once
        Stripe has accepted it.

        Raises:
            NotFoundError: If the user does not exist or is not active.
            ConflictError: If the subscription is managed by the App Store,
                or the reconciler rejects the cancellation.
            ServiceUnavailableError: If Stripe is not configured or fails.
        """
        if not await self.store.user_exists(user_id):
            raise NotFoundError(code=ErrorCodes.USER_NOT_FOUND, message="User not found")

        stored = await self.store.load(user_id)
        if stored is None or stored.snapshot.status != SubscriptionStatus.ACTIVE:
            raise NotFoundError(
                code=ErrorCodes.SUB_NOT_ACTIVE,
                message="No active subscription found",
            )
        if stored.provider == SubscriptionProvider.APPLE_IAP:
            raise ConflictError(
                code=ErrorCodes.SUB_MANAGED_BY_APPLE,
                message="App Store subscriptions are cancelled from the device's subscription settings",
            )

        snapshot = stored.snapshot
        cancelled_ids: list[str] = []
        if snapshot.customer_id:
            cancelled_ids = await self._cancel_at_period_end(snapshot.customer_id)
        else:
            logger.warning("Active subscription for user=%s has no Stripe customer", user_id)

        candidate = CandidateUpdate(
            status=SubscriptionStatus.CANCELLED.value,
            period_end=snapshot.period_end,
            customer_id=snapshot.customer_id,
            plan=snapshot.plan,
        )
        result = await self.subscriptions.apply_update(
            user_id,
            candidate,
            provider=SubscriptionProvider.STRIPE,
            event_data={
                "action": "cancel",
                "cancel_at_period_end": True,
                "stripe_subscription_ids": cancelled_ids,
            },
        )
        if not result.applied:
            raise ConflictError(
                code=ErrorCodes.SUB_UPDATE_CONFLICT,
                message="Subscription changed while cancelling, try again",
                reason=result.reason.value,
            )

        logger.info(
            "Subscription cancelled for user=%s, stripe_subscriptions=%s",
            user_id,
            cancelled_ids,
        )
        return result
