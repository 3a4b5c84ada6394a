"""
Stripe Webhook Service
======================

Translates Stripe webhook events into candidate subscription updates.

Handles:
- Signature verification
- Stripe → local status mapping
- Resolving the local user behind a Stripe customer
- Dispatching each event type to the reconciler

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
from app.models.subscription import SubscriptionProvider, SubscriptionStatus
from app.services.reconciler import CandidateUpdate
from app.services.subscription_service import ReconcileResult, SubscriptionService
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import from_unix_timestamp

logger = logging.getLogger(__name__)


# Stripe spells "canceled" with one L and has more states than we track.
# ``None`` means "payment not confirmed yet, do not touch the snapshot".
STRIPE_STATUS_MAP: dict[str, Optional[SubscriptionStatus]] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.INACTIVE,
    "paused": SubscriptionStatus.INACTIVE,
    "incomplete": None,
}

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
)
INVOICE_PAID_EVENTS = (
    "invoice.payment_succeeded",
    "invoice.paid",
)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a webhook dict or a Stripe SDK object."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def _first_item(subscription: Any) -> Any:
    items = _get(_get(subscription, "items"), "data", [])
    return items[0] if items else None


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


@dataclass(frozen=True)
class ProcessedEvent:
    """Result of handling one Stripe event that reached the reconciler."""

    user_id: uuid.UUID
    result: ReconcileResult


class StripeWebhookService:
    """Service for Stripe webhook events."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = SubscriptionStore(db)
        self.subscriptions = SubscriptionService(self.store)
        stripe.api_key = settings.STRIPE_SECRET_KEY or None

    # -------------------------------------------------------------------------
    # Signature verification
    # -------------------------------------------------------------------------

    @staticmethod
    def verify_event(payload: bytes, signature: str) -> None:
        """
        Verify the ``Stripe-Signature`` header against the raw body.

        Raises:
            ValueError: If the secret is missing or the body is not JSON.
            stripe.SignatureVerificationError: If the signature does not match.
        """
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise ValueError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        stripe.Webhook.construct_event(
            payload, signature, settings.STRIPE_WEBHOOK_SECRET
        )

    # -------------------------------------------------------------------------
    # Field mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def map_status(stripe_status: Optional[str]) -> Optional[str]:
        """
        Map a Stripe subscription status to ours.

        Returns ``None`` for statuses that must not be reconciled yet.
        Unknown statuses are passed through unchanged so the reconciler
        rejects them as invalid.
        """
        if stripe_status in STRIPE_STATUS_MAP:
            mapped = STRIPE_STATUS_MAP[stripe_status]
            return mapped.value if mapped else None
        return stripe_status

    @staticmethod
    def period_end_of(subscription: Any):
        """Period end from the subscription, or its first item on newer API versions."""
        period_end = _get(subscription, "current_period_end")
        if period_end is None:
            period_end = _get(_first_item(subscription), "current_period_end")
        return from_unix_timestamp(period_end)

    @staticmethod
    def plan_of(subscription: Any) -> str:
        """Plan name from metadata, then price lookup key, then the default plan."""
        plan = _get(_get(subscription, "metadata"), "plan")
        if plan:
            return plan
        price = _get(_first_item(subscription), "price")
        return (
            _get(price, "lookup_key")
            or _get(price, "id")
            or settings.STRIPE_DEFAULT_PLAN
        )

    # -------------------------------------------------------------------------
    # User resolution
    # -------------------------------------------------------------------------

    async def _user_from_metadata(self, metadata: Any) -> Optional[uuid.UUID]:
        """Resolve a user from checkout / subscription metadata."""
        raw_user_id = _get(metadata, "user_id")
        if raw_user_id:
            try:
                user_id = uuid.UUID(str(raw_user_id))
            except ValueError:
                logger.warning("Ignoring malformed user_id in Stripe metadata: %s", raw_user_id)
            else:
                if await self.store.user_exists(user_id):
                    return user_id

        firebase_uid = _get(metadata, "firebase_uid") or _get(metadata, "firebaseUid")
        if firebase_uid:
            return await self.store.find_user_id_by_firebase_uid(firebase_uid)
        return None

    async def _user_from_customer_email(self, customer_id: str) -> Optional[uuid.UUID]:
        """Fetch the Stripe customer and look the user up by email."""
        if not stripe.api_key:
            logger.warning("STRIPE_SECRET_KEY not configured, cannot look up customer %s", customer_id)
            return None

        customer = await asyncio.to_thread(stripe.Customer.retrieve, customer_id)
        email = _get(customer, "email")
        if not email:
            logger.error("Stripe customer %s has no email", customer_id)
            return None
        return await self.store.find_user_id_by_email(email)

    async def resolve_user(
        self,
        customer_id: Optional[str],
        metadata: Any = None,
    ) -> Optional[uuid.UUID]:
        """
        Find the local user for a Stripe customer.

        Order: linked customer id, metadata, customer email.  A user found
        by the last two is linked to the customer for later events.
        """
        if not customer_id:
            return None

        user_id = await self.store.find_user_id_by_stripe_customer(customer_id)
        if user_id is not None:
            return user_id

        user_id = await self._user_from_metadata(metadata)
        if user_id is None:
            user_id = await self._user_from_customer_email(customer_id)

        if user_id is not None:
            await self.store.link_stripe_customer(user_id, customer_id)
        return user_id

    # -------------------------------------------------------------------------
    # Event dispatch
    # -------------------------------------------------------------------------

    async def process_event(self, event: dict[str, Any]) -> Optional[ProcessedEvent]:
        """
        Process a verified Stripe event.

        Args:
            event: The parsed webhook body.

        Returns:
            ProcessedEvent if the event reached the reconciler, None otherwise.

        Raises:
            InvalidCandidate: If Stripe reports a status we do not recognize.
            SubscriptionConflictError: If concurrent writes kept winning.
        """
        event_type = _get(event, "type")
        event_id = _get(event, "id")
        obj = _get(_get(event, "data"), "object", {})

        if event_type == "checkout.session.completed":
            await self._handle_checkout_completed(obj)
            return None
        if event_type in SUBSCRIPTION_EVENTS:
            return await self._handle_subscription_changed(obj, event_id, event_type)
        if event_type == "customer.subscription.deleted":
            return await self._handle_subscription_deleted(obj, event_id)
        if event_type in INVOICE_PAID_EVENTS:
            return await self._handle_invoice_paid(obj, event_id)
        if event_type == "invoice_payment.paid":
            invoice_id = _id_of(_get(obj, "invoice"))
            if not invoice_id:
                logger.warning("invoice_payment.paid without invoice: event_id=%s", event_id)
                return None
            invoice = await asyncio.to_thread(stripe.Invoice.retrieve, invoice_id)
            return await self._handle_invoice_paid(invoice, event_id)
        if event_type == "invoice.payment_failed":
            logger.warning(
                "Stripe payment failed: invoice=%s customer=%s",
                _get(obj, "id"),
                _id_of(_get(obj, "customer")),
            )
            return None

        logger.info("Unhandled Stripe event type: %s", event_type)
        return None

    async def _apply(
        self,
        user_id: uuid.UUID,
        candidate: CandidateUpdate,
        event_id: Optional[str],
        event_data: Any,
    ) -> ProcessedEvent:
        result = await self.subscriptions.apply_update(
            user_id,
            candidate,
            provider=SubscriptionProvider.STRIPE,
            event_id=event_id,
            event_data=event_data if isinstance(event_data, dict) else None,
        )
        return ProcessedEvent(user_id=user_id, result=result)

    async def _handle_checkout_completed(self, session: Any) -> None:
        """Link the checkout's customer to the user who started it."""
        customer_id = _id_of(_get(session, "customer"))
        metadata = dict(_get(session, "metadata", {}) or {})
        client_reference_id = _get(session, "client_reference_id")
        if client_reference_id and "user_id" not in metadata:
            metadata["user_id"] = client_reference_id

        user_id = await self.resolve_user(customer_id, metadata)
        logger.info(
            "Checkout session completed: session=%s customer=%s user=%s",
            _get(session, "id"),
            customer_id,
            user_id,
        )

    async def _handle_subscription_changed(
        self,
        subscription: Any,
        event_id: Optional[str],
        event_type: str,
    ) -> Optional[ProcessedEvent]:
        customer_id = _id_of(_get(subscription, "customer"))
        stripe_status = _get(subscription, "status")

        user_id = await self.resolve_user(customer_id, _get(subscription, "metadata"))
        if user_id is None:
            logger.error("%s: no user for Stripe customer %s", event_type, customer_id)
            return None

        status = self.map_status(stripe_status)
        if status is None:
            # Payment pending; the customer link above is all we record.
            logger.info(
                "%s: subscription %s is %s, waiting for payment confirmation",
                event_type,
                _get(subscription, "id"),
                stripe_status,
            )
            return None

        if status == SubscriptionStatus.ACTIVE.value and _get(subscription, "cancel_at_period_end"):
            # Renewal switched off; same state the cancel endpoint writes.
            status = SubscriptionStatus.CANCELLED.value

        candidate = CandidateUpdate(
            status=status,
            period_end=self.period_end_of(subscription),
            customer_id=customer_id,
            plan=self.plan_of(subscription),
        )
        return await self._apply(user_id, candidate, event_id, subscription)

    async def _handle_subscription_deleted(
        self,
        subscription: Any,
        event_id: Optional[str],
    ) -> Optional[ProcessedEvent]:
        customer_id = _id_of(_get(subscription, "customer"))
        user_id = await self.resolve_user(customer_id, _get(subscription, "metadata"))
        if user_id is None:
            logger.error("customer.subscription.deleted: no user for Stripe customer %s", customer_id)
            return None

        # No period end: a deletion is a pure status change.
        candidate = CandidateUpdate(
            status=SubscriptionStatus.CANCELLED.value,
            period_end=None,
            customer_id=customer_id,
            plan=None,
        )
        return await self._apply(user_id, candidate, event_id, subscription)

    async def _handle_invoice_paid(
        self,
        invoice: Any,
        event_id: Optional[str],
    ) -> Optional[ProcessedEvent]:
        """Activate the subscription once Stripe confirms it is active."""
        subscription_id = _id_of(_get(invoice, "subscription")) or _id_of(
            _get(_get(_get(invoice, "parent"), "subscription_details"), "subscription")
        )
        if not subscription_id:
            logger.info("Invoice %s is a one-time payment, nothing to reconcile", _get(invoice, "id"))
            return None

        customer_id = _id_of(_get(invoice, "customer"))
        user_id = await self.resolve_user(customer_id)
        if user_id is None:
            logger.error("Invoice paid: no user for Stripe customer %s", customer_id)
            return None

        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        stripe_status = _get(subscription, "status")
        if stripe_status != "active":
            logger.info(
                "Invoice paid but subscription %s is %s, leaving it to subscription events",
                subscription_id,
                stripe_status,
            )
            return None

        candidate = CandidateUpdate(
            status=SubscriptionStatus.ACTIVE.value,
            period_end=self.period_end_of(subscription),
            customer_id=customer_id,
            plan=self.plan_of(subscription),
        )
        return await self._apply(user_id, candidate, event_id, invoice)
