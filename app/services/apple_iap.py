"""
Apple In-App Purchase Service
=============================

Links App Store purchases made in the iOS app to user accounts.

Receipts are looked up with Apple's ``verifyReceipt`` endpoint: production
first, then sandbox when Apple answers 21007 (a sandbox receipt sent to
production).  The purchase found there becomes a candidate update for the
reconciler, keyed by the purchase's ``original_transaction_id``.

Restore links every unclaimed purchase in a receipt.  Status checks move
an expired or refunded purchase out of ``active``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Optional
import uuid

import httpx
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
from app.services.reconciler import CandidateUpdate, DecisionReason, SubscriptionSnapshot
from app.services.subscription_service import ReconcileResult, SubscriptionService
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import ensure_utc, from_unix_timestamp, utc_now

logger = logging.getLogger(__name__)

PRODUCTION_VERIFY_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_VERIFY_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

RECEIPT_STATUS_OK = 0
RECEIPT_STATUS_SANDBOX = 21007


@dataclass(frozen=True)
class RestoredPurchase:
    """One receipt purchase that restore sent to the reconciler."""

    original_transaction_id: str
    transaction_id: Optional[str]
    product_id: Optional[str]
    expires_at: Optional[datetime]
    applied: bool
    reason: DecisionReason


@dataclass(frozen=True)
class AppleStatusResult:
    """Outcome of a status check; ``reason`` is None when nothing was decided."""

    snapshot: SubscriptionSnapshot
    applied: bool = False
    reason: Optional[DecisionReason] = None


class AppleIAPService:
    """Service for App Store receipt lookup and purchase linking."""

    TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        db: AsyncSession,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.store = SubscriptionStore(db)
        self.subscriptions = SubscriptionService(self.store)
        self.shared_secret = settings.APPLE_SHARED_SECRET
        self._transport = transport

    # -------------------------------------------------------------------------
    # Receipt lookup
    # -------------------------------------------------------------------------

    async def _post_receipt(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await client.post(url, json=payload)
        response.raise_for_status()
        return response.json()

    async def verify_receipt(self, receipt_data: str) -> dict[str, Any]:
        """
        Look a receipt up with Apple.

        Args:
            receipt_data: Base64 receipt from StoreKit.

        Returns:
            Apple's response body (``status`` 0 means valid).

        Raises:
            ServiceUnavailableError: If Apple cannot be reached.
        """
        payload = {
            "receipt-data": receipt_data,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }

        async with httpx.AsyncClient(
            timeout=self.TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            try:
                result = await self._post_receipt(client, PRODUCTION_VERIFY_URL, payload)
                if result.get("status") == RECEIPT_STATUS_SANDBOX:
                    logger.info("Sandbox receipt sent to production, retrying against sandbox")
                    result = await self._post_receipt(client, SANDBOX_VERIFY_URL, payload)
            except (httpx.HTTPError, ValueError) as e:
                logger.error("App Store receipt verification failed: %s", e)
                raise ServiceUnavailableError(
                    code=ErrorCodes.APPLE_UNAVAILABLE,
                    message="Could not verify receipt with the App Store",
                ) from e

        return result

    @staticmethod
    def find_purchase(
        receipt_result: dict[str, Any],
        transaction_id: str,
        original_transaction_id: str,
    ) -> Optional[dict[str, Any]]:
        """Find the purchase matching either transaction id in a verified receipt."""
        purchases = (receipt_result.get("receipt") or {}).get("in_app") or []
        for purchase in purchases:
            if (
                purchase.get("transaction_id") == transaction_id
                or purchase.get("original_transaction_id") == original_transaction_id
            ):
                return purchase
        return None

    @staticmethod
    def latest_purchases(receipt_result: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Latest transaction of each purchase in a verified receipt.

        Renewals repeat the ``original_transaction_id``; only the one with
        the latest expiry (or purchase date) is kept.  Ordered oldest expiry
        first so newer purchases are reconciled last.
        """
        purchases = list((receipt_result.get("receipt") or {}).get("in_app") or [])
        purchases.extend(receipt_result.get("latest_receipt_info") or [])

        def sort_key(purchase: dict[str, Any]) -> int:
            return int(purchase.get("expires_date_ms") or purchase.get("purchase_date_ms") or 0)

        latest: dict[str, dict[str, Any]] = {}
        for purchase in purchases:
            original_id = purchase.get("original_transaction_id")
            if not original_id:
                continue
            known = latest.get(original_id)
            if known is None or sort_key(purchase) > sort_key(known):
                latest[original_id] = purchase
        return sorted(latest.values(), key=sort_key)

    async def verified_receipt(self, receipt_data: str) -> dict[str, Any]:
        """
        Look a receipt up and insist Apple accepts it.

        Raises:
            ValidationError: If Apple answers with a non-zero status.
            ServiceUnavailableError: If Apple cannot be reached.
        """
        receipt_result = await self.verify_receipt(receipt_data)
        receipt_status = receipt_result.get("status")
        if receipt_status != RECEIPT_STATUS_OK:
            logger.warning("App Store rejected receipt (status=%s)", receipt_status)
            raise ValidationError(
                message=f"Receipt verification failed: {receipt_status}",
                field="receipt_data",
                code=ErrorCodes.SUB_RECEIPT_INVALID,
            )
        return receipt_result

    # -------------------------------------------------------------------------
    # Candidate construction
    # -------------------------------------------------------------------------

    @staticmethod
    def build_candidate(
        purchase: Optional[dict[str, Any]],
        original_transaction_id: str,
        product_id: str,
        now: datetime,
    ) -> CandidateUpdate:
        """
        Build the candidate update for a purchase.

        Expiry comes from ``expires_date_ms``; without one the purchase is
        treated as a fixed-length period from its purchase date.
        """
        purchase = purchase or {}
        expires_at = from_unix_timestamp(purchase.get("expires_date_ms"), millis=True)
        if expires_at is None:
            purchased_at = (
                from_unix_timestamp(purchase.get("purchase_date_ms"), millis=True) or now
            )
            expires_at = purchased_at + timedelta(days=settings.APPLE_DEFAULT_PERIOD_DAYS)

        status = (
            SubscriptionStatus.ACTIVE if expires_at > now else SubscriptionStatus.INACTIVE
        )
        return CandidateUpdate(
            status=status.value,
            period_end=expires_at,
            customer_id=original_transaction_id,
            plan=product_id,
        )

    @staticmethod
    def build_sync_candidate(
        purchase: dict[str, Any],
        current: SubscriptionSnapshot,
        now: datetime,
    ) -> CandidateUpdate:
        """
        Build the candidate for a re-verified purchase.

        A refund cancels as of its cancellation date.  An expired purchase
        becomes ``inactive`` without a period end, since its expiry is
        usually the period end already stored.
        """
        customer_id = purchase.get("original_transaction_id") or current.customer_id
        plan = purchase.get("product_id") or current.plan

        cancelled_at = from_unix_timestamp(purchase.get("cancellation_date_ms"), millis=True)
        if cancelled_at is not None:
            return CandidateUpdate(
                status=SubscriptionStatus.CANCELLED.value,
                period_end=cancelled_at,
                customer_id=customer_id,
                plan=plan,
            )

        expires_at = (
            from_unix_timestamp(purchase.get("expires_date_ms"), millis=True)
            or ensure_utc(current.period_end)
        )
        if expires_at is None or expires_at > now:
            return CandidateUpdate(
                status=SubscriptionStatus.ACTIVE.value,
                period_end=expires_at,
                customer_id=customer_id,
                plan=plan,
            )
        return AppleIAPService.expired_candidate(current)

    @staticmethod
    def expired_candidate(current: SubscriptionSnapshot) -> CandidateUpdate:
        return CandidateUpdate(
            status=SubscriptionStatus.INACTIVE.value,
            period_end=None,
            customer_id=current.customer_id,
            plan=current.plan,
        )

    # -------------------------------------------------------------------------
    # Linking
    # -------------------------------------------------------------------------

    async def link_purchase(
        self,
        user_id: uuid.UUID,
        transaction_id: str,
        original_transaction_id: str,
        product_id: str,
        receipt_data: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Link an App Store purchase to ``user_id``.

        A receipt Apple rejects is not fatal: the supplied transaction ids
        are used as-is.

        Raises:
            NotFoundError: If the user does not exist.
            ConflictError: If the purchase belongs to another user, or the
                reconciler rejects the update.
            ValidationError: If the receipt's product differs from ``product_id``.
            ServiceUnavailableError: If Apple cannot be reached.
        """
        now = ensure_utc(now) if now is not None else utc_now()

        if not await self.store.user_exists(user_id):
            raise NotFoundError(code=ErrorCodes.USER_NOT_FOUND, message="User not found")

        owner = await self.store.find_user_id_by_subscription_customer(original_transaction_id)
        if owner is not None and owner != user_id:
            logger.warning(
                "Apple purchase %s already linked to user=%s, refusing link to user=%s",
                original_transaction_id,
                owner,
                user_id,
            )
            raise ConflictError(
                code=ErrorCodes.SUB_ALREADY_LINKED,
                message="This purchase has already been linked to another account",
            )

        purchase = None
        environment = None
        if receipt_data:
            receipt_result = await self.verify_receipt(receipt_data)
            receipt_status = receipt_result.get("status")
            if receipt_status != RECEIPT_STATUS_OK:
                logger.warning(
                    "App Store rejected receipt (status=%s), using transaction ids only",
                    receipt_status,
                )
            else:
                environment = receipt_result.get("environment")
                purchase = self.find_purchase(
                    receipt_result, transaction_id, original_transaction_id
                )
                if purchase is None:
                    logger.warning(
                        "Transaction %s not found in receipt, using transaction ids only",
                        transaction_id,
                    )
        else:
            logger.info("No receipt supplied for transaction %s", transaction_id)

        if purchase is not None and purchase.get("product_id") != product_id:
            raise ValidationError(
                message="Product ID mismatch",
                field="product_id",
                code=ErrorCodes.SUB_PRODUCT_MISMATCH,
            )

        candidate = self.build_candidate(purchase, original_transaction_id, product_id, now)
        result = await self.subscriptions.apply_update(
            user_id,
            candidate,
            provider=SubscriptionProvider.APPLE_IAP,
            event_id=transaction_id,
            event_data={
                "transaction_id": transaction_id,
                "original_transaction_id": original_transaction_id,
                "product_id": product_id,
                "environment": environment,
            },
        )

        if not result.applied:
            if result.reason == DecisionReason.ACTIVE_GUARD:
                raise ConflictError(
                    code=ErrorCodes.SUB_ALREADY_ACTIVE,
                    message="User already has an active subscription",
                )
            raise ConflictError(
                code=ErrorCodes.SUB_UPDATE_CONFLICT,
                message="Purchase is older than the current subscription",
                reason=result.reason.value,
            )

        logger.info(
            "Apple purchase linked: user=%s original_transaction_id=%s status=%s",
            user_id,
            original_transaction_id,
            result.snapshot.status.value,
        )
        return result

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    async def restore_purchases(
        self,
        user_id: uuid.UUID,
        receipt_data: str,
        now: Optional[datetime] = None,
    ) -> list[RestoredPurchase]:
        """
        Link every purchase in a receipt that no account holds yet.

        Purchases already linked to any user are skipped.  Each remaining
        purchase goes through the reconciler, oldest expiry first.

        Raises:
            NotFoundError: If the user does not exist.
            ValidationError: If Apple rejects the receipt.
            ServiceUnavailableError: If Apple cannot be reached.
        """
        now = ensure_utc(now) if now is not None else utc_now()

        if not await self.store.user_exists(user_id):
            raise NotFoundError(code=ErrorCodes.USER_NOT_FOUND, message="User not found")

        receipt_result = await self.verified_receipt(receipt_data)
        environment = receipt_result.get("environment")

        restored: list[RestoredPurchase] = []
        for purchase in self.latest_purchases(receipt_result):
            original_id = purchase["original_transaction_id"]
            owner = await self.store.find_user_id_by_subscription_customer(original_id)
            if owner is not None:
                logger.info("Apple purchase %s already linked to user=%s, skipping", original_id, owner)
                continue

            product_id = purchase.get("product_id")
            candidate = self.build_candidate(purchase, original_id, product_id, now)
            result = await self.subscriptions.apply_update(
                user_id,
                candidate,
                provider=SubscriptionProvider.APPLE_IAP,
                event_id=purchase.get("transaction_id"),
                event_data={
                    "action": "restore",
                    "transaction_id": purchase.get("transaction_id"),
                    "original_transaction_id": original_id,
                    "product_id": product_id,
                    "environment": environment,
                },
            )
            restored.append(
                RestoredPurchase(
                    original_transaction_id=original_id,
                    transaction_id=purchase.get("transaction_id"),
                    product_id=product_id,
                    expires_at=candidate.period_end,
                    applied=result.applied,
                    reason=result.reason,
                )
            )

        logger.info(
            "Apple restore for user=%s: %d purchases considered, %d applied",
            user_id,
            len(restored),
            sum(1 for purchase in restored if purchase.applied),
        )
        return restored

    # -------------------------------------------------------------------------
    # Status checks
    # -------------------------------------------------------------------------

    async def _apply_status(
        self,
        user_id: uuid.UUID,
        candidate: CandidateUpdate,
        event_data: dict[str, Any],
    ) -> AppleStatusResult:
        result = await self.subscriptions.apply_update(
            user_id,
            candidate,
            provider=SubscriptionProvider.APPLE_IAP,
            event_data=event_data,
        )
        return AppleStatusResult(
            snapshot=result.snapshot,
            applied=result.applied,
            reason=result.reason,
        )

    async def check_status(
        self,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> AppleStatusResult:
        """
        Expire an App Store snapshot whose period end has passed.

        Uses only the stored period end; no call to Apple.  Snapshots
        written by other providers are returned untouched.

        Raises:
            NotFoundError: If the user does not exist.
        """
        now = ensure_utc(now) if now is not None else utc_now()

        if not await self.store.user_exists(user_id):
            raise NotFoundError(code=ErrorCodes.USER_NOT_FOUND, message="User not found")

        stored = await self.store.load(user_id)
        if stored is None or stored.provider != SubscriptionProvider.APPLE_IAP:
            return AppleStatusResult(snapshot=stored.snapshot if stored else SubscriptionSnapshot.empty())

        snapshot = stored.snapshot
        period_end = ensure_utc(snapshot.period_end)
        if snapshot.status != SubscriptionStatus.ACTIVE or period_end is None or period_end > now:
            return AppleStatusResult(snapshot=snapshot)

        logger.info("Apple subscription for user=%s expired at %s", user_id, period_end)
        return await self._apply_status(
            user_id,
            self.expired_candidate(snapshot),
            {"action": "check_status", "expired_at": period_end.isoformat()},
        )

    async def sync_status(
        self,
        user_id: uuid.UUID,
        receipt_data: str,
        now: Optional[datetime] = None,
    ) -> AppleStatusResult:
        """
        Re-verify the user's App Store purchase and reconcile what Apple reports.

        Picks up renewals, expiry and refunds.

        Raises:
            NotFoundError: If the user does not exist, or the receipt does
                not contain the linked purchase.
            ValidationError: If Apple rejects the receipt.
            ServiceUnavailableError: If Apple cannot be reached.
        """
        now = ensure_utc(now) if now is not None else utc_now()

        if not await self.store.user_exists(user_id):
            raise NotFoundError(code=ErrorCodes.USER_NOT_FOUND, message="User not found")

        stored = await self.store.load(user_id)
        if stored is None or stored.provider != SubscriptionProvider.APPLE_IAP:
            return AppleStatusResult(snapshot=stored.snapshot if stored else SubscriptionSnapshot.empty())

        receipt_result = await self.verified_receipt(receipt_data)
        original_id = stored.snapshot.customer_id
        purchase = next(
            (
                p
                for p in self.latest_purchases(receipt_result)
                if p.get("original_transaction_id") == original_id
            ),
            None,
        )
        if purchase is None:
            raise NotFoundError(
                code=ErrorCodes.SUB_PURCHASE_NOT_FOUND,
                message="Linked purchase not found in receipt",
            )

        candidate = self.build_sync_candidate(purchase, stored.snapshot, now)
        return await self._apply_status(
            user_id,
            candidate,
            {
                "action": "sync_status",
                "transaction_id": purchase.get("transaction_id"),
                "original_transaction_id": original_id,
                "environment": receipt_result.get("environment"),
            },
        )
