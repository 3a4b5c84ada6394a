"""
Stripe Webhook Endpoint Tests
=============================

Tests for POST /api/v1/webhooks/stripe:
- Signature verification
- Duplicate delivery short-circuit
- Processing outcomes (applied, invalid status, timeout, failure)
"""

import asyncio
import hashlib
import hmac
import json
import os
import time
from unittest.mock import AsyncMock, patch
import uuid

import pytest
from httpx import AsyncClient

from app.models.subscription import SubscriptionStatus
from app.services.reconciler import DecisionReason, InvalidCandidate, SubscriptionSnapshot
from app.services.stripe_events import ProcessedEvent, StripeWebhookService
from app.services.subscription_service import ReconcileResult, SubscriptionConflictError

URL = "/api/v1/webhooks/stripe"


def _sign(payload: bytes, secret: str | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    secret = secret or os.environ["STRIPE_WEBHOOK_SECRET"]
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _payload(event_type: str = "customer.subscription.updated", event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": "sub_1", "customer": "cus_1", "status": "active"}},
        }
    ).encode()


@pytest.fixture
def idempotency():
    """Patch the Redis idempotency helpers used by the route."""
    with patch(
        "app.api.v1.webhooks.is_event_processed",
        new_callable=AsyncMock,
        return_value=False,
    ) as is_processed, patch(
        "app.api.v1.webhooks.mark_event_processed",
        new_callable=AsyncMock,
    ) as mark_processed, patch(
        "app.api.v1.webhooks.CacheInvalidator.on_subscription_change",
        new_callable=AsyncMock,
    ) as invalidate:
        yield is_processed, mark_processed, invalidate


class TestSignature:
    """Signature verification"""

    @pytest.mark.asyncio
    async def test_missing_signature(self, client: AsyncClient, idempotency):
        response = await client.post(URL, content=_payload())

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_002"

    @pytest.mark.asyncio
    async def test_wrong_signature(self, client: AsyncClient, idempotency):
        payload = _payload()
        response = await client.post(
            URL,
            content=payload,
            headers={"Stripe-Signature": _sign(payload, secret="whsec_wrong")},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_001"

    @pytest.mark.asyncio
    async def test_tampered_body(self, client: AsyncClient, idempotency):
        header = _sign(_payload(event_id="evt_1"))
        response = await client.post(
            URL,
            content=_payload(event_id="evt_2"),
            headers={"Stripe-Signature": header},
        )

        assert response.status_code == 400


class TestProcessing:
    """Processing outcomes"""

    @pytest.mark.asyncio
    async def test_duplicate_event_skipped(self, client: AsyncClient, idempotency):
        is_processed, mark_processed, _ = idempotency
        is_processed.return_value = True
        payload = _payload()

        with patch.object(StripeWebhookService, "process_event", new_callable=AsyncMock) as process:
            response = await client.post(URL, content=payload, headers={"Stripe-Signature": _sign(payload)})

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": True}
        process.assert_not_called()
        mark_processed.assert_not_called()

    @pytest.mark.asyncio
    async def test_applied_event_commits_and_invalidates(self, client: AsyncClient, fake_db, idempotency):
        _, mark_processed, invalidate = idempotency
        user_id = uuid.uuid4()
        processed = ProcessedEvent(
            user_id=user_id,
            result=ReconcileResult(
                applied=True,
                snapshot=SubscriptionSnapshot(status=SubscriptionStatus.ACTIVE),
                reason=DecisionReason.ACTIVATION,
            ),
        )
        payload = _payload()

        with patch.object(StripeWebhookService, "process_event", new_callable=AsyncMock, return_value=processed):
            response = await client.post(URL, content=payload, headers={"Stripe-Signature": _sign(payload)})

        assert response.status_code == 200
        assert response.json() == {"received": True}
        fake_db.commit.assert_awaited()
        mark_processed.assert_awaited_once_with("stripe", "evt_1")
        invalidate.assert_awaited_once_with(str(user_id))

    @pytest.mark.asyncio
    async def test_rejected_update_is_acknowledged_without_invalidation(self, client: AsyncClient, idempotency):
        _, mark_processed, invalidate = idempotency
        processed = ProcessedEvent(
            user_id=uuid.uuid4(),
            result=ReconcileResult(
                applied=False,
                snapshot=SubscriptionSnapshot(status=SubscriptionStatus.ACTIVE),
                reason=DecisionReason.ACTIVE_GUARD,
            ),
        )
        payload = _payload()

        with patch.object(StripeWebhookService, "process_event", new_callable=AsyncMock, return_value=processed):
            response = await client.post(URL, content=payload, headers={"Stripe-Signature": _sign(payload)})

        assert response.status_code == 200
        mark_processed.assert_awaited_once()
        invalidate.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_status_is_acknowledged(self, client: AsyncClient, fake_db, idempotency):
        _, mark_processed, _ = idempotency
        payload = _payload()

        with patch.object(
            StripeWebhookService,
            "process_event",
            new_callable=AsyncMock,
            side_effect=InvalidCandidate("mystery"),
        ):
            response = await client.post(URL, content=payload, headers={"Stripe-Signature": _sign(payload)})

        assert response.status_code == 200
        assert response.json()["warning"] == "invalid subscription status"
        fake_db.rollback.assert_awaited()
        mark_processed.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_is_acknowledged(self, client: AsyncClient, fake_db, idempotency, monkeypatch):
        from app.config import settings

        _, mark_processed, _ = idempotency
        monkeypatch.setattr(settings, "WEBHOOK_PROCESSING_TIMEOUT_SECONDS", 0.01)

        async def slow_process(self, event):
            await asyncio.sleep(1)

        payload = _payload()
        with patch.object(StripeWebhookService, "process_event", slow_process):
            response = await client.post(URL, content=payload, headers={"Stripe-Signature": _sign(payload)})

        assert response.status_code == 200
        assert response.json()["warning"] == "processing timed out"
        fake_db.rollback.assert_awaited()
        mark_processed.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_conflict_returns_500(self, client: AsyncClient, fake_db, idempotency):
        _, mark_processed, _ = idempotency
        payload = _payload()

        with patch.object(
            StripeWebhookService,
            "process_event",
            new_callable=AsyncMock,
            side_effect=SubscriptionConflictError(uuid.uuid4(), 3),
        ):
            response = await client.post(URL, content=payload, headers={"Stripe-Signature": _sign(payload)})

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "WEBHOOK_003"
        fake_db.rollback.assert_awaited()
        mark_processed.assert_not_called()

    @pytest.mark.asyncio
    async def test_unhandled_event_acknowledged(self, client: AsyncClient, idempotency):
        _, mark_processed, invalidate = idempotency
        payload = _payload(event_type="customer.created")

        with patch.object(StripeWebhookService, "process_event", new_callable=AsyncMock, return_value=None):
            response = await client.post(URL, content=payload, headers={"Stripe-Signature": _sign(payload)})

        assert response.status_code == 200
        mark_processed.assert_awaited_once()
        invalidate.assert_not_called()
