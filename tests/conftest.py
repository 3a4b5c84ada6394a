"""
Shared Test Fixtures
====================

HTTP client against the ASGI app, a fake DB session, and an in-memory
subscription store that mirrors ``SubscriptionStore``'s interface.
"""

import os

# Settings are read once at import time; give tests working secrets.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("INTERNAL_API_TOKEN", "internal-test-token")

from dataclasses import replace
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.db.session import get_db
from app.main import app
from app.services.reconciler import DecisionReason, SubscriptionSnapshot
from app.services.subscription_store import BillingContact, StoredSubscription


class InMemorySubscriptionStore:
    """
    Dict-backed stand-in for ``SubscriptionStore``.

    ``before_write`` runs once, right before the next insert or
    compare-and-swap, to simulate a concurrent writer sneaking in between
    read and write.  ``always_conflict`` makes every write lose.
    """

    def __init__(self):
        self.users: dict[uuid.UUID, dict[str, Any]] = {}
        self.rows: dict[uuid.UUID, StoredSubscription] = {}
        self.providers: dict[uuid.UUID, Any] = {}
        self.history: list[dict[str, Any]] = []
        self.writes = 0
        self.write_attempts = 0
        self.before_write: Optional[Callable[["InMemorySubscriptionStore", uuid.UUID], None]] = None
        self.always_conflict = False

    # -- test helpers --------------------------------------------------------

    def add_user(
        self,
        email: Optional[str] = "user@example.com",
        firebase_uid: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
    ) -> uuid.UUID:
        user_id = uuid.uuid4()
        self.users[user_id] = {
            "email": email.lower() if email else None,
            "firebase_uid": firebase_uid,
            "stripe_customer_id": stripe_customer_id,
        }
        return user_id

    def seed(
        self,
        user_id: uuid.UUID,
        snapshot: SubscriptionSnapshot,
        version: int = 1,
        provider: Any = None,
    ) -> None:
        self.rows[user_id] = StoredSubscription(snapshot=snapshot, version=version, provider=provider)
        self.providers[user_id] = provider

    def snapshot(self, user_id: uuid.UUID) -> Optional[SubscriptionSnapshot]:
        stored = self.rows.get(user_id)
        return stored.snapshot if stored else None

    def _interfere(self, user_id: uuid.UUID) -> None:
        self.write_attempts += 1
        if self.always_conflict and user_id in self.rows:
            stored = self.rows[user_id]
            self.rows[user_id] = replace(stored, version=stored.version + 1)
        if self.before_write is not None:
            hook, self.before_write = self.before_write, None
            hook(self, user_id)

    # -- SubscriptionStore interface -----------------------------------------

    async def user_exists(self, user_id: uuid.UUID) -> bool:
        return user_id in self.users

    async def get_billing_contact(self, user_id: uuid.UUID) -> Optional[BillingContact]:
        user = self.users.get(user_id)
        if user is None:
            return None
        return BillingContact(email=user["email"], stripe_customer_id=user["stripe_customer_id"])

    async def find_user_id_by_stripe_customer(self, customer_id: str) -> Optional[uuid.UUID]:
        for user_id, user in self.users.items():
            if user["stripe_customer_id"] == customer_id:
                return user_id
        return None

    async def find_user_id_by_email(self, email: str) -> Optional[uuid.UUID]:
        for user_id, user in self.users.items():
            if user["email"] and user["email"] == email.lower():
                return user_id
        return None

    async def find_user_id_by_firebase_uid(self, firebase_uid: str) -> Optional[uuid.UUID]:
        for user_id, user in self.users.items():
            if user["firebase_uid"] == firebase_uid:
                return user_id
        return None

    async def find_user_id_by_subscription_customer(self, customer_id: str) -> Optional[uuid.UUID]:
        for user_id, stored in self.rows.items():
            if stored.snapshot.customer_id == customer_id:
                return user_id
        return None

    async def link_stripe_customer(self, user_id: uuid.UUID, customer_id: str) -> None:
        self.users[user_id]["stripe_customer_id"] = customer_id

    async def load(self, user_id: uuid.UUID) -> Optional[StoredSubscription]:
        return self.rows.get(user_id)

    async def insert(self, user_id, snapshot, provider) -> bool:
        self._interfere(user_id)
        if user_id in self.rows or self.always_conflict:
            return False
        self.rows[user_id] = StoredSubscription(snapshot=snapshot, version=1, provider=provider)
        self.providers[user_id] = provider
        self.writes += 1
        return True

    async def compare_and_swap(self, user_id, expected_version, snapshot, provider) -> bool:
        self._interfere(user_id)
        stored = self.rows.get(user_id)
        if stored is None or stored.version != expected_version:
            return False
        self.rows[user_id] = StoredSubscription(
            snapshot=snapshot,
            version=expected_version + 1,
            provider=provider,
        )
        self.providers[user_id] = provider
        self.writes += 1
        return True

    async def record_history(
        self,
        user_id,
        previous,
        new,
        reason: DecisionReason,
        provider,
        event_id=None,
        event_data=None,
    ) -> None:
        self.history.append(
            {
                "user_id": user_id,
                "previous_status": previous.status.value,
                "new_status": new.status.value,
                "reason": reason.value,
                "provider": provider,
                "event_id": event_id,
            }
        )


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    """Empty in-memory subscription store."""
    return InMemorySubscriptionStore()


@pytest.fixture
def fake_db() -> AsyncMock:
    """AsyncSession stand-in; only commit/rollback are ever awaited directly."""
    return AsyncMock()


@pytest_asyncio.fixture
async def client(fake_db):
    """HTTP client bound to the app, with the DB session dependency replaced."""

    async def _override_get_db():
        yield fake_db

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers() -> dict[str, str]:
    """Authorization header accepted by internal endpoints."""
    return {"Authorization": f"Bearer {os.environ['INTERNAL_API_TOKEN']}"}
