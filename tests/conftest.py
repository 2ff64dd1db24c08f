import asyncio
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import httpx
import pytest

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("MEDIA_SIGNING_SECRET", "test-secret")


@pytest.fixture
def now():
    return NOW


def make_plan(**overrides):
    values = {
        "id": 1,
        "code": "starter-monthly",
        "name": "Starter",
        "price": "30.00",
        "currency": "USD",
        "included_chats": 400,
        "overage_chat_price": "0.05",
        "assistant_limit": 1,
        "integrations_per_channel_limit": 1,
        "billing_period_days": 30,
        "is_active": True,
        "is_public": True,
        "is_enterprise": False,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def make_subscription(plan=None, **overrides):
    values = {
        "id": 7,
        "company_id": 3,
        "user_id": 2,
        "subscription_plan_id": plan.id if plan is not None else None,
        "plan": plan,
        "status": "active",
        "quantity": 1,
        "billing_cycle_days": 30,
        "starts_at": NOW - timedelta(days=10),
        "expires_at": NOW + timedelta(days=20),
        "chat_count_current_period": 0,
        "chat_period_started_at": NOW - timedelta(days=10),
        "chat_period_ends_at": NOW + timedelta(days=20),
        "assistant_limit_override": None,
        "integrations_per_channel_override": None,
        "included_chats_override": None,
        "overage_chat_price_override": None,
        "subscription_metadata": {},
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def plan():
    return make_plan()


@pytest.fixture
def subscription(plan):
    return make_subscription(plan)


def slow_turn(*args):
    time.sleep(0.5)
    return None


def post_concurrently(app, path: str, count: int, **kwargs) -> tuple[list, float]:
    """Send `count` identical POSTs at once through the ASGI app; returns responses and wall time."""

    async def send_all():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            started = time.monotonic()
            responses = await asyncio.gather(*(http.post(path, **kwargs) for _ in range(count)))
            return list(responses), time.monotonic() - started

    return asyncio.run(send_all())
