"""Pytest configuration and fixtures for agentic checkout tests."""
from datetime import timedelta
from typing import Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from agentic_checkout.config import Settings
from agentic_checkout.db.init_db import initialize_database
from agentic_checkout.main import create_app
from agentic_checkout.mocks.catalog import PricedItem
from agentic_checkout.services.container import build_services
from agentic_checkout.timeutils import utcnow


CHECKOUT_API_VERSION = "2025-09-12"
DELEGATE_PAYMENT_API_VERSION = "2025-09-29"

# Luhn-valid test card accepted by the mock tokenizer
TEST_CARD_NUMBER = "4242424242424242"

SHIPPING_ADDRESS = {
    "name": "Test Buyer",
    "line_one": "1 Main St",
    "city": "Tampa",
    "state": "FL",
    "country": "US",
    "postal_code": "33601",
}

TEST_CATALOG = {
    "item_123": PricedItem(item_id="item_123", name="Test Widget", unit_amount=300),
    "sale_item": PricedItem(item_id="sale_item", name="Sale Lamp", unit_amount=1000, unit_discount=250),
    "sold_out": PricedItem(item_id="sold_out", name="Sold Out Chair", unit_amount=5000, available=False),
}


async def fake_catalog(item_id: str) -> Optional[PricedItem]:
    if item_id == "catalog_error":
        raise RuntimeError("catalog backend unavailable")
    return TEST_CATALOG.get(item_id)


class FakeClock:
    """Controllable time source shared by every service under test."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """Stands in for the webhook notifier and keeps published events."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Pricing matches the reference scenario: 10% item tax, 100 cent untaxed shipping."""
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "checkout.db"),
        tax_rate=0.10,
        shipping_tax_rate=0.0,
        standard_shipping_cents=100,
        express_shipping_cents=500,
        idempotency_wait_timeout_seconds=2.0,
        webhook_url=None,
        api_key=None,
    )


@pytest_asyncio.fixture
async def services(settings, clock):
    """Service container on a fresh database, without background jobs."""
    container = build_services(settings, catalog=fake_catalog, clock=clock, with_scheduler=False)
    await initialize_database(container.engine)
    yield container
    await container.engine.dispose()


@pytest.fixture
def client(settings, clock):
    """TestClient running the full app lifespan against a fresh database."""
    container = build_services(settings, clock=clock, with_scheduler=False)
    app = create_app(services=container)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def checkout_headers():
    return {"API-Version": CHECKOUT_API_VERSION, "Authorization": "Bearer test_key"}


@pytest.fixture
def delegate_headers():
    return {"API-Version": DELEGATE_PAYMENT_API_VERSION, "Authorization": "Bearer test_key"}


def delegate_payment_body(session_id: str, max_amount: int, currency: str = "usd", expires_at=None) -> dict:
    expires_at = expires_at or (utcnow() + timedelta(hours=1))
    return {
        "payment_method": {
            "type": "card",
            "card_number_type": "fpan",
            "number": TEST_CARD_NUMBER,
            "exp_month": "12",
            "exp_year": str(utcnow().year + 3),
            "name": "Test Buyer",
            "cvc": "123",
            "display_card_funding_type": "credit",
            "display_brand": "visa",
            "display_last4": "4242",
            "metadata": {},
        },
        "allowance": {
            "reason": "one_time",
            "max_amount": max_amount,
            "currency": currency,
            "checkout_session_id": session_id,
            "merchant_id": "merchant_demo",
            "expires_at": expires_at.isoformat().replace("+00:00", "Z"),
        },
        "billing_address": SHIPPING_ADDRESS,
        "risk_signals": [{"type": "card_testing", "score": 10, "action": "authorized"}],
        "metadata": {"source": "agent_checkout"},
    }
