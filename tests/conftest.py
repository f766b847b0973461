"""Shared pytest fixtures for testing."""

import os
import time
from decimal import Decimal
from typing import AsyncGenerator

# Set test environment before the app reads its config
os.environ["ENV"] = "test"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret"
os.environ["AUTH_JWT_AUDIENCE"] = ""

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from jose import jwt

from globalconnect.core.database import init_all_tables
from globalconnect.enterprise import EnterpriseService
from globalconnect.calls import CallService
from globalconnect.models.payment import Provider
from globalconnect.models.rate import RateEntry
from globalconnect.payment import PaymentService, StripeProvider, RazorpayProvider
from globalconnect.rates import RateService
from globalconnect.wallet import WalletService

STRIPE_WEBHOOK_SECRET = "whsec_test"
RAZORPAY_WEBHOOK_SECRET = "rzp_whsec_test"


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db_path(tmp_path) -> str:
    """Fresh SQLite file per test."""
    path = str(tmp_path / "globalconnect-test.db")
    await init_all_tables(path)
    return path


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def wallet(db_path) -> WalletService:
    return WalletService(db_path)


@pytest.fixture
def rates(db_path) -> RateService:
    return RateService(db_path)


@pytest.fixture
def enterprise(db_path, wallet) -> EnterpriseService:
    return EnterpriseService(wallet, db_path)


@pytest.fixture
def calls(db_path, wallet, rates, enterprise) -> CallService:
    return CallService(wallet, rates, enterprise, db_path)


@pytest.fixture
def providers():
    """Real adapters with test secrets; no outbound HTTP in webhook tests."""
    return {
        Provider.STRIPE: StripeProvider(
            secret_key="sk_test", webhook_secret=STRIPE_WEBHOOK_SECRET,
        ),
        Provider.RAZORPAY: RazorpayProvider(
            key_id="rzp_test", key_secret="rzp_secret",
            webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        ),
    }


@pytest.fixture
def payments(db_path, wallet, providers) -> PaymentService:
    return PaymentService(wallet, providers, db_path)


@pytest_asyncio.fixture
async def us_rate(rates) -> RateEntry:
    """+1 at $0.02/min sell, $0.01/min cost."""
    return await rates.upsert_rate(RateEntry(
        country_code="1",
        country_name="United States",
        cost_per_minute=Decimal("0.01"),
        sell_rate_per_minute=Decimal("0.02"),
    ))


# =============================================================================
# Auth Fixtures
# =============================================================================


def make_token(user_id: str, role: str = None, email: str = None) -> str:
    payload = {"sub": user_id, "exp": int(time.time()) + 3600}
    if email:
        payload["email"] = email
    if role:
        payload["app_metadata"] = {"role": role}
    return jwt.encode(payload, os.environ["AUTH_JWT_SECRET"], algorithm="HS256")


def auth_headers(user_id: str, role: str = None) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


# =============================================================================
# API Fixtures
# =============================================================================


@pytest.fixture
def app(db_path, providers) -> FastAPI:
    from main import create_app
    return create_app(db_path=db_path, payment_providers=providers)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
