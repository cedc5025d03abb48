from typing import AsyncGenerator

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from api.deps import get_http_client, get_registry
from app.services.api_client import ApiClient, create_http_client
from app.services.checkout.orchestrator import CheckoutOrchestrator
from app.services.checkout.registry import CheckoutRegistry
from main import app
from tests.fakes import ACCESS_TOKEN, API_BASE_URL, FRONTEND_URL, FakeBackend


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
async def http_client(backend: FakeBackend) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with create_http_client(base_url=API_BASE_URL, transport=backend.transport()) as client:
        yield client


@pytest.fixture
def api(http_client: httpx.AsyncClient) -> ApiClient:
    return ApiClient(http_client, access_token=ACCESS_TOKEN)


@pytest.fixture
def checkout(api: ApiClient) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(api, checkout_id="chk-test", frontend_url=FRONTEND_URL)


@pytest.fixture
async def ready_checkout(checkout: CheckoutOrchestrator) -> CheckoutOrchestrator:
    """Checkout initialized for class-1."""
    await checkout.initialize_checkout("class-1")
    return checkout


@pytest.fixture
def registry() -> CheckoutRegistry:
    return CheckoutRegistry(ttl_minutes=30)


@pytest.fixture
async def client(
    http_client: httpx.AsyncClient, registry: CheckoutRegistry
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for the checkout API."""
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_registry] = lambda: registry

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {ACCESS_TOKEN}"}
