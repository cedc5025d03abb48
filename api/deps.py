from typing import Optional

import httpx
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from app.services.api_client import ApiClient
from app.services.checkout.orchestrator import CheckoutOrchestrator
from app.services.checkout.registry import CheckoutRegistry
from core.exceptions.base import UnauthorizedException

# Tokens are issued by the registration API; they are only forwarded here
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=False)


async def get_access_token(token: Optional[str] = Depends(oauth2_scheme)) -> str:
    """Require a bearer token on the request."""
    if not token:
        raise UnauthorizedException(message="Not authenticated")
    return token


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Shared HTTP client created by the application lifespan."""
    return request.app.state.http_client


def get_registry(request: Request) -> CheckoutRegistry:
    return request.app.state.checkout_registry


async def get_api_client(
    token: str = Depends(get_access_token),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> ApiClient:
    """API client acting on behalf of the caller."""
    return ApiClient(http_client, access_token=token)


async def get_checkout(
    checkout_id: str,
    token: str = Depends(get_access_token),
    registry: CheckoutRegistry = Depends(get_registry),
) -> CheckoutOrchestrator:
    """Get the caller's checkout session from the path."""
    return registry.get(checkout_id, token)
