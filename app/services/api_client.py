"""HTTP client for the registration API."""

from typing import Any, Optional

import httpx

from core.config import config as settings
from core.exceptions.base import (
    BadRequestException,
    CapacityConflictException,
    ConflictException,
    CustomException,
    ForbiddenException,
    NotFoundException,
    TransientException,
    UnauthorizedException,
    ValidationException,
)
from core.logging import get_logger

logger = get_logger(__name__)

# Messages the API uses when a class fills up between preview and order
CAPACITY_MARKERS = ("capacity", "class is full", "no spots", "fully booked")

STATUS_EXCEPTIONS: dict[int, type[CustomException]] = {
    400: BadRequestException,
    401: UnauthorizedException,
    403: ForbiddenException,
    404: NotFoundException,
    409: ConflictException,
    422: ValidationException,
}


def create_http_client(
    base_url: str = None,
    timeout: float = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the shared async HTTP client."""
    return httpx.AsyncClient(
        base_url=base_url or settings.API_BASE_URL,
        timeout=timeout or settings.API_TIMEOUT_SECONDS,
        transport=transport,
        headers={"Accept": "application/json"},
    )


def _error_message(response: httpx.Response) -> tuple[str, Optional[str], dict]:
    """Extract (message, error_code, data) from an API error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None, {}

    if not isinstance(body, dict):
        return str(body), None, {}

    detail = body.get("detail")
    if isinstance(detail, list):
        # FastAPI request validation errors
        parts = [str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in detail]
        return "; ".join(parts), None, {"errors": detail}

    message = body.get("message") or detail or response.reason_phrase
    return str(message), body.get("error_code"), body.get("data") or {}


def raise_for_response(response: httpx.Response) -> None:
    """Raise the matching CustomException for an unsuccessful response."""
    if response.is_success:
        return

    message, error_code, data = _error_message(response)

    if response.status_code >= 500 or response.status_code in (408, 429):
        raise TransientException(message=message, data=data)

    # The API reports a full class as 400 "Class is full" or 409
    if error_code == CapacityConflictException.error_code or (
        response.status_code in (400, 409)
        and any(marker in message.lower() for marker in CAPACITY_MARKERS)
    ):
        raise CapacityConflictException(message=message, data=data)

    exc_class = STATUS_EXCEPTIONS.get(response.status_code, BadRequestException)
    raise exc_class(
        message=message,
        code=response.status_code,
        error_code=error_code,
        data=data,
    )


class ApiClient:
    """Authenticated access to the registration API.

    Every transport failure surfaces as ``TransientException`` and every
    error status as one of the ``CustomException`` subclasses, so callers
    never see raw ``httpx`` errors.
    """

    def __init__(self, http_client: httpx.AsyncClient, access_token: Optional[str] = None):
        self.http_client = http_client
        self.access_token = access_token

    def _headers(self) -> dict:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Any = None,
    ) -> httpx.Response:
        try:
            response = await self.http_client.request(
                method,
                path,
                params={k: v for k, v in (params or {}).items() if v is not None} or None,
                json=json,
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out: {e}")
            raise TransientException(message="The registration service did not respond in time") from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransientException() from e

        if not response.is_success:
            logger.info(f"{method} {path} -> {response.status_code}")
        raise_for_response(response)
        return response

    async def get(self, path: str, params: Optional[dict] = None) -> Any:
        response = await self.request("GET", path, params=params)
        return response.json()

    async def post(self, path: str, json: Any = None) -> Any:
        response = await self.request("POST", path, json=json)
        if not response.content:
            return {}
        return response.json()

    async def get_bytes(self, path: str) -> httpx.Response:
        return await self.request("GET", path)
