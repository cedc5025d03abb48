"""Order endpoints used by checkout."""

from app.schemas.order import (
    OrderCalculateRequest,
    OrderCalculation,
    OrderCreate,
    OrderPaymentRequest,
    OrderResponse,
    PaymentIntentResponse,
)
from app.services.api_client import ApiClient
from core.logging import get_logger

logger = get_logger(__name__)


class OrderService:
    """Order calculation, creation, payment and receipts."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def calculate(self, request: OrderCalculateRequest) -> OrderCalculation:
        data = await self.api.post(
            "/orders/calculate", json=request.model_dump(mode="json", exclude_none=True)
        )
        return OrderCalculation.model_validate(data)

    async def create(self, request: OrderCreate) -> OrderResponse:
        data = await self.api.post("/orders/", json=request.model_dump(mode="json", exclude_none=True))
        order = OrderResponse.model_validate(data)
        logger.info(f"Order created: {order.id} (total={order.total})")
        return order

    async def get_by_id(self, order_id: str) -> OrderResponse:
        data = await self.api.get(f"/orders/{order_id}")
        return OrderResponse.model_validate(data)

    async def pay(self, order_id: str, request: OrderPaymentRequest) -> PaymentIntentResponse:
        """Open a hosted payment session for the order."""
        data = await self.api.post(
            f"/orders/{order_id}/pay", json=request.model_dump(mode="json", exclude_none=True)
        )
        return PaymentIntentResponse.model_validate(data)

    async def cancel(self, order_id: str) -> None:
        await self.api.post(f"/orders/{order_id}/cancel")
        logger.info(f"Order cancelled: {order_id}")

    async def download_receipt(self, order_id: str) -> tuple[bytes, str]:
        """Return (content, content_type) of the order receipt."""
        response = await self.api.get_bytes(f"/orders/{order_id}/invoice/download")
        return response.content, response.headers.get("content-type", "application/pdf")
