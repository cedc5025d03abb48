"""Discount code validation."""

from app.schemas.discount import DiscountCodeValidate, DiscountValidationResponse
from app.services.api_client import ApiClient


class DiscountService:
    """Server-side discount code validation."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def validate(self, request: DiscountCodeValidate) -> DiscountValidationResponse:
        data = await self.api.post(
            "/discounts/validate", json=request.model_dump(mode="json", exclude_none=True)
        )
        return DiscountValidationResponse.model_validate(data)
