"""Discount code schemas."""

from decimal import Decimal
from typing import Optional

from app.schemas.base import BaseSchema


class DiscountCodeValidate(BaseSchema):
    """Validate a discount code."""

    code: str
    order_amount: Decimal
    program_id: Optional[str] = None
    class_id: Optional[str] = None


class DiscountValidationResponse(BaseSchema):
    """Discount validation result."""

    is_valid: bool
    error_message: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
