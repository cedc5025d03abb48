"""Order-related schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from app.schemas.base import BaseSchema


# ============== Order Item Schemas ==============


class OrderItemInput(BaseSchema):
    """Input item for order calculation and creation."""

    child_id: str
    class_id: str
    custom_fee_ids: list[str] = []


class CustomFeeLine(BaseSchema):
    """Custom fee charged on one line item."""

    fee_id: Optional[str] = None
    name: str
    amount: Decimal


class LineItemCalculation(BaseSchema):
    """Calculated line item with discounts."""

    child_id: str
    child_name: str = ""
    class_id: str
    class_name: str = ""
    unit_price: Decimal
    custom_fees: list[CustomFeeLine] = []
    custom_fees_total: Decimal = Decimal("0.00")
    sibling_discount: Decimal = Decimal("0.00")
    sibling_discount_description: Optional[str] = None
    promo_discount: Decimal = Decimal("0.00")
    promo_discount_description: Optional[str] = None
    scholarship_discount: Decimal = Decimal("0.00")
    scholarship_discount_description: Optional[str] = None
    line_total: Decimal


class OrderLineItemResponse(BaseSchema):
    """Order line item response."""

    id: str
    order_id: str
    enrollment_id: Optional[str] = None
    description: str
    quantity: int = 1
    unit_price: Decimal
    discount_amount: Decimal = Decimal("0.00")
    discount_description: Optional[str] = None
    line_total: Decimal


# ============== Order Calculation Schemas ==============


class OrderCalculateRequest(BaseSchema):
    """Request to calculate order total."""

    items: list[OrderItemInput] = Field(..., min_length=1)
    discount_code: Optional[str] = None
    payment_plan: Optional[str] = None
    installments_count: Optional[int] = None


class OrderCalculation(BaseSchema):
    """Order calculation result showing all discounts."""

    line_items: list[LineItemCalculation]
    subtotal: Decimal
    custom_fees_total: Decimal = Decimal("0.00")
    sibling_discount_total: Decimal = Decimal("0.00")
    promo_discount_total: Decimal = Decimal("0.00")
    scholarship_discount_total: Decimal = Decimal("0.00")
    discount_total: Decimal = Decimal("0.00")
    processing_fee: Decimal = Decimal("0.00")
    total: Decimal
    installment_amount: Optional[Decimal] = None
    discount_code: Optional[str] = None
    discount_code_id: Optional[str] = None


# ============== Order CRUD Schemas ==============


class OrderCreate(BaseSchema):
    """Create an order from the confirmed selection."""

    items: list[OrderItemInput] = Field(..., min_length=1)
    discount_code: Optional[str] = None
    payment_plan: Optional[str] = None
    installments_count: Optional[int] = None
    notes: Optional[str] = None


class OrderResponse(BaseSchema):
    """Order response."""

    id: str
    user_id: Optional[str] = None
    status: str
    subtotal: Decimal = Decimal("0.00")
    discount_total: Decimal = Decimal("0.00")
    total: Decimal
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    line_items: list[OrderLineItemResponse] = []

    @property
    def is_free(self) -> bool:
        return self.total <= 0


class OrderPaymentRequest(BaseSchema):
    """Body of the order pay call."""

    success_url: str
    cancel_url: str
    payment_plan: Optional[str] = None
    installments_count: Optional[int] = None


class PaymentIntentResponse(BaseSchema):
    """Hosted payment session for an order.

    ``client_secret`` carries the hosted checkout URL, or ``FREE`` when the
    API activated the enrollment without payment.
    """

    id: str
    client_secret: str
    status: str
    amount: int  # In cents
