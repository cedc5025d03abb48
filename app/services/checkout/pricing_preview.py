"""Price estimates and server calculations for a checkout selection."""

from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from app.models.checkout import (
    AppliedDiscount,
    CheckoutSelection,
    PaymentMethod,
    PricePreview,
)
from app.schemas.class_ import ClassOffering
from app.schemas.discount import DiscountCodeValidate
from app.schemas.order import OrderCalculateRequest, OrderItemInput
from app.services.checkout.outcomes import (
    DiscountAccepted,
    DiscountFailed,
    DiscountOutcome,
    DiscountRejected,
    PreviewFailed,
    PreviewOutcome,
    PreviewReady,
)
from app.services.discount_service import DiscountService
from app.services.order_service import OrderService
from core.exceptions.base import CustomException, TransientException
from core.logging import get_logger

logger = get_logger(__name__)


def build_order_items(selection: CheckoutSelection) -> list[OrderItemInput]:
    """One order item per selected child, carrying that child's fees."""
    return [
        OrderItemInput(
            child_id=child_id,
            class_id=selection.class_id,
            custom_fee_ids=list(selection.fees_for(child_id)),
        )
        for child_id in selection.child_ids
    ]


def payment_plan_fields(selection: CheckoutSelection) -> tuple[Optional[str], Optional[int]]:
    """(payment_plan, installments_count) as the API expects them."""
    if selection.payment_method is None:
        return None, None
    if selection.payment_method == PaymentMethod.INSTALLMENTS:
        return selection.payment_method.value, selection.installments
    return selection.payment_method.value, None


class PricingPreview:
    """Computes what the parent will pay.

    The local estimate is only a placeholder; the amount charged is always
    the one returned by the calculate endpoint.
    """

    def __init__(self, order_service: OrderService, discount_service: DiscountService):
        self.order_service = order_service
        self.discount_service = discount_service

    @staticmethod
    def estimate(offering: ClassOffering, selection: CheckoutSelection) -> PricePreview:
        """Local, provisional total: class price plus chosen fees per child."""
        total = Decimal("0.00")
        for child_id in selection.child_ids:
            total += offering.price
            for fee_id in selection.fees_for(child_id):
                fee = offering.get_fee(fee_id)
                if fee is not None:
                    total += fee.amount
        return PricePreview(
            fingerprint=selection.fingerprint(),
            total=total,
            is_provisional=True,
        )

    async def compute_preview(self, selection: CheckoutSelection) -> PreviewOutcome:
        payment_plan, installments_count = payment_plan_fields(selection)
        try:
            calculation = await self.order_service.calculate(
                OrderCalculateRequest(
                    items=build_order_items(selection),
                    discount_code=selection.discount_code,
                    payment_plan=payment_plan,
                    installments_count=installments_count,
                )
            )
        except TransientException as e:
            return PreviewFailed(message=e.message)
        except CustomException as e:
            logger.warning(f"Price calculation rejected for class {selection.class_id}: {e.message}")
            return PreviewFailed(message=e.message, transient=False)
        except ValidationError as e:
            logger.error(f"Unexpected calculation payload: {e}")
            return PreviewFailed(message="Could not read the price calculation")

        return PreviewReady(
            preview=PricePreview(
                fingerprint=selection.fingerprint(),
                total=calculation.total,
                is_provisional=False,
                calculation=calculation,
            )
        )

    async def validate_discount(
        self,
        code: str,
        order_amount: Decimal,
        offering: ClassOffering,
    ) -> DiscountOutcome:
        try:
            result = await self.discount_service.validate(
                DiscountCodeValidate(
                    code=code,
                    order_amount=order_amount,
                    program_id=offering.program_id,
                    class_id=offering.id,
                )
            )
        except TransientException as e:
            return DiscountFailed(message=e.message)
        except CustomException as e:
            return DiscountRejected(reason=e.message)

        if not result.is_valid:
            return DiscountRejected(reason=result.error_message or "Invalid discount code")

        return DiscountAccepted(
            discount=AppliedDiscount(
                code=code,
                discount_type=result.discount_type,
                discount_value=result.discount_value,
                discount_amount=result.discount_amount,
            )
        )
