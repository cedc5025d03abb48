"""Order placement and payment-session request."""

from typing import Optional

from pydantic import ValidationError

from app.models.checkout import CheckoutSelection
from app.schemas.order import OrderCreate, OrderPaymentRequest, OrderResponse
from app.services.checkout.outcomes import (
    CapacityConflict,
    FreeEnrollment,
    OrderFailed,
    OrderFatal,
    OrderOutcome,
    OrderRejected,
    PaymentRedirect,
)
from app.services.checkout.payment_handoff import PaymentHandoff
from app.services.checkout.pricing_preview import build_order_items, payment_plan_fields
from app.services.order_service import OrderService
from core.exceptions.base import (
    CapacityConflictException,
    CustomException,
    NotFoundException,
    TransientException,
)
from core.logging import get_logger

logger = get_logger(__name__)

# client_secret value returned when the API enrolled without payment
FREE_CLIENT_SECRET = "FREE"


class OrderCreator:
    """Creates the order for a selection and obtains its payment redirect."""

    def __init__(self, order_service: OrderService, handoff: PaymentHandoff):
        self.order_service = order_service
        self.handoff = handoff

    async def create_order(
        self,
        selection: CheckoutSelection,
        existing: Optional[OrderResponse] = None,
    ) -> OrderOutcome:
        """Place the order, or reuse ``existing``, then request payment.

        ``existing`` is an order already created for the same selection whose
        payment request failed; it is paid instead of creating a second one.
        """
        order = existing
        if order is None:
            payment_plan, installments_count = payment_plan_fields(selection)
            try:
                order = await self.order_service.create(
                    OrderCreate(
                        items=build_order_items(selection),
                        discount_code=selection.discount_code,
                        payment_plan=payment_plan,
                        installments_count=installments_count,
                    )
                )
            except CapacityConflictException as e:
                logger.info(f"Class {selection.class_id} filled up before ordering: {e.message}")
                return CapacityConflict(message=e.message)
            except NotFoundException as e:
                return OrderFatal(message=e.message)
            except TransientException as e:
                return OrderFailed(message=e.message)
            except CustomException as e:
                return OrderRejected(message=e.message)
            except ValidationError as e:
                logger.error(f"Unexpected order payload: {e}")
                return OrderFailed(message="Could not read the created order")
        else:
            logger.info(f"Reusing order {order.id} for payment")

        if order.is_free:
            logger.info(f"Order {order.id} is free, no payment needed")
            return FreeEnrollment(order=order)

        return await self._request_payment(order, selection)

    async def _request_payment(
        self, order: OrderResponse, selection: CheckoutSelection
    ) -> OrderOutcome:
        payment_plan, installments_count = payment_plan_fields(selection)
        success_url, cancel_url = self.handoff.return_urls()
        try:
            intent = await self.order_service.pay(
                order.id,
                OrderPaymentRequest(
                    success_url=success_url,
                    cancel_url=cancel_url,
                    payment_plan=payment_plan,
                    installments_count=installments_count,
                ),
            )
        except CapacityConflictException as e:
            return CapacityConflict(message=e.message, order=order)
        except NotFoundException as e:
            return OrderFatal(message=e.message)
        except TransientException as e:
            return OrderFailed(message=e.message, order=order)
        except CustomException as e:
            return OrderRejected(message=e.message, order=order)
        except ValidationError as e:
            logger.error(f"Unexpected payment session payload: {e}")
            return OrderFailed(message="Could not read the payment session", order=order)

        if intent.client_secret == FREE_CLIENT_SECRET:
            return FreeEnrollment(order=order)

        return PaymentRedirect(order=order, session_id=intent.id, redirect_url=intent.client_secret)
