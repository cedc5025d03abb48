"""Hosted payment redirect and return-path reconciliation."""

from typing import Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from app.models.checkout import PaymentStatus
from app.services.checkout.outcomes import (
    PaymentCancelled,
    PaymentCheckFailed,
    PaymentConfirmed,
    PaymentMismatch,
    PaymentReturnOutcome,
)
from app.services.order_service import OrderService
from core.exceptions.base import CustomException, TransientException
from core.logging import get_logger

logger = get_logger(__name__)

# Replaced by the payment provider with the real session id
SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"

# Order statuses that contradict a successful return
FAILED_ORDER_STATUSES = ("cancelled", "refunded", "failed")


class PaymentHandoff:
    """Holds the redirect target of one checkout and reconciles its return."""

    def __init__(self, order_service: OrderService, checkout_id: str, frontend_url: str):
        self.order_service = order_service
        self.checkout_id = checkout_id
        self.frontend_url = frontend_url.rstrip("/")
        self.session_id: Optional[str] = None
        self.redirect_url: Optional[str] = None
        self.status = PaymentStatus.NOT_STARTED

    def return_urls(self) -> tuple[str, str]:
        """(success_url, cancel_url) handed to the payment provider."""
        query = urlencode({"checkout_id": self.checkout_id})
        success_url = (
            f"{self.frontend_url}/payment/success?{query}&session_id={SESSION_ID_PLACEHOLDER}"
        )
        cancel_url = f"{self.frontend_url}/payment/cancel?{query}"
        return success_url, cancel_url

    def arm(self, session_id: str, redirect_url: str) -> None:
        self.session_id = session_id
        self.redirect_url = redirect_url
        self.status = PaymentStatus.REDIRECT_READY
        logger.info(f"Checkout {self.checkout_id} ready for payment session {session_id}")

    def reset(self) -> None:
        self.session_id = None
        self.redirect_url = None
        self.status = PaymentStatus.NOT_STARTED

    async def reconcile_success(self, order_id: str, session_id: str) -> PaymentReturnOutcome:
        """Confirm a success return against the armed session and the server order."""
        if self.session_id is not None and session_id != self.session_id:
            logger.warning(
                f"Checkout {self.checkout_id}: return session {session_id} "
                f"does not match {self.session_id}"
            )
            return PaymentMismatch(message="Payment session does not belong to this checkout")

        try:
            order = await self.order_service.get_by_id(order_id)
        except TransientException as e:
            return PaymentCheckFailed(message=e.message)
        except (CustomException, ValidationError) as e:
            logger.error(f"Could not load order {order_id} after payment: {e}")
            return PaymentMismatch(message="Order could not be confirmed")

        if order.status in FAILED_ORDER_STATUSES:
            return PaymentMismatch(message=f"Order is {order.status}")

        # The matching session id is the success signal; the payment webhook
        # may not have moved the order past pending_payment yet
        if order.status == "pending_payment":
            logger.info(f"Order {order_id} confirmed by session {session_id}, payment still settling")

        self.status = PaymentStatus.SUCCEEDED
        return PaymentConfirmed(order=order)

    def reconcile_cancel(self) -> PaymentCancelled:
        # The redirect stays usable so the parent can try again
        self.status = PaymentStatus.CANCELLED
        logger.info(f"Checkout {self.checkout_id}: payment cancelled by user")
        return PaymentCancelled()
