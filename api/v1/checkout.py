"""Checkout session endpoints for the parent portal."""

from fastapi import APIRouter, Depends, Query, Response, status

from api.deps import get_access_token, get_api_client, get_checkout, get_registry
from app.schemas.checkout import (
    CheckoutResponse,
    CheckoutSessionCreate,
    ChildSelectionRequest,
    DiscountApplyRequest,
    FeeToggleRequest,
    InstallmentPlanRequest,
    PaymentMethodRequest,
    WaitlistJoinRequest,
    WaiverSignRequest,
    snapshot_to_response,
)
from app.services.api_client import ApiClient
from app.services.checkout.orchestrator import CheckoutOrchestrator
from app.services.checkout.registry import CheckoutRegistry
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/checkout", tags=["Checkout"])


async def _respond(checkout: CheckoutOrchestrator) -> CheckoutResponse:
    """Serialize the session once background checks have finished."""
    return snapshot_to_response(await checkout.settle())


# ============== Sessions ==============


@router.post("/sessions", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout_session(
    data: CheckoutSessionCreate,
    token: str = Depends(get_access_token),
    api: ApiClient = Depends(get_api_client),
    registry: CheckoutRegistry = Depends(get_registry),
) -> CheckoutResponse:
    """
    Start a checkout for a class.

    Loads the class and the parent's children. A full class lands directly
    on the waitlist phase.
    """
    checkout = CheckoutOrchestrator(api)
    logger.info(f"Starting checkout {checkout.checkout_id} for class {data.class_id}")
    registry.add(checkout, token)
    await checkout.initialize_checkout(data.class_id)
    return await _respond(checkout)


@router.get("/sessions/{checkout_id}", response_model=CheckoutResponse)
async def get_checkout_session(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    return await _respond(checkout)


@router.delete("/sessions/{checkout_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_checkout_session(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    registry: CheckoutRegistry = Depends(get_registry),
) -> Response:
    await checkout.settle()
    registry.remove(checkout.checkout_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions/{checkout_id}/retry", response_model=CheckoutResponse)
async def retry_checkout_step(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    """Retry the step that failed with a temporary error."""
    await checkout.retry()
    return await _respond(checkout)


# ============== Children & Waivers ==============


@router.post("/sessions/{checkout_id}/children/select", response_model=CheckoutResponse)
async def select_child(
    data: ChildSelectionRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.select_child(data.child_id)
    return await _respond(checkout)


@router.post("/sessions/{checkout_id}/children/toggle", response_model=CheckoutResponse)
async def toggle_child(
    data: ChildSelectionRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.toggle_child_selection(data.child_id)
    return await _respond(checkout)


@router.post("/sessions/{checkout_id}/waivers/sign", response_model=CheckoutResponse)
async def sign_waivers(
    data: WaiverSignRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    """Sign every pending waiver of a child with the guardian's name."""
    await checkout.sign_waivers(data.child_id, data.signer_name)
    return await _respond(checkout)


# ============== Fees, Payment Method & Discount ==============


@router.post("/sessions/{checkout_id}/fees/toggle", response_model=CheckoutResponse)
async def toggle_custom_fee(
    data: FeeToggleRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.toggle_custom_fee(data.child_id, data.fee_id)
    return await _respond(checkout)


@router.put("/sessions/{checkout_id}/payment-method", response_model=CheckoutResponse)
async def select_payment_method(
    data: PaymentMethodRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.select_payment_method(data.method)
    return await _respond(checkout)


@router.put("/sessions/{checkout_id}/installment-plan", response_model=CheckoutResponse)
async def select_installment_plan(
    data: InstallmentPlanRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.select_installment_plan(data.installments)
    return await _respond(checkout)


@router.post("/sessions/{checkout_id}/discount", response_model=CheckoutResponse)
async def apply_discount(
    data: DiscountApplyRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.apply_discount(data.code)
    return await _respond(checkout)


@router.delete("/sessions/{checkout_id}/discount", response_model=CheckoutResponse)
async def remove_discount(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.remove_discount()
    return await _respond(checkout)


# ============== Order & Payment ==============


@router.post("/sessions/{checkout_id}/order", response_model=CheckoutResponse)
async def create_order(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    """
    Place the order for the current selection.

    Returns the hosted payment redirect for paid orders. Free orders are
    confirmed immediately; a class that filled up moves to the waitlist.
    """
    await checkout.create_order()
    return await _respond(checkout)


@router.delete("/sessions/{checkout_id}/order", response_model=CheckoutResponse)
async def discard_order(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.discard_order()
    return await _respond(checkout)


@router.post("/sessions/{checkout_id}/payment/success", response_model=CheckoutResponse)
async def payment_success(
    session_id: str = Query(..., min_length=1),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.complete_payment(session_id)
    return await _respond(checkout)


@router.post("/sessions/{checkout_id}/payment/cancel", response_model=CheckoutResponse)
async def payment_cancel(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.cancel_payment()
    return await _respond(checkout)


@router.get("/sessions/{checkout_id}/receipt")
async def download_receipt(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> Response:
    content, content_type = await checkout.download_receipt()
    return Response(
        content=content,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="receipt-{checkout.checkout_id}.pdf"'},
    )


# ============== Waitlist ==============


@router.post("/sessions/{checkout_id}/waitlist", response_model=CheckoutResponse)
async def join_waitlist(
    data: WaitlistJoinRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    await checkout.join_waitlist(data.child_id)
    return await _respond(checkout)
