"""Checkout session request / response schemas."""

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import Field

from app.models.checkout import (
    INSTALLMENT_OPTIONS,
    CheckoutPhase,
    CheckoutSnapshot,
    CheckoutStep,
    ChildWaiverStatus,
    ErrorKind,
    OrderState,
    PaymentMethod,
    PaymentStatus,
)
from app.schemas.base import BaseSchema
from app.schemas.child import ChildCandidate
from app.schemas.class_ import ClassOffering
from app.schemas.enrollment import WaitlistEnrollmentResponse
from app.schemas.order import OrderCalculation, OrderResponse
from app.schemas.waiver import WaiverTemplate


# ============== Requests ==============


class CheckoutSessionCreate(BaseSchema):
    class_id: str = Field(..., min_length=1)


class ChildSelectionRequest(BaseSchema):
    child_id: str


class WaiverSignRequest(BaseSchema):
    child_id: str
    signer_name: str = Field(..., max_length=200)


class FeeToggleRequest(BaseSchema):
    child_id: str
    fee_id: str


class PaymentMethodRequest(BaseSchema):
    method: PaymentMethod


class InstallmentPlanRequest(BaseSchema):
    installments: int


class DiscountApplyRequest(BaseSchema):
    code: str = Field(..., max_length=50)


class WaitlistJoinRequest(BaseSchema):
    child_id: str


# ============== Responses ==============


class ChildWaiverResponse(BaseSchema):
    child_id: str
    status: ChildWaiverStatus
    pending: List[WaiverTemplate] = []


class InstallmentPlanResponse(BaseSchema):
    installments: int
    installment_amount: Optional[Decimal] = None


class AppliedDiscountResponse(BaseSchema):
    code: str
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None


class PricePreviewResponse(BaseSchema):
    total: Decimal
    is_provisional: bool
    calculation: Optional[OrderCalculation] = None


class StepErrorResponse(BaseSchema):
    step: CheckoutStep
    kind: ErrorKind
    message: str
    retryable: bool


class CheckoutResponse(BaseSchema):
    """Checkout session state as shown to the parent."""

    checkout_id: str
    phase: CheckoutPhase
    order_state: OrderState
    class_id: Optional[str] = None
    offering: Optional[ClassOffering] = None
    children: List[ChildCandidate] = []
    has_capacity: bool = True
    remaining_spots: Optional[int] = None
    selected_child_ids: List[str] = []
    waivers: List[ChildWaiverResponse] = []
    fee_selection: Dict[str, List[str]] = {}
    payment_selection_enabled: bool = False
    payment_method: Optional[PaymentMethod] = None
    installment_options: List[int] = []
    installment_plan: Optional[InstallmentPlanResponse] = None
    applied_discount: Optional[AppliedDiscountResponse] = None
    preview: Optional[PricePreviewResponse] = None
    is_free: bool = False
    can_create_order: bool = False
    order: Optional[OrderResponse] = None
    redirect_url: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.NOT_STARTED
    waitlist_entry: Optional[WaitlistEnrollmentResponse] = None
    error: Optional[StepErrorResponse] = None  # Latest of ``errors``
    errors: List[StepErrorResponse] = []


def snapshot_to_response(snapshot: CheckoutSnapshot) -> CheckoutResponse:
    """Convert a checkout snapshot to its API response."""
    installment_options = []
    if snapshot.offering is not None and snapshot.offering.installments_enabled:
        installment_options = list(INSTALLMENT_OPTIONS)

    plan = None
    if snapshot.installment_plan is not None:
        plan = InstallmentPlanResponse(
            installments=snapshot.installment_plan.installments,
            installment_amount=snapshot.installment_plan.installment_amount,
        )

    discount = None
    if snapshot.applied_discount is not None:
        discount = AppliedDiscountResponse(
            code=snapshot.applied_discount.code,
            discount_type=snapshot.applied_discount.discount_type,
            discount_value=snapshot.applied_discount.discount_value,
            discount_amount=snapshot.applied_discount.discount_amount,
        )

    preview = None
    if snapshot.preview is not None:
        preview = PricePreviewResponse(
            total=snapshot.preview.total,
            is_provisional=snapshot.preview.is_provisional,
            calculation=snapshot.preview.calculation,
        )

    errors = [
        StepErrorResponse(
            step=e.step,
            kind=e.kind,
            message=e.message,
            retryable=e.retryable,
        )
        for e in snapshot.errors
    ]

    return CheckoutResponse(
        checkout_id=snapshot.checkout_id,
        phase=snapshot.phase,
        order_state=snapshot.order_state,
        class_id=snapshot.class_id,
        offering=snapshot.offering,
        children=list(snapshot.children),
        has_capacity=snapshot.has_capacity,
        remaining_spots=snapshot.remaining_spots,
        selected_child_ids=list(snapshot.selected_child_ids),
        waivers=[
            ChildWaiverResponse(
                child_id=child_id,
                status=snapshot.waiver_statuses[child_id],
                pending=list(snapshot.pending_waivers.get(child_id, ())),
            )
            for child_id in snapshot.selected_child_ids
        ],
        fee_selection={
            child_id: sorted(fee_ids) for child_id, fee_ids in snapshot.fee_selection.items()
        },
        payment_selection_enabled=snapshot.payment_selection_enabled,
        payment_method=snapshot.payment_method,
        installment_options=installment_options,
        installment_plan=plan,
        applied_discount=discount,
        preview=preview,
        is_free=snapshot.is_free,
        can_create_order=snapshot.can_create_order,
        order=snapshot.order.order if snapshot.order else None,
        redirect_url=snapshot.redirect_url,
        payment_status=snapshot.payment_status,
        waitlist_entry=snapshot.waitlist_entry,
        error=errors[-1] if errors else None,
        errors=errors,
    )
