"""Checkout state types: phases, selections and the observable snapshot."""

import enum
import hashlib
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Optional

from app.schemas.class_ import ClassOffering
from app.schemas.child import ChildCandidate
from app.schemas.enrollment import WaitlistEnrollmentResponse
from app.schemas.order import LineItemCalculation, OrderCalculation, OrderResponse
from app.schemas.waiver import WaiverTemplate


# Installment counts offered by the plan selector
INSTALLMENT_OPTIONS = (2, 3, 4, 6)


class CheckoutPhase(str, enum.Enum):
    """Phase of the checkout state machine."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"  # Class loaded, no child selected
    WAIVER_CHECKING = "waiver_checking"
    WAIVER_BLOCKED = "waiver_blocked"
    FEE_AND_PAYMENT_SELECTION = "fee_and_payment_selection"
    ORDER_PREVIEW = "order_preview"  # Server total known, order can be placed
    ORDER_CREATING = "order_creating"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    WAITLISTED = "waitlisted"
    FATAL = "fatal"


class ChildWaiverStatus(str, enum.Enum):
    """Waiver clearance of one child."""

    UNCHECKED = "unchecked"
    CHECKING = "checking"
    CLEARED = "cleared"
    BLOCKED = "blocked"


class PaymentMethod(str, enum.Enum):
    """How the parent pays."""

    FULL = "full"
    INSTALLMENTS = "installments"
    SUBSCRIBE = "subscribe"


class PaymentStatus(str, enum.Enum):
    """State of the hosted payment handoff."""

    NOT_STARTED = "not_started"
    REDIRECT_READY = "redirect_ready"
    CANCELLED = "cancelled"
    SUCCEEDED = "succeeded"


class OrderState(str, enum.Enum):
    """Exactly one of these holds for any snapshot."""

    NO_ORDER = "no_order"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    WAITLISTED = "waitlisted"
    FATAL = "fatal"


class CheckoutStep(str, enum.Enum):
    """Step an error is scoped to."""

    INITIALIZE = "initialize"
    SELECTION = "selection"
    WAIVERS = "waivers"
    PRICING = "pricing"
    DISCOUNT = "discount"
    ORDER = "order"
    PAYMENT = "payment"
    WAITLIST = "waitlist"


class ErrorKind(str, enum.Enum):
    """Error taxonomy of the checkout flow."""

    TRANSIENT = "transient"
    VALIDATION = "validation"
    CAPACITY_CONFLICT = "capacity_conflict"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepError:
    """Error surfaced to the UI next to the step that produced it."""

    step: CheckoutStep
    kind: ErrorKind
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


@dataclass(frozen=True)
class AppliedDiscount:
    """Discount code accepted by the server."""

    code: str
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class InstallmentPlan:
    """Chosen installment schedule; the amount comes from the server preview."""

    installments: int
    installment_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class CheckoutSelection:
    """Everything the parent chose that affects price or the order."""

    class_id: str
    child_ids: tuple[str, ...]
    fee_ids: tuple[tuple[str, tuple[str, ...]], ...] = ()
    discount_code: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    installments: Optional[int] = None

    def fees_for(self, child_id: str) -> tuple[str, ...]:
        for owner, fee_ids in self.fee_ids:
            if owner == child_id:
                return fee_ids
        return ()

    def fingerprint(self) -> str:
        """Stable hash identifying this selection."""
        payload = {
            "class_id": self.class_id,
            "child_ids": sorted(self.child_ids),
            "fee_ids": {child: sorted(fees) for child, fees in self.fee_ids},
            "discount_code": (self.discount_code or "").upper() or None,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "installments": self.installments,
        }
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PricePreview:
    """Price shown to the parent.

    Provisional previews are local estimates displayed while the server
    calculation is in flight; they carry no calculation and are never used
    to place an order.
    """

    fingerprint: str
    total: Decimal
    is_provisional: bool
    calculation: Optional[OrderCalculation] = None

    @property
    def line_items(self) -> list[LineItemCalculation]:
        return self.calculation.line_items if self.calculation else []


@dataclass(frozen=True)
class PlacedOrder:
    """Order created for a given selection fingerprint."""

    order: OrderResponse
    fingerprint: str

    @property
    def order_id(self) -> str:
        return self.order.id


@dataclass(frozen=True)
class CheckoutSnapshot:
    """Immutable view of the checkout state."""

    checkout_id: str
    phase: CheckoutPhase
    class_id: Optional[str] = None
    offering: Optional[ClassOffering] = None
    children: tuple[ChildCandidate, ...] = ()
    has_capacity: bool = True
    remaining_spots: Optional[int] = None
    selected_child_ids: tuple[str, ...] = ()
    waiver_statuses: Mapping[str, ChildWaiverStatus] = field(default_factory=dict)
    pending_waivers: Mapping[str, tuple[WaiverTemplate, ...]] = field(default_factory=dict)
    fee_selection: Mapping[str, frozenset[str]] = field(default_factory=dict)
    payment_method: Optional[PaymentMethod] = None
    installment_plan: Optional[InstallmentPlan] = None
    applied_discount: Optional[AppliedDiscount] = None
    preview: Optional[PricePreview] = None
    order: Optional[PlacedOrder] = None
    redirect_url: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.NOT_STARTED
    waitlist_entry: Optional[WaitlistEnrollmentResponse] = None
    errors: tuple[StepError, ...] = ()

    @property
    def error(self) -> Optional[StepError]:
        """Most recent error."""
        return self.errors[-1] if self.errors else None

    @property
    def order_state(self) -> OrderState:
        if self.phase == CheckoutPhase.FATAL:
            return OrderState.FATAL
        if self.phase == CheckoutPhase.WAITLISTED:
            return OrderState.WAITLISTED
        if self.phase == CheckoutPhase.PAYMENT_SUCCEEDED:
            return OrderState.PAYMENT_SUCCEEDED
        if self.order is not None:
            return OrderState.PENDING_PAYMENT
        return OrderState.NO_ORDER

    @property
    def payment_selection_enabled(self) -> bool:
        """Fee, payment method and discount inputs are usable."""
        return self.phase in (
            CheckoutPhase.FEE_AND_PAYMENT_SELECTION,
            CheckoutPhase.ORDER_PREVIEW,
        )

    @property
    def is_free(self) -> bool:
        """Server preview says nothing is owed."""
        return (
            self.preview is not None
            and not self.preview.is_provisional
            and self.preview.total <= 0
        )

    @property
    def can_create_order(self) -> bool:
        return self.phase == CheckoutPhase.ORDER_PREVIEW
