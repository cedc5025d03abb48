"""Checkout state machine for enrolling children into one class."""

import asyncio
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Optional

from pydantic import ValidationError

from app.models.checkout import (
    INSTALLMENT_OPTIONS,
    AppliedDiscount,
    CheckoutPhase,
    CheckoutSelection,
    CheckoutSnapshot,
    CheckoutStep,
    ChildWaiverStatus,
    ErrorKind,
    InstallmentPlan,
    PaymentMethod,
    PaymentStatus,
    PlacedOrder,
    PricePreview,
    StepError,
)
from app.schemas.child import ChildCandidate
from app.schemas.class_ import ClassOffering
from app.schemas.enrollment import JoinWaitlistRequest, WaitlistEnrollmentResponse
from app.services.api_client import ApiClient
from app.services.checkout.capacity_guard import CapacityGuard
from app.services.checkout.order_creator import OrderCreator
from app.services.checkout.outcomes import (
    CapacityConflict,
    DiscountAccepted,
    DiscountRejected,
    FreeEnrollment,
    OrderFailed,
    OrderFatal,
    OrderOutcome,
    OrderRejected,
    PaymentCheckFailed,
    PaymentConfirmed,
    PaymentRedirect,
    PreviewFailed,
    WaiverCheckOutcome,
    WaiverScope,
)
from app.services.checkout.payment_handoff import PaymentHandoff
from app.services.checkout.pricing_preview import PricingPreview
from app.services.checkout.waiver_gateway import WaiverGateway
from app.services.child_service import ChildService
from app.services.class_service import ClassService
from app.services.discount_service import DiscountService
from app.services.enrollment_service import EnrollmentService
from app.services.order_service import OrderService
from app.services.waiver_service import WaiverService
from core.config import config as settings
from core.exceptions.base import (
    ConflictException,
    CustomException,
    NotFoundException,
    TransientException,
)
from core.logging import get_logger

logger = get_logger(__name__)

# Phases in which the child selection may change
SELECTION_PHASES = (
    CheckoutPhase.READY,
    CheckoutPhase.WAIVER_CHECKING,
    CheckoutPhase.WAIVER_BLOCKED,
    CheckoutPhase.FEE_AND_PAYMENT_SELECTION,
    CheckoutPhase.ORDER_PREVIEW,
)

# Phases in which fees, payment method, plan and discount may change
PAYMENT_SELECTION_PHASES = (
    CheckoutPhase.FEE_AND_PAYMENT_SELECTION,
    CheckoutPhase.ORDER_PREVIEW,
)

# Phases in which an order holds the selection
ORDER_LOCKED_PHASES = (
    CheckoutPhase.ORDER_CREATING,
    CheckoutPhase.AWAITING_PAYMENT,
)


class CheckoutOrchestrator:
    """Drives one checkout session from class lookup to payment.

    Every action mutates state synchronously before awaiting the network,
    so the snapshot always reflects the latest user intent. Waiver checks
    and price previews run as background tasks; ``settle()`` waits for them.
    Actions called in a phase where they are disabled raise
    ``ConflictException`` and leave the state unchanged.
    """

    def __init__(
        self,
        api: ApiClient,
        checkout_id: Optional[str] = None,
        frontend_url: Optional[str] = None,
        waitlist_priority: Optional[str] = None,
    ):
        self.api = api
        self.checkout_id = checkout_id or uuid.uuid4().hex
        self.waitlist_priority = waitlist_priority or settings.WAITLIST_PRIORITY

        self.class_service = ClassService(api)
        self.child_service = ChildService(api)
        self.waiver_service = WaiverService(api)
        self.order_service = OrderService(api)
        self.enrollment_service = EnrollmentService(api)

        self.handoff = PaymentHandoff(
            self.order_service, self.checkout_id, frontend_url or settings.FRONTEND_URL
        )
        self.pricing = PricingPreview(self.order_service, DiscountService(api))
        self.order_creator = OrderCreator(self.order_service, self.handoff)
        self.waivers: Optional[WaiverGateway] = None

        self._phase = CheckoutPhase.IDLE
        self._class_id: Optional[str] = None
        self._offering: Optional[ClassOffering] = None
        self._children: tuple[ChildCandidate, ...] = ()
        self._has_capacity = True

        self._selected: list[str] = []
        self._waiver_status: dict[str, ChildWaiverStatus] = {}
        self._pending_waivers: dict[str, tuple] = {}
        self._optional_fees: dict[str, set[str]] = {}
        self._payment_method: Optional[PaymentMethod] = None
        self._installments: Optional[int] = None
        self._discount: Optional[AppliedDiscount] = None

        self._preview: Optional[PricePreview] = None
        self._preview_seq = 0
        self._order: Optional[PlacedOrder] = None
        self._creating = False
        self._waitlist_entry: Optional[WaitlistEnrollmentResponse] = None

        # Ordered oldest to newest, one entry per step
        self._errors: dict[CheckoutStep, StepError] = {}
        self._retries: dict[CheckoutStep, tuple] = {}

        self._waiver_tasks: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    # ============== Snapshot ==============

    @property
    def phase(self) -> CheckoutPhase:
        return self._phase

    def snapshot(self) -> CheckoutSnapshot:
        plan = None
        if self._payment_method == PaymentMethod.INSTALLMENTS and self._installments:
            amount = None
            if self._preview is not None and self._preview.calculation is not None:
                amount = self._preview.calculation.installment_amount
            plan = InstallmentPlan(installments=self._installments, installment_amount=amount)

        return CheckoutSnapshot(
            checkout_id=self.checkout_id,
            phase=self._phase,
            class_id=self._class_id,
            offering=self._offering,
            children=self._children,
            has_capacity=self._has_capacity,
            remaining_spots=(
                CapacityGuard.remaining_spots(self._offering) if self._offering is not None else None
            ),
            selected_child_ids=tuple(self._selected),
            waiver_statuses={c: self._waiver_status.get(c, ChildWaiverStatus.UNCHECKED) for c in self._selected},
            pending_waivers={c: self._pending_waivers.get(c, ()) for c in self._selected},
            fee_selection={c: frozenset(self._optional_fees.get(c, ())) for c in self._selected},
            payment_method=self._payment_method,
            installment_plan=plan,
            applied_discount=self._discount,
            preview=self._preview,
            order=self._order,
            redirect_url=(
                self.handoff.redirect_url if self._phase == CheckoutPhase.AWAITING_PAYMENT else None
            ),
            payment_status=self.handoff.status,
            waitlist_entry=self._waitlist_entry,
            errors=tuple(self._errors.values()),
        )

    async def settle(self) -> CheckoutSnapshot:
        """Wait for background waiver checks and preview refreshes."""
        while self._tasks:
            results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Checkout {self.checkout_id}: background task failed: {result!r}")
        return self.snapshot()

    # ============== Internal helpers ==============

    def _transition(self, phase: CheckoutPhase) -> None:
        if phase == self._phase:
            return
        logger.info(f"Checkout {self.checkout_id}: {self._phase.value} -> {phase.value}")
        self._phase = phase

    def _require(self, phases: tuple, action: str) -> None:
        if self._phase not in phases:
            raise ConflictException(
                message=f"Cannot {action} while checkout is {self._phase.value}",
                data={"phase": self._phase.value},
            )

    def _fail(
        self,
        step: CheckoutStep,
        kind: ErrorKind,
        message: str,
        retry_args: Optional[tuple] = None,
    ) -> None:
        self._clear_error(step)
        self._errors[step] = StepError(step=step, kind=kind, message=message)
        if kind == ErrorKind.TRANSIENT and retry_args is not None:
            self._retries[step] = retry_args
        if kind == ErrorKind.FATAL:
            logger.error(f"Checkout {self.checkout_id}: {step.value} failed: {message}")
        else:
            logger.warning(f"Checkout {self.checkout_id}: {step.value} {kind.value} error: {message}")

    def _clear_error(self, step: Optional[CheckoutStep] = None) -> None:
        """Clear every error, or only the error of ``step``."""
        if step is None:
            self._errors.clear()
            self._retries.clear()
            return
        self._errors.pop(step, None)
        self._retries.pop(step, None)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _find_child(self, child_id: str) -> Optional[ChildCandidate]:
        for child in self._children:
            if child.id == child_id:
                return child
        return None

    def _fee_ids_for(self, child_id: str) -> tuple[str, ...]:
        """Required fees plus the chosen optional fees, in class order."""
        chosen = self._optional_fees.get(child_id, set())
        return tuple(
            fee.id
            for fee in self._offering.custom_fees
            if not fee.is_optional or fee.id in chosen
        )

    def _selection(self) -> CheckoutSelection:
        return CheckoutSelection(
            class_id=self._class_id,
            child_ids=tuple(self._selected),
            fee_ids=tuple((child_id, self._fee_ids_for(child_id)) for child_id in self._selected),
            discount_code=self._discount.code if self._discount else None,
            payment_method=self._payment_method,
            installments=self._installments if self._payment_method == PaymentMethod.INSTALLMENTS else None,
        )

    def _payment_choice_complete(self) -> bool:
        if self._payment_method is None:
            return False
        if self._payment_method == PaymentMethod.INSTALLMENTS:
            return self._installments is not None
        return True

    # ============== Initialization ==============

    async def initialize_checkout(self, class_id: str) -> CheckoutSnapshot:
        """Load the class and the parent's children."""
        if self._offering is not None:
            if class_id == self._class_id:
                return self.snapshot()
            raise ConflictException(message="Checkout already started for another class")
        if self._phase == CheckoutPhase.INITIALIZING and not self._errors:
            raise ConflictException(message="Checkout is already initializing")
        self._require((CheckoutPhase.IDLE, CheckoutPhase.INITIALIZING), "initialize")

        self._class_id = class_id
        self._clear_error()
        self._transition(CheckoutPhase.INITIALIZING)

        offering, children = await asyncio.gather(
            self.class_service.get_by_id(class_id),
            self.child_service.get_my_children(),
            return_exceptions=True,
        )
        for result in (offering, children):
            if isinstance(result, BaseException):
                self._initialization_failed(result)
                return self.snapshot()

        self._offering = offering
        self._children = tuple(children)
        self._has_capacity = CapacityGuard.has_capacity(offering)
        self.waivers = WaiverGateway(
            self.waiver_service,
            WaiverScope(program_id=offering.program_id, school_id=offering.school_id),
        )

        if not self._has_capacity:
            logger.info(f"Class {class_id} is full, offering waitlist")
            self._transition(CheckoutPhase.WAITLISTED)
        else:
            self._transition(CheckoutPhase.READY)
        return self.snapshot()

    def _initialization_failed(self, error: BaseException) -> None:
        if isinstance(error, NotFoundException):
            self._fail(CheckoutStep.INITIALIZE, ErrorKind.FATAL, error.message)
            self._transition(CheckoutPhase.FATAL)
        elif isinstance(error, TransientException):
            self._fail(
                CheckoutStep.INITIALIZE,
                ErrorKind.TRANSIENT,
                error.message,
                retry_args=(self._class_id,),
            )
        elif isinstance(error, CustomException):
            self._fail(CheckoutStep.INITIALIZE, ErrorKind.FATAL, error.message)
            self._transition(CheckoutPhase.FATAL)
        elif isinstance(error, ValidationError):
            self._fail(CheckoutStep.INITIALIZE, ErrorKind.FATAL, "Class details could not be read")
            self._transition(CheckoutPhase.FATAL)
        else:
            raise error

    # ============== Child selection & waivers ==============

    async def select_child(self, child_id: str) -> CheckoutSnapshot:
        """Replace the selection with a single child."""
        self._require_selection_open()
        if not self._validate_child(child_id, CheckoutStep.SELECTION):
            return self.snapshot()
        self._apply_selection([child_id])
        return self.snapshot()

    async def toggle_child_selection(self, child_id: str) -> CheckoutSnapshot:
        """Add or remove a child from a multi-child selection."""
        self._require_selection_open()
        if child_id in self._selected:
            self._apply_selection([c for c in self._selected if c != child_id])
            return self.snapshot()
        if not self._validate_child(child_id, CheckoutStep.SELECTION):
            return self.snapshot()
        self._apply_selection(self._selected + [child_id])
        return self.snapshot()

    def _require_selection_open(self) -> None:
        if self._phase in ORDER_LOCKED_PHASES:
            raise ConflictException(
                message="Discard the current order before changing the selection",
                data={"phase": self._phase.value},
            )
        self._require(SELECTION_PHASES, "change the selection")

    def _validate_child(self, child_id: str, step: CheckoutStep) -> bool:
        child = self._find_child(child_id)
        if child is None:
            self._fail(step, ErrorKind.VALIDATION, "Child not found")
            return False
        if child.is_enrolled_in(self._class_id):
            self._fail(step, ErrorKind.VALIDATION, f"{child.display_name} is already enrolled in this class")
            return False
        return True

    def _apply_selection(self, selected: list[str]) -> None:
        for child_id in set(self._selected) - set(selected):
            self._optional_fees.pop(child_id, None)
            self._waiver_status.pop(child_id, None)
            self._pending_waivers.pop(child_id, None)

        self._selected = selected
        self._clear_error()
        self._drop_stale_order()

        for child_id in selected:
            if child_id in self._waiver_status:
                continue
            cached = self.waivers.cached(child_id)
            if cached is not None:
                self._apply_waiver_outcome(cached)
                continue
            self._waiver_status[child_id] = ChildWaiverStatus.CHECKING
            if child_id not in self._waiver_tasks:
                self._waiver_tasks[child_id] = self._spawn(self._run_waiver_check(child_id))

        self._update_gate()

    async def _run_waiver_check(self, child_id: str) -> None:
        try:
            outcome = await self.waivers.check_pending(child_id)
        finally:
            self._waiver_tasks.pop(child_id, None)

        if child_id not in self._selected:
            logger.info(f"Checkout {self.checkout_id}: discarding waiver result for deselected child {child_id}")
            return
        self._apply_waiver_outcome(outcome)
        self._update_gate()

    def _apply_waiver_outcome(self, outcome: WaiverCheckOutcome) -> None:
        self._pending_waivers[outcome.child_id] = outcome.pending
        self._waiver_status[outcome.child_id] = (
            ChildWaiverStatus.CLEARED if outcome.cleared else ChildWaiverStatus.BLOCKED
        )

    def _update_gate(self) -> None:
        """Derive the selection phase from the waiver status of selected children."""
        if self._phase not in SELECTION_PHASES:
            return

        if not self._selected:
            self._preview = None
            self._transition(CheckoutPhase.READY)
            return

        statuses = [self._waiver_status.get(c, ChildWaiverStatus.UNCHECKED) for c in self._selected]
        if any(s in (ChildWaiverStatus.UNCHECKED, ChildWaiverStatus.CHECKING) for s in statuses):
            self._preview = None
            self._transition(CheckoutPhase.WAIVER_CHECKING)
            return
        if any(s == ChildWaiverStatus.BLOCKED for s in statuses):
            self._preview = None
            self._transition(CheckoutPhase.WAIVER_BLOCKED)
            return

        if self._phase not in PAYMENT_SELECTION_PHASES:
            self._transition(CheckoutPhase.FEE_AND_PAYMENT_SELECTION)
        self._refresh_preview()

    async def sign_waivers(self, child_id: str, signer_name: str) -> CheckoutSnapshot:
        """Accept every pending waiver of a selected child."""
        self._require(SELECTION_PHASES, "sign waivers")
        if self._waiver_status.get(child_id) != ChildWaiverStatus.BLOCKED:
            raise ConflictException(message="This child has no pending waivers")

        signer_name = (signer_name or "").strip()
        if not signer_name:
            self._fail(CheckoutStep.WAIVERS, ErrorKind.VALIDATION, "Please provide your signature")
            return self.snapshot()

        self._clear_error(CheckoutStep.WAIVERS)
        outcome = await self.waivers.sign(child_id, signer_name)

        # Signed templates may also have cleared other selected children
        for other_id in self._selected:
            cached = self.waivers.cached(other_id)
            if cached is not None and self._waiver_status.get(other_id) == ChildWaiverStatus.BLOCKED:
                self._apply_waiver_outcome(cached)

        if outcome.failures:
            self._fail(
                CheckoutStep.WAIVERS,
                ErrorKind.TRANSIENT,
                f"Failed to sign {len(outcome.failures)} waiver(s). Please try again.",
                retry_args=(child_id, signer_name),
            )
        self._update_gate()
        return self.snapshot()

    # ============== Fees, payment method & discount ==============

    def _require_payment_selection(self, action: str) -> None:
        if self._phase in (CheckoutPhase.WAIVER_CHECKING, CheckoutPhase.WAIVER_BLOCKED):
            raise ConflictException(
                message="All selected children must have their waivers signed first",
                data={"phase": self._phase.value},
            )
        self._require(PAYMENT_SELECTION_PHASES, action)

    async def toggle_custom_fee(self, child_id: str, fee_id: str) -> CheckoutSnapshot:
        self._require_payment_selection("change fees")
        if child_id not in self._selected:
            self._fail(CheckoutStep.SELECTION, ErrorKind.VALIDATION, "Child is not selected")
            return self.snapshot()
        fee = self._offering.get_fee(fee_id)
        if fee is None:
            self._fail(CheckoutStep.SELECTION, ErrorKind.VALIDATION, "Fee not found for this class")
            return self.snapshot()
        if not fee.is_optional:
            self._fail(CheckoutStep.SELECTION, ErrorKind.VALIDATION, f"{fee.name} is required")
            return self.snapshot()

        chosen = self._optional_fees.setdefault(child_id, set())
        if fee_id in chosen:
            chosen.discard(fee_id)
        else:
            chosen.add(fee_id)
        self._clear_error(CheckoutStep.SELECTION)
        self._refresh_preview()
        return self.snapshot()

    async def select_payment_method(self, method: PaymentMethod) -> CheckoutSnapshot:
        self._require_payment_selection("choose a payment method")
        method = PaymentMethod(method)
        if method == PaymentMethod.INSTALLMENTS and not self._offering.installments_enabled:
            self._fail(
                CheckoutStep.SELECTION,
                ErrorKind.VALIDATION,
                "Installment plans are not available for this class",
            )
            return self.snapshot()

        self._payment_method = method
        if method != PaymentMethod.INSTALLMENTS:
            self._installments = None
        self._clear_error(CheckoutStep.SELECTION)
        self._refresh_preview()
        return self.snapshot()

    async def select_installment_plan(self, installments: int) -> CheckoutSnapshot:
        self._require_payment_selection("choose an installment plan")
        if self._payment_method != PaymentMethod.INSTALLMENTS:
            raise ConflictException(message="Choose installments as the payment method first")
        if installments not in INSTALLMENT_OPTIONS:
            self._fail(
                CheckoutStep.SELECTION,
                ErrorKind.VALIDATION,
                f"Installments must be one of {', '.join(str(n) for n in INSTALLMENT_OPTIONS)}",
            )
            return self.snapshot()

        self._installments = installments
        self._clear_error(CheckoutStep.SELECTION)
        self._refresh_preview()
        return self.snapshot()

    async def apply_discount(self, code: str) -> CheckoutSnapshot:
        """Validate a code with the server and apply it when accepted."""
        self._require_payment_selection("apply a discount")
        code = (code or "").strip()
        if not code:
            self._fail(CheckoutStep.DISCOUNT, ErrorKind.VALIDATION, "Please enter a discount code")
            return self.snapshot()

        self._clear_error(CheckoutStep.DISCOUNT)
        order_amount = self._discountable_amount()
        outcome = await self.pricing.validate_discount(code, order_amount, self._offering)

        if self._phase not in PAYMENT_SELECTION_PHASES:
            logger.info(f"Checkout {self.checkout_id}: ignoring discount result after {self._phase.value}")
            return self.snapshot()

        if isinstance(outcome, DiscountAccepted):
            self._discount = outcome.discount
            logger.info(f"Checkout {self.checkout_id}: discount {code} applied")
            self._refresh_preview()
        elif isinstance(outcome, DiscountRejected):
            self._fail(CheckoutStep.DISCOUNT, ErrorKind.VALIDATION, outcome.reason)
        else:
            self._fail(CheckoutStep.DISCOUNT, ErrorKind.TRANSIENT, outcome.message, retry_args=(code,))
        return self.snapshot()

    async def remove_discount(self) -> CheckoutSnapshot:
        self._require_payment_selection("remove a discount")
        if self._discount is not None:
            self._discount = None
            self._clear_error(CheckoutStep.DISCOUNT)
            self._refresh_preview()
        return self.snapshot()

    def _discountable_amount(self) -> Decimal:
        if self._preview is not None and self._preview.calculation is not None:
            return self._preview.calculation.subtotal
        return PricingPreview.estimate(self._offering, self._selection()).total

    # ============== Preview ==============

    def _refresh_preview(self) -> None:
        """Show a provisional estimate and request the server calculation."""
        self._drop_stale_order()
        selection = self._selection()
        self._preview_seq += 1
        self._preview = PricingPreview.estimate(self._offering, selection)
        self._sync_preview_phase()
        self._spawn(self._fetch_preview(self._preview_seq, selection))

    async def _fetch_preview(self, seq: int, selection: CheckoutSelection) -> None:
        outcome = await self.pricing.compute_preview(selection)
        if seq != self._preview_seq:
            logger.debug(f"Checkout {self.checkout_id}: dropping superseded preview #{seq}")
            return
        if self._phase not in PAYMENT_SELECTION_PHASES:
            return

        if isinstance(outcome, PreviewFailed):
            self._preview = None
            if outcome.transient:
                self._fail(CheckoutStep.PRICING, ErrorKind.TRANSIENT, outcome.message, retry_args=())
            else:
                self._fail(CheckoutStep.PRICING, ErrorKind.VALIDATION, outcome.message)
        else:
            self._preview = outcome.preview
            self._clear_error(CheckoutStep.PRICING)
        self._sync_preview_phase()

    def _sync_preview_phase(self) -> None:
        if self._phase not in PAYMENT_SELECTION_PHASES:
            return
        preview = self._preview
        ready = (
            preview is not None
            and not preview.is_provisional
            and (preview.total <= 0 or self._payment_choice_complete())
        )
        self._transition(CheckoutPhase.ORDER_PREVIEW if ready else CheckoutPhase.FEE_AND_PAYMENT_SELECTION)

    # ============== Orders ==============

    def _drop_stale_order(self) -> None:
        """Discard an unpaid order that no longer matches the selection."""
        if self._order is None or self._phase in ORDER_LOCKED_PHASES:
            return
        if self._selected and self._order.fingerprint == self._selection().fingerprint():
            return
        order_id = self._order.order_id
        self._order = None
        self.handoff.reset()
        self._spawn(self._cancel_quietly(order_id))

    async def _cancel_quietly(self, order_id: str) -> None:
        try:
            await self.order_service.cancel(order_id)
        except CustomException as e:
            logger.warning(f"Could not cancel discarded order {order_id}: {e.message}")

    async def create_order(self) -> CheckoutSnapshot:
        """Place the order for the current selection.

        Calls made while another is in flight are ignored. An order already
        awaiting payment for the same selection is returned as-is, and an
        order whose payment request failed is reused.
        """
        if self._creating:
            logger.info(f"Checkout {self.checkout_id}: order creation already in flight")
            return self.snapshot()

        if self._phase == CheckoutPhase.AWAITING_PAYMENT and self._order is not None:
            if self._order.fingerprint == self._selection().fingerprint():
                return self.snapshot()

        self._require((CheckoutPhase.ORDER_PREVIEW,), "place the order")

        selection = self._selection()
        fingerprint = selection.fingerprint()
        existing = None
        if self._order is not None and self._order.fingerprint == fingerprint:
            existing = self._order.order

        self._creating = True
        self._clear_error()
        self._transition(CheckoutPhase.ORDER_CREATING)
        try:
            outcome = await self.order_creator.create_order(selection, existing)
        finally:
            self._creating = False

        self._apply_order_outcome(outcome, fingerprint)
        return self.snapshot()

    def _apply_order_outcome(self, outcome: OrderOutcome, fingerprint: str) -> None:
        if isinstance(outcome, PaymentRedirect):
            self._order = PlacedOrder(order=outcome.order, fingerprint=fingerprint)
            self.handoff.arm(outcome.session_id, outcome.redirect_url)
            self._transition(CheckoutPhase.AWAITING_PAYMENT)

        elif isinstance(outcome, FreeEnrollment):
            self._order = PlacedOrder(order=outcome.order, fingerprint=fingerprint)
            self.handoff.status = PaymentStatus.SUCCEEDED
            self._transition(CheckoutPhase.PAYMENT_SUCCEEDED)

        elif isinstance(outcome, CapacityConflict):
            if outcome.order is not None:
                self._spawn(self._cancel_quietly(outcome.order.id))
            self._order = None
            self._has_capacity = False
            self._fail(CheckoutStep.ORDER, ErrorKind.CAPACITY_CONFLICT, outcome.message)
            self._transition(CheckoutPhase.WAITLISTED)

        elif isinstance(outcome, OrderRejected):
            if outcome.order is not None:
                self._order = PlacedOrder(order=outcome.order, fingerprint=fingerprint)
            self._fail(CheckoutStep.ORDER, ErrorKind.VALIDATION, outcome.message)
            self._transition(CheckoutPhase.ORDER_PREVIEW)

        elif isinstance(outcome, OrderFailed):
            if outcome.order is not None:
                self._order = PlacedOrder(order=outcome.order, fingerprint=fingerprint)
            self._fail(CheckoutStep.ORDER, ErrorKind.TRANSIENT, outcome.message, retry_args=())
            self._transition(CheckoutPhase.ORDER_PREVIEW)

        elif isinstance(outcome, OrderFatal):
            self._fail(CheckoutStep.ORDER, ErrorKind.FATAL, outcome.message)
            self._transition(CheckoutPhase.FATAL)

    async def discard_order(self) -> CheckoutSnapshot:
        """Cancel the unpaid order and return to selection."""
        if self._order is None:
            raise ConflictException(message="There is no order to discard")
        self._require(
            (CheckoutPhase.AWAITING_PAYMENT,) + PAYMENT_SELECTION_PHASES,
            "discard the order",
        )

        order_id = self._order.order_id
        try:
            await self.order_service.cancel(order_id)
        except TransientException as e:
            self._fail(CheckoutStep.ORDER, ErrorKind.TRANSIENT, e.message)
            return self.snapshot()
        except CustomException as e:
            # Already cancelled or expired on the server
            logger.warning(f"Cancelling order {order_id} failed: {e.message}")

        self._order = None
        self.handoff.reset()
        self._clear_error(CheckoutStep.ORDER)
        self._transition(CheckoutPhase.FEE_AND_PAYMENT_SELECTION)
        self._sync_preview_phase()
        return self.snapshot()

    # ============== Payment return ==============

    async def complete_payment(self, session_id: str) -> CheckoutSnapshot:
        """Handle the success return from the hosted payment page."""
        if self._phase == CheckoutPhase.PAYMENT_SUCCEEDED and session_id == self.handoff.session_id:
            return self.snapshot()
        self._require((CheckoutPhase.AWAITING_PAYMENT,), "confirm payment")

        outcome = await self.handoff.reconcile_success(self._order.order_id, session_id)
        if isinstance(outcome, PaymentConfirmed):
            self._order = PlacedOrder(order=outcome.order, fingerprint=self._order.fingerprint)
            self._clear_error()
            self._transition(CheckoutPhase.PAYMENT_SUCCEEDED)
        elif isinstance(outcome, PaymentCheckFailed):
            self._fail(CheckoutStep.PAYMENT, ErrorKind.TRANSIENT, outcome.message, retry_args=(session_id,))
        else:
            self._fail(CheckoutStep.PAYMENT, ErrorKind.VALIDATION, outcome.message)
        return self.snapshot()

    async def cancel_payment(self) -> CheckoutSnapshot:
        """Handle the cancel return; the order stays open for another attempt."""
        self._require((CheckoutPhase.AWAITING_PAYMENT,), "cancel payment")
        self.handoff.reconcile_cancel()
        return self.snapshot()

    # ============== Waitlist & receipt ==============

    async def join_waitlist(self, child_id: str) -> CheckoutSnapshot:
        self._require((CheckoutPhase.WAITLISTED,), "join the waitlist")
        if self._waitlist_entry is not None:
            raise ConflictException(message="Already on the waitlist for this class")
        if not self._validate_child(child_id, CheckoutStep.WAITLIST):
            return self.snapshot()

        self._clear_error()
        try:
            entry = await self.enrollment_service.join_waitlist(
                JoinWaitlistRequest(
                    child_id=child_id,
                    class_id=self._class_id,
                    priority=self.waitlist_priority,
                )
            )
        except TransientException as e:
            self._fail(CheckoutStep.WAITLIST, ErrorKind.TRANSIENT, e.message, retry_args=(child_id,))
        except CustomException as e:
            self._fail(CheckoutStep.WAITLIST, ErrorKind.VALIDATION, e.message)
        else:
            self._waitlist_entry = entry
        return self.snapshot()

    async def download_receipt(self) -> tuple[bytes, str]:
        """Return (content, content_type) of the paid order's receipt."""
        self._require((CheckoutPhase.PAYMENT_SUCCEEDED,), "download the receipt")
        return await self.order_service.download_receipt(self._order.order_id)

    # ============== Retry ==============

    async def retry(self) -> CheckoutSnapshot:
        """Resume the step that last failed with a transient error."""
        if not self._retries:
            raise ConflictException(message="Nothing to retry")

        step = next(reversed(self._retries))
        args = self._retries[step]
        logger.info(f"Checkout {self.checkout_id}: retrying {step.value}")

        if step == CheckoutStep.INITIALIZE:
            return await self.initialize_checkout(*args)
        if step == CheckoutStep.PRICING:
            self._require(PAYMENT_SELECTION_PHASES, "refresh the price")
            self._clear_error(CheckoutStep.PRICING)
            self._refresh_preview()
            return self.snapshot()
        if step == CheckoutStep.DISCOUNT:
            return await self.apply_discount(*args)
        if step == CheckoutStep.WAIVERS:
            return await self.sign_waivers(*args)
        if step == CheckoutStep.ORDER:
            return await self.create_order()
        if step == CheckoutStep.PAYMENT:
            return await self.complete_payment(*args)
        if step == CheckoutStep.WAITLIST:
            return await self.join_waitlist(*args)

        raise ConflictException(message=f"Cannot retry {step.value}")
