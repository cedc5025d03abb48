"""Tests for the checkout state machine."""

import asyncio
from decimal import Decimal

import pytest

from app.models.checkout import (
    CheckoutPhase,
    CheckoutStep,
    ChildWaiverStatus,
    ErrorKind,
    OrderState,
    PaymentMethod,
    PaymentStatus,
)
from app.services.checkout.orchestrator import CheckoutOrchestrator
from core.exceptions.base import ConflictException
from tests.fakes import FakeBackend, make_class, make_waiver, wait_until


async def select_and_settle(checkout: CheckoutOrchestrator, child_id: str = "child-1"):
    await checkout.select_child(child_id)
    return await checkout.settle()


async def ready_to_order(checkout: CheckoutOrchestrator, child_id: str = "child-1"):
    await select_and_settle(checkout, child_id)
    await checkout.select_payment_method(PaymentMethod.FULL)
    return await checkout.settle()


class TestInitialization:
    """Tests for loading the class and children."""

    async def test_initialize_loads_class_and_children(self, checkout: CheckoutOrchestrator):
        snapshot = await checkout.initialize_checkout("class-1")

        assert snapshot.phase == CheckoutPhase.READY
        assert snapshot.offering.name == "Soccer Stars"
        assert [c.id for c in snapshot.children] == ["child-1", "child-2", "child-3"]
        assert snapshot.has_capacity is True
        assert snapshot.order_state == OrderState.NO_ORDER

    async def test_fees_without_id_are_addressed_by_position(self, ready_checkout: CheckoutOrchestrator):
        offering = ready_checkout.snapshot().offering

        assert [fee.id for fee in offering.custom_fees] == ["0", "1"]
        assert [fee.name for fee in offering.required_fees] == ["Registration Fee"]

    async def test_class_not_found_is_fatal(self, checkout: CheckoutOrchestrator):
        snapshot = await checkout.initialize_checkout("missing-class")

        assert snapshot.phase == CheckoutPhase.FATAL
        assert snapshot.order_state == OrderState.FATAL
        assert snapshot.error.kind == ErrorKind.FATAL
        assert snapshot.error.step == CheckoutStep.INITIALIZE

    async def test_transient_failure_is_retryable(
        self, checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.fail("GET /classes/class-1", 503)

        snapshot = await checkout.initialize_checkout("class-1")
        assert snapshot.phase == CheckoutPhase.INITIALIZING
        assert snapshot.error.kind == ErrorKind.TRANSIENT
        assert snapshot.error.retryable is True

        snapshot = await checkout.retry()
        assert snapshot.phase == CheckoutPhase.READY
        assert snapshot.error is None
        assert backend.calls["GET /classes/class-1"] == 2

    async def test_initialize_twice_is_noop(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        snapshot = await ready_checkout.initialize_checkout("class-1")

        assert snapshot.phase == CheckoutPhase.READY
        assert backend.calls["GET /classes/class-1"] == 1

    async def test_initialize_other_class_rejected(self, ready_checkout: CheckoutOrchestrator):
        with pytest.raises(ConflictException):
            await ready_checkout.initialize_checkout("class-2")

    async def test_retry_without_failure_rejected(self, ready_checkout: CheckoutOrchestrator):
        with pytest.raises(ConflictException):
            await ready_checkout.retry()


class TestCapacity:
    """Tests for full classes."""

    async def test_full_class_goes_to_waitlist(
        self, checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.classes["class-1"] = make_class(current_enrollment=10, available_spots=0)

        snapshot = await checkout.initialize_checkout("class-1")

        assert snapshot.phase == CheckoutPhase.WAITLISTED
        assert snapshot.has_capacity is False
        assert snapshot.order_state == OrderState.WAITLISTED

    async def test_full_class_never_creates_order(
        self, checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.classes["class-1"] = make_class(has_capacity=False)
        await checkout.initialize_checkout("class-1")

        with pytest.raises(ConflictException):
            await checkout.select_child("child-1")
        with pytest.raises(ConflictException):
            await checkout.create_order()

        assert checkout.phase == CheckoutPhase.WAITLISTED
        assert backend.calls["POST /orders/"] == 0

    async def test_join_waitlist_is_terminal(
        self, checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.classes["class-1"] = make_class(capacity=5, current_enrollment=5, available_spots=None)
        await checkout.initialize_checkout("class-1")

        snapshot = await checkout.join_waitlist("child-1")

        assert snapshot.waitlist_entry.status == "waitlisted"
        assert snapshot.waitlist_entry.child_id == "child-1"
        with pytest.raises(ConflictException):
            await checkout.join_waitlist("child-2")
        assert backend.calls["POST /enrollments/waitlist/join"] == 1

    async def test_join_waitlist_only_when_waitlisted(self, ready_checkout: CheckoutOrchestrator):
        with pytest.raises(ConflictException):
            await ready_checkout.join_waitlist("child-1")

    async def test_capacity_conflict_on_create_goes_to_waitlist(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        backend.fail("POST /orders/", 400, "Class is full")

        snapshot = await ready_checkout.create_order()

        assert snapshot.phase == CheckoutPhase.WAITLISTED
        assert snapshot.error.kind == ErrorKind.CAPACITY_CONFLICT
        assert snapshot.order is None

        snapshot = await ready_checkout.join_waitlist("child-1")
        assert snapshot.waitlist_entry is not None
        assert snapshot.phase == CheckoutPhase.WAITLISTED


class TestChildSelection:
    """Tests for selecting children."""

    async def test_select_child_without_waivers_clears(self, ready_checkout: CheckoutOrchestrator):
        snapshot = await select_and_settle(ready_checkout)

        assert snapshot.selected_child_ids == ("child-1",)
        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.CLEARED
        assert snapshot.phase == CheckoutPhase.FEE_AND_PAYMENT_SELECTION
        assert snapshot.payment_selection_enabled is True

    async def test_selection_applied_before_waiver_check(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        release = backend.hold("waivers:child-1")

        snapshot = await ready_checkout.select_child("child-1")
        assert snapshot.selected_child_ids == ("child-1",)
        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.CHECKING
        assert snapshot.phase == CheckoutPhase.WAIVER_CHECKING

        release.set()
        snapshot = await ready_checkout.settle()
        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.CLEARED

    async def test_unknown_child_is_validation_error(self, ready_checkout: CheckoutOrchestrator):
        snapshot = await ready_checkout.select_child("child-99")

        assert snapshot.selected_child_ids == ()
        assert snapshot.error.kind == ErrorKind.VALIDATION
        assert snapshot.phase == CheckoutPhase.READY

    async def test_enrolled_child_is_validation_error(self, ready_checkout: CheckoutOrchestrator):
        snapshot = await ready_checkout.select_child("child-3")

        assert snapshot.selected_child_ids == ()
        assert snapshot.error.kind == ErrorKind.VALIDATION
        assert "already enrolled" in snapshot.error.message

    async def test_toggle_builds_multi_child_selection(self, ready_checkout: CheckoutOrchestrator):
        await ready_checkout.toggle_child_selection("child-1")
        await ready_checkout.toggle_child_selection("child-2")
        snapshot = await ready_checkout.settle()
        assert snapshot.selected_child_ids == ("child-1", "child-2")

        await ready_checkout.toggle_child_selection("child-1")
        snapshot = await ready_checkout.settle()
        assert snapshot.selected_child_ids == ("child-2",)
        assert "child-1" not in snapshot.waiver_statuses

    async def test_deselecting_all_children_returns_to_ready(self, ready_checkout: CheckoutOrchestrator):
        await ready_checkout.toggle_child_selection("child-1")
        await ready_checkout.settle()

        await ready_checkout.toggle_child_selection("child-1")
        snapshot = await ready_checkout.settle()

        assert snapshot.phase == CheckoutPhase.READY
        assert snapshot.preview is None

    async def test_deselecting_drops_fee_selection(self, ready_checkout: CheckoutOrchestrator):
        await ready_checkout.toggle_child_selection("child-1")
        await ready_checkout.toggle_child_selection("child-2")
        await ready_checkout.settle()
        await ready_checkout.toggle_custom_fee("child-1", "1")
        await ready_checkout.settle()

        await ready_checkout.toggle_child_selection("child-1")
        await ready_checkout.toggle_child_selection("child-1")
        snapshot = await ready_checkout.settle()

        assert snapshot.fee_selection["child-1"] == frozenset()


class TestWaiverGate:
    """Tests for waiver checks during selection."""

    async def test_pending_waivers_block_payment_selection(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.pending_waivers["child-1"] = [make_waiver("w-1"), make_waiver("w-2", "Photo Release")]

        snapshot = await select_and_settle(ready_checkout)

        assert snapshot.phase == CheckoutPhase.WAIVER_BLOCKED
        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.BLOCKED
        assert [w.id for w in snapshot.pending_waivers["child-1"]] == ["w-1", "w-2"]
        assert snapshot.payment_selection_enabled is False
        with pytest.raises(ConflictException):
            await ready_checkout.select_payment_method(PaymentMethod.FULL)

    async def test_signing_clears_without_second_check(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.pending_waivers["child-1"] = [make_waiver("w-1"), make_waiver("w-2", "Photo Release")]
        await select_and_settle(ready_checkout)

        await ready_checkout.sign_waivers("child-1", "Jane Smith")
        snapshot = await ready_checkout.settle()

        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.CLEARED
        assert snapshot.phase == CheckoutPhase.FEE_AND_PAYMENT_SELECTION
        assert snapshot.payment_selection_enabled is True
        assert backend.waiver_checks["child-1"] == 1
        assert backend.calls["POST /waivers/accept"] == 2

    async def test_partial_sign_failure_stays_blocked(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.pending_waivers["child-1"] = [make_waiver("w-1"), make_waiver("w-2", "Photo Release")]
        await select_and_settle(ready_checkout)
        backend.fail("POST /waivers/accept", 500)

        await ready_checkout.sign_waivers("child-1", "Jane Smith")
        snapshot = await ready_checkout.settle()

        assert snapshot.phase == CheckoutPhase.WAIVER_BLOCKED
        assert [w.id for w in snapshot.pending_waivers["child-1"]] == ["w-1"]
        assert snapshot.error.step == CheckoutStep.WAIVERS
        assert snapshot.error.retryable is True

        await ready_checkout.retry()
        snapshot = await ready_checkout.settle()
        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.CLEARED

    async def test_unreadable_acceptance_still_clears(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.pending_waivers["child-1"] = [make_waiver("w-1")]
        await select_and_settle(ready_checkout)
        backend.reply("POST /waivers/accept", 200, {"unexpected": True})

        await ready_checkout.sign_waivers("child-1", "Jane Smith")
        snapshot = await ready_checkout.settle()

        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.CLEARED
        assert snapshot.phase == CheckoutPhase.FEE_AND_PAYMENT_SELECTION
        assert snapshot.error is None

    async def test_blank_signature_rejected(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.pending_waivers["child-1"] = [make_waiver("w-1")]
        await select_and_settle(ready_checkout)

        snapshot = await ready_checkout.sign_waivers("child-1", "   ")

        assert snapshot.error.kind == ErrorKind.VALIDATION
        assert backend.calls["POST /waivers/accept"] == 0

    async def test_signing_cleared_child_rejected(self, ready_checkout: CheckoutOrchestrator):
        await select_and_settle(ready_checkout)

        with pytest.raises(ConflictException):
            await ready_checkout.sign_waivers("child-1", "Jane Smith")

    async def test_waiver_lookup_failure_fails_open(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.pending_waivers["child-1"] = [make_waiver("w-1")]
        backend.fail("GET /waivers/required", 500)

        snapshot = await select_and_settle(ready_checkout)

        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.CLEARED
        assert snapshot.phase == CheckoutPhase.FEE_AND_PAYMENT_SELECTION

    async def test_stale_waiver_result_is_discarded(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.pending_waivers["child-1"] = [make_waiver("w-1")]
        release = backend.hold("waivers:child-1")

        await ready_checkout.select_child("child-1")
        await ready_checkout.select_child("child-2")
        release.set()
        snapshot = await ready_checkout.settle()

        assert snapshot.selected_child_ids == ("child-2",)
        assert "child-1" not in snapshot.waiver_statuses
        assert snapshot.phase == CheckoutPhase.FEE_AND_PAYMENT_SELECTION

    async def test_one_waiver_check_per_child(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        release = backend.hold("waivers:child-1")

        await ready_checkout.toggle_child_selection("child-1")
        await ready_checkout.toggle_child_selection("child-1")
        await ready_checkout.toggle_child_selection("child-1")
        release.set()
        await ready_checkout.settle()

        await ready_checkout.select_child("child-2")
        await ready_checkout.select_child("child-1")
        snapshot = await ready_checkout.settle()

        assert snapshot.waiver_statuses["child-1"] == ChildWaiverStatus.CLEARED
        assert backend.waiver_checks["child-1"] == 1
        assert backend.max_inflight_waiver_checks["child-1"] == 1

    async def test_signed_guardian_waiver_clears_sibling(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        waiver = make_waiver("w-1")
        backend.pending_waivers["child-1"] = [waiver]
        backend.pending_waivers["child-2"] = [waiver]
        await ready_checkout.toggle_child_selection("child-1")
        await ready_checkout.toggle_child_selection("child-2")
        snapshot = await ready_checkout.settle()
        assert snapshot.phase == CheckoutPhase.WAIVER_BLOCKED

        await ready_checkout.sign_waivers("child-1", "Jane Smith")
        snapshot = await ready_checkout.settle()

        assert snapshot.waiver_statuses["child-2"] == ChildWaiverStatus.CLEARED
        assert snapshot.phase == CheckoutPhase.FEE_AND_PAYMENT_SELECTION
        assert backend.calls["POST /waivers/accept"] == 1


class TestPricing:
    """Tests for the price preview."""

    async def test_required_fee_included(self, ready_checkout: CheckoutOrchestrator):
        snapshot = await select_and_settle(ready_checkout)

        assert snapshot.preview.is_provisional is False
        assert snapshot.preview.total == Decimal("125.00")

    async def test_optional_fee_toggle(self, ready_checkout: CheckoutOrchestrator):
        await select_and_settle(ready_checkout)

        await ready_checkout.toggle_custom_fee("child-1", "1")
        snapshot = await ready_checkout.settle()
        assert snapshot.preview.total == Decimal("135.00")
        assert snapshot.fee_selection["child-1"] == frozenset({"1"})

        await ready_checkout.toggle_custom_fee("child-1", "1")
        snapshot = await ready_checkout.settle()
        assert snapshot.preview.total == Decimal("125.00")

    async def test_required_fee_cannot_be_toggled(self, ready_checkout: CheckoutOrchestrator):
        await select_and_settle(ready_checkout)

        snapshot = await ready_checkout.toggle_custom_fee("child-1", "0")

        assert snapshot.error.kind == ErrorKind.VALIDATION
        assert snapshot.fee_selection["child-1"] == frozenset()

    async def test_provisional_estimate_shown_while_calculating(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        release = backend.hold("POST /orders/calculate")

        await ready_checkout.select_child("child-1")
        await wait_until(lambda: backend.calls["POST /orders/calculate"] == 1)
        snapshot = ready_checkout.snapshot()
        assert snapshot.preview.is_provisional is True
        assert snapshot.preview.total == Decimal("125.00")
        assert snapshot.can_create_order is False

        release.set()
        snapshot = await ready_checkout.settle()
        assert snapshot.preview.is_provisional is False

    async def test_superseded_preview_dropped(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await select_and_settle(ready_checkout)
        first = backend.hold("POST /orders/calculate")
        second = backend.hold("POST /orders/calculate")

        await ready_checkout.toggle_custom_fee("child-1", "1")  # 135
        await ready_checkout.toggle_custom_fee("child-1", "1")  # back to 125
        second.set()
        await wait_until(
            lambda: ready_checkout.snapshot().preview is not None
            and not ready_checkout.snapshot().preview.is_provisional
        )
        first.set()
        snapshot = await ready_checkout.settle()

        assert snapshot.preview.total == Decimal("125.00")
        assert snapshot.fee_selection["child-1"] == frozenset()

    async def test_sibling_discount_total_matches_server(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.sibling_discount = Decimal("15.00")
        await ready_checkout.toggle_child_selection("child-1")
        await ready_checkout.toggle_child_selection("child-2")
        await ready_checkout.settle()

        await ready_checkout.select_payment_method(PaymentMethod.FULL)
        snapshot = await ready_checkout.settle()

        calculation = snapshot.preview.calculation
        assert calculation.line_items[1].sibling_discount == Decimal("15.00")
        assert snapshot.preview.total == calculation.total == Decimal("235.00")
        assert snapshot.phase == CheckoutPhase.ORDER_PREVIEW

    async def test_preview_failure_is_retryable(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.fail("POST /orders/calculate", 503)

        snapshot = await select_and_settle(ready_checkout)
        assert snapshot.preview is None
        assert snapshot.error.step == CheckoutStep.PRICING
        assert snapshot.error.retryable is True

        await ready_checkout.retry()
        snapshot = await ready_checkout.settle()
        assert snapshot.preview.total == Decimal("125.00")
        assert snapshot.error is None


class TestPaymentSelection:
    """Tests for payment method and installment plans."""

    async def test_full_payment_reaches_order_preview(self, ready_checkout: CheckoutOrchestrator):
        await select_and_settle(ready_checkout)

        await ready_checkout.select_payment_method(PaymentMethod.FULL)
        snapshot = await ready_checkout.settle()

        assert snapshot.phase == CheckoutPhase.ORDER_PREVIEW
        assert snapshot.can_create_order is True

    async def test_installments_require_plan(self, ready_checkout: CheckoutOrchestrator):
        await select_and_settle(ready_checkout)

        await ready_checkout.select_payment_method(PaymentMethod.INSTALLMENTS)
        snapshot = await ready_checkout.settle()
        assert snapshot.phase == CheckoutPhase.FEE_AND_PAYMENT_SELECTION

        await ready_checkout.select_installment_plan(3)
        snapshot = await ready_checkout.settle()
        assert snapshot.phase == CheckoutPhase.ORDER_PREVIEW
        assert snapshot.installment_plan.installments == 3
        assert snapshot.installment_plan.installment_amount == Decimal("41.67")

    async def test_unsupported_installment_count(self, ready_checkout: CheckoutOrchestrator):
        await select_and_settle(ready_checkout)
        await ready_checkout.select_payment_method(PaymentMethod.INSTALLMENTS)

        snapshot = await ready_checkout.select_installment_plan(5)

        assert snapshot.error.kind == ErrorKind.VALIDATION
        assert snapshot.installment_plan is None

    async def test_plan_requires_installment_method(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)

        with pytest.raises(ConflictException):
            await ready_checkout.select_installment_plan(3)

    async def test_installments_disabled_for_class(
        self, checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.classes["class-1"] = make_class(installments_enabled=False)
        await checkout.initialize_checkout("class-1")
        await select_and_settle(checkout)

        snapshot = await checkout.select_payment_method(PaymentMethod.INSTALLMENTS)

        assert snapshot.error.kind == ErrorKind.VALIDATION
        assert snapshot.payment_method is None


class TestDiscounts:
    """Tests for discount codes."""

    async def test_apply_valid_code(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)

        await ready_checkout.apply_discount("SAVE10")
        snapshot = await ready_checkout.settle()

        assert snapshot.applied_discount.code == "SAVE10"
        assert snapshot.applied_discount.discount_amount == Decimal("10.00")
        assert snapshot.preview.total == Decimal("115.00")

    async def test_rejected_code_keeps_prior_discount(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)
        await ready_checkout.apply_discount("SAVE10")
        await ready_checkout.settle()

        snapshot = await ready_checkout.apply_discount("BOGUS")

        assert snapshot.applied_discount.code == "SAVE10"
        assert snapshot.error.kind == ErrorKind.VALIDATION
        assert snapshot.error.step == CheckoutStep.DISCOUNT
        assert snapshot.error.message == "Invalid discount code"

    async def test_transient_failure_distinct_from_rejection(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        backend.fail("POST /discounts/validate", 502)

        snapshot = await ready_checkout.apply_discount("SAVE10")
        assert snapshot.applied_discount is None
        assert snapshot.error.kind == ErrorKind.TRANSIENT

        await ready_checkout.retry()
        snapshot = await ready_checkout.settle()
        assert snapshot.applied_discount.code == "SAVE10"

    async def test_rejected_code_keeps_pending_price_retry(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.fail("POST /orders/calculate", 503)
        await select_and_settle(ready_checkout)

        snapshot = await ready_checkout.apply_discount("BOGUS")
        assert snapshot.preview is None
        assert [e.step for e in snapshot.errors] == [CheckoutStep.PRICING, CheckoutStep.DISCOUNT]
        assert snapshot.error.step == CheckoutStep.DISCOUNT

        await ready_checkout.retry()
        snapshot = await ready_checkout.settle()
        assert snapshot.preview.total == Decimal("125.00")
        assert [e.step for e in snapshot.errors] == [CheckoutStep.DISCOUNT]

    async def test_remove_discount(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)
        await ready_checkout.apply_discount("SAVE10")
        await ready_checkout.settle()

        await ready_checkout.remove_discount()
        snapshot = await ready_checkout.settle()

        assert snapshot.applied_discount is None
        assert snapshot.preview.total == Decimal("125.00")


class TestOrderCreation:
    """Tests for placing orders."""

    async def test_paid_order_awaits_payment(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)

        snapshot = await ready_checkout.create_order()

        assert snapshot.phase == CheckoutPhase.AWAITING_PAYMENT
        assert snapshot.order_state == OrderState.PENDING_PAYMENT
        assert snapshot.redirect_url == "https://pay.test/c/cs_test_1"
        assert snapshot.payment_status == PaymentStatus.REDIRECT_READY

        pay_request = backend.pay_requests[0]
        assert pay_request["success_url"].startswith("http://portal.test/payment/success?checkout_id=chk-test")
        assert pay_request["success_url"].endswith("session_id={CHECKOUT_SESSION_ID}")
        assert pay_request["payment_plan"] == "full"

    async def test_rapid_create_calls_create_one_order(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        release = backend.hold("POST /orders/")

        first = asyncio.ensure_future(ready_checkout.create_order())
        await wait_until(lambda: ready_checkout.phase == CheckoutPhase.ORDER_CREATING)
        snapshot = await ready_checkout.create_order()
        assert snapshot.phase == CheckoutPhase.ORDER_CREATING

        release.set()
        snapshot = await first
        assert snapshot.phase == CheckoutPhase.AWAITING_PAYMENT
        assert backend.calls["POST /orders/"] == 1

    async def test_create_again_while_awaiting_payment_is_noop(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        first = await ready_checkout.create_order()

        second = await ready_checkout.create_order()

        assert second.order.order_id == first.order.order_id
        assert backend.calls["POST /orders/"] == 1
        assert len(backend.pay_requests) == 1

    async def test_zero_total_succeeds_without_redirect(
        self, checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.classes["class-1"] = make_class(price="0.00", custom_fees=[])
        await checkout.initialize_checkout("class-1")
        snapshot = await select_and_settle(checkout)
        assert snapshot.phase == CheckoutPhase.ORDER_PREVIEW
        assert snapshot.is_free is True

        snapshot = await checkout.create_order()

        assert snapshot.phase == CheckoutPhase.PAYMENT_SUCCEEDED
        assert snapshot.order_state == OrderState.PAYMENT_SUCCEEDED
        assert snapshot.redirect_url is None
        assert backend.pay_requests == []

    async def test_free_payment_session_succeeds(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        backend.pay_returns_free = True
        await ready_to_order(ready_checkout)

        snapshot = await ready_checkout.create_order()

        assert snapshot.phase == CheckoutPhase.PAYMENT_SUCCEEDED
        assert snapshot.redirect_url is None

    async def test_rejected_order_returns_to_preview(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        backend.fail("POST /orders/", 400, "Missing required fee")

        snapshot = await ready_checkout.create_order()

        assert snapshot.phase == CheckoutPhase.ORDER_PREVIEW
        assert snapshot.error.kind == ErrorKind.VALIDATION
        assert snapshot.selected_child_ids == ("child-1",)

    async def test_failed_handoff_reuses_order(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        backend.fail("POST /orders/order-1/pay", 503)

        snapshot = await ready_checkout.create_order()
        assert snapshot.phase == CheckoutPhase.ORDER_PREVIEW
        assert snapshot.error.retryable is True
        assert snapshot.order.order_id == "order-1"

        snapshot = await ready_checkout.retry()
        assert snapshot.phase == CheckoutPhase.AWAITING_PAYMENT
        assert snapshot.order.order_id == "order-1"
        assert backend.calls["POST /orders/"] == 1

    async def test_changed_selection_discards_unpaid_order(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        backend.fail("POST /orders/order-1/pay", 503)
        await ready_checkout.create_order()

        await ready_checkout.toggle_custom_fee("child-1", "1")
        snapshot = await ready_checkout.settle()

        assert snapshot.order is None
        assert backend.orders["order-1"]["status"] == "cancelled"

    async def test_order_not_found_is_fatal(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        backend.fail("POST /orders/", 404, "Class not found")

        snapshot = await ready_checkout.create_order()

        assert snapshot.phase == CheckoutPhase.FATAL
        assert snapshot.order_state == OrderState.FATAL

    async def test_create_before_preview_rejected(self, ready_checkout: CheckoutOrchestrator):
        await select_and_settle(ready_checkout)

        with pytest.raises(ConflictException):
            await ready_checkout.create_order()


class TestOrderLock:
    """Tests for selection changes around an open order."""

    async def test_selection_locked_while_awaiting_payment(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()

        with pytest.raises(ConflictException):
            await ready_checkout.select_child("child-2")
        with pytest.raises(ConflictException):
            await ready_checkout.toggle_custom_fee("child-1", "1")
        assert ready_checkout.phase == CheckoutPhase.AWAITING_PAYMENT

    async def test_discard_order_unlocks_selection(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()

        snapshot = await ready_checkout.discard_order()

        assert snapshot.order is None
        assert snapshot.phase == CheckoutPhase.ORDER_PREVIEW
        assert snapshot.redirect_url is None
        assert backend.orders["order-1"]["status"] == "cancelled"

        snapshot = await select_and_settle(ready_checkout, "child-2")
        assert snapshot.selected_child_ids == ("child-2",)

    async def test_discard_without_order_rejected(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)

        with pytest.raises(ConflictException):
            await ready_checkout.discard_order()


class TestPaymentReturn:
    """Tests for the hosted payment return paths."""

    async def test_success_return(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()

        snapshot = await ready_checkout.complete_payment("cs_test_1")

        assert snapshot.phase == CheckoutPhase.PAYMENT_SUCCEEDED
        assert snapshot.payment_status == PaymentStatus.SUCCEEDED
        assert snapshot.order_state == OrderState.PAYMENT_SUCCEEDED

    async def test_success_return_before_webhook_settles(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()
        assert backend.orders["order-1"]["status"] == "pending_payment"

        snapshot = await ready_checkout.complete_payment("cs_test_1")

        assert snapshot.phase == CheckoutPhase.PAYMENT_SUCCEEDED
        content, _ = await ready_checkout.download_receipt()
        assert content.startswith(b"%PDF")

    async def test_success_return_for_failed_order(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()
        backend.orders["order-1"]["status"] = "failed"

        snapshot = await ready_checkout.complete_payment("cs_test_1")

        assert snapshot.phase == CheckoutPhase.AWAITING_PAYMENT
        assert snapshot.error.step == CheckoutStep.PAYMENT
        assert snapshot.error.message == "Order is failed"

    async def test_success_return_with_foreign_session(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()

        snapshot = await ready_checkout.complete_payment("cs_other")

        assert snapshot.phase == CheckoutPhase.AWAITING_PAYMENT
        assert snapshot.error.step == CheckoutStep.PAYMENT
        assert snapshot.error.kind == ErrorKind.VALIDATION

    async def test_success_return_retries_order_refresh(
        self, ready_checkout: CheckoutOrchestrator, backend: FakeBackend
    ):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()
        backend.fail("GET /orders/order-1", 503)

        snapshot = await ready_checkout.complete_payment("cs_test_1")
        assert snapshot.phase == CheckoutPhase.AWAITING_PAYMENT
        assert snapshot.error.retryable is True

        snapshot = await ready_checkout.retry()
        assert snapshot.phase == CheckoutPhase.PAYMENT_SUCCEEDED

    async def test_cancel_return_keeps_redirect(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()

        snapshot = await ready_checkout.cancel_payment()

        assert snapshot.phase == CheckoutPhase.AWAITING_PAYMENT
        assert snapshot.payment_status == PaymentStatus.CANCELLED
        assert snapshot.redirect_url == "https://pay.test/c/cs_test_1"

    async def test_receipt_after_payment(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()
        await ready_checkout.complete_payment("cs_test_1")

        content, content_type = await ready_checkout.download_receipt()

        assert content.startswith(b"%PDF")
        assert content_type == "application/pdf"

    async def test_receipt_before_payment_rejected(self, ready_checkout: CheckoutOrchestrator):
        await ready_to_order(ready_checkout)
        await ready_checkout.create_order()

        with pytest.raises(ConflictException):
            await ready_checkout.download_receipt()
