"""Per-child waiver lookups and signing for one checkout session."""

import asyncio
from typing import Optional

from pydantic import ValidationError

from app.schemas.waiver import WaiverAcceptanceCreate, WaiverTemplate
from app.services.checkout.outcomes import WaiverCheckOutcome, WaiverScope, WaiverSignOutcome
from app.services.waiver_service import WaiverService
from core.exceptions.base import CustomException
from core.logging import get_logger

logger = get_logger(__name__)


class WaiverGateway:
    """Fetches pending waivers per child and signs them.

    Results are memoized per child for the lifetime of the gateway, and
    concurrent checks for the same child share one request. A failed lookup
    clears the child (fail-open); the server still enforces waivers when the
    order is created.
    """

    def __init__(self, waiver_service: WaiverService, scope: WaiverScope):
        self.waiver_service = waiver_service
        self.scope = scope
        self._results: dict[str, WaiverCheckOutcome] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    def cached(self, child_id: str) -> Optional[WaiverCheckOutcome]:
        return self._results.get(child_id)

    async def check_pending(self, child_id: str) -> WaiverCheckOutcome:
        """Return the pending waivers of a child."""
        if child_id in self._results:
            return self._results[child_id]

        task = self._inflight.get(child_id)
        if task is None:
            task = asyncio.ensure_future(self._fetch(child_id))
            self._inflight[child_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(child_id, None))

        # A cancelled waiter must not cancel the lookup other waiters share
        return await asyncio.shield(task)

    async def _fetch(self, child_id: str) -> WaiverCheckOutcome:
        try:
            response = await self.waiver_service.get_pending(
                program_id=self.scope.program_id,
                school_id=self.scope.school_id,
                child_id=child_id,
            )
        except (CustomException, ValidationError) as e:
            logger.warning(f"Waiver check failed for child {child_id}, allowing checkout: {e}")
            outcome = WaiverCheckOutcome(child_id=child_id, failed_open=True)
        else:
            outcome = WaiverCheckOutcome(
                child_id=child_id, pending=tuple(response.pending_templates)
            )
            logger.debug(f"Child {child_id} has {len(outcome.pending)} pending waiver(s)")

        self._results[child_id] = outcome
        return outcome

    async def sign(self, child_id: str, signer_name: str) -> WaiverSignOutcome:
        """Accept every pending waiver of a child.

        Templates are accepted one call at a time. Failures are collected and
        the child stays blocked on whatever was not accepted.
        """
        outcome = self._results.get(child_id)
        if outcome is None:
            outcome = await self.check_pending(child_id)

        signed: list[str] = []
        remaining: list[WaiverTemplate] = []
        failures: list[tuple[str, str]] = []

        for template in outcome.pending:
            try:
                await self.waiver_service.accept(
                    WaiverAcceptanceCreate(
                        waiver_template_id=template.id,
                        signer_name=signer_name,
                        child_id=child_id,
                    )
                )
            except CustomException as e:
                logger.warning(f"Accepting waiver {template.id} for child {child_id} failed: {e.message}")
                failures.append((template.id, e.message))
                remaining.append(template)
            except ValidationError as e:
                # The API answered 2xx, so the acceptance is recorded
                logger.warning(
                    f"Unreadable acceptance for waiver {template.id}, child {child_id}; "
                    f"treating as signed: {e.error_count()} validation error(s)"
                )
                signed.append(template.id)
            else:
                signed.append(template.id)

        self._results[child_id] = WaiverCheckOutcome(child_id=child_id, pending=tuple(remaining))
        self._forget_signed(set(signed))

        return WaiverSignOutcome(
            child_id=child_id,
            signed_template_ids=tuple(signed),
            remaining=tuple(remaining),
            failures=tuple(failures),
        )

    def _forget_signed(self, template_ids: set[str]) -> None:
        """Drop templates accepted by the guardian from other children's results.

        Guardian-level waivers are accepted once for the whole family.
        """
        if not template_ids:
            return
        for other_id, other in list(self._results.items()):
            pending = tuple(t for t in other.pending if t.id not in template_ids)
            if len(pending) != len(other.pending):
                self._results[other_id] = WaiverCheckOutcome(
                    child_id=other_id, pending=pending, failed_open=other.failed_open
                )
