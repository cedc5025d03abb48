"""Typed results returned by checkout collaborators.

Collaborators never raise into the orchestrator; each call resolves to one
of the outcome classes below.
"""

from dataclasses import dataclass
from typing import Optional, Union

from app.models.checkout import AppliedDiscount, PricePreview
from app.schemas.order import OrderResponse
from app.schemas.waiver import WaiverTemplate


# ============== Waivers ==============


@dataclass(frozen=True)
class WaiverScope:
    """Program / school a class belongs to."""

    program_id: Optional[str] = None
    school_id: Optional[str] = None


@dataclass(frozen=True)
class WaiverCheckOutcome:
    child_id: str
    pending: tuple[WaiverTemplate, ...] = ()
    failed_open: bool = False

    @property
    def cleared(self) -> bool:
        return not self.pending


@dataclass(frozen=True)
class WaiverSignOutcome:
    child_id: str
    signed_template_ids: tuple[str, ...] = ()
    remaining: tuple[WaiverTemplate, ...] = ()
    failures: tuple[tuple[str, str], ...] = ()  # (template_id, message)

    @property
    def cleared(self) -> bool:
        return not self.remaining


# ============== Pricing ==============


@dataclass(frozen=True)
class PreviewReady:
    preview: PricePreview


@dataclass(frozen=True)
class PreviewFailed:
    message: str
    transient: bool = True


PreviewOutcome = Union[PreviewReady, PreviewFailed]


@dataclass(frozen=True)
class DiscountAccepted:
    discount: AppliedDiscount


@dataclass(frozen=True)
class DiscountRejected:
    reason: str


@dataclass(frozen=True)
class DiscountFailed:
    message: str


DiscountOutcome = Union[DiscountAccepted, DiscountRejected, DiscountFailed]


# ============== Orders ==============


@dataclass(frozen=True)
class PaymentRedirect:
    order: OrderResponse
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class FreeEnrollment:
    order: OrderResponse


@dataclass(frozen=True)
class CapacityConflict:
    message: str
    order: Optional[OrderResponse] = None


@dataclass(frozen=True)
class OrderRejected:
    message: str
    order: Optional[OrderResponse] = None


@dataclass(frozen=True)
class OrderFailed:
    """Transient failure; ``order`` is set when it was created before failing."""

    message: str
    order: Optional[OrderResponse] = None


@dataclass(frozen=True)
class OrderFatal:
    message: str


OrderOutcome = Union[
    PaymentRedirect, FreeEnrollment, CapacityConflict, OrderRejected, OrderFailed, OrderFatal
]


# ============== Payment return ==============


@dataclass(frozen=True)
class PaymentConfirmed:
    order: OrderResponse


@dataclass(frozen=True)
class PaymentCancelled:
    pass


@dataclass(frozen=True)
class PaymentMismatch:
    message: str


@dataclass(frozen=True)
class PaymentCheckFailed:
    message: str


PaymentReturnOutcome = Union[PaymentConfirmed, PaymentCancelled, PaymentMismatch, PaymentCheckFailed]
