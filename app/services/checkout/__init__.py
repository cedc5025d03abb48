from app.services.checkout.capacity_guard import CapacityGuard
from app.services.checkout.order_creator import OrderCreator
from app.services.checkout.orchestrator import CheckoutOrchestrator
from app.services.checkout.payment_handoff import PaymentHandoff
from app.services.checkout.pricing_preview import PricingPreview
from app.services.checkout.registry import CheckoutRegistry
from app.services.checkout.waiver_gateway import WaiverGateway

__all__ = [
    "CapacityGuard",
    "CheckoutOrchestrator",
    "CheckoutRegistry",
    "OrderCreator",
    "PaymentHandoff",
    "PricingPreview",
    "WaiverGateway",
]
