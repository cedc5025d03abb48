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
    OrderState,
    PaymentMethod,
    PaymentStatus,
    PlacedOrder,
    PricePreview,
    StepError,
)

__all__ = [
    "INSTALLMENT_OPTIONS",
    "AppliedDiscount",
    "CheckoutPhase",
    "CheckoutSelection",
    "CheckoutSnapshot",
    "CheckoutStep",
    "ChildWaiverStatus",
    "ErrorKind",
    "InstallmentPlan",
    "OrderState",
    "PaymentMethod",
    "PaymentStatus",
    "PlacedOrder",
    "PricePreview",
    "StepError",
]
