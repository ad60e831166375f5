"""Clinic POS relay: Stripe Terminal card-present charges from a front-desk form."""
from .charge import ChargeOrchestrator, ChargeOutcome, ChargeResult, PaymentSnapshot, RefundResult
from .config import PosConfig

__version__ = "1.0.0"

__all__ = [
    "ChargeOrchestrator",
    "ChargeOutcome",
    "ChargeResult",
    "PaymentSnapshot",
    "PosConfig",
    "RefundResult",
]
