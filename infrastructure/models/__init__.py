"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentModel, AttemptModel, CallbackRecordModel

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "AttemptModel",
    "CallbackRecordModel",
]
