from .models import *

__all__ = [
    "Base",
    "PaymentIntent",
    "AuditLog",
    "PENDING",
    "PROCESSING",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
]
