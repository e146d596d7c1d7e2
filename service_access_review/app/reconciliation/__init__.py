"""
Entitlement reconciliation: keeps the account store in step with
authoritative extracts.
"""

from .models import (
    AccountGrant,
    AccountRow,
    Correlation,
    CorrelationStatus,
    ReconciliationOptions,
    ReconciliationResult,
    SodScope,
    SodStatus,
    grant_id,
)
from .reconciler import Reconciler

__all__ = [
    "AccountGrant",
    "AccountRow",
    "Correlation",
    "CorrelationStatus",
    "ReconciliationOptions",
    "ReconciliationResult",
    "Reconciler",
    "SodScope",
    "SodStatus",
    "grant_id",
]
