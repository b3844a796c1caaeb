"""Domain models representing ledger, split, payout and distribution data."""

from .models import (
    AccrualSnapshot,
    Allocation,
    CallbackOutcome,
    DistributionCallback,
    DistributionSnapshot,
    IngestResult,
    IngestStatus,
    Payout,
    Period,
    QuarantineEntry,
    RecipientShare,
    RevenueFact,
    RevenueFactInput,
    SplitAgreement,
    SplitWindow,
    ensure_utc,
)

__all__ = [
    "AccrualSnapshot",
    "Allocation",
    "CallbackOutcome",
    "DistributionCallback",
    "DistributionSnapshot",
    "IngestResult",
    "IngestStatus",
    "Payout",
    "Period",
    "QuarantineEntry",
    "RecipientShare",
    "RevenueFact",
    "RevenueFactInput",
    "SplitAgreement",
    "SplitWindow",
    "ensure_utc",
]
