"""Engine services built on the repositories."""

from .allocation import AllocationEngine
from .distribution import DistributionTracker
from .ledger import RevenueLedger
from .payouts import PayoutAggregator, RecipientDirectory, StaticRecipientDirectory
from .query_service import QueryService, RateLookup
from .split_resolver import SplitResolver

__all__ = [
    "AllocationEngine",
    "DistributionTracker",
    "PayoutAggregator",
    "QueryService",
    "RateLookup",
    "RecipientDirectory",
    "RevenueLedger",
    "SplitResolver",
    "StaticRecipientDirectory",
]
