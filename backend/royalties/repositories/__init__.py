"""Repository abstractions for database interactions."""

from .agreement_repository import AgreementRepository
from .allocation_repository import AllocationRepository
from .distribution_repository import DistributionRepository
from .ledger_repository import LedgerRepository
from .payout_repository import PayoutRepository
from .quarantine_repository import QuarantineRepository

__all__ = [
    "AgreementRepository",
    "AllocationRepository",
    "DistributionRepository",
    "LedgerRepository",
    "PayoutRepository",
    "QuarantineRepository",
]
