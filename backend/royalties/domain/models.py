"""Typed domain representations used across ingestion, persistence, and pipelines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from fractions import Fraction
from typing import Any


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on the way back)."""

    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True, frozen=True)
class Period:
    """Reporting period with an inclusive ``end`` date, as platforms report it."""

    start: date
    end: date

    @property
    def end_exclusive(self) -> date:
        return self.end + timedelta(days=1)

    @property
    def days(self) -> int:
        return (self.end_exclusive - self.start).days

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(slots=True)
class RevenueFactInput:
    """Candidate revenue fact as delivered by a platform report feed."""

    entity_id: str
    platform_id: str
    stream_type: str
    amount: Decimal
    currency: str
    period_start: date
    period_end: date
    ingestion_id: str
    country: str | None = None
    quantity: int | None = None
    reversal_of: str | None = None
    raw_data: dict[str, Any] | None = None

    @property
    def period(self) -> Period:
        return Period(self.period_start, self.period_end)


@dataclass(slots=True, frozen=True)
class RevenueFact:
    """Immutable ledger entry."""

    fact_id: str
    sequence: int
    entity_id: str
    platform_id: str
    stream_type: str
    amount: Decimal
    currency: str
    period_start: date
    period_end: date
    ingestion_id: str
    ingested_at: datetime
    country: str | None = None
    quantity: int | None = None
    reversal_of: str | None = None

    @property
    def period(self) -> Period:
        return Period(self.period_start, self.period_end)

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of is not None


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


@dataclass(slots=True, frozen=True)
class IngestResult:
    status: IngestStatus
    fact: RevenueFact


@dataclass(slots=True, frozen=True)
class SplitAgreement:
    agreement_id: str
    entity_id: str
    split_type: str
    recipient_id: str
    percentage: Decimal
    effective_date: date
    end_date: date | None
    role: str | None = None

    def covers(self, day: date) -> bool:
        if day < self.effective_date:
            return False
        return self.end_date is None or day < self.end_date


@dataclass(slots=True, frozen=True)
class RecipientShare:
    recipient_id: str
    percentage: Decimal
    agreement_id: str


@dataclass(slots=True, frozen=True)
class SplitWindow:
    """Slice of a reporting period over which one set of shares applies.

    ``end`` is exclusive. ``fraction`` is the share of the period's elapsed days
    this window covers.
    """

    start: date
    end: date
    fraction: Fraction
    shares: tuple[RecipientShare, ...]

    @property
    def days(self) -> int:
        return (self.end - self.start).days


@dataclass(slots=True, frozen=True)
class Allocation:
    allocation_id: str
    fact_id: str
    split_type: str
    recipient_id: str
    amount: Decimal
    currency: str
    revision: int = 0


@dataclass(slots=True, frozen=True)
class AccrualSnapshot:
    recipient_id: str
    currency: str
    balance: Decimal
    carried_forward: Decimal
    version: int

    @property
    def available(self) -> Decimal:
        return self.balance + self.carried_forward


@dataclass(slots=True, frozen=True)
class Payout:
    payout_id: str
    recipient_id: str
    amount: Decimal
    currency: str
    fee: Decimal
    method: str
    status: str
    scheduled_date: date
    batch_attempt: int
    completed_date: date | None = None
    reference_number: str | None = None
    failure_reason: str | None = None


@dataclass(slots=True, frozen=True)
class DistributionCallback:
    """Status event reported by a distribution platform."""

    platform_id: str
    platform_release_id: str
    event_type: str
    occurred_at: datetime
    message: str | None = None
    payload: dict[str, Any] | None = None


class CallbackOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"


@dataclass(slots=True, frozen=True)
class DistributionSnapshot:
    record_id: str
    release_id: str
    platform_id: str
    platform_release_id: str | None
    status: str
    attempts: int
    submitted_at: datetime | None
    live_date: date | None
    error_message: str | None
    last_transition_at: datetime


@dataclass(slots=True)
class QuarantineEntry:
    kind: str
    item_key: str | None
    reason: str
    retriable: bool = True
    details: dict[str, Any] | None = field(default=None)
