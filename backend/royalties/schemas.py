from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _reject_float(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError("money values must be decimal, not float")
    return value


class Allocation(BaseModel):
    allocation_id: str
    fact_id: str
    split_type: str
    recipient_id: str
    amount: Decimal
    currency: str
    revision: int = 0
    platform_id: str | None = None
    stream_type: str | None = None
    period_start: date | None = None
    period_end: date | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Any:
        return _reject_float(value)

    model_config = {"from_attributes": True}


class EntityAllocations(BaseModel):
    entity_id: str
    period_start: date
    period_end: date
    totals: dict[str, Decimal] = Field(default_factory=dict)
    items: list[Allocation] = Field(default_factory=list)


class StatementLine(BaseModel):
    platform_id: str
    stream_type: str
    currency: str
    amount: Decimal
    allocations: int


class RecipientStatement(BaseModel):
    recipient_id: str
    period_start: date
    period_end: date
    totals: dict[str, Decimal] = Field(default_factory=dict)
    lines: list[StatementLine] = Field(default_factory=list)
    items: list[Allocation] = Field(default_factory=list)
    payouts_by_status: dict[str, int] = Field(default_factory=dict)


class Payout(BaseModel):
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

    @field_validator("amount", "fee", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Any:
        return _reject_float(value)

    model_config = {"from_attributes": True}


class PayoutHistory(BaseModel):
    recipient_id: str
    items: list[Payout] = Field(default_factory=list)


class DistributionRecord(BaseModel):
    record_id: str
    release_id: str
    platform_id: str
    platform_release_id: str | None = None
    status: str
    attempts: int
    submitted_at: datetime | None = None
    live_date: date | None = None
    error_message: str | None = None
    last_transition_at: datetime

    model_config = {"from_attributes": True}


class ReleaseDistribution(BaseModel):
    release_id: str
    platforms: list[DistributionRecord] = Field(default_factory=list)


class Balance(BaseModel):
    currency: str
    balance: Decimal
    carried_forward: Decimal
    available: Decimal
    rate: Decimal | None = None
    converted: Decimal | None = None


class RecipientBalances(BaseModel):
    recipient_id: str
    reporting_currency: str
    total: Decimal | None = None
    balances: list[Balance] = Field(default_factory=list)
    missing_rates: list[str] = Field(default_factory=list)


class QuarantinedItem(BaseModel):
    item_id: int
    kind: str
    item_key: str | None = None
    reason: str
    retriable: bool
    details: dict[str, Any] | None = None
    occurrences: int = 1
    logged_at: datetime

    model_config = {"from_attributes": True}
