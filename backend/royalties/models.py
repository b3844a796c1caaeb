from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

MONEY = Numeric(20, 6)
PERCENT = Numeric(12, 8)  # split resolver rejects finer percentages


class StreamType(str, Enum):
    STREAMING = "streaming"
    DOWNLOAD = "download"
    SYNC = "sync"
    PERFORMANCE = "performance"
    MECHANICAL = "mechanical"


class SplitType(str, Enum):
    MASTER = "master"
    PUBLISHING = "publishing"
    PERFORMANCE = "performance"
    SYNC = "sync"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DistributionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    LIVE = "live"
    FAILED = "failed"
    REMOVED = "removed"


class DistributionEventType(str, Enum):
    PROCESSING = "processing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    REMOVED = "removed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevenueFactRecord(Base):
    __tablename__ = "revenue_facts"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fact_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    platform_id: Mapped[str] = mapped_column(String, nullable=False)
    stream_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ingestion_id: Mapped[str] = mapped_column(String, nullable=False)
    reversal_of: Mapped[str | None] = mapped_column(
        String, ForeignKey("revenue_facts.fact_id"), nullable=True
    )
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    allocations: Mapped[list["AllocationRecord"]] = relationship(
        "AllocationRecord", back_populates="fact"
    )

    __table_args__ = (
        UniqueConstraint(
            "platform_id",
            "entity_id",
            "period_start",
            "period_end",
            "ingestion_id",
            name="uq_revenue_fact_source",
        ),
        Index("ix_revenue_facts_entity_period", "entity_id", "period_start", "sequence"),
    )


class SplitAgreementRecord(Base):
    __tablename__ = "split_agreements"

    agreement_id: Mapped[str] = mapped_column(String, primary_key=True)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    split_type: Mapped[str] = mapped_column(String, nullable=False)
    recipient_id: Mapped[str] = mapped_column(String, nullable=False)
    percentage: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_split_agreements_scope", "entity_id", "split_type", "effective_date"),
    )


class AllocationRecord(Base):
    __tablename__ = "allocations"

    allocation_id: Mapped[str] = mapped_column(String, primary_key=True)
    fact_id: Mapped[str] = mapped_column(String, ForeignKey("revenue_facts.fact_id"), nullable=False)
    split_type: Mapped[str] = mapped_column(String, nullable=False)
    recipient_id: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    fact: Mapped[RevenueFactRecord] = relationship("RevenueFactRecord", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint("fact_id", "split_type", "recipient_id", "revision", name="uq_allocation_scope"),
        Index("ix_allocations_recipient", "recipient_id", "currency"),
    )


class AccrualBalance(Base):
    __tablename__ = "accrual_balances"

    recipient_id: Mapped[str] = mapped_column(String, primary_key=True)
    currency: Mapped[str] = mapped_column(String(3), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    carried_forward: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class AccrualEntry(Base):
    __tablename__ = "accrual_entries"

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    allocation_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    fact_id: Mapped[str] = mapped_column(String, nullable=False)
    recipient_id: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payout_id: Mapped[str | None] = mapped_column(String, ForeignKey("payouts.payout_id"), nullable=True)
    accrued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    payout: Mapped[PayoutRecord | None] = relationship("PayoutRecord", back_populates="entries")

    __table_args__ = (Index("ix_accrual_entries_key", "recipient_id", "currency", "payout_id"),)


class PayoutRecord(Base):
    __tablename__ = "payouts"

    payout_id: Mapped[str] = mapped_column(String, primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    method: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=PayoutStatus.PENDING.value)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    batch_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    completed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    entries: Mapped[list[AccrualEntry]] = relationship("AccrualEntry", back_populates="payout")

    __table_args__ = (
        UniqueConstraint(
            "recipient_id", "currency", "scheduled_date", "batch_attempt", name="uq_payout_batch"
        ),
        Index("ix_payouts_recipient", "recipient_id", "created_at"),
    )


class DistributionRecord(Base):
    __tablename__ = "distribution_records"

    record_id: Mapped[str] = mapped_column(String, primary_key=True)
    release_id: Mapped[str] = mapped_column(String, nullable=False)
    platform_id: Mapped[str] = mapped_column(String, nullable=False)
    platform_release_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=DistributionStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    live_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_transition_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    events: Mapped[list["DistributionEvent"]] = relationship(
        "DistributionEvent", back_populates="record", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("release_id", "platform_id", name="uq_distribution_scope"),
        Index("ix_distribution_platform_release", "platform_id", "platform_release_id"),
    )


class DistributionEvent(Base):
    __tablename__ = "distribution_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(
        String, ForeignKey("distribution_records.record_id"), nullable=False
    )
    platform_id: Mapped[str] = mapped_column(String, nullable=False)
    platform_release_id: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    record: Mapped[DistributionRecord] = relationship("DistributionRecord", back_populates="events")

    __table_args__ = (
        UniqueConstraint(
            "platform_id",
            "platform_release_id",
            "event_type",
            "occurred_at",
            name="uq_distribution_callback",
        ),
    )


class QuarantinedItem(Base):
    __tablename__ = "quarantined_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    item_key: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    retriable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    occurrences: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    logged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_quarantined_items_key", "kind", "item_key"),)
