"""Allocation persistence helpers."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from royalties.domain import Allocation
from royalties.domain.money import quantize_money
from royalties.models import AccrualEntry, AllocationRecord, RevenueFactRecord


def to_allocation(record: AllocationRecord) -> Allocation:
    return Allocation(
        allocation_id=record.allocation_id,
        fact_id=record.fact_id,
        split_type=record.split_type,
        recipient_id=record.recipient_id,
        amount=quantize_money(Decimal(record.amount), record.currency),
        currency=record.currency,
        revision=record.revision,
    )


class AllocationRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def add_many(self, allocations: Iterable[Allocation]) -> list[AllocationRecord]:
        records = [
            AllocationRecord(
                allocation_id=allocation.allocation_id,
                fact_id=allocation.fact_id,
                split_type=allocation.split_type,
                recipient_id=allocation.recipient_id,
                amount=allocation.amount,
                currency=allocation.currency,
                revision=allocation.revision,
            )
            for allocation in allocations
        ]
        self._session.add_all(records)
        self._session.flush()
        return records

    def supersede(self, fact_id: str, *, at: datetime) -> int:
        result = self._session.execute(
            update(AllocationRecord)
            .where(AllocationRecord.fact_id == fact_id, AllocationRecord.superseded_at.is_(None))
            .values(superseded_at=at)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Queries

    def live_for_fact(self, fact_id: str) -> list[Allocation]:
        query = (
            select(AllocationRecord)
            .where(AllocationRecord.fact_id == fact_id, AllocationRecord.superseded_at.is_(None))
            .order_by(AllocationRecord.recipient_id)
        )
        return [to_allocation(record) for record in self._session.execute(query).scalars().all()]

    def is_live(self, allocation_id: str) -> bool:
        query = select(AllocationRecord.superseded_at).where(AllocationRecord.allocation_id == allocation_id)
        row = self._session.execute(query).first()
        return row is not None and row.superseded_at is None

    def current_revision(self, fact_id: str) -> int | None:
        query = select(func.max(AllocationRecord.revision)).where(AllocationRecord.fact_id == fact_id)
        return self._session.execute(query).scalar_one_or_none()

    def list_unaccrued(self, *, limit: int | None = None) -> list[Allocation]:
        """First-revision allocations with no accrual entry; later revisions are booked as deltas."""

        accrued = select(AccrualEntry.allocation_id)
        query = (
            select(AllocationRecord)
            .join(RevenueFactRecord, RevenueFactRecord.fact_id == AllocationRecord.fact_id)
            .where(
                AllocationRecord.superseded_at.is_(None),
                AllocationRecord.revision == 0,
                AllocationRecord.allocation_id.not_in(accrued),
            )
            .order_by(RevenueFactRecord.sequence, AllocationRecord.recipient_id)
        )
        if limit is not None:
            query = query.limit(limit)
        return [to_allocation(record) for record in self._session.execute(query).scalars().all()]

    def list_for_entity(
        self,
        entity_id: str,
        *,
        period_start: date,
        period_end: date,
        include_superseded: bool = False,
    ) -> list[tuple[Allocation, RevenueFactRecord]]:
        query = (
            select(AllocationRecord, RevenueFactRecord)
            .join(RevenueFactRecord, RevenueFactRecord.fact_id == AllocationRecord.fact_id)
            .where(
                RevenueFactRecord.entity_id == entity_id,
                RevenueFactRecord.period_start <= period_end,
                RevenueFactRecord.period_end >= period_start,
            )
            .order_by(
                RevenueFactRecord.period_start,
                RevenueFactRecord.sequence,
                AllocationRecord.revision,
                AllocationRecord.recipient_id,
            )
        )
        if not include_superseded:
            query = query.where(AllocationRecord.superseded_at.is_(None))
        rows = self._session.execute(query).all()
        return [(to_allocation(allocation), fact) for allocation, fact in rows]

    def list_for_recipient(
        self,
        recipient_id: str,
        *,
        period_start: date,
        period_end: date,
    ) -> list[tuple[Allocation, RevenueFactRecord]]:
        """Live allocations of one recipient for facts overlapping the period."""

        query = (
            select(AllocationRecord, RevenueFactRecord)
            .join(RevenueFactRecord, RevenueFactRecord.fact_id == AllocationRecord.fact_id)
            .where(
                AllocationRecord.recipient_id == recipient_id,
                AllocationRecord.superseded_at.is_(None),
                RevenueFactRecord.period_start <= period_end,
                RevenueFactRecord.period_end >= period_start,
            )
            .order_by(
                RevenueFactRecord.platform_id,
                RevenueFactRecord.stream_type,
                RevenueFactRecord.period_start,
                RevenueFactRecord.sequence,
            )
        )
        rows = self._session.execute(query).all()
        return [(to_allocation(allocation), fact) for allocation, fact in rows]


__all__ = ["AllocationRepository", "to_allocation"]
