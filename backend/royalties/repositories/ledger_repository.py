"""Revenue fact persistence helpers."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from datetime import date
from decimal import Decimal

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from royalties.domain import RevenueFact, RevenueFactInput, ensure_utc
from royalties.domain.money import quantize_money
from royalties.models import AllocationRecord, RevenueFactRecord


def to_fact(record: RevenueFactRecord) -> RevenueFact:
    return RevenueFact(
        fact_id=record.fact_id,
        sequence=record.sequence,
        entity_id=record.entity_id,
        platform_id=record.platform_id,
        stream_type=record.stream_type,
        amount=quantize_money(Decimal(record.amount), record.currency),
        currency=record.currency,
        period_start=record.period_start,
        period_end=record.period_end,
        ingestion_id=record.ingestion_id,
        ingested_at=ensure_utc(record.ingested_at),
        country=record.country,
        quantity=record.quantity,
        reversal_of=record.reversal_of,
    )


class LedgerRepository:
    """Append-only access to ``revenue_facts``."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def insert_fact(self, candidate: RevenueFactInput) -> RevenueFactRecord | None:
        """Insert ``candidate`` or return ``None`` when its source key already exists."""

        record = RevenueFactRecord(
            fact_id=str(uuid.uuid4()),
            entity_id=candidate.entity_id,
            platform_id=candidate.platform_id,
            stream_type=candidate.stream_type,
            amount=candidate.amount,
            currency=candidate.currency,
            period_start=candidate.period_start,
            period_end=candidate.period_end,
            country=candidate.country,
            quantity=candidate.quantity,
            ingestion_id=candidate.ingestion_id,
            reversal_of=candidate.reversal_of,
            raw_data=candidate.raw_data,
        )
        try:
            with self._session.begin_nested():
                self._session.add(record)
                self._session.flush()
        except IntegrityError:
            return None
        return record

    # ------------------------------------------------------------------
    # Queries

    def get(self, fact_id: str) -> RevenueFactRecord | None:
        return self._session.execute(
            select(RevenueFactRecord).where(RevenueFactRecord.fact_id == fact_id)
        ).scalar_one_or_none()

    def find_by_source(
        self,
        *,
        platform_id: str,
        entity_id: str,
        period_start: date,
        period_end: date,
        ingestion_id: str,
    ) -> RevenueFactRecord | None:
        query = select(RevenueFactRecord).where(
            RevenueFactRecord.platform_id == platform_id,
            RevenueFactRecord.entity_id == entity_id,
            RevenueFactRecord.period_start == period_start,
            RevenueFactRecord.period_end == period_end,
            RevenueFactRecord.ingestion_id == ingestion_id,
        )
        return self._session.execute(query).scalar_one_or_none()

    def reversed_amounts(self, fact_id: str) -> list[Decimal]:
        query = select(RevenueFactRecord.amount).where(RevenueFactRecord.reversal_of == fact_id)
        return [Decimal(value) for value in self._session.execute(query).scalars().all()]

    def iter_facts(
        self,
        entity_id: str,
        period_start: date,
        period_end: date,
        *,
        chunk_size: int,
    ) -> Iterator[RevenueFact]:
        """Yield facts overlapping [period_start, period_end] in ledger order.

        Pages are fetched with keyset pagination on
        ``(period_start, period_end, sequence)`` so a consumer may stop at any
        point without holding a cursor open.
        """

        base_filters = [
            RevenueFactRecord.entity_id == entity_id,
            RevenueFactRecord.period_start <= period_end,
            RevenueFactRecord.period_end >= period_start,
        ]
        last: tuple[date, date, int] | None = None
        while True:
            query = select(RevenueFactRecord).where(*base_filters)
            if last is not None:
                last_start, last_end, last_sequence = last
                query = query.where(
                    or_(
                        RevenueFactRecord.period_start > last_start,
                        and_(
                            RevenueFactRecord.period_start == last_start,
                            RevenueFactRecord.period_end > last_end,
                        ),
                        and_(
                            RevenueFactRecord.period_start == last_start,
                            RevenueFactRecord.period_end == last_end,
                            RevenueFactRecord.sequence > last_sequence,
                        ),
                    )
                )
            query = query.order_by(
                RevenueFactRecord.period_start,
                RevenueFactRecord.period_end,
                RevenueFactRecord.sequence,
            ).limit(chunk_size)
            rows = self._session.execute(query).scalars().all()
            if not rows:
                return
            for row in rows:
                yield to_fact(row)
            tail = rows[-1]
            last = (tail.period_start, tail.period_end, tail.sequence)
            if len(rows) < chunk_size:
                return

    def list_unallocated(self, *, limit: int | None = None) -> list[RevenueFactRecord]:
        live_allocation = exists().where(
            AllocationRecord.fact_id == RevenueFactRecord.fact_id,
            AllocationRecord.superseded_at.is_(None),
        )
        query = (
            select(RevenueFactRecord)
            .where(~live_allocation)
            .order_by(RevenueFactRecord.sequence)
        )
        if limit is not None:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())

    def list_in_window(
        self,
        *,
        period_start: date,
        period_end: date,
        entity_ids: list[str] | None = None,
    ) -> list[RevenueFactRecord]:
        query = select(RevenueFactRecord).where(
            RevenueFactRecord.period_start <= period_end,
            RevenueFactRecord.period_end >= period_start,
        )
        if entity_ids:
            query = query.where(RevenueFactRecord.entity_id.in_(entity_ids))
        query = query.order_by(RevenueFactRecord.sequence)
        return list(self._session.execute(query).scalars().all())


__all__ = ["LedgerRepository", "to_fact"]
