"""Split agreement persistence helpers."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from royalties.domain import SplitAgreement
from royalties.models import SplitAgreementRecord


def to_agreement(record: SplitAgreementRecord) -> SplitAgreement:
    return SplitAgreement(
        agreement_id=record.agreement_id,
        entity_id=record.entity_id,
        split_type=record.split_type,
        recipient_id=record.recipient_id,
        percentage=Decimal(record.percentage),
        effective_date=record.effective_date,
        end_date=record.end_date,
        role=record.role,
    )


class AgreementRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, agreement: SplitAgreement) -> SplitAgreementRecord:
        record = SplitAgreementRecord(
            agreement_id=agreement.agreement_id,
            entity_id=agreement.entity_id,
            split_type=agreement.split_type,
            recipient_id=agreement.recipient_id,
            percentage=agreement.percentage,
            effective_date=agreement.effective_date,
            end_date=agreement.end_date,
            role=agreement.role,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def get(self, agreement_id: str) -> SplitAgreementRecord | None:
        return self._session.get(SplitAgreementRecord, agreement_id)

    def close(self, record: SplitAgreementRecord, *, end_date: date, closed_at: datetime) -> None:
        record.end_date = end_date
        record.closed_at = closed_at
        self._session.flush()

    def list_overlapping(
        self,
        entity_id: str,
        split_type: str,
        *,
        start: date | None = None,
        end: date | None = None,
    ) -> list[SplitAgreement]:
        """Agreements whose validity intersects the half-open range [start, end)."""

        query = select(SplitAgreementRecord).where(
            SplitAgreementRecord.entity_id == entity_id,
            SplitAgreementRecord.split_type == split_type,
        )
        if end is not None:
            query = query.where(SplitAgreementRecord.effective_date < end)
        if start is not None:
            query = query.where(
                or_(SplitAgreementRecord.end_date.is_(None), SplitAgreementRecord.end_date > start)
            )
        query = query.order_by(
            SplitAgreementRecord.effective_date,
            SplitAgreementRecord.recipient_id,
            SplitAgreementRecord.agreement_id,
        )
        return [to_agreement(record) for record in self._session.execute(query).scalars().all()]


__all__ = ["AgreementRepository", "to_agreement"]
