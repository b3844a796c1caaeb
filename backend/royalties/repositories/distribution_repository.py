"""Distribution record and callback log persistence helpers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from royalties.domain import DistributionCallback, DistributionSnapshot, ensure_utc
from royalties.models import DistributionEvent, DistributionRecord


def to_distribution(record: DistributionRecord) -> DistributionSnapshot:
    return DistributionSnapshot(
        record_id=record.record_id,
        release_id=record.release_id,
        platform_id=record.platform_id,
        platform_release_id=record.platform_release_id,
        status=record.status,
        attempts=record.attempts,
        submitted_at=ensure_utc(record.submitted_at) if record.submitted_at else None,
        live_date=record.live_date,
        error_message=record.error_message,
        last_transition_at=ensure_utc(record.last_transition_at),
    )


class DistributionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Records

    def get(self, release_id: str, platform_id: str) -> DistributionRecord | None:
        query = (
            select(DistributionRecord)
            .where(
                DistributionRecord.release_id == release_id,
                DistributionRecord.platform_id == platform_id,
            )
            .execution_options(populate_existing=True)
        )
        return self._session.execute(query).scalar_one_or_none()

    def add(self, record: DistributionRecord) -> DistributionRecord | None:
        try:
            with self._session.begin_nested():
                self._session.add(record)
                self._session.flush()
        except IntegrityError:
            return None
        return record

    def find_by_platform_release(
        self, platform_id: str, platform_release_id: str
    ) -> DistributionRecord | None:
        """Load the record a platform callback refers to, locked until the transaction ends."""

        query = (
            select(DistributionRecord)
            .where(
                DistributionRecord.platform_id == platform_id,
                DistributionRecord.platform_release_id == platform_release_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self._session.execute(query).scalars().first()

    def list_for_release(self, release_id: str) -> list[DistributionRecord]:
        query = (
            select(DistributionRecord)
            .where(DistributionRecord.release_id == release_id)
            .order_by(DistributionRecord.platform_id)
        )
        return list(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Callback log

    def find_event(self, callback: DistributionCallback) -> DistributionEvent | None:
        query = select(DistributionEvent).where(
            DistributionEvent.platform_id == callback.platform_id,
            DistributionEvent.platform_release_id == callback.platform_release_id,
            DistributionEvent.event_type == callback.event_type,
            DistributionEvent.occurred_at == callback.occurred_at,
        )
        return self._session.execute(query).scalars().first()

    def record_event(
        self,
        record: DistributionRecord,
        *,
        platform_id: str,
        platform_release_id: str,
        event_type: str,
        occurred_at: datetime,
        applied: bool,
        message: str | None = None,
        payload: dict | None = None,
    ) -> bool:
        event = DistributionEvent(
            record_id=record.record_id,
            platform_id=platform_id,
            platform_release_id=platform_release_id,
            event_type=event_type,
            occurred_at=occurred_at,
            applied=applied,
            message=message,
            payload=payload,
        )
        try:
            with self._session.begin_nested():
                self._session.add(event)
                self._session.flush()
        except IntegrityError:
            return False
        return True

    def list_events(self, record_id: str) -> list[DistributionEvent]:
        query = (
            select(DistributionEvent)
            .where(DistributionEvent.record_id == record_id)
            .order_by(DistributionEvent.occurred_at, DistributionEvent.event_id)
        )
        return list(self._session.execute(query).scalars().all())


__all__ = ["DistributionRepository", "to_distribution"]
