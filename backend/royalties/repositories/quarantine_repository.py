"""Holding area for units that failed with an external or integrity error."""

from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from royalties.domain import QuarantineEntry
from royalties.models import QuarantinedItem, utcnow


class QuarantineRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def find(self, kind: str, item_key: str) -> QuarantinedItem | None:
        query = (
            select(QuarantinedItem)
            .where(QuarantinedItem.kind == kind, QuarantinedItem.item_key == item_key)
            .order_by(QuarantinedItem.item_id)
        )
        return self._session.execute(query).scalars().first()

    def add(self, entry: QuarantineEntry) -> QuarantinedItem:
        """Record ``entry``, refreshing the existing row when ``(kind, item_key)`` repeats."""

        item = self.find(entry.kind, entry.item_key) if entry.item_key is not None else None
        if item is None:
            item = QuarantinedItem(
                kind=entry.kind,
                item_key=entry.item_key,
                reason=entry.reason,
                retriable=entry.retriable,
                details=entry.details,
                occurrences=1,
            )
            self._session.add(item)
        else:
            item.reason = entry.reason
            item.retriable = entry.retriable
            item.details = entry.details
            item.occurrences += 1
            item.logged_at = utcnow()
        self._session.flush()
        return item

    def discard(self, kind: str, item_key: str) -> int:
        result = self._session.execute(
            delete(QuarantinedItem).where(QuarantinedItem.kind == kind, QuarantinedItem.item_key == item_key)
        )
        return result.rowcount or 0

    def list_items(self, *, kind: str | None = None, limit: int = 100) -> list[QuarantinedItem]:
        query = select(QuarantinedItem)
        if kind:
            query = query.where(QuarantinedItem.kind == kind)
        query = query.order_by(QuarantinedItem.item_id).limit(limit)
        return list(self._session.execute(query).scalars().all())

    def count(self, *, kind: str | None = None) -> int:
        query = select(func.count(QuarantinedItem.item_id))
        if kind:
            query = query.where(QuarantinedItem.kind == kind)
        return int(self._session.execute(query).scalar_one())


__all__ = ["QuarantineRepository"]
