"""Accrual balance, accrual entry and payout persistence helpers."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from royalties.domain import AccrualSnapshot, Payout
from royalties.domain.money import quantize_money
from royalties.models import AccrualBalance, AccrualEntry, PayoutRecord, PayoutStatus, utcnow

BATCHED_PAYOUT_STATUSES = (
    PayoutStatus.PENDING.value,
    PayoutStatus.PROCESSING.value,
    PayoutStatus.COMPLETED.value,
)


def to_snapshot(record: AccrualBalance) -> AccrualSnapshot:
    return AccrualSnapshot(
        recipient_id=record.recipient_id,
        currency=record.currency,
        balance=quantize_money(Decimal(record.balance), record.currency),
        carried_forward=quantize_money(Decimal(record.carried_forward), record.currency),
        version=record.version,
    )


def to_payout(record: PayoutRecord) -> Payout:
    return Payout(
        payout_id=record.payout_id,
        recipient_id=record.recipient_id,
        amount=quantize_money(Decimal(record.amount), record.currency),
        currency=record.currency,
        fee=quantize_money(Decimal(record.fee), record.currency),
        method=record.method,
        status=record.status,
        scheduled_date=record.scheduled_date,
        batch_attempt=record.batch_attempt,
        completed_date=record.completed_date,
        reference_number=record.reference_number,
        failure_reason=record.failure_reason,
    )


class PayoutRepository:
    """Persistence for the accrual → payout half of the engine.

    Balance rows are only ever changed through :meth:`compare_and_set`, which
    bumps ``version`` and refuses to write when another writer got there first.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Accrual balances

    def get_balance(self, recipient_id: str, currency: str) -> AccrualSnapshot | None:
        query = (
            select(AccrualBalance)
            .where(
                AccrualBalance.recipient_id == recipient_id,
                AccrualBalance.currency == currency,
            )
            .execution_options(populate_existing=True)
        )
        record = self._session.execute(query).scalar_one_or_none()
        return to_snapshot(record) if record is not None else None

    def ensure_balance(self, recipient_id: str, currency: str) -> AccrualSnapshot:
        existing = self.get_balance(recipient_id, currency)
        if existing is not None:
            return existing
        record = AccrualBalance(
            recipient_id=recipient_id,
            currency=currency,
            balance=Decimal("0"),
            carried_forward=Decimal("0"),
            version=0,
        )
        try:
            with self._session.begin_nested():
                self._session.add(record)
                self._session.flush()
        except IntegrityError:
            pass
        snapshot = self.get_balance(recipient_id, currency)
        assert snapshot is not None
        return snapshot

    def compare_and_set(
        self,
        snapshot: AccrualSnapshot,
        *,
        balance: Decimal,
        carried_forward: Decimal,
    ) -> bool:
        result = self._session.execute(
            update(AccrualBalance)
            .where(
                AccrualBalance.recipient_id == snapshot.recipient_id,
                AccrualBalance.currency == snapshot.currency,
                AccrualBalance.version == snapshot.version,
            )
            .values(
                balance=balance,
                carried_forward=carried_forward,
                version=snapshot.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_balance_keys(self, *, currency: str | None = None) -> list[tuple[str, str]]:
        query = select(AccrualBalance.recipient_id, AccrualBalance.currency)
        if currency:
            query = query.where(AccrualBalance.currency == currency)
        query = query.order_by(AccrualBalance.recipient_id, AccrualBalance.currency)
        return [(row[0], row[1]) for row in self._session.execute(query).all()]

    def list_balances(self, recipient_id: str) -> list[AccrualSnapshot]:
        query = (
            select(AccrualBalance)
            .where(AccrualBalance.recipient_id == recipient_id)
            .order_by(AccrualBalance.currency)
        )
        return [to_snapshot(record) for record in self._session.execute(query).scalars().all()]

    # ------------------------------------------------------------------
    # Accrual entries

    def has_entry(self, allocation_id: str) -> bool:
        query = select(AccrualEntry.entry_id).where(AccrualEntry.allocation_id == allocation_id)
        return self._session.execute(query).first() is not None

    def add_entry(
        self,
        *,
        allocation_id: str,
        fact_id: str,
        recipient_id: str,
        currency: str,
        amount: Decimal,
    ) -> bool:
        entry = AccrualEntry(
            allocation_id=allocation_id,
            fact_id=fact_id,
            recipient_id=recipient_id,
            currency=currency,
            amount=amount,
        )
        try:
            with self._session.begin_nested():
                self._session.add(entry)
                self._session.flush()
        except IntegrityError:
            return False
        return True

    def accrued_for_fact(self, fact_id: str) -> dict[tuple[str, str], Decimal]:
        """Sum of accrued amounts per (recipient_id, currency) for ``fact_id``."""

        query = select(AccrualEntry.recipient_id, AccrualEntry.currency, AccrualEntry.amount).where(
            AccrualEntry.fact_id == fact_id
        )
        totals: dict[tuple[str, str], Decimal] = {}
        for recipient_id, currency, amount in self._session.execute(query).all():
            key = (recipient_id, currency)
            totals[key] = totals.get(key, Decimal("0")) + quantize_money(Decimal(amount), currency)
        return totals

    def link_unbatched_entries(self, recipient_id: str, currency: str, payout_id: str) -> int:
        result = self._session.execute(
            update(AccrualEntry)
            .where(
                AccrualEntry.recipient_id == recipient_id,
                AccrualEntry.currency == currency,
                AccrualEntry.payout_id.is_(None),
            )
            .values(payout_id=payout_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def release_entries(self, payout_id: str) -> int:
        result = self._session.execute(
            update(AccrualEntry)
            .where(AccrualEntry.payout_id == payout_id)
            .values(payout_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Payouts

    def add_payout(self, record: PayoutRecord) -> PayoutRecord:
        self._session.add(record)
        self._session.flush()
        return record

    def get_payout(self, payout_id: str) -> PayoutRecord | None:
        return self._session.get(PayoutRecord, payout_id, populate_existing=True)

    def find_batch_payout(self, recipient_id: str, currency: str, scheduled_date: date) -> PayoutRecord | None:
        query = (
            select(PayoutRecord)
            .where(
                PayoutRecord.recipient_id == recipient_id,
                PayoutRecord.currency == currency,
                PayoutRecord.scheduled_date == scheduled_date,
                PayoutRecord.status.in_(BATCHED_PAYOUT_STATUSES),
            )
            .order_by(PayoutRecord.batch_attempt.desc())
        )
        return self._session.execute(query).scalars().first()

    def next_batch_attempt(self, recipient_id: str, currency: str, scheduled_date: date) -> int:
        query = select(func.max(PayoutRecord.batch_attempt)).where(
            PayoutRecord.recipient_id == recipient_id,
            PayoutRecord.currency == currency,
            PayoutRecord.scheduled_date == scheduled_date,
        )
        current = self._session.execute(query).scalar_one_or_none()
        return (current or 0) + 1

    def pending_payouts_for_fact(self, fact_id: str) -> list[PayoutRecord]:
        query = (
            select(PayoutRecord)
            .join(AccrualEntry, AccrualEntry.payout_id == PayoutRecord.payout_id)
            .where(
                AccrualEntry.fact_id == fact_id,
                PayoutRecord.status == PayoutStatus.PENDING.value,
            )
            .distinct()
            .order_by(PayoutRecord.payout_id)
        )
        return list(self._session.execute(query).scalars().all())

    def list_payouts(self, recipient_id: str, *, currency: str | None = None) -> list[PayoutRecord]:
        query = select(PayoutRecord).where(PayoutRecord.recipient_id == recipient_id)
        if currency:
            query = query.where(PayoutRecord.currency == currency)
        query = query.order_by(
            PayoutRecord.scheduled_date, PayoutRecord.batch_attempt, PayoutRecord.created_at
        )
        return list(self._session.execute(query).scalars().all())

    def count_entries(self, payout_id: str) -> int:
        query = select(func.count(AccrualEntry.entry_id)).where(AccrualEntry.payout_id == payout_id)
        return int(self._session.execute(query).scalar_one())


__all__ = ["BATCHED_PAYOUT_STATUSES", "PayoutRepository", "to_payout", "to_snapshot"]
