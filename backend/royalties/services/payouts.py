"""Accrual bookkeeping, payout batching and the payout lifecycle."""

from __future__ import annotations

import threading
import uuid
import weakref
from collections.abc import Iterable, Iterator, Mapping
from contextlib import ExitStack, contextmanager
from datetime import date
from decimal import Decimal
from typing import Protocol

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from royalties.core.config import Settings, get_settings
from royalties.db import SessionScope
from royalties.domain import AccrualSnapshot, Allocation, Payout
from royalties.domain.money import minor_unit, normalize_currency, quantize_money, round_down_to
from royalties.errors import StateTransitionError, ValidationError
from royalties.models import PayoutRecord, PayoutStatus, utcnow
from royalties.repositories import AllocationRepository, LedgerRepository, PayoutRepository
from royalties.repositories.payout_repository import to_payout

MAX_CAS_ATTEMPTS = 5

AccrualKey = tuple[str, str]


class RecipientDirectory(Protocol):
    """Catalog lookup resolving how a recipient gets paid."""

    def payout_method(self, recipient_id: str) -> str | None:
        """Return the configured payout method or ``None`` when unknown."""


class StaticRecipientDirectory:
    def __init__(self, methods: Mapping[str, str] | None = None) -> None:
        self._methods = dict(methods or {})

    def payout_method(self, recipient_id: str) -> str | None:
        return self._methods.get(recipient_id)


class PayoutAggregator:
    """Accrue allocations per (recipient, currency) and close them into payouts.

    Every balance mutation happens while holding the in-process lock for its
    key and is written with a version compare-and-swap, so two closes of the
    same key can never both deduct the balance. The lock is held until the
    transaction has committed.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        settings: Settings | None = None,
        directory: RecipientDirectory | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._settings = settings or get_settings()
        self._directory = directory or StaticRecipientDirectory()
        # entries live only while some caller still holds the lock object
        self._locks: weakref.WeakValueDictionary[AccrualKey, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Locking

    def _lock_for(self, key: AccrualKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def locked(self, keys: Iterable[AccrualKey]) -> Iterator[None]:
        """Hold the locks of every key, acquired in sorted order."""

        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield

    # ------------------------------------------------------------------
    # Accrual

    def accrue(self, allocation: Allocation) -> bool:
        """Add ``allocation`` to its recipient's balance; ``False`` on replay."""

        key = (allocation.recipient_id, allocation.currency)
        with self._lock_for(key):
            with self._session_scope() as session:
                return self.accrue_in(session, allocation)

    def accrue_in(
        self,
        session: Session,
        allocation: Allocation,
        *,
        amount: Decimal | None = None,
        entry_id: str | None = None,
    ) -> bool:
        """Accrue inside a caller-owned transaction.

        The caller must hold :meth:`locked` for the allocation's key. ``amount``
        and ``entry_id`` let reconciliation book a delta under a revision id.
        Without ``entry_id`` the allocation must still be live: a revision
        superseded after it was listed is never booked.
        """

        repo = PayoutRepository(session)
        entry_key = entry_id or allocation.allocation_id
        if entry_id is None and not AllocationRepository(session).is_live(allocation.allocation_id):
            logger.warning("Allocation {} is superseded or missing; not accruing", entry_key)
            return False
        if repo.has_entry(entry_key):
            logger.debug("Allocation {} already accrued", entry_key)
            return False

        if self._settings.reversal_policy == "rebatch_pending":
            self._cancel_pending_for_reversal(session, repo, allocation)

        delta = allocation.amount if amount is None else amount
        if not repo.add_entry(
            allocation_id=entry_key,
            fact_id=allocation.fact_id,
            recipient_id=allocation.recipient_id,
            currency=allocation.currency,
            amount=delta,
        ):
            logger.warning("Allocation {} accrued concurrently; skipping", entry_key)
            return False

        self._apply_delta(repo, allocation.recipient_id, allocation.currency, delta)
        return True

    def _cancel_pending_for_reversal(
        self, session: Session, repo: PayoutRepository, allocation: Allocation
    ) -> None:
        fact = LedgerRepository(session).get(allocation.fact_id)
        if fact is None or fact.reversal_of is None:
            return
        for payout in repo.pending_payouts_for_fact(fact.reversal_of):
            if (payout.recipient_id, payout.currency) != (allocation.recipient_id, allocation.currency):
                continue
            logger.info(
                "Cancelling pending payout {} before accruing reversal of fact {}",
                payout.payout_id,
                fact.reversal_of,
            )
            self._roll_back(
                repo,
                payout,
                status=PayoutStatus.CANCELLED,
                reason=f"reversal of fact {fact.reversal_of}",
            )

    def _apply_delta(self, repo: PayoutRepository, recipient_id: str, currency: str, delta: Decimal) -> None:
        for _ in range(MAX_CAS_ATTEMPTS):
            snapshot = repo.ensure_balance(recipient_id, currency)
            if repo.compare_and_set(
                snapshot,
                balance=snapshot.balance + delta,
                carried_forward=snapshot.carried_forward,
            ):
                return
        raise StateTransitionError(
            "Accrual balance kept changing underneath the update",
            recipient_id=recipient_id,
            currency=currency,
        )

    def balance(self, recipient_id: str, currency: str) -> AccrualSnapshot | None:
        with self._session_scope() as session:
            return PayoutRepository(session).get_balance(recipient_id, normalize_currency(currency))

    # ------------------------------------------------------------------
    # Batching

    def close_batch(self, recipient_id: str, currency: str, schedule_date: date) -> Payout | None:
        """Emit a pending payout when the payable amount clears the threshold.

        Returns ``None`` when nothing is payable yet or when this key already has
        a live payout for ``schedule_date``.
        """

        currency = normalize_currency(currency)
        key = (recipient_id, currency)
        with self._lock_for(key):
            try:
                with self._session_scope() as session:
                    return self._close_in(session, recipient_id, currency, schedule_date)
            except IntegrityError:
                logger.warning(
                    "Payout batch {} {} {} already closed by another writer",
                    recipient_id,
                    currency,
                    schedule_date,
                )
                return None

    def _close_in(
        self, session: Session, recipient_id: str, currency: str, schedule_date: date
    ) -> Payout | None:
        repo = PayoutRepository(session)
        existing = repo.find_batch_payout(recipient_id, currency, schedule_date)
        if existing is not None:
            logger.info(
                "Batch {} {} {} already produced payout {}",
                recipient_id,
                currency,
                schedule_date,
                existing.payout_id,
            )
            return None

        snapshot = repo.get_balance(recipient_id, currency)
        if snapshot is None or snapshot.available <= 0:
            return None

        available = snapshot.available
        fee = self.fee_for(available, currency)
        increment = self._settings.payout_increment.get(currency, minor_unit(currency))
        payable = round_down_to(available - fee, increment)
        threshold = self._settings.threshold_for(currency)
        if payable <= 0 or payable < threshold:
            logger.debug(
                "Batch {} {} below threshold: payable={} threshold={}",
                recipient_id,
                currency,
                payable,
                threshold,
            )
            return None

        method = self._directory.payout_method(recipient_id) or self._settings.default_payout_method
        remainder = available - fee - payable
        if not repo.compare_and_set(snapshot, balance=Decimal("0"), carried_forward=remainder):
            logger.warning("Accrual {} {} changed during batch close", recipient_id, currency)
            return None

        record = repo.add_payout(
            PayoutRecord(
                payout_id=str(uuid.uuid4()),
                recipient_id=recipient_id,
                amount=payable,
                currency=currency,
                fee=fee,
                method=method,
                status=PayoutStatus.PENDING.value,
                scheduled_date=schedule_date,
                batch_attempt=repo.next_batch_attempt(recipient_id, currency, schedule_date),
            )
        )
        linked = repo.link_unbatched_entries(recipient_id, currency, record.payout_id)
        logger.info(
            "Closed batch {} {} {}: payout {} amount={} fee={} carried={} entries={}",
            recipient_id,
            currency,
            schedule_date,
            record.payout_id,
            payable,
            fee,
            remainder,
            linked,
        )
        return to_payout(record)

    def fee_for(self, available: Decimal, currency: str) -> Decimal:
        fee = self._settings.payout_fee_fixed + available * self._settings.payout_fee_percent / 100
        return quantize_money(fee, currency)

    # ------------------------------------------------------------------
    # Lifecycle

    def mark_processing(self, payout_id: str) -> Payout:
        return self._transition(payout_id, PayoutStatus.PENDING, PayoutStatus.PROCESSING)

    def mark_completed(
        self, payout_id: str, reference_number: str, *, completed_date: date | None = None
    ) -> Payout:
        if not reference_number or not reference_number.strip():
            raise ValidationError("reference_number is required to complete a payout", payout_id=payout_id)
        return self._transition(
            payout_id,
            PayoutStatus.PROCESSING,
            PayoutStatus.COMPLETED,
            reference_number=reference_number.strip(),
            completed_date=completed_date or utcnow().date(),
        )

    def mark_failed(self, payout_id: str, reason: str) -> Payout:
        return self._transition(payout_id, PayoutStatus.PROCESSING, PayoutStatus.FAILED, reason=reason)

    def mark_cancelled(self, payout_id: str, reason: str | None = None) -> Payout:
        return self._transition(payout_id, PayoutStatus.PENDING, PayoutStatus.CANCELLED, reason=reason)

    def _transition(
        self,
        payout_id: str,
        expected: PayoutStatus,
        target: PayoutStatus,
        *,
        reason: str | None = None,
        reference_number: str | None = None,
        completed_date: date | None = None,
    ) -> Payout:
        with self._session_scope() as session:
            record = PayoutRepository(session).get_payout(payout_id)
            if record is None:
                raise ValidationError("Unknown payout", payout_id=payout_id)
            key = (record.recipient_id, record.currency)

        with self._lock_for(key):
            with self._session_scope() as session:
                repo = PayoutRepository(session)
                record = repo.get_payout(payout_id)
                assert record is not None
                if record.status != expected.value:
                    raise StateTransitionError(
                        f"Cannot move payout from {record.status} to {target.value}",
                        payout_id=payout_id,
                        current_state=record.status,
                        expected_state=expected.value,
                    )
                if target in (PayoutStatus.FAILED, PayoutStatus.CANCELLED):
                    self._roll_back(repo, record, status=target, reason=reason)
                else:
                    record.status = target.value
                    if reference_number is not None:
                        record.reference_number = reference_number
                    if completed_date is not None:
                        record.completed_date = completed_date
                    session.flush()
                logger.info("Payout {} moved {} -> {}", payout_id, expected.value, target.value)
                return to_payout(record)

    def _roll_back(
        self,
        repo: PayoutRepository,
        record: PayoutRecord,
        *,
        status: PayoutStatus,
        reason: str | None,
    ) -> None:
        restored = quantize_money(Decimal(record.amount) + Decimal(record.fee), record.currency)
        self._apply_delta(repo, record.recipient_id, record.currency, restored)
        released = repo.release_entries(record.payout_id)
        record.status = status.value
        record.failure_reason = reason
        logger.warning(
            "Payout {} {}; restored {} {} to accrual and released {} entries",
            record.payout_id,
            status.value,
            restored,
            record.currency,
            released,
        )


__all__ = ["PayoutAggregator", "RecipientDirectory", "StaticRecipientDirectory"]
