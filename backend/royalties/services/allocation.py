"""Deterministic allocation of revenue facts to recipients."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from fractions import Fraction

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from royalties.core.config import Settings, get_settings
from royalties.domain import Allocation, RevenueFact, SplitWindow
from royalties.domain.money import from_minor_units, round_half_even, to_minor_units
from royalties.errors import SplitIntegrityError, ValidationError
from royalties.repositories import AllocationRepository, LedgerRepository
from royalties.repositories.ledger_repository import to_fact

from .split_resolver import SplitResolver


def allocation_id(fact_id: str, split_type: str, recipient_id: str, revision: int = 0) -> str:
    base = f"{fact_id}:{split_type}:{recipient_id}"
    return base if revision == 0 else f"{base}:r{revision}"


def apportion(total_units: int, exact: Mapping[str, Fraction]) -> dict[str, int]:
    """Round exact per-recipient shares so they add up to ``total_units``.

    Each share is rounded half-to-even, then the leftover minor units are
    handed out one at a time by largest remainder, ties broken by recipient id.
    """

    rounded = {recipient: round_half_even(value) for recipient, value in exact.items()}
    residual = total_units - sum(rounded.values())
    if residual and rounded:
        remainders = {recipient: exact[recipient] - rounded[recipient] for recipient in rounded}
        if residual > 0:
            order = sorted(rounded, key=lambda recipient: (-remainders[recipient], recipient))
            step = 1
        else:
            order = sorted(rounded, key=lambda recipient: (remainders[recipient], recipient))
            step = -1
        for index in range(abs(residual)):
            rounded[order[index % len(order)]] += step
    return rounded


class AllocationEngine:
    """Turn ledger facts into per-recipient allocations that sum exactly."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        resolver: SplitResolver | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._resolver = resolver or SplitResolver(session, settings=self._settings)
        self._repo = AllocationRepository(session)
        self._ledger = LedgerRepository(session)

    # ------------------------------------------------------------------
    # Pure computation

    @staticmethod
    def compute(
        fact: RevenueFact,
        windows: Sequence[SplitWindow],
        *,
        split_type: str,
        revision: int = 0,
    ) -> list[Allocation]:
        total_units = to_minor_units(fact.amount, fact.currency)
        exact: dict[str, Fraction] = {}
        for window in windows:
            for share in window.shares:
                portion = Fraction(total_units) * window.fraction * Fraction(share.percentage) / 100
                exact[share.recipient_id] = exact.get(share.recipient_id, Fraction(0)) + portion
        return AllocationEngine._build(fact, split_type, apportion(total_units, exact), revision)

    @staticmethod
    def compute_reversal(
        fact: RevenueFact,
        originals: Sequence[Allocation],
        *,
        revision: int = 0,
    ) -> list[Allocation]:
        """Apportion a reversal over the original fact's allocations."""

        if not originals:
            raise SplitIntegrityError(
                "Original fact has no allocations to reverse against",
                fact_id=fact.fact_id,
                reversal_of=fact.reversal_of,
            )
        total_units = to_minor_units(fact.amount, fact.currency)
        weights = {item.recipient_id: to_minor_units(item.amount, item.currency) for item in originals}
        weight_total = sum(weights.values())
        if weight_total == 0:
            exact = {recipient: Fraction(0) for recipient in weights}
        else:
            exact = {
                recipient: Fraction(total_units * weight, weight_total)
                for recipient, weight in weights.items()
            }
        split_type = originals[0].split_type
        return AllocationEngine._build(fact, split_type, apportion(total_units, exact), revision)

    @staticmethod
    def _build(
        fact: RevenueFact, split_type: str, units: Mapping[str, int], revision: int
    ) -> list[Allocation]:
        return [
            Allocation(
                allocation_id=allocation_id(fact.fact_id, split_type, recipient, revision),
                fact_id=fact.fact_id,
                split_type=split_type,
                recipient_id=recipient,
                amount=from_minor_units(units[recipient], fact.currency),
                currency=fact.currency,
                revision=revision,
            )
            for recipient in sorted(units)
        ]

    # ------------------------------------------------------------------
    # Persistence

    def split_type_for(self, fact: RevenueFact) -> str:
        try:
            return self._settings.stream_split_types[fact.stream_type]
        except KeyError as exc:
            raise ValidationError(
                f"No split type configured for stream type '{fact.stream_type}'",
                fact_id=fact.fact_id,
                stream_type=fact.stream_type,
            ) from exc

    def recompute(self, fact: RevenueFact) -> list[Allocation]:
        """Compute allocations for ``fact`` against today's agreements without persisting."""

        if fact.reversal_of:
            originals = self._repo.live_for_fact(fact.reversal_of)
            return self.compute_reversal(fact, originals)
        split_type = self.split_type_for(fact)
        windows = self._resolver.resolve(fact.entity_id, split_type, fact.period)
        return self.compute(fact, windows, split_type=split_type)

    def allocate(self, fact: RevenueFact) -> list[Allocation]:
        """Return the allocations of ``fact``, computing and recording them once.

        Later calls return the recorded rows unchanged, even if agreements have
        since moved; only a reconciliation run issues a new revision.
        """

        existing = self._repo.live_for_fact(fact.fact_id)
        if existing:
            return existing

        if fact.reversal_of:
            original = self._ledger.get(fact.reversal_of)
            if original is None:
                raise ValidationError("Reversal references an unknown fact", fact_id=fact.fact_id)
            self.allocate(to_fact(original))

        allocations = self.recompute(fact)
        try:
            with self._session.begin_nested():
                self._repo.add_many(allocations)
        except IntegrityError:
            logger.warning("Allocation for fact {} raced with another writer", fact.fact_id)
            return self._repo.live_for_fact(fact.fact_id)

        logger.info(
            "Allocated fact {} ({} {}) across {} recipients",
            fact.fact_id,
            fact.amount,
            fact.currency,
            len(allocations),
        )
        return allocations


__all__ = ["AllocationEngine", "allocation_id", "apportion"]
