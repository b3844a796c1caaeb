"""Read-only accessors over allocations, payouts, balances and distribution state."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Protocol

from loguru import logger
from sqlalchemy.orm import Session

from royalties import schemas
from royalties.domain.money import normalize_currency, quantize_money
from royalties.errors import ExternalError, ValidationError
from royalties.repositories import (
    AllocationRepository,
    DistributionRepository,
    PayoutRepository,
    QuarantineRepository,
)
from royalties.repositories.distribution_repository import to_distribution
from royalties.repositories.payout_repository import to_payout


class RateLookup(Protocol):
    """Exchange-rate source; the engine never derives rates itself."""

    def rate(self, base: str, quote: str, *, on: date | None = None) -> Decimal:
        """Units of ``quote`` per one unit of ``base``."""


class QueryService:
    def __init__(self, session: Session) -> None:
        self._session = session
        self._allocations = AllocationRepository(session)
        self._payouts = PayoutRepository(session)
        self._distribution = DistributionRepository(session)
        self._quarantine = QuarantineRepository(session)

    def allocations_for_entity(
        self,
        entity_id: str,
        period_start: date,
        period_end: date,
        *,
        include_superseded: bool = False,
    ) -> schemas.EntityAllocations:
        if period_end < period_start:
            raise ValidationError(
                "period_end precedes period_start",
                entity_id=entity_id,
                period_start=period_start,
                period_end=period_end,
            )
        rows = self._allocations.list_for_entity(
            entity_id,
            period_start=period_start,
            period_end=period_end,
            include_superseded=include_superseded,
        )
        items: list[schemas.Allocation] = []
        totals: dict[str, Decimal] = {}
        for allocation, fact in rows:
            items.append(
                schemas.Allocation(
                    allocation_id=allocation.allocation_id,
                    fact_id=allocation.fact_id,
                    split_type=allocation.split_type,
                    recipient_id=allocation.recipient_id,
                    amount=allocation.amount,
                    currency=allocation.currency,
                    revision=allocation.revision,
                    platform_id=fact.platform_id,
                    stream_type=fact.stream_type,
                    period_start=fact.period_start,
                    period_end=fact.period_end,
                )
            )
            if not include_superseded:
                totals[allocation.currency] = totals.get(allocation.currency, Decimal("0")) + allocation.amount
        return schemas.EntityAllocations(
            entity_id=entity_id,
            period_start=period_start,
            period_end=period_end,
            totals=totals,
            items=items,
        )

    def recipient_statement(
        self, recipient_id: str, period_start: date, period_end: date
    ) -> schemas.RecipientStatement:
        """What one recipient earned over a period, broken down by platform and stream type.

        Only live allocations count. ``payouts_by_status`` tallies the
        recipient's payouts scheduled inside the period.
        """

        if period_end < period_start:
            raise ValidationError(
                "period_end precedes period_start",
                recipient_id=recipient_id,
                period_start=period_start,
                period_end=period_end,
            )
        rows = self._allocations.list_for_recipient(
            recipient_id, period_start=period_start, period_end=period_end
        )
        items: list[schemas.Allocation] = []
        totals: dict[str, Decimal] = {}
        lines: dict[tuple[str, str, str], schemas.StatementLine] = {}
        for allocation, fact in rows:
            items.append(
                schemas.Allocation(
                    allocation_id=allocation.allocation_id,
                    fact_id=allocation.fact_id,
                    split_type=allocation.split_type,
                    recipient_id=allocation.recipient_id,
                    amount=allocation.amount,
                    currency=allocation.currency,
                    revision=allocation.revision,
                    platform_id=fact.platform_id,
                    stream_type=fact.stream_type,
                    period_start=fact.period_start,
                    period_end=fact.period_end,
                )
            )
            totals[allocation.currency] = totals.get(allocation.currency, Decimal("0")) + allocation.amount
            key = (fact.platform_id, fact.stream_type, allocation.currency)
            line = lines.get(key)
            if line is None:
                line = schemas.StatementLine(
                    platform_id=fact.platform_id,
                    stream_type=fact.stream_type,
                    currency=allocation.currency,
                    amount=Decimal("0"),
                    allocations=0,
                )
                lines[key] = line
            line.amount += allocation.amount
            line.allocations += 1

        payouts_by_status: dict[str, int] = {}
        for record in self._payouts.list_payouts(recipient_id):
            if period_start <= record.scheduled_date <= period_end:
                payouts_by_status[record.status] = payouts_by_status.get(record.status, 0) + 1

        return schemas.RecipientStatement(
            recipient_id=recipient_id,
            period_start=period_start,
            period_end=period_end,
            totals=totals,
            lines=[lines[key] for key in sorted(lines)],
            items=items,
            payouts_by_status=payouts_by_status,
        )

    def payout_history(self, recipient_id: str, *, currency: str | None = None) -> schemas.PayoutHistory:
        records = self._payouts.list_payouts(
            recipient_id, currency=normalize_currency(currency) if currency else None
        )
        return schemas.PayoutHistory(
            recipient_id=recipient_id,
            items=[schemas.Payout.model_validate(to_payout(record)) for record in records],
        )

    def distribution_status(self, release_id: str) -> schemas.ReleaseDistribution:
        records = self._distribution.list_for_release(release_id)
        return schemas.ReleaseDistribution(
            release_id=release_id,
            platforms=[schemas.DistributionRecord.model_validate(to_distribution(record)) for record in records],
        )

    def recipient_balances(
        self,
        recipient_id: str,
        reporting_currency: str,
        rate_lookup: RateLookup,
        *,
        on: date | None = None,
    ) -> schemas.RecipientBalances:
        """Report open balances, converted into ``reporting_currency`` where a rate is available.

        ``total`` is only filled in when every currency could be converted.
        """

        reporting_currency = normalize_currency(reporting_currency)
        balances: list[schemas.Balance] = []
        missing: list[str] = []
        total = Decimal("0")
        for snapshot in self._payouts.list_balances(recipient_id):
            available = snapshot.available
            rate: Decimal | None
            if snapshot.currency == reporting_currency:
                rate = Decimal("1")
            else:
                try:
                    rate = rate_lookup.rate(snapshot.currency, reporting_currency, on=on)
                except ExternalError as exc:
                    logger.warning(
                        "No {}->{} rate for recipient {}: {}",
                        snapshot.currency,
                        reporting_currency,
                        recipient_id,
                        exc.message,
                    )
                    rate = None
                    missing.append(snapshot.currency)
            converted = quantize_money(available * rate, reporting_currency) if rate is not None else None
            if converted is not None:
                total += converted
            balances.append(
                schemas.Balance(
                    currency=snapshot.currency,
                    balance=snapshot.balance,
                    carried_forward=snapshot.carried_forward,
                    available=available,
                    rate=rate,
                    converted=converted,
                )
            )
        return schemas.RecipientBalances(
            recipient_id=recipient_id,
            reporting_currency=reporting_currency,
            total=None if missing else quantize_money(total, reporting_currency),
            balances=balances,
            missing_rates=missing,
        )

    def quarantined(self, *, kind: str | None = None, limit: int = 100) -> list[schemas.QuarantinedItem]:
        return [
            schemas.QuarantinedItem.model_validate(item)
            for item in self._quarantine.list_items(kind=kind, limit=limit)
        ]


__all__ = ["QueryService", "RateLookup"]
