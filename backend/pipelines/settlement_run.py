from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable
from uuid import uuid4

from loguru import logger

from royalties.core.config import Settings, get_settings
from royalties.db import SessionScope, init_db, session_scope
from royalties.errors import RoyaltyError
from royalties.repositories import AllocationRepository, PayoutRepository, QuarantineRepository
from royalties.services import AllocationEngine, PayoutAggregator, RevenueLedger

from .context import PipelineContext, resolve_summary_path, write_summary


@dataclass(slots=True)
class SettlementSummary:
    run_id: str
    schedule_date: date
    facts_allocated: int = 0
    allocation_failures: int = 0
    allocations_accrued: int = 0
    accrual_failures: int = 0
    batches_examined: int = 0
    batches_below_threshold: int = 0
    close_failures: int = 0
    payouts: list[dict[str, str]] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.allocation_failures + self.accrual_failures + self.close_failures

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "schedule_date": self.schedule_date.isoformat(),
            "facts_allocated": self.facts_allocated,
            "allocation_failures": self.allocation_failures,
            "allocations_accrued": self.allocations_accrued,
            "accrual_failures": self.accrual_failures,
            "batches_examined": self.batches_examined,
            "batches_below_threshold": self.batches_below_threshold,
            "close_failures": self.close_failures,
            "payouts": self.payouts,
            "failures": self.failures,
        }


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Allocate new revenue facts, accrue allocations and close payout batches"
    )
    parser.add_argument(
        "--schedule-date",
        type=date.fromisoformat,
        default=None,
        help="Payout schedule date in YYYY-MM-DD (defaults to today, UTC)",
    )
    parser.add_argument(
        "--currency",
        type=str,
        default=None,
        help="Only close batches in this currency",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of unallocated facts to process",
    )
    parser.add_argument(
        "--skip-close",
        action="store_true",
        help="Allocate and accrue only; leave batches open",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args(argv)


def _allocate(context: PipelineContext, summary: SettlementSummary, limit: int | None) -> None:
    with context.session_scope() as session:
        facts = RevenueLedger(session, settings=context.settings).unallocated(limit=limit)

    for fact in facts:
        try:
            with context.session_scope() as session:
                AllocationEngine(session, settings=context.settings).allocate(fact)
                QuarantineRepository(session).discard("allocation", fact.fact_id)
        except RoyaltyError as exc:
            summary.allocation_failures += 1
            summary.failures.append({"stage": "allocate", "fact_id": fact.fact_id, "error": exc.message})
            context.quarantine("allocation", fact.fact_id, exc)
            continue
        summary.facts_allocated += 1


def _accrue(context: PipelineContext, summary: SettlementSummary, aggregator: PayoutAggregator) -> None:
    with context.session_scope() as session:
        pending = AllocationRepository(session).list_unaccrued()

    for allocation in pending:
        try:
            accrued = aggregator.accrue(allocation)
        except RoyaltyError as exc:
            summary.accrual_failures += 1
            summary.failures.append(
                {"stage": "accrue", "allocation_id": allocation.allocation_id, "error": exc.message}
            )
            context.quarantine("accrual", allocation.allocation_id, exc)
            continue
        if accrued:
            summary.allocations_accrued += 1


def _close(
    context: PipelineContext,
    summary: SettlementSummary,
    aggregator: PayoutAggregator,
    currency: str | None,
) -> None:
    with context.session_scope() as session:
        keys = PayoutRepository(session).list_balance_keys(currency=currency.upper() if currency else None)

    for recipient_id, key_currency in keys:
        summary.batches_examined += 1
        try:
            payout = aggregator.close_batch(recipient_id, key_currency, summary.schedule_date)
        except RoyaltyError as exc:
            summary.close_failures += 1
            summary.failures.append(
                {"stage": "close", "recipient_id": recipient_id, "currency": key_currency, "error": exc.message}
            )
            context.quarantine("payout_batch", f"{recipient_id}:{key_currency}", exc)
            continue
        if payout is None:
            summary.batches_below_threshold += 1
            continue
        summary.payouts.append(
            {
                "payout_id": payout.payout_id,
                "recipient_id": payout.recipient_id,
                "amount": str(payout.amount),
                "fee": str(payout.fee),
                "currency": payout.currency,
            }
        )


def run_settlement(
    args: argparse.Namespace,
    settings: Settings,
    *,
    now: datetime | None = None,
    session_factory: SessionScope | None = None,
    init_db_fn: Callable[[], None] = init_db,
    aggregator: PayoutAggregator | None = None,
) -> SettlementSummary:
    if session_factory is None:
        init_db_fn()
        session_factory = session_scope

    now = now or datetime.now(timezone.utc)
    run_id = str(uuid4())
    schedule_date = args.schedule_date or now.date()
    context = PipelineContext(
        run_id=run_id,
        run_date=now.date(),
        settings=settings,
        session_scope=session_factory,
    )
    aggregator = aggregator or PayoutAggregator(session_factory, settings=settings)
    summary = SettlementSummary(run_id=run_id, schedule_date=schedule_date)

    logger.info("Settlement run {} started for schedule date {}", run_id, schedule_date)
    _allocate(context, summary, args.limit)
    _accrue(context, summary, aggregator)
    if not args.skip_close:
        _close(context, summary, aggregator, args.currency)

    logger.info(
        "Settlement run {} completed. allocated={}, accrued={}, payouts={}, failed={}",
        run_id,
        summary.facts_allocated,
        summary.allocations_accrued,
        len(summary.payouts),
        summary.failed,
    )

    summary_path = resolve_summary_path(args.summary_path, settings, "settlement", run_id)
    if summary_path:
        write_summary(summary_path, summary.to_dict())
        logger.info("Wrote settlement summary to {}", summary_path)

    if summary.failed:
        logger.warning("Settlement completed with {} quarantined units", summary.failed)
    return summary


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    run_settlement(args, get_settings())


if __name__ == "__main__":
    main()
