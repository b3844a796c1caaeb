"""Recompute allocations over a historical window and swap them in atomically."""

from __future__ import annotations

import argparse
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable
from uuid import uuid4

from loguru import logger

from royalties.core.config import Settings, get_settings
from royalties.db import SessionScope, init_db, session_scope
from royalties.domain import Allocation, RevenueFact
from royalties.errors import RoyaltyError
from royalties.repositories import AllocationRepository, LedgerRepository, PayoutRepository
from royalties.repositories.ledger_repository import to_fact
from royalties.services import AllocationEngine, PayoutAggregator
from royalties.services.allocation import allocation_id

from .context import PipelineContext, resolve_summary_path, write_summary


@dataclass(slots=True)
class StagedRevision:
    fact: RevenueFact
    previous: list[Allocation]
    current: list[Allocation]

    def keys(self) -> set[tuple[str, str]]:
        return {(item.recipient_id, item.currency) for item in (*self.previous, *self.current)}


@dataclass(slots=True)
class ReconcileSummary:
    run_id: str
    window_start: date
    window_end: date
    status: str = "running"
    facts_examined: int = 0
    facts_changed: int = 0
    facts_failed: int = 0
    adjustments: list[dict[str, str]] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "status": self.status,
            "facts_examined": self.facts_examined,
            "facts_changed": self.facts_changed,
            "facts_failed": self.facts_failed,
            "adjustments": self.adjustments,
            "failures": self.failures,
        }


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Recompute allocations for a historical window against current split agreements"
    )
    parser.add_argument("--from", dest="window_start", type=date.fromisoformat, required=True)
    parser.add_argument("--to", dest="window_end", type=date.fromisoformat, required=True)
    parser.add_argument(
        "--entity",
        action="append",
        default=None,
        help="Restrict reconciliation to entity_id (repeatable)",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args(argv)


def _differs(previous: list[Allocation], current: list[Allocation]) -> bool:
    before = {(item.recipient_id, item.amount) for item in previous}
    after = {(item.recipient_id, item.amount) for item in current}
    return before != after


def _stage(
    context: PipelineContext,
    summary: ReconcileSummary,
    facts: list[RevenueFact],
    cancel_event: threading.Event,
) -> list[StagedRevision] | None:
    staged: dict[str, StagedRevision] = {}
    failed: list[tuple[str, RoyaltyError]] = []
    with context.session_scope() as session:
        engine = AllocationEngine(session, settings=context.settings)
        allocations = AllocationRepository(session)
        for fact in facts:
            if cancel_event.is_set():
                break
            summary.facts_examined += 1
            previous = allocations.live_for_fact(fact.fact_id)
            if not previous:
                continue
            try:
                original = staged.get(fact.reversal_of) if fact.reversal_of else None
                if original is not None:
                    current = engine.compute_reversal(fact, original.current)
                else:
                    current = engine.recompute(fact)
            except RoyaltyError as exc:
                summary.facts_failed += 1
                summary.failures.append({"fact_id": fact.fact_id, "error": exc.message})
                failed.append((fact.fact_id, exc))
                continue
            if _differs(previous, current):
                staged[fact.fact_id] = StagedRevision(fact=fact, previous=previous, current=current)

    # quarantine writes wait until the staging read transaction has ended
    for fact_id, exc in failed:
        context.quarantine("reconciliation", fact_id, exc)
    if cancel_event.is_set():
        return None
    return list(staged.values())


def _apply(
    context: PipelineContext,
    summary: ReconcileSummary,
    staged: list[StagedRevision],
    aggregator: PayoutAggregator,
    now: datetime,
) -> None:
    keys: set[tuple[str, str]] = set()
    for revision in staged:
        keys |= revision.keys()

    with aggregator.locked(keys):
        with context.session_scope() as session:
            allocations = AllocationRepository(session)
            payouts = PayoutRepository(session)
            for revision in staged:
                fact_id = revision.fact.fact_id
                number = (allocations.current_revision(fact_id) or 0) + 1
                current = [
                    replace(
                        item,
                        allocation_id=allocation_id(fact_id, item.split_type, item.recipient_id, number),
                        revision=number,
                    )
                    for item in revision.current
                ]
                allocations.supersede(fact_id, at=now)
                allocations.add_many(current)

                accrued = payouts.accrued_for_fact(fact_id)
                targets = {(item.recipient_id, item.currency): item for item in current}
                for previous in revision.previous:
                    key = (previous.recipient_id, previous.currency)
                    if key not in targets:
                        targets[key] = replace(
                            previous,
                            allocation_id=allocation_id(fact_id, previous.split_type, previous.recipient_id, number),
                            amount=Decimal("0"),
                            revision=number,
                        )
                for key, target in sorted(targets.items()):
                    delta = target.amount - accrued.get(key, Decimal("0"))
                    if delta == 0:
                        continue
                    aggregator.accrue_in(session, target, amount=delta, entry_id=target.allocation_id)
                    summary.adjustments.append(
                        {
                            "fact_id": fact_id,
                            "recipient_id": target.recipient_id,
                            "currency": target.currency,
                            "revision": str(number),
                            "delta": str(delta),
                        }
                    )
                summary.facts_changed += 1


def run_reconciliation(
    args: argparse.Namespace,
    settings: Settings,
    *,
    cancel_event: threading.Event | None = None,
    now: datetime | None = None,
    session_factory: SessionScope | None = None,
    init_db_fn: Callable[[], None] = init_db,
    aggregator: PayoutAggregator | None = None,
) -> ReconcileSummary:
    """Stage recomputed allocations, then apply all of them in one transaction.

    Setting ``cancel_event`` while facts are being staged abandons the run
    without touching allocations or balances.
    """

    if session_factory is None:
        init_db_fn()
        session_factory = session_scope

    cancel_event = cancel_event or threading.Event()
    now = now or datetime.now(timezone.utc)
    run_id = str(uuid4())
    context = PipelineContext(
        run_id=run_id,
        run_date=now.date(),
        settings=settings,
        session_scope=session_factory,
    )
    aggregator = aggregator or PayoutAggregator(session_factory, settings=settings)
    summary = ReconcileSummary(run_id=run_id, window_start=args.window_start, window_end=args.window_end)

    with session_factory() as session:
        facts = [
            to_fact(record)
            for record in LedgerRepository(session).list_in_window(
                period_start=args.window_start,
                period_end=args.window_end,
                entity_ids=args.entity,
            )
        ]
    logger.info("Reconciliation run {} examining {} facts", run_id, len(facts))

    staged = _stage(context, summary, facts, cancel_event)
    if staged is None or cancel_event.is_set():
        summary.status = "cancelled"
        logger.warning("Reconciliation run {} cancelled; staged revisions discarded", run_id)
    elif not staged:
        summary.status = "no_changes"
    else:
        _apply(context, summary, staged, aggregator, now)
        summary.status = "applied"
        logger.info(
            "Reconciliation run {} applied {} revisions ({} adjustments)",
            run_id,
            summary.facts_changed,
            len(summary.adjustments),
        )

    summary_path = resolve_summary_path(args.summary_path, settings, "reconcile", run_id)
    if summary_path:
        write_summary(summary_path, summary.to_dict())
        logger.info("Wrote reconciliation summary to {}", summary_path)
    return summary


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    run_reconciliation(args, get_settings())


if __name__ == "__main__":
    main()
