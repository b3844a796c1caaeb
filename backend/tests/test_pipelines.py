from __future__ import annotations

import argparse
import json
import threading
from datetime import date
from decimal import Decimal

from loguru import logger

from pipelines.context import PipelineContext
from pipelines.reconcile_run import _parse_args as parse_reconcile_args
from pipelines.reconcile_run import run_reconciliation
from pipelines.settlement_run import run_settlement
from royalties.errors import SplitIntegrityError
from royalties.repositories import AllocationRepository, PayoutRepository, QuarantineRepository
from royalties.services import AllocationEngine, PayoutAggregator, SplitResolver


def _settlement_args(tmp_path, **overrides) -> argparse.Namespace:
    values = dict(
        schedule_date=date(2024, 2, 15),
        currency=None,
        limit=None,
        skip_close=False,
        summary_path=tmp_path / "settlement.json",
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def _reconcile_args(tmp_path, **overrides) -> argparse.Namespace:
    values = dict(
        window_start=date(2024, 1, 1),
        window_end=date(2024, 1, 31),
        entity=None,
        summary_path=tmp_path / "reconcile.json",
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def _balances(session_scope):
    with session_scope() as session:
        repo = PayoutRepository(session)
        return {
            recipient: repo.get_balance(recipient, "USD").available
            for recipient, _ in repo.list_balance_keys(currency="USD")
        }


def test_settlement_allocates_accrues_and_closes(tmp_path, session_scope, test_settings, make_fact, make_split):
    make_split({"alice": "60", "bob": "40"})
    make_fact("100.00")
    make_fact("50.00")
    unsplit = make_fact("10.00", entity_id="ISRC-UNSPLIT")

    summary = run_settlement(_settlement_args(tmp_path), test_settings, session_factory=session_scope)

    assert summary.facts_allocated == 2
    assert summary.allocation_failures == 1
    assert summary.allocations_accrued == 4
    assert sorted((item["recipient_id"], item["amount"]) for item in summary.payouts) == [
        ("alice", "90.00"),
        ("bob", "60.00"),
    ]
    written = json.loads((tmp_path / "settlement.json").read_text(encoding="utf-8"))
    assert written["facts_allocated"] == 2
    with session_scope() as session:
        (item,) = QuarantineRepository(session).list_items(kind="allocation")
    assert item.item_key == unsplit.fact_id

    rerun = run_settlement(_settlement_args(tmp_path), test_settings, session_factory=session_scope)
    assert rerun.facts_allocated == 0
    assert rerun.allocations_accrued == 0
    assert rerun.payouts == []


def test_settlement_skip_close_leaves_balances_open(tmp_path, session_scope, test_settings, make_fact, make_split):
    make_split({"alice": "100"})
    make_fact("75.00")

    summary = run_settlement(
        _settlement_args(tmp_path, skip_close=True), test_settings, session_factory=session_scope
    )

    assert summary.payouts == []
    assert _balances(session_scope) == {"alice": Decimal("75.00")}


def _retroactive_change(session_scope, test_settings):
    with session_scope() as session:
        SplitResolver(session, settings=test_settings).replace_agreements(
            entity_id="ISRC-1",
            split_type="master",
            effective_date=date(2024, 1, 1),
            shares=[("alice", "80"), ("bob", "20")],
        )


def test_reconciliation_books_deltas_for_changed_splits(tmp_path, session_scope, test_settings, make_fact, make_split):
    make_split({"alice": "50", "bob": "50"})
    original = make_fact("100.00", ingestion_id="orig")
    make_fact("-40.00", ingestion_id="rev", reversal_of=original.fact_id)
    aggregator = PayoutAggregator(session_scope, settings=test_settings)
    run_settlement(
        _settlement_args(tmp_path, skip_close=True),
        test_settings,
        session_factory=session_scope,
        aggregator=aggregator,
    )
    assert _balances(session_scope) == {"alice": Decimal("30.00"), "bob": Decimal("30.00")}

    _retroactive_change(session_scope, test_settings)
    summary = run_reconciliation(
        _reconcile_args(tmp_path), test_settings, session_factory=session_scope, aggregator=aggregator
    )

    assert summary.status == "applied"
    assert summary.facts_changed == 2
    assert _balances(session_scope) == {"alice": Decimal("48.00"), "bob": Decimal("12.00")}
    with session_scope() as session:
        live = AllocationRepository(session).live_for_fact(original.fact_id)
    assert [(item.recipient_id, item.amount, item.revision) for item in live] == [
        ("alice", Decimal("80.00"), 1),
        ("bob", Decimal("20.00"), 1),
    ]
    assert live[0].allocation_id.endswith(":r1")

    again = run_reconciliation(
        _reconcile_args(tmp_path), test_settings, session_factory=session_scope, aggregator=aggregator
    )
    assert again.status == "no_changes"

    settle = run_settlement(
        _settlement_args(tmp_path, skip_close=True),
        test_settings,
        session_factory=session_scope,
        aggregator=aggregator,
    )
    assert settle.allocations_accrued == 0
    assert _balances(session_scope) == {"alice": Decimal("48.00"), "bob": Decimal("12.00")}


def test_cancelled_reconciliation_leaves_state_untouched(tmp_path, session_scope, test_settings, make_fact, make_split):
    make_split({"alice": "50", "bob": "50"})
    fact = make_fact("100.00")
    run_settlement(_settlement_args(tmp_path, skip_close=True), test_settings, session_factory=session_scope)
    _retroactive_change(session_scope, test_settings)

    cancel = threading.Event()
    cancel.set()
    summary = run_reconciliation(
        _reconcile_args(tmp_path), test_settings, session_factory=session_scope, cancel_event=cancel
    )

    assert summary.status == "cancelled"
    assert summary.adjustments == []
    assert _balances(session_scope) == {"alice": Decimal("50.00"), "bob": Decimal("50.00")}
    with session_scope() as session:
        live = AllocationRepository(session).live_for_fact(fact.fact_id)
    assert {item.revision for item in live} == {0}
    written = json.loads((tmp_path / "reconcile.json").read_text(encoding="utf-8"))
    assert written["status"] == "cancelled"


def test_reconciliation_quarantines_facts_that_no_longer_resolve(tmp_path, session_scope, test_settings, make_fact, make_split):
    (agreement,) = make_split({"alice": "100"})
    make_fact("20.00")
    run_settlement(_settlement_args(tmp_path, skip_close=True), test_settings, session_factory=session_scope)
    with session_scope() as session:
        SplitResolver(session, settings=test_settings).close_agreement(agreement.agreement_id, date(2024, 1, 10))

    summary = run_reconciliation(_reconcile_args(tmp_path), test_settings, session_factory=session_scope)

    assert summary.status == "no_changes"
    assert summary.facts_failed == 1
    with session_scope() as session:
        assert QuarantineRepository(session).count(kind="reconciliation") == 1


def test_reconcile_cli_arguments():
    args = parse_reconcile_args(["--from", "2024-01-01", "--to", "2024-03-31", "--entity", "A", "--entity", "B"])

    assert args.window_start == date(2024, 1, 1)
    assert args.window_end == date(2024, 3, 31)
    assert args.entity == ["A", "B"]


def test_allocations_superseded_after_listing_are_not_accrued(tmp_path, session_scope, test_settings, make_fact, make_split):
    make_split({"alice": "50", "bob": "50"})
    fact = make_fact("100.00")
    with session_scope() as session:
        AllocationEngine(session, settings=test_settings).allocate(fact)
    with session_scope() as session:
        listed = AllocationRepository(session).list_unaccrued()
    aggregator = PayoutAggregator(session_scope, settings=test_settings)

    _retroactive_change(session_scope, test_settings)
    run_reconciliation(_reconcile_args(tmp_path), test_settings, session_factory=session_scope, aggregator=aggregator)

    assert [aggregator.accrue(allocation) for allocation in listed] == [False, False]
    assert _balances(session_scope) == {"alice": Decimal("80.00"), "bob": Decimal("20.00")}


def test_repeated_allocation_failures_share_one_quarantine_row(tmp_path, session_scope, test_settings, make_fact, make_split):
    fact = make_fact("10.00", entity_id="ISRC-LATE")
    for _ in range(3):
        run_settlement(_settlement_args(tmp_path, skip_close=True), test_settings, session_factory=session_scope)

    with session_scope() as session:
        (item,) = QuarantineRepository(session).list_items(kind="allocation")
        assert (item.item_key, item.occurrences) == (fact.fact_id, 3)

    make_split({"alice": "100"}, entity_id="ISRC-LATE")
    summary = run_settlement(_settlement_args(tmp_path, skip_close=True), test_settings, session_factory=session_scope)

    assert summary.facts_allocated == 1
    with session_scope() as session:
        assert QuarantineRepository(session).count(kind="allocation") == 0


def test_quarantine_logs_the_error_it_records(session_scope, test_settings):
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="ERROR")
    context = PipelineContext(
        run_id="run-1", run_date=date(2024, 2, 1), settings=test_settings, session_scope=session_scope
    )
    try:
        context.quarantine("reconciliation", "fact-1", SplitIntegrityError("gap in coverage", entity_id="ISRC-1"))
    finally:
        logger.remove(handler_id)

    (record,) = records
    assert record["exception"].type is SplitIntegrityError
    with session_scope() as session:
        (item,) = QuarantineRepository(session).list_items(kind="reconciliation")
    assert item.details["run_id"] == "run-1"
