from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

from royalties.errors import ExternalError
from royalties.operations import RoyaltyOperations
from royalties.services import AllocationEngine, QueryService
from royalties.services.platforms import PlatformRegistry


class FixedRates:
    def __init__(self, rates: dict[tuple[str, str], str]) -> None:
        self._rates = rates

    def rate(self, base: str, quote: str, *, on: date | None = None) -> Decimal:
        try:
            return Decimal(self._rates[(base, quote)])
        except KeyError as exc:
            raise ExternalError("no rate", base=base, quote=quote) from exc


def _operations(session_scope, settings) -> RoyaltyOperations:
    return RoyaltyOperations(session_scope=session_scope, settings=settings, registry=PlatformRegistry())


def _settle(operations, session_scope, settings, fact):
    with session_scope() as session:
        allocations = AllocationEngine(session, settings=settings).allocate(fact)
    for allocation in allocations:
        operations.aggregator.accrue(allocation)


def test_allocations_for_entity_lists_live_rows_with_totals(session_scope, test_settings, make_fact, make_split):
    operations = _operations(session_scope, test_settings)
    make_split({"alice": "60", "bob": "40"})
    january = make_fact("10.00")
    february = make_fact("5.00", period_start=date(2024, 2, 1), period_end=date(2024, 2, 29))
    _settle(operations, session_scope, test_settings, january)
    _settle(operations, session_scope, test_settings, february)

    result = operations.allocations_for_entity("ISRC-1", date(2024, 1, 1), date(2024, 1, 31))

    assert [(item.recipient_id, item.amount) for item in result.items] == [
        ("alice", Decimal("6.00")),
        ("bob", Decimal("4.00")),
    ]
    assert result.totals == {"USD": Decimal("10.00")}
    assert result.items[0].platform_id == "spotify"



def test_recipient_statement_breaks_down_by_platform_and_stream_type(session_scope, test_settings, make_fact, make_split):
    operations = _operations(session_scope, test_settings)
    make_split({"alice": "60", "bob": "40"})
    _settle(operations, session_scope, test_settings, make_fact("100.00"))
    _settle(operations, session_scope, test_settings, make_fact("50.00", platform_id="apple", stream_type="download"))
    _settle(operations, session_scope, test_settings, make_fact("20.00", currency="EUR"))
    _settle(operations, session_scope, test_settings, make_fact("10.00"))
    _settle(
        operations,
        session_scope,
        test_settings,
        make_fact("500.00", period_start=date(2024, 2, 1), period_end=date(2024, 2, 29)),
    )
    operations.close_payout_batch("alice", "USD", date(2024, 1, 31))

    statement = operations.recipient_statement("alice", date(2024, 1, 1), date(2024, 1, 31))

    assert [(line.platform_id, line.stream_type, line.currency, line.amount, line.allocations) for line in statement.lines] == [
        ("apple", "download", "USD", Decimal("30.00"), 1),
        ("spotify", "streaming", "EUR", Decimal("12.00"), 1),
        ("spotify", "streaming", "USD", Decimal("66.00"), 2),
    ]
    assert statement.totals == {"USD": Decimal("96.00"), "EUR": Decimal("12.00")}
    assert len(statement.items) == 4
    assert statement.payouts_by_status == {"pending": 1}

def test_recipient_balances_convert_with_supplied_rates(session_scope, test_settings, make_fact, make_split):
    operations = _operations(session_scope, test_settings)
    make_split({"alice": "100"})
    _settle(operations, session_scope, test_settings, make_fact("10.00"))
    _settle(operations, session_scope, test_settings, make_fact("20.00", currency="EUR"))

    balances = operations.recipient_balances("alice", "usd", FixedRates({("EUR", "USD"): "1.0825"}))

    assert balances.reporting_currency == "USD"
    assert [(item.currency, item.converted) for item in balances.balances] == [
        ("EUR", Decimal("21.65")),
        ("USD", Decimal("10.00")),
    ]
    assert balances.total == Decimal("31.65")
    assert balances.missing_rates == []


def test_recipient_balances_without_rate_leave_total_empty(session_scope, test_settings, make_fact, make_split):
    operations = _operations(session_scope, test_settings)
    make_split({"alice": "100"})
    _settle(operations, session_scope, test_settings, make_fact("20.00", currency="GBP"))

    balances = operations.recipient_balances("alice", "USD", FixedRates({}))

    assert balances.total is None
    assert balances.missing_rates == ["GBP"]
    assert balances.balances[0].converted is None


def test_payout_history_via_operations(session_scope, test_settings, make_fact, make_split):
    operations = _operations(session_scope, test_settings)
    make_split({"alice": "100"})
    _settle(operations, session_scope, test_settings, make_fact("80.00"))
    payout = operations.close_payout_batch("alice", "USD", date(2024, 2, 15))
    operations.mark_payout_processing(payout.payout_id)
    operations.mark_payout_completed(payout.payout_id, "WIRE-7")

    history = operations.payout_history("alice")

    (item,) = history.items
    assert item.status == "completed"
    assert item.reference_number == "WIRE-7"
    assert item.amount == Decimal("80.00")


def test_query_service_uses_injected_session():
    session = MagicMock()
    service = QueryService(session)
    service._quarantine = MagicMock()
    service._quarantine.list_items.return_value = []

    assert service.quarantined(kind="revenue_row") == []
    service._quarantine.list_items.assert_called_once_with(kind="revenue_row", limit=100)
