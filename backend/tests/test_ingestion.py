from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from ingestion.client import RevenueReportClient
from ingestion.normalize import normalize_report_row
from ingestion.rates import ExchangeRateClient
from ingestion.service import ingest_report, ingest_rows
from royalties.errors import ExternalError, ValidationError
from royalties.repositories import QuarantineRepository


def test_normalize_report_row_maps_aliases_and_rounds_half_even():
    candidate = normalize_report_row(
        {
            "isrc": "USRC17607839",
            "usage_type": "Streams",
            "net_revenue": "0.125",
            "currency_code": "usd",
            "reporting_month": "2024-02",
            "territory": "se",
            "units": "1500",
            "line_id": 42,
        },
        platform_id="spotify",
        report_id="R-1",
        index=0,
    )

    assert candidate.entity_id == "USRC17607839"
    assert candidate.stream_type == "streaming"
    assert candidate.amount == Decimal("0.12")
    assert candidate.currency == "USD"
    assert (candidate.period_start, candidate.period_end) == (date(2024, 2, 1), date(2024, 2, 29))
    assert candidate.quantity == 1500
    assert candidate.ingestion_id == "R-1:42"
    assert candidate.raw_data["net_revenue"] == "0.125"


@pytest.mark.parametrize(
    "row",
    [
        {"stream_type": "streaming", "amount": "1.00", "currency": "USD", "period": "2024-01"},
        {"entity_id": "E", "stream_type": "radio", "amount": "1.00", "currency": "USD", "period": "2024-01"},
        {"entity_id": "E", "stream_type": "streaming", "amount": 1.5, "currency": "USD", "period": "2024-01"},
        {"entity_id": "E", "stream_type": "streaming", "amount": "1.00", "currency": "USD"},
    ],
)
def test_normalize_report_row_rejects_bad_rows(row):
    with pytest.raises(ValidationError):
        normalize_report_row(row, platform_id="spotify", report_id="R-1", index=3)


def _feed_transport(pages: list[dict], seen: list[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(dict(request.url.params))
        cursor = request.url.params.get("cursor")
        page = pages[int(cursor)] if cursor else pages[0]
        return httpx.Response(200, text=json.dumps(page))

    return httpx.MockTransport(handler)


def test_report_client_follows_cursors_and_keeps_decimals():
    pages = [
        {"rows": [{"amount": 1.10}], "next_cursor": "1"},
        {"rows": [{"amount": 2.25}]},
    ]
    seen: list[dict] = []
    client = RevenueReportClient(
        platform_id="spotify",
        base_url="https://feed.test",
        report_path="/reports",
        page_size=10,
        backoff=(0,),
        transport=_feed_transport(pages, seen),
    )

    with client:
        rows = list(client.iter_rows("R-1"))

    assert [row["amount"] for row in rows] == [Decimal("1.10"), Decimal("2.25")]
    assert seen[0]["report_id"] == "R-1"
    assert seen[1]["cursor"] == "1"


def test_report_client_raises_after_retries():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503)

    client = RevenueReportClient(
        platform_id="spotify",
        base_url="https://feed.test",
        attempts=2,
        backoff=(0,),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(ExternalError) as excinfo:
        list(client.iter_rows("R-1"))

    assert calls["count"] == 2
    assert excinfo.value.retriable is True
    assert excinfo.value.context["status_code"] == 503


def test_exchange_rate_client_caches_and_validates():
    calls: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(dict(request.url.params))
        if request.url.params["base"] == "JPY":
            return httpx.Response(200, json={"rate": "-1"})
        return httpx.Response(200, text='{"rate": 1.0825}')

    with ExchangeRateClient(
        base_url="https://rates.test", backoff=(0,), transport=httpx.MockTransport(handler)
    ) as rates:
        assert rates.rate("eur", "usd", on=date(2024, 3, 1)) == Decimal("1.0825")
        assert rates.rate("EUR", "USD", on=date(2024, 3, 1)) == Decimal("1.0825")
        assert rates.rate("USD", "USD") == Decimal("1")
        with pytest.raises(ExternalError):
            rates.rate("JPY", "USD")

    assert calls[0] == {"base": "EUR", "quote": "USD", "date": "2024-03-01"}
    assert len(calls) == 2


def test_ingest_rows_quarantines_bad_rows_and_dedupes(session_scope, test_settings):
    rows = [
        {"entity_id": "E1", "stream_type": "streaming", "amount": "5.00", "currency": "USD", "period": "2024-01", "line_id": "a"},
        {"entity_id": "E1", "stream_type": "streaming", "amount": "oops", "currency": "USD", "period": "2024-01", "line_id": "b"},
        {"entity_id": "E1", "stream_type": "streaming", "amount": "5.00", "currency": "USD", "period": "2024-01", "line_id": "a"},
    ]

    summary = ingest_rows(
        rows, platform_id="spotify", report_id="R-1", session_scope=session_scope, settings=test_settings
    )

    assert (summary.rows, summary.accepted, summary.duplicates, summary.quarantined) == (3, 1, 1, 1)
    with session_scope() as session:
        (item,) = QuarantineRepository(session).list_items(kind="revenue_row")
    assert item.item_key == "spotify:R-1:1"
    assert item.retriable is False


def test_ingest_report_reads_feed(session_scope, test_settings):
    pages = [
        {
            "data": [
                {"upc": "UPC-1", "type": "download", "revenue": "9.99", "currency": "EUR", "period_start": "2024-01-01", "period_end": "2024-01-31"},
            ]
        }
    ]
    client = RevenueReportClient(
        platform_id="itunes",
        base_url="https://feed.test",
        page_size=10,
        backoff=(0,),
        transport=_feed_transport(pages, []),
    )

    summary = ingest_report("itunes", "R-7", client=client, session_scope=session_scope, settings=test_settings)

    assert summary.accepted == 1
    assert summary.to_dict()["report_id"] == "R-7"
