from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from royalties.core.config import STREAM_TYPES
from royalties.domain import RevenueFactInput
from royalties.domain.money import normalize_currency, parse_amount, quantize_money
from royalties.errors import ValidationError, jsonable

STREAM_TYPE_ALIASES = {
    "stream": "streaming",
    "streams": "streaming",
    "ugc": "streaming",
    "sale": "download",
    "downloads": "download",
    "purchase": "download",
    "synchronization": "sync",
    "public_performance": "performance",
    "mech": "mechanical",
}


def _first(raw_row: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw_row.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_date(value: Any, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date_parser.isoparse(value.strip()).date()
        except (ValueError, OverflowError):
            try:
                return date_parser.parse(value.strip()).date()
            except (ValueError, OverflowError) as exc:
                raise ValidationError(f"{field} is not a valid date", value=value) from exc
    raise ValidationError(f"{field} is required", value=value)


def _parse_period(raw_row: dict[str, Any]) -> tuple[date, date]:
    start = _first(raw_row, "period_start", "start_date")
    end = _first(raw_row, "period_end", "end_date")
    if start is not None and end is not None:
        return _parse_date(start, "period_start"), _parse_date(end, "period_end")

    month = _first(raw_row, "period", "reporting_month")
    if isinstance(month, str) and month.strip():
        try:
            first_day = datetime.strptime(month.strip()[:7], "%Y-%m").date()
        except ValueError as exc:
            raise ValidationError("period must look like YYYY-MM", value=month) from exc
        return first_day, first_day + relativedelta(months=1, days=-1)
    raise ValidationError("Row has no reporting period", row_keys=sorted(raw_row))


def _parse_stream_type(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("stream_type is required", value=value)
    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    normalized = STREAM_TYPE_ALIASES.get(normalized, normalized)
    if normalized not in STREAM_TYPES:
        raise ValidationError(f"Unknown stream type '{value}'", value=value)
    return normalized


def _parse_quantity(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("quantity must be an integer", value=value)
    try:
        quantity = Decimal(str(value))
    except ArithmeticError as exc:
        raise ValidationError("quantity must be an integer", value=value) from exc
    if quantity != quantity.to_integral_value():
        raise ValidationError("quantity must be an integer", value=value)
    return int(quantity)


def normalize_report_row(
    raw_row: dict[str, Any],
    *,
    platform_id: str,
    report_id: str,
    index: int,
) -> RevenueFactInput:
    """Map a raw feed row onto a ledger candidate.

    Platforms report sub-cent amounts; they are rounded half-to-even to the
    currency's minor unit here and the raw value is kept in ``raw_data``.
    """

    if not isinstance(raw_row, dict):
        raise ValidationError("Report row must be an object", index=index)

    entity_id = _first(raw_row, "entity_id", "isrc", "upc", "release_id", "track_id")
    if entity_id is None:
        raise ValidationError("Row has no entity identifier", index=index)

    currency = normalize_currency(_first(raw_row, "currency", "currency_code"))
    raw_amount = _first(raw_row, "amount", "net_revenue", "revenue", "earnings")
    if raw_amount is None:
        raise ValidationError("Row has no amount", index=index)
    amount = quantize_money(parse_amount(raw_amount), currency, rounding=ROUND_HALF_EVEN)

    period_start, period_end = _parse_period(raw_row)
    line_id = _first(raw_row, "line_id", "row_id")
    country = _first(raw_row, "country", "country_code", "territory")
    reversal_of = _first(raw_row, "reversal_of", "corrects_fact_id")

    return RevenueFactInput(
        entity_id=str(entity_id),
        platform_id=platform_id,
        stream_type=_parse_stream_type(_first(raw_row, "stream_type", "type", "usage_type")),
        amount=amount,
        currency=currency,
        period_start=period_start,
        period_end=period_end,
        ingestion_id=f"{report_id}:{line_id if line_id is not None else index}",
        country=str(country) if country is not None else None,
        quantity=_parse_quantity(_first(raw_row, "quantity", "units", "streams")),
        reversal_of=str(reversal_of) if reversal_of is not None else None,
        raw_data=jsonable(raw_row),
    )
