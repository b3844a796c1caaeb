"""Append-only revenue ledger."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from datetime import date
from decimal import Decimal

from loguru import logger
from sqlalchemy.orm import Session

from royalties.core.config import STREAM_TYPES, Settings, get_settings
from royalties.domain import IngestResult, IngestStatus, RevenueFact, RevenueFactInput
from royalties.domain.money import normalize_currency, parse_amount, require_minor_precision
from royalties.errors import ValidationError
from royalties.repositories import LedgerRepository
from royalties.repositories.ledger_repository import to_fact


def _require_text(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field=field, value=value)
    return value.strip()


class RevenueLedger:
    """Validate, deduplicate and record revenue facts.

    Facts are written inside a SAVEPOINT so a replay that loses the race on the
    source unique key degrades to ``duplicate`` without poisoning the caller's
    transaction. Nothing is visible to other sessions until the caller commits.
    """

    def __init__(self, session: Session, *, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._repo = LedgerRepository(session)

    def ingest(self, candidate: RevenueFactInput) -> IngestResult:
        fact_input = self._validate(candidate)
        source_key = {
            "platform_id": fact_input.platform_id,
            "entity_id": fact_input.entity_id,
            "period_start": fact_input.period_start,
            "period_end": fact_input.period_end,
            "ingestion_id": fact_input.ingestion_id,
        }

        existing = self._repo.find_by_source(**source_key)
        if existing is None:
            if fact_input.reversal_of:
                self._validate_reversal(fact_input)
            record = self._repo.insert_fact(fact_input)
            if record is not None:
                fact = to_fact(record)
                logger.info(
                    "Recorded revenue fact {} entity={} platform={} amount={} {}",
                    fact.fact_id,
                    fact.entity_id,
                    fact.platform_id,
                    fact.amount,
                    fact.currency,
                )
                return IngestResult(status=IngestStatus.ACCEPTED, fact=fact)
            existing = self._repo.find_by_source(**source_key)
            if existing is None:  # pragma: no cover - unique key violated by something else
                raise ValidationError("Revenue fact could not be recorded", **source_key)

        logger.warning(
            "Duplicate revenue fact ignored platform={} entity={} ingestion={}",
            fact_input.platform_id,
            fact_input.entity_id,
            fact_input.ingestion_id,
        )
        return IngestResult(status=IngestStatus.DUPLICATE, fact=to_fact(existing))

    def query(self, entity_id: str, period_start: date, period_end: date) -> Iterator[RevenueFact]:
        if period_end < period_start:
            raise ValidationError(
                "period_end precedes period_start",
                entity_id=entity_id,
                period_start=period_start,
                period_end=period_end,
            )
        return self._repo.iter_facts(
            entity_id,
            period_start,
            period_end,
            chunk_size=self._settings.ledger_query_chunk_size,
        )

    def get(self, fact_id: str) -> RevenueFact | None:
        record = self._repo.get(fact_id)
        return to_fact(record) if record is not None else None

    def unallocated(self, *, limit: int | None = None) -> list[RevenueFact]:
        return [to_fact(record) for record in self._repo.list_unallocated(limit=limit)]

    # ------------------------------------------------------------------
    # Validation

    def _validate(self, candidate: RevenueFactInput) -> RevenueFactInput:
        entity_id = _require_text(candidate.entity_id, "entity_id")
        platform_id = _require_text(candidate.platform_id, "platform_id")
        ingestion_id = _require_text(candidate.ingestion_id, "ingestion_id")

        stream_type = candidate.stream_type
        if stream_type not in STREAM_TYPES:
            raise ValidationError(
                f"Unknown stream type '{stream_type}'", entity_id=entity_id, stream_type=stream_type
            )

        currency = normalize_currency(candidate.currency)
        amount = require_minor_precision(parse_amount(candidate.amount), currency)

        if not isinstance(candidate.period_start, date) or not isinstance(candidate.period_end, date):
            raise ValidationError("Reporting period dates are required", entity_id=entity_id)
        if candidate.period_end < candidate.period_start:
            raise ValidationError(
                "period_end precedes period_start",
                entity_id=entity_id,
                period_start=candidate.period_start,
                period_end=candidate.period_end,
            )

        country = candidate.country
        if country is not None:
            country = country.strip().upper()
            if len(country) != 2 or not country.isalpha():
                raise ValidationError("country must be an ISO 3166 alpha-2 code", country=candidate.country)

        quantity = candidate.quantity
        if quantity is not None and (isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0):
            raise ValidationError("quantity must be a non-negative integer", quantity=quantity)

        if candidate.reversal_of is None and amount < 0:
            raise ValidationError(
                "Negative amounts are only allowed on reversal facts",
                entity_id=entity_id,
                amount=amount,
            )

        return replace(
            candidate,
            entity_id=entity_id,
            platform_id=platform_id,
            ingestion_id=ingestion_id,
            currency=currency,
            amount=amount,
            country=country,
        )

    def _validate_reversal(self, candidate: RevenueFactInput) -> None:
        original = self._repo.get(candidate.reversal_of or "")
        context = {"fact_id": candidate.reversal_of, "entity_id": candidate.entity_id}
        if original is None:
            raise ValidationError("Reversal references an unknown fact", **context)
        if original.reversal_of is not None:
            raise ValidationError("A reversal cannot itself be reversed", **context)
        mismatched = [
            field
            for field, expected, actual in (
                ("entity_id", original.entity_id, candidate.entity_id),
                ("platform_id", original.platform_id, candidate.platform_id),
                ("currency", original.currency, candidate.currency),
                ("period_start", original.period_start, candidate.period_start),
                ("period_end", original.period_end, candidate.period_end),
            )
            if expected != actual
        ]
        if mismatched:
            raise ValidationError("Reversal does not match the original fact", mismatched=mismatched, **context)
        if candidate.amount >= 0:
            raise ValidationError("Reversal amount must be negative", amount=candidate.amount, **context)

        original_amount = Decimal(original.amount)
        reversed_so_far = -sum(self._repo.reversed_amounts(original.fact_id), Decimal("0"))
        if reversed_so_far - candidate.amount > original_amount:
            raise ValidationError(
                "Reversal exceeds the remaining amount of the original fact",
                original_amount=original_amount,
                already_reversed=reversed_so_far,
                amount=candidate.amount,
                **context,
            )


__all__ = ["RevenueLedger"]
