from __future__ import annotations

import os
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from royalties.core.config import Settings
from royalties.db import build_session_scope, create_db_engine, create_session_factory, init_db
from royalties.domain import RevenueFact, RevenueFactInput
from royalties.services import RevenueLedger, SplitResolver


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'royalties.db'}",
        payout_minimum_threshold="50.00",
        external_retry_attempts=2,
        external_retry_backoff_seconds=[0],
        pipeline_summary_dir=None,
    )
    monkeypatch.setattr("royalties.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("royalties.core.config.settings", settings)
    return settings


@pytest.fixture
def engine(test_settings):
    engine = create_db_engine(test_settings.resolved_database_url)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_scope(engine):
    return build_session_scope(create_session_factory(engine))


@pytest.fixture
def make_fact(session_scope, test_settings):
    """Ingest a revenue fact and return the recorded ledger entry."""

    counter = {"value": 0}

    def _make(
        amount: str = "100.00",
        *,
        entity_id: str = "ISRC-1",
        platform_id: str = "spotify",
        stream_type: str = "streaming",
        currency: str = "USD",
        period_start: date = date(2024, 1, 1),
        period_end: date = date(2024, 1, 31),
        ingestion_id: str | None = None,
        reversal_of: str | None = None,
    ) -> RevenueFact:
        counter["value"] += 1
        candidate = RevenueFactInput(
            entity_id=entity_id,
            platform_id=platform_id,
            stream_type=stream_type,
            amount=Decimal(amount),
            currency=currency,
            period_start=period_start,
            period_end=period_end,
            ingestion_id=ingestion_id or f"line-{counter['value']}",
            reversal_of=reversal_of,
        )
        with session_scope() as session:
            return RevenueLedger(session, settings=test_settings).ingest(candidate).fact

    return _make


@pytest.fixture
def make_split(session_scope, test_settings):
    """Record one share set for an entity, e.g. ``make_split({"alice": "60", "bob": "40"})``."""

    def _make(
        shares: dict[str, str],
        *,
        entity_id: str = "ISRC-1",
        split_type: str = "master",
        effective_date: date = date(2023, 1, 1),
        end_date: date | None = None,
    ):
        with session_scope() as session:
            resolver = SplitResolver(session, settings=test_settings)
            return [
                resolver.create_agreement(
                    entity_id=entity_id,
                    split_type=split_type,
                    recipient_id=recipient_id,
                    percentage=percentage,
                    effective_date=effective_date,
                    end_date=end_date,
                )
                for recipient_id, percentage in shares.items()
            ]

    return _make
