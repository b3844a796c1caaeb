from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from royalties.core.config import Settings


def test_settings_parse_money_and_backoff_strings():
    settings = Settings(
        payout_minimum_threshold="25.00",
        payout_thresholds={"jpy": "5000"},
        payout_fee_percent="1.5",
        external_retry_backoff_seconds="0.1, 0.2",
    )

    assert settings.payout_minimum_threshold == Decimal("25.00")
    assert settings.threshold_for("JPY") == Decimal("5000")
    assert settings.threshold_for("usd") == Decimal("25.00")
    assert settings.payout_fee_percent == Decimal("1.5")
    assert settings.external_retry_schedule == (0.1, 0.2)


def test_settings_reject_float_money():
    with pytest.raises(ValidationError):
        Settings(payout_fee_fixed=0.3)


@pytest.mark.parametrize(
    "overrides",
    [
        {"split_validation_mode": "sometimes"},
        {"reversal_policy": "ignore"},
        {"payout_fee_percent": "101"},
        {"stream_split_types": {"streaming": "mystery"}},
    ],
)
def test_settings_reject_unknown_modes(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_postgres_urls_use_psycopg_driver():
    settings = Settings(database_url="postgres://user:pw@db:5432/royalties")

    url = settings.resolved_database_url
    assert url.startswith("postgresql+psycopg://")
    assert "target_session_attrs=read-write" in url
