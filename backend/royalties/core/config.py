from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STREAM_TYPES = ("streaming", "download", "sync", "performance", "mechanical")
SPLIT_TYPES = ("master", "publishing", "performance", "sync")
REVERSAL_POLICIES = ("future_accrual", "rebatch_pending")


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


def _coerce_money(value: Any, field_name: str) -> Decimal:
    if isinstance(value, float):
        raise ValueError(f"{field_name} must be given as a decimal string, not a float")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{field_name} must be a decimal amount") from exc
    if amount < 0:
        raise ValueError(f"{field_name} must not be negative")
    return amount


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Echo SQL statements")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/royalties.db",
        description="SQLAlchemy compatible database URL",
    )
    stream_split_types: dict[str, str] = Field(
        default_factory=lambda: {
            "streaming": "master",
            "download": "master",
            "sync": "sync",
            "performance": "performance",
            "mechanical": "publishing",
        },
        description="Split type whose agreements divide revenue of each stream type",
    )
    split_validation_mode: str = Field(
        default="lenient",
        description=(
            "strict: reject agreements that leave the timeline unbalanced; "
            "lenient: accept and fail at resolution time"
        ),
    )
    payout_minimum_threshold: Decimal = Field(
        default=Decimal("50.00"),
        description="Minimum payable amount before a batch emits a payout",
    )
    payout_thresholds: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Per-currency overrides of the minimum payout threshold",
    )
    payout_fee_fixed: Decimal = Field(
        default=Decimal("0"), description="Fixed fee deducted from every payout"
    )
    payout_fee_percent: Decimal = Field(
        default=Decimal("0"), description="Percentage fee deducted from every payout"
    )
    payout_increment: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Per-currency payout granularity; defaults to the minor unit",
    )
    default_payout_method: str = Field(
        default="bank_transfer",
        description="Payout method used when the recipient directory has none",
    )
    reversal_policy: str = Field(
        default="future_accrual",
        description="How reversal facts interact with payouts that are already batched",
    )
    distribution_max_attempts: int = Field(
        default=3,
        description="Submission attempts allowed per release/platform before giving up",
        ge=1,
    )
    distribution_platforms: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Platform id -> adapter options (base_url, submit_path, cancel_path, api_key)",
    )
    report_feed_base_url: AnyUrl | str = Field(
        default="http://localhost:8080",
        description="Base URL of the revenue report feed",
    )
    report_feed_path: str = Field(
        default="/reports",
        description="Relative path for report feed rows",
    )
    report_feed_page_size: int = Field(
        500, description="Number of report rows to fetch per page", ge=1
    )
    exchange_rate_base_url: AnyUrl | str = Field(
        default="http://localhost:8081",
        description="Base URL of the exchange-rate lookup service",
    )
    external_retry_attempts: int = Field(
        default=3,
        description="Attempts made against external services before raising",
        ge=1,
    )
    external_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [0.5, 1.0, 2.0],
        description="Comma-separated list or array of backoff delays (seconds) between external retries",
    )
    ledger_query_chunk_size: int = Field(
        default=500, description="Rows fetched per ledger query page", ge=1
    )
    pipeline_summary_dir: str | None = Field(
        default=None,
        description="Directory where pipeline run summaries are written (blank disables)",
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("payout_minimum_threshold", "payout_fee_fixed", mode="before")
    @classmethod
    def _parse_money(cls, value: Any, info) -> Decimal:
        return _coerce_money(value, info.field_name)

    @field_validator("payout_fee_percent", mode="before")
    @classmethod
    def _parse_percent(cls, value: Any) -> Decimal:
        percent = _coerce_money(value, "payout_fee_percent")
        if percent > 100:
            raise ValueError("payout_fee_percent must be between 0 and 100")
        return percent

    @field_validator("payout_thresholds", "payout_increment", mode="before")
    @classmethod
    def _parse_currency_amounts(cls, value: Any, info) -> dict[str, Decimal]:
        if value in (None, "", {}):
            return {}
        if not isinstance(value, dict):
            raise ValueError(f"{info.field_name} must be a mapping of currency -> amount")
        return {
            str(currency).upper(): _coerce_money(amount, info.field_name)
            for currency, amount in value.items()
        }

    @field_validator("stream_split_types", mode="after")
    @classmethod
    def _validate_stream_split_types(cls, value: dict[str, str]) -> dict[str, str]:
        for stream_type, split_type in value.items():
            if stream_type not in STREAM_TYPES:
                raise ValueError(f"Unknown stream type '{stream_type}'")
            if split_type not in SPLIT_TYPES:
                raise ValueError(f"Unknown split type '{split_type}' for {stream_type}")
        return value

    @field_validator("split_validation_mode")
    @classmethod
    def _validate_split_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"strict", "lenient"}:
            raise ValueError("split_validation_mode must be 'strict' or 'lenient'")
        return normalized

    @field_validator("reversal_policy")
    @classmethod
    def _validate_reversal_policy(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in REVERSAL_POLICIES:
            raise ValueError(
                "reversal_policy must be one of: " + ", ".join(REVERSAL_POLICIES)
            )
        return normalized

    @field_validator("external_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [0.5, 1.0, 2.0]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("EXTERNAL_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("EXTERNAL_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay < 0:
                    raise ValueError("EXTERNAL_RETRY_BACKOFF_SECONDS entries must not be negative")
                backoff.append(delay)
            return backoff
        raise ValueError(
            "EXTERNAL_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    def threshold_for(self, currency: str) -> Decimal:
        return self.payout_thresholds.get(currency.upper(), self.payout_minimum_threshold)

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def external_retry_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.external_retry_backoff_seconds)
        if not sequence:
            return (0.5,)
        return sequence


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
