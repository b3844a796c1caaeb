"""Command entry points and query accessors exposed to the catalog layer."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from typing import Any, Mapping

from loguru import logger

from royalties import schemas
from royalties.core.config import Settings, get_settings
from royalties.db import SessionScope, session_scope as default_session_scope
from royalties.domain import (
    CallbackOutcome,
    DistributionSnapshot,
    IngestResult,
    Payout,
    QuarantineEntry,
    RevenueFactInput,
    SplitAgreement,
)
from royalties.errors import ExternalError
from royalties.repositories import QuarantineRepository
from royalties.services import (
    DistributionTracker,
    PayoutAggregator,
    QueryService,
    RateLookup,
    RecipientDirectory,
    RevenueLedger,
    SplitResolver,
)
from royalties.services.platforms import PlatformRegistry


class RoyaltyOperations:
    """One transaction per command; external failures land in quarantine.

    The instance owns the payout aggregator so every close and accrual issued
    through it shares the same per-key locks.
    """

    def __init__(
        self,
        *,
        session_scope: SessionScope = default_session_scope,
        settings: Settings | None = None,
        registry: PlatformRegistry | None = None,
        directory: RecipientDirectory | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._settings = settings or get_settings()
        self._registry = registry or PlatformRegistry.from_settings(self._settings)
        self.aggregator = PayoutAggregator(session_scope, settings=self._settings, directory=directory)

    def _quarantine(self, kind: str, item_key: str | None, exc: ExternalError) -> None:
        logger.opt(exception=exc).error("Quarantining {} {}: {}", kind, item_key, exc.message)
        with self._session_scope() as session:
            QuarantineRepository(session).add(
                QuarantineEntry(
                    kind=kind,
                    item_key=item_key,
                    reason=exc.message,
                    retriable=exc.retriable,
                    details=exc.to_dict(),
                )
            )

    # ------------------------------------------------------------------
    # Ledger and agreements

    def ingest_revenue(self, candidate: RevenueFactInput) -> IngestResult:
        with self._session_scope() as session:
            return RevenueLedger(session, settings=self._settings).ingest(candidate)

    def create_split_agreement(
        self,
        *,
        entity_id: str,
        split_type: str,
        recipient_id: str,
        percentage: Any,
        effective_date: date,
        end_date: date | None = None,
        role: str | None = None,
    ) -> SplitAgreement:
        with self._session_scope() as session:
            return SplitResolver(session, settings=self._settings).create_agreement(
                entity_id=entity_id,
                split_type=split_type,
                recipient_id=recipient_id,
                percentage=percentage,
                effective_date=effective_date,
                end_date=end_date,
                role=role,
            )

    def replace_split_agreements(
        self,
        *,
        entity_id: str,
        split_type: str,
        effective_date: date,
        shares: Sequence[tuple[str, Any]],
    ) -> list[SplitAgreement]:
        with self._session_scope() as session:
            return SplitResolver(session, settings=self._settings).replace_agreements(
                entity_id=entity_id,
                split_type=split_type,
                effective_date=effective_date,
                shares=shares,
            )

    def close_split_agreement(self, agreement_id: str, end_date: date) -> SplitAgreement:
        with self._session_scope() as session:
            return SplitResolver(session, settings=self._settings).close_agreement(agreement_id, end_date)

    # ------------------------------------------------------------------
    # Payouts

    def close_payout_batch(self, recipient_id: str, currency: str, schedule_date: date) -> Payout | None:
        return self.aggregator.close_batch(recipient_id, currency, schedule_date)

    def mark_payout_processing(self, payout_id: str) -> Payout:
        return self.aggregator.mark_processing(payout_id)

    def mark_payout_completed(self, payout_id: str, reference_number: str) -> Payout:
        return self.aggregator.mark_completed(payout_id, reference_number)

    def mark_payout_failed(self, payout_id: str, reason: str) -> Payout:
        return self.aggregator.mark_failed(payout_id, reason)

    def mark_payout_cancelled(self, payout_id: str, reason: str | None = None) -> Payout:
        return self.aggregator.mark_cancelled(payout_id, reason)

    # ------------------------------------------------------------------
    # Distribution

    def _tracker(self, session) -> DistributionTracker:
        return DistributionTracker(session, self._registry, settings=self._settings)

    def submit_for_distribution(self, release_id: str, platform_id: str) -> DistributionSnapshot:
        with self._session_scope() as session:
            return self._tracker(session).submit(release_id, platform_id)

    def retry_distribution(self, release_id: str, platform_id: str) -> DistributionSnapshot:
        with self._session_scope() as session:
            return self._tracker(session).retry(release_id, platform_id)

    def request_takedown(self, release_id: str, platform_id: str) -> DistributionSnapshot:
        try:
            with self._session_scope() as session:
                return self._tracker(session).request_takedown(release_id, platform_id)
        except ExternalError as exc:
            self._quarantine("distribution_takedown", f"{platform_id}:{release_id}", exc)
            raise

    def apply_distribution_callback(
        self, platform_id: str, payload: Mapping[str, Any]
    ) -> CallbackOutcome | None:
        """Parse and apply a platform callback; ``None`` when it was quarantined."""

        try:
            callback = self._registry.get(platform_id).parse_callback(payload)
            with self._session_scope() as session:
                return self._tracker(session).apply_callback(callback)
        except ExternalError as exc:
            reference = None
            if isinstance(payload, Mapping):
                reference = payload.get("platform_release_id") or payload.get("release_reference")
            self._quarantine("distribution_callback", f"{platform_id}:{reference}", exc)
            return None

    # ------------------------------------------------------------------
    # Queries

    def allocations_for_entity(
        self, entity_id: str, period_start: date, period_end: date
    ) -> schemas.EntityAllocations:
        with self._session_scope() as session:
            return QueryService(session).allocations_for_entity(entity_id, period_start, period_end)

    def recipient_statement(
        self, recipient_id: str, period_start: date, period_end: date
    ) -> schemas.RecipientStatement:
        with self._session_scope() as session:
            return QueryService(session).recipient_statement(recipient_id, period_start, period_end)

    def payout_history(self, recipient_id: str) -> schemas.PayoutHistory:
        with self._session_scope() as session:
            return QueryService(session).payout_history(recipient_id)

    def distribution_status(self, release_id: str) -> schemas.ReleaseDistribution:
        with self._session_scope() as session:
            return QueryService(session).distribution_status(release_id)

    def recipient_balances(
        self, recipient_id: str, reporting_currency: str, rate_lookup: RateLookup
    ) -> schemas.RecipientBalances:
        with self._session_scope() as session:
            return QueryService(session).recipient_balances(recipient_id, reporting_currency, rate_lookup)

    def quarantined_items(self, *, kind: str | None = None) -> list[schemas.QuarantinedItem]:
        with self._session_scope() as session:
            return QueryService(session).quarantined(kind=kind)


__all__ = ["RoyaltyOperations"]
