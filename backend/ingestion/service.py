from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from loguru import logger

from royalties.core.config import Settings, get_settings
from royalties.db import SessionScope, session_scope as default_session_scope
from royalties.domain import IngestStatus, QuarantineEntry
from royalties.errors import RoyaltyError, jsonable
from royalties.repositories import QuarantineRepository
from royalties.services import RevenueLedger

from .client import RevenueReportClient
from .normalize import normalize_report_row


@dataclass(slots=True)
class IngestSummary:
    platform_id: str
    report_id: str
    rows: int = 0
    accepted: int = 0
    duplicates: int = 0
    quarantined: int = 0
    fact_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform_id": self.platform_id,
            "report_id": self.report_id,
            "rows": self.rows,
            "accepted": self.accepted,
            "duplicates": self.duplicates,
            "quarantined": self.quarantined,
        }


def quarantine(session_scope: SessionScope, entry: QuarantineEntry) -> None:
    with session_scope() as session:
        QuarantineRepository(session).add(entry)


def ingest_rows(
    rows: Iterable[dict[str, Any]],
    *,
    platform_id: str,
    report_id: str,
    session_scope: SessionScope = default_session_scope,
    settings: Settings | None = None,
) -> IngestSummary:
    """Ingest report rows one transaction per row.

    Rows that fail normalisation or ledger validation are quarantined and the
    run moves on to the next row.
    """

    resolved_settings = settings or get_settings()
    summary = IngestSummary(platform_id=platform_id, report_id=report_id)
    for index, raw_row in enumerate(rows):
        summary.rows += 1
        try:
            candidate = normalize_report_row(
                raw_row, platform_id=platform_id, report_id=report_id, index=index
            )
            with session_scope() as session:
                result = RevenueLedger(session, settings=resolved_settings).ingest(candidate)
        except RoyaltyError as exc:
            logger.exception("Quarantining report row {} of {}: {}", index, report_id, exc.message)
            quarantine(
                session_scope,
                QuarantineEntry(
                    kind="revenue_row",
                    item_key=f"{platform_id}:{report_id}:{index}",
                    reason=exc.message,
                    retriable=getattr(exc, "retriable", False),
                    details={"error": exc.to_dict(), "row": jsonable(raw_row)},
                ),
            )
            summary.quarantined += 1
            continue

        if result.status is IngestStatus.ACCEPTED:
            summary.accepted += 1
            summary.fact_ids.append(result.fact.fact_id)
        else:
            summary.duplicates += 1

    logger.info(
        "Ingested report {} from {}: {} accepted, {} duplicates, {} quarantined",
        report_id,
        platform_id,
        summary.accepted,
        summary.duplicates,
        summary.quarantined,
    )
    return summary


def ingest_report(
    platform_id: str,
    report_id: str,
    *,
    client: RevenueReportClient | None = None,
    session_scope: SessionScope = default_session_scope,
    settings: Settings | None = None,
) -> IngestSummary:
    owns_client = client is None
    report_client = client or RevenueReportClient(platform_id=platform_id)
    try:
        return ingest_rows(
            report_client.iter_rows(report_id),
            platform_id=platform_id,
            report_id=report_id,
            session_scope=session_scope,
            settings=settings,
        )
    finally:
        if owns_client:
            report_client.close()
