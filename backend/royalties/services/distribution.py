"""Distribution status tracking across platforms."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.orm import Session

from royalties.core.config import Settings, get_settings
from royalties.domain import CallbackOutcome, DistributionCallback, DistributionSnapshot, ensure_utc
from royalties.errors import ExternalError, StateTransitionError, jsonable
from royalties.models import DistributionEventType, DistributionRecord, DistributionStatus, utcnow
from royalties.repositories import DistributionRepository
from royalties.repositories.distribution_repository import to_distribution

from .platforms import DistributionPlatform, PlatformRegistry

CALLBACK_TARGETS: dict[str, DistributionStatus] = {
    DistributionEventType.PROCESSING.value: DistributionStatus.PROCESSING,
    DistributionEventType.ACCEPTED.value: DistributionStatus.LIVE,
    DistributionEventType.REJECTED.value: DistributionStatus.FAILED,
    DistributionEventType.REMOVED.value: DistributionStatus.REMOVED,
}

ALLOWED_TRANSITIONS: dict[DistributionStatus, frozenset[DistributionStatus]] = {
    DistributionStatus.PENDING: frozenset({DistributionStatus.PROCESSING, DistributionStatus.FAILED}),
    DistributionStatus.PROCESSING: frozenset({DistributionStatus.LIVE, DistributionStatus.FAILED}),
    DistributionStatus.LIVE: frozenset({DistributionStatus.REMOVED}),
    DistributionStatus.FAILED: frozenset({DistributionStatus.PENDING}),
    DistributionStatus.REMOVED: frozenset(),
}

# Progress order used to recognise callbacks that would move a record backwards.
STATUS_RANK: dict[DistributionStatus, int] = {
    DistributionStatus.PENDING: 0,
    DistributionStatus.PROCESSING: 1,
    DistributionStatus.LIVE: 2,
    DistributionStatus.FAILED: 2,
    DistributionStatus.REMOVED: 3,
}


class DistributionTracker:
    """Drive per-(release, platform) records through the distribution lifecycle.

    Local actions (submit, retry, takedown) go through the platform adapter;
    platform callbacks are deduplicated on their natural key and discarded when
    they are older than the record's last transition or point backwards.
    """

    def __init__(
        self,
        session: Session,
        registry: PlatformRegistry,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._registry = registry
        self._settings = settings or get_settings()
        self._clock = clock
        self._repo = DistributionRepository(session)

    # ------------------------------------------------------------------
    # Local actions

    def submit(self, release_id: str, platform_id: str) -> DistributionSnapshot:
        platform = self._registry.get(platform_id)
        record = self._repo.get(release_id, platform_id)
        if record is None:
            created = self._repo.add(
                DistributionRecord(
                    record_id=str(uuid.uuid4()),
                    release_id=release_id,
                    platform_id=platform_id,
                    status=DistributionStatus.PENDING.value,
                    attempts=0,
                    last_transition_at=self._clock(),
                )
            )
            record = created or self._repo.get(release_id, platform_id)
            assert record is not None

        status = DistributionStatus(record.status)
        if status in (DistributionStatus.PROCESSING, DistributionStatus.LIVE):
            logger.info(
                "Release {} already {} on {}; not resubmitting", release_id, status.value, platform_id
            )
            return to_distribution(record)
        if status is not DistributionStatus.PENDING:
            raise StateTransitionError(
                f"Cannot submit a {status.value} distribution",
                release_id=release_id,
                platform_id=platform_id,
                current_state=status.value,
            )
        return self._attempt(record, platform)

    def retry(self, release_id: str, platform_id: str) -> DistributionSnapshot:
        platform = self._registry.get(platform_id)
        record = self._require(release_id, platform_id)
        if record.status != DistributionStatus.FAILED.value:
            raise StateTransitionError(
                "Only failed distributions can be retried",
                release_id=release_id,
                platform_id=platform_id,
                current_state=record.status,
            )
        self._check_attempts(record)
        record.status = DistributionStatus.PENDING.value
        record.last_transition_at = self._clock()
        return self._attempt(record, platform)

    def request_takedown(self, release_id: str, platform_id: str) -> DistributionSnapshot:
        platform = self._registry.get(platform_id)
        record = self._require(release_id, platform_id)
        if record.status != DistributionStatus.LIVE.value or not record.platform_release_id:
            raise StateTransitionError(
                "Only live distributions can be taken down",
                release_id=release_id,
                platform_id=platform_id,
                current_state=record.status,
            )
        platform.cancel(record.platform_release_id)
        logger.info("Takedown requested for {} on {}", release_id, platform_id)
        return to_distribution(record)

    def status(self, release_id: str) -> list[DistributionSnapshot]:
        return [to_distribution(record) for record in self._repo.list_for_release(release_id)]

    def _require(self, release_id: str, platform_id: str) -> DistributionRecord:
        record = self._repo.get(release_id, platform_id)
        if record is None:
            raise StateTransitionError(
                "Release was never submitted to this platform",
                release_id=release_id,
                platform_id=platform_id,
            )
        return record

    def _check_attempts(self, record: DistributionRecord) -> None:
        limit = self._settings.distribution_max_attempts
        if record.attempts >= limit:
            raise StateTransitionError(
                "Distribution retry limit reached",
                release_id=record.release_id,
                platform_id=record.platform_id,
                attempts=record.attempts,
                max_attempts=limit,
            )

    def _attempt(self, record: DistributionRecord, platform: DistributionPlatform) -> DistributionSnapshot:
        self._check_attempts(record)
        record.attempts += 1
        try:
            reference = platform.submit(record.release_id)
        except ExternalError as exc:
            record.status = DistributionStatus.FAILED.value
            record.error_message = exc.message
            record.last_transition_at = self._clock()
            logger.warning(
                "Submission of {} to {} failed (attempt {}): {}",
                record.release_id,
                record.platform_id,
                record.attempts,
                exc.message,
            )
        else:
            now = self._clock()
            record.platform_release_id = reference
            record.status = DistributionStatus.PROCESSING.value
            record.submitted_at = now
            record.last_transition_at = now
            record.error_message = None
            logger.info(
                "Submitted {} to {} as {} (attempt {})",
                record.release_id,
                record.platform_id,
                reference,
                record.attempts,
            )
        self._session.flush()
        return to_distribution(record)

    # ------------------------------------------------------------------
    # Callbacks

    def apply_callback(self, callback: DistributionCallback) -> CallbackOutcome:
        occurred_at = ensure_utc(callback.occurred_at).astimezone(timezone.utc)
        callback = replace(callback, occurred_at=occurred_at)
        target = CALLBACK_TARGETS.get(callback.event_type)
        if target is None:
            raise ExternalError(
                f"Unsupported callback event '{callback.event_type}'",
                retriable=False,
                platform_id=callback.platform_id,
                platform_release_id=callback.platform_release_id,
            )
        record = self._repo.find_by_platform_release(callback.platform_id, callback.platform_release_id)
        if record is None:
            raise ExternalError(
                "Callback references an unknown platform release",
                platform_id=callback.platform_id,
                platform_release_id=callback.platform_release_id,
            )
        if self._repo.find_event(callback) is not None:
            logger.info(
                "Duplicate {} callback for {} on {}",
                callback.event_type,
                callback.platform_release_id,
                callback.platform_id,
            )
            return CallbackOutcome.DUPLICATE

        current = DistributionStatus(record.status)
        last_transition = ensure_utc(record.last_transition_at)
        if (
            occurred_at <= last_transition
            or STATUS_RANK[target] < STATUS_RANK[current]
            or target is current
        ):
            logger.warning(
                "Discarding stale {} callback for {} on {} (state={}, last transition {}, event at {})",
                callback.event_type,
                callback.platform_release_id,
                callback.platform_id,
                current.value,
                last_transition.isoformat(),
                occurred_at.isoformat(),
            )
            return self._log_event(record, callback, occurred_at, applied=False, outcome=CallbackOutcome.STALE)

        if target not in ALLOWED_TRANSITIONS[current]:
            raise StateTransitionError(
                f"Callback cannot move distribution from {current.value} to {target.value}",
                release_id=record.release_id,
                platform_id=record.platform_id,
                current_state=current.value,
                event_type=callback.event_type,
            )

        outcome = self._log_event(record, callback, occurred_at, applied=True, outcome=CallbackOutcome.APPLIED)
        if outcome is not CallbackOutcome.APPLIED:
            return outcome

        record.status = target.value
        record.last_transition_at = occurred_at
        if target is DistributionStatus.LIVE:
            record.live_date = occurred_at.date()
            record.error_message = None
        elif target is DistributionStatus.FAILED:
            record.error_message = callback.message or "rejected by platform"
        self._session.flush()
        logger.info(
            "Distribution {} on {} moved {} -> {}",
            record.release_id,
            record.platform_id,
            current.value,
            target.value,
        )
        return CallbackOutcome.APPLIED

    def _log_event(
        self,
        record: DistributionRecord,
        callback: DistributionCallback,
        occurred_at: datetime,
        *,
        applied: bool,
        outcome: CallbackOutcome,
    ) -> CallbackOutcome:
        inserted = self._repo.record_event(
            record,
            platform_id=callback.platform_id,
            platform_release_id=callback.platform_release_id,
            event_type=callback.event_type,
            occurred_at=occurred_at,
            applied=applied,
            message=callback.message,
            payload=jsonable(callback.payload) if callback.payload is not None else None,
        )
        return outcome if inserted else CallbackOutcome.DUPLICATE


__all__ = ["ALLOWED_TRANSITIONS", "DistributionTracker"]
