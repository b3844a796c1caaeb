from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Mapping
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from royalties.domain import CallbackOutcome, DistributionCallback
from royalties.errors import ExternalError, StateTransitionError, ValidationError
from royalties.operations import RoyaltyOperations
from royalties.repositories import DistributionRepository
from royalties.services import DistributionTracker
from royalties.services.platforms import PlatformRegistry, parse_callback_payload

SUBMITTED_AT = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakePlatform:
    def __init__(self, platform_id: str = "spotify", failures: int = 0) -> None:
        self.platform_id = platform_id
        self.failures = failures
        self.submitted: list[str] = []
        self.cancelled: list[str] = []

    def submit(self, release_id: str) -> str:
        self.submitted.append(release_id)
        if self.failures:
            self.failures -= 1
            raise ExternalError("platform unavailable", platform_id=self.platform_id)
        return f"sp-{release_id}"

    def cancel(self, platform_release_id: str) -> None:
        self.cancelled.append(platform_release_id)

    def parse_callback(self, payload: Mapping[str, Any]) -> DistributionCallback:
        return parse_callback_payload(self.platform_id, payload)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def registry(platform):
    return PlatformRegistry({platform.platform_id: platform})


@pytest.fixture
def tracker_run(session_scope, registry, test_settings):
    def _run(action):
        with session_scope() as session:
            tracker = DistributionTracker(
                session, registry, settings=test_settings, clock=lambda: SUBMITTED_AT
            )
            return action(tracker)

    return _run


def _callback(event_type: str, minutes: int, reference: str = "sp-REL-1") -> DistributionCallback:
    return DistributionCallback(
        platform_id="spotify",
        platform_release_id=reference,
        event_type=event_type,
        occurred_at=SUBMITTED_AT + timedelta(minutes=minutes),
    )


def test_submit_moves_to_processing(tracker_run, platform):
    snapshot = tracker_run(lambda tracker: tracker.submit("REL-1", "spotify"))

    assert snapshot.status == "processing"
    assert snapshot.platform_release_id == "sp-REL-1"
    assert snapshot.attempts == 1
    assert snapshot.submitted_at == SUBMITTED_AT

    again = tracker_run(lambda tracker: tracker.submit("REL-1", "spotify"))
    assert again.attempts == 1
    assert platform.submitted == ["REL-1"]


def test_stale_callback_does_not_move_live_release_backwards(tracker_run):
    tracker_run(lambda tracker: tracker.submit("REL-1", "spotify"))

    assert tracker_run(lambda tracker: tracker.apply_callback(_callback("accepted", 30))) is CallbackOutcome.APPLIED
    late = tracker_run(lambda tracker: tracker.apply_callback(_callback("processing", 45)))
    older = tracker_run(lambda tracker: tracker.apply_callback(_callback("rejected", 10)))

    assert late is CallbackOutcome.STALE
    assert older is CallbackOutcome.STALE
    (snapshot,) = tracker_run(lambda tracker: tracker.status("REL-1"))
    assert snapshot.status == "live"
    assert snapshot.live_date == date(2024, 3, 1)


def test_duplicate_callback_is_ignored(tracker_run):
    tracker_run(lambda tracker: tracker.submit("REL-1", "spotify"))

    first = tracker_run(lambda tracker: tracker.apply_callback(_callback("rejected", 5)))
    second = tracker_run(lambda tracker: tracker.apply_callback(_callback("rejected", 5)))

    assert first is CallbackOutcome.APPLIED
    assert second is CallbackOutcome.DUPLICATE
    (snapshot,) = tracker_run(lambda tracker: tracker.status("REL-1"))
    assert snapshot.status == "failed"
    assert snapshot.error_message == "rejected by platform"


def test_callback_with_naive_timestamp_is_treated_as_utc(tracker_run):
    tracker_run(lambda tracker: tracker.submit("REL-1", "spotify"))
    callback = DistributionCallback(
        platform_id="spotify",
        platform_release_id="sp-REL-1",
        event_type="accepted",
        occurred_at=datetime(2024, 3, 1, 13, 0),
    )

    assert tracker_run(lambda tracker: tracker.apply_callback(callback)) is CallbackOutcome.APPLIED


def test_callback_cannot_skip_lifecycle_states(tracker_run):
    tracker_run(lambda tracker: tracker.submit("REL-1", "spotify"))

    with pytest.raises(StateTransitionError):
        tracker_run(lambda tracker: tracker.apply_callback(_callback("removed", 5)))


def test_callback_for_unknown_release_raises(tracker_run):
    with pytest.raises(ExternalError):
        tracker_run(lambda tracker: tracker.apply_callback(_callback("accepted", 5, reference="nope")))


def test_failed_submission_retries_until_limit(session_scope, test_settings):
    platform = FakePlatform(failures=10)
    registry = PlatformRegistry({"spotify": platform})

    def run(action):
        with session_scope() as session:
            return action(DistributionTracker(session, registry, settings=test_settings))

    failed = run(lambda tracker: tracker.submit("REL-9", "spotify"))
    assert failed.status == "failed"
    assert failed.error_message == "platform unavailable"

    for expected_attempts in (2, 3):
        snapshot = run(lambda tracker: tracker.retry("REL-9", "spotify"))
        assert snapshot.attempts == expected_attempts
        assert snapshot.status == "failed"

    with pytest.raises(StateTransitionError):
        run(lambda tracker: tracker.retry("REL-9", "spotify"))
    with pytest.raises(StateTransitionError):
        run(lambda tracker: tracker.submit("REL-9", "spotify"))
    assert len(platform.submitted) == 3


def test_retry_after_failure_can_succeed(session_scope, test_settings):
    registry = PlatformRegistry({"spotify": FakePlatform(failures=1)})

    with session_scope() as session:
        tracker = DistributionTracker(session, registry, settings=test_settings)
        tracker.submit("REL-2", "spotify")
        snapshot = tracker.retry("REL-2", "spotify")

    assert snapshot.status == "processing"
    assert snapshot.attempts == 2
    assert snapshot.error_message is None


def test_takedown_only_for_live_releases(tracker_run, platform):
    tracker_run(lambda tracker: tracker.submit("REL-1", "spotify"))
    with pytest.raises(StateTransitionError):
        tracker_run(lambda tracker: tracker.request_takedown("REL-1", "spotify"))

    tracker_run(lambda tracker: tracker.apply_callback(_callback("accepted", 5)))
    tracker_run(lambda tracker: tracker.request_takedown("REL-1", "spotify"))
    assert platform.cancelled == ["sp-REL-1"]

    assert tracker_run(lambda tracker: tracker.apply_callback(_callback("removed", 60))) is CallbackOutcome.APPLIED
    (snapshot,) = tracker_run(lambda tracker: tracker.status("REL-1"))
    assert snapshot.status == "removed"


def test_unknown_platform_is_rejected(tracker_run):
    with pytest.raises(ValidationError):
        tracker_run(lambda tracker: tracker.submit("REL-1", "tidal"))


def test_malformed_callback_is_quarantined(session_scope, test_settings, registry):
    operations = RoyaltyOperations(session_scope=session_scope, settings=test_settings, registry=registry)

    outcome = operations.apply_distribution_callback(
        "spotify", {"platform_release_id": "sp-REL-1", "status": "teleported"}
    )

    assert outcome is None
    (item,) = operations.quarantined_items(kind="distribution_callback")
    assert item.item_key == "spotify:sp-REL-1"
    assert item.retriable is False


def test_operations_apply_platform_callback_payload(session_scope, test_settings, registry):
    operations = RoyaltyOperations(session_scope=session_scope, settings=test_settings, registry=registry)
    operations.submit_for_distribution("REL-1", "spotify")

    outcome = operations.apply_distribution_callback(
        "spotify",
        {
            "release_reference": "sp-REL-1",
            "status": "live",
            "timestamp": "2099-01-01T00:00:00Z",
        },
    )

    assert outcome is CallbackOutcome.APPLIED
    status = operations.distribution_status("REL-1")
    assert [(item.platform_id, item.status) for item in status.platforms] == [("spotify", "live")]


def test_parse_callback_payload_normalizes_aliases():
    callback = parse_callback_payload(
        "deezer",
        {
            "platform_release_id": " dz-1 ",
            "event_type": "Delivered",
            "occurred_at": "2024-03-01T14:00:00+02:00",
            "message": "ok",
        },
    )

    assert callback.event_type == "accepted"
    assert callback.platform_release_id == "dz-1"
    assert callback.occurred_at == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert callback.message == "ok"


def test_callback_lookup_locks_the_distribution_row():
    session = MagicMock()

    DistributionRepository(session).find_by_platform_release("spotify", "sp-REL-1")

    statement = session.execute.call_args.args[0]
    assert "FOR UPDATE" in str(statement.compile(dialect=postgresql.dialect()))
