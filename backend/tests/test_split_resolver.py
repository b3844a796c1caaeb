from __future__ import annotations

from datetime import date
from decimal import Decimal
from fractions import Fraction

import pytest

from royalties.domain import Period
from royalties.errors import DuplicateError, SplitIntegrityError, StateTransitionError, ValidationError
from royalties.repositories.agreement_repository import AgreementRepository, to_agreement
from royalties.services import SplitResolver

JANUARY = Period(date(2024, 1, 1), date(2024, 1, 31))


def _resolve(session_scope, settings, period=JANUARY, entity_id="ISRC-1"):
    with session_scope() as session:
        return SplitResolver(session, settings=settings).resolve(entity_id, "master", period)


def test_single_share_set_covers_whole_period(session_scope, test_settings, make_split):
    make_split({"alice": "60", "bob": "40"})

    windows = _resolve(session_scope, test_settings)

    assert len(windows) == 1
    assert windows[0].fraction == Fraction(1)
    assert [(share.recipient_id, share.percentage) for share in windows[0].shares] == [
        ("alice", Decimal("60")),
        ("bob", Decimal("40")),
    ]


def test_mid_period_change_splits_by_days(session_scope, test_settings, make_split):
    make_split({"alice": "50", "bob": "50"}, end_date=date(2024, 1, 11))
    make_split({"alice": "75", "bob": "25"}, effective_date=date(2024, 1, 11))

    windows = _resolve(session_scope, test_settings)

    assert [(window.start, window.end) for window in windows] == [
        (date(2024, 1, 1), date(2024, 1, 11)),
        (date(2024, 1, 11), date(2024, 2, 1)),
    ]
    assert [window.fraction for window in windows] == [Fraction(10, 31), Fraction(21, 31)]
    assert sum(window.fraction for window in windows) == 1


def test_identical_neighbouring_windows_are_merged(session_scope, test_settings, make_split):
    make_split({"alice": "50", "bob": "50"}, end_date=date(2024, 1, 16))
    make_split({"alice": "50", "bob": "50"}, effective_date=date(2024, 1, 16))

    windows = _resolve(session_scope, test_settings)

    assert len(windows) == 1
    assert windows[0].fraction == Fraction(1)


def test_gap_in_coverage_raises(session_scope, test_settings, make_split):
    make_split({"alice": "100"}, end_date=date(2024, 1, 10))
    make_split({"alice": "100"}, effective_date=date(2024, 1, 20))

    with pytest.raises(SplitIntegrityError) as excinfo:
        _resolve(session_scope, test_settings)

    assert excinfo.value.context["gap_start"] == date(2024, 1, 10)
    assert excinfo.value.context["gap_end"] == date(2024, 1, 20)


def test_unbalanced_shares_raise(session_scope, test_settings, make_split):
    make_split({"alice": "60", "bob": "30"})

    with pytest.raises(SplitIntegrityError) as excinfo:
        _resolve(session_scope, test_settings)

    assert excinfo.value.context["total"] == Decimal("90")


def test_overlapping_agreements_raise(session_scope, test_settings, make_split):
    make_split({"alice": "60", "bob": "40"})
    make_split({"carol": "10"}, effective_date=date(2024, 1, 15))

    with pytest.raises(SplitIntegrityError):
        _resolve(session_scope, test_settings)


def test_no_agreements_raise(session_scope, test_settings):
    with pytest.raises(SplitIntegrityError):
        _resolve(session_scope, test_settings, entity_id="UNKNOWN")


def test_strict_mode_rejects_unbalanced_agreement(session_scope, test_settings):
    strict = test_settings.model_copy(update={"split_validation_mode": "strict"})

    with session_scope() as session:
        with pytest.raises(SplitIntegrityError):
            SplitResolver(session, settings=strict).create_agreement(
                entity_id="ISRC-1",
                split_type="master",
                recipient_id="alice",
                percentage="60",
                effective_date=date(2024, 1, 1),
            )

    with session_scope() as session:
        created = SplitResolver(session, settings=strict).replace_agreements(
            entity_id="ISRC-1",
            split_type="master",
            effective_date=date(2024, 1, 1),
            shares=[("alice", "60"), ("bob", "40")],
        )
    assert {agreement.recipient_id for agreement in created} == {"alice", "bob"}


def test_replace_agreements_closes_current_set(session_scope, test_settings, make_split):
    make_split({"alice": "50", "bob": "50"})

    with session_scope() as session:
        SplitResolver(session, settings=test_settings).replace_agreements(
            entity_id="ISRC-1",
            split_type="master",
            effective_date=date(2024, 1, 11),
            shares=[("alice", "75"), ("bob", "25")],
        )

    windows = _resolve(session_scope, test_settings)
    assert [window.fraction for window in windows] == [Fraction(10, 31), Fraction(21, 31)]

    with session_scope() as session:
        with pytest.raises(SplitIntegrityError):
            SplitResolver(session, settings=test_settings).replace_agreements(
                entity_id="ISRC-1",
                split_type="master",
                effective_date=date(2024, 2, 1),
                shares=[("alice", "75")],
            )


def test_close_agreement_guards(session_scope, test_settings, make_split):
    (agreement,) = make_split({"alice": "100"})

    with session_scope() as session:
        resolver = SplitResolver(session, settings=test_settings)
        with pytest.raises(ValidationError):
            resolver.close_agreement(agreement.agreement_id, agreement.effective_date)
        closed = resolver.close_agreement(agreement.agreement_id, date(2024, 6, 1))

    assert closed.end_date == date(2024, 6, 1)
    assert not closed.covers(date(2024, 6, 1))

    with session_scope() as session:
        with pytest.raises(StateTransitionError):
            SplitResolver(session, settings=test_settings).close_agreement(agreement.agreement_id, date(2024, 7, 1))


@pytest.mark.parametrize("percentage", ["0", "100.5", "-10", "33.333333333"])
def test_create_agreement_rejects_out_of_range_percentages(session_scope, test_settings, percentage):
    with session_scope() as session:
        with pytest.raises(ValidationError):
            SplitResolver(session, settings=test_settings).create_agreement(
                entity_id="ISRC-1",
                split_type="master",
                recipient_id="alice",
                percentage=percentage,
                effective_date=date(2024, 1, 1),
            )


def test_replayed_agreement_is_reported_as_duplicate(session_scope, test_settings, make_split):
    make_split({"alice": "100"})

    with pytest.raises(DuplicateError):
        make_split({"alice": "100"})


def test_percentage_at_storage_precision_round_trips(session_scope, test_settings, make_split):
    (agreement,) = make_split({"alice": "33.3333333300"}, split_type="publishing")

    with session_scope() as session:
        stored = to_agreement(AgreementRepository(session).get(agreement.agreement_id))

    assert stored.percentage == agreement.percentage == Decimal("33.33333333")
