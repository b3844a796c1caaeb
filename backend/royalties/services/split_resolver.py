"""Resolve versioned split agreements into per-period share windows."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import date, timedelta
from decimal import Decimal
from fractions import Fraction
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from royalties.core.config import SPLIT_TYPES, Settings, get_settings
from royalties.domain import Period, RecipientShare, SplitAgreement, SplitWindow
from royalties.domain.money import parse_amount
from royalties.errors import DuplicateError, SplitIntegrityError, StateTransitionError, ValidationError
from royalties.models import utcnow
from royalties.repositories import AgreementRepository
from royalties.repositories.agreement_repository import to_agreement

HUNDRED = Decimal("100")
SUM_TOLERANCE = Decimal("0.000001")
PERCENT_SCALE = 8


def _active(agreements: Sequence[SplitAgreement], day: date) -> list[SplitAgreement]:
    return [agreement for agreement in agreements if agreement.covers(day)]


def _check_total(
    active: Sequence[SplitAgreement],
    *,
    entity_id: str,
    split_type: str,
    start: date,
    end: date | None,
) -> None:
    total = sum((agreement.percentage for agreement in active), Decimal("0"))
    if abs(total - HUNDRED) > SUM_TOLERANCE:
        raise SplitIntegrityError(
            f"Split agreements sum to {total}% instead of 100%",
            entity_id=entity_id,
            split_type=split_type,
            window_start=start,
            window_end=end,
            total=total,
            agreement_ids=[agreement.agreement_id for agreement in active],
        )


class SplitResolver:
    """Read and maintain the split agreement timeline for entities."""

    def __init__(self, session: Session, *, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._repo = AgreementRepository(session)

    # ------------------------------------------------------------------
    # Resolution

    def resolve(self, entity_id: str, split_type: str, period: Period) -> list[SplitWindow]:
        """Return the share windows covering ``period``.

        Every agreement boundary falling inside the period opens a new window;
        neighbouring windows with the same recipients and percentages are merged.
        Raises :class:`SplitIntegrityError` for any uncovered day or any window
        whose percentages do not add up to 100.
        """

        if period.end < period.start:
            raise ValidationError("Period end precedes start", entity_id=entity_id, period=period.to_dict())

        start, end = period.start, period.end_exclusive
        agreements = self._repo.list_overlapping(entity_id, split_type, start=start, end=end)

        boundaries = {start, end}
        for agreement in agreements:
            for boundary in (agreement.effective_date, agreement.end_date):
                if boundary is not None and start < boundary < end:
                    boundaries.add(boundary)
        ordered = sorted(boundaries)

        total_days = period.days
        windows: list[SplitWindow] = []
        for window_start, window_end in zip(ordered, ordered[1:]):
            active = _active(agreements, window_start)
            if not active:
                raise SplitIntegrityError(
                    "No split agreement covers part of the period",
                    entity_id=entity_id,
                    split_type=split_type,
                    period=period.to_dict(),
                    gap_start=window_start,
                    gap_end=window_end,
                )
            _check_total(
                active,
                entity_id=entity_id,
                split_type=split_type,
                start=window_start,
                end=window_end,
            )
            shares = tuple(
                RecipientShare(
                    recipient_id=agreement.recipient_id,
                    percentage=agreement.percentage,
                    agreement_id=agreement.agreement_id,
                )
                for agreement in sorted(active, key=lambda item: (item.recipient_id, item.agreement_id))
            )
            days = (window_end - window_start).days
            if windows and self._same_shares(windows[-1].shares, shares):
                previous = windows[-1]
                merged_days = previous.days + days
                windows[-1] = SplitWindow(
                    start=previous.start,
                    end=window_end,
                    fraction=Fraction(merged_days, total_days),
                    shares=previous.shares,
                )
                continue
            windows.append(
                SplitWindow(
                    start=window_start,
                    end=window_end,
                    fraction=Fraction(days, total_days),
                    shares=shares,
                )
            )
        return windows

    @staticmethod
    def _same_shares(left: Sequence[RecipientShare], right: Sequence[RecipientShare]) -> bool:
        return [(share.recipient_id, share.percentage) for share in left] == [
            (share.recipient_id, share.percentage) for share in right
        ]

    def validate_timeline(self, entity_id: str, split_type: str) -> None:
        """Check the whole agreement history of one entity/split type.

        Days before the first agreement and after the last one has ended are
        not checked; every day in between must be covered at exactly 100%.
        """

        agreements = self._repo.list_overlapping(entity_id, split_type)
        if not agreements:
            return

        boundaries = sorted(
            {agreement.effective_date for agreement in agreements}
            | {agreement.end_date for agreement in agreements if agreement.end_date is not None}
        )
        last_effective = max(agreement.effective_date for agreement in agreements)
        for index, window_start in enumerate(boundaries):
            window_end = boundaries[index + 1] if index + 1 < len(boundaries) else None
            active = _active(agreements, window_start)
            if not active:
                if window_start < last_effective:
                    raise SplitIntegrityError(
                        "Split agreement history has a gap",
                        entity_id=entity_id,
                        split_type=split_type,
                        gap_start=window_start,
                        gap_end=window_end,
                    )
                continue
            _check_total(
                active,
                entity_id=entity_id,
                split_type=split_type,
                start=window_start,
                end=window_end,
            )

    # ------------------------------------------------------------------
    # Mutations

    def create_agreement(
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
        agreement = self._build(
            entity_id=entity_id,
            split_type=split_type,
            recipient_id=recipient_id,
            percentage=percentage,
            effective_date=effective_date,
            end_date=end_date,
            role=role,
        )
        for existing in self._repo.list_overlapping(
            entity_id, split_type, start=effective_date, end=effective_date + timedelta(days=1)
        ):
            if existing.recipient_id == recipient_id and existing.effective_date == effective_date:
                raise DuplicateError(
                    "Recipient already has an agreement starting on this date",
                    agreement_id=existing.agreement_id,
                    entity_id=entity_id,
                    split_type=split_type,
                    recipient_id=recipient_id,
                )
        with self._session.begin_nested():
            self._repo.add(agreement)
            self._enforce_timeline(entity_id, split_type)
        logger.info(
            "Created split agreement {} entity={} type={} recipient={} pct={} from {}",
            agreement.agreement_id,
            entity_id,
            split_type,
            recipient_id,
            agreement.percentage,
            effective_date,
        )
        return agreement

    def replace_agreements(
        self,
        *,
        entity_id: str,
        split_type: str,
        effective_date: date,
        shares: Sequence[tuple[str, Any]],
    ) -> list[SplitAgreement]:
        """Close the agreements open at ``effective_date`` and start a new share set.

        The new set must add up to 100 on its own, whatever the validation mode.
        """

        drafts = [
            self._build(
                entity_id=entity_id,
                split_type=split_type,
                recipient_id=recipient_id,
                percentage=percentage,
                effective_date=effective_date,
            )
            for recipient_id, percentage in shares
        ]
        _check_total(drafts, entity_id=entity_id, split_type=split_type, start=effective_date, end=None)

        with self._session.begin_nested():
            for current in self._repo.list_overlapping(entity_id, split_type, start=effective_date):
                if current.effective_date >= effective_date:
                    raise StateTransitionError(
                        "Agreements already start on or after the replacement date",
                        agreement_id=current.agreement_id,
                        effective_date=current.effective_date,
                    )
                record = self._repo.get(current.agreement_id)
                assert record is not None
                self._repo.close(record, end_date=effective_date, closed_at=utcnow())
            for draft in drafts:
                self._repo.add(draft)
            self._enforce_timeline(entity_id, split_type)

        logger.info(
            "Replaced {} split agreements entity={} type={} from {}",
            len(drafts),
            entity_id,
            split_type,
            effective_date,
        )
        return drafts

    def close_agreement(self, agreement_id: str, end_date: date) -> SplitAgreement:
        record = self._repo.get(agreement_id)
        if record is None:
            raise ValidationError("Unknown split agreement", agreement_id=agreement_id)
        if record.end_date is not None:
            raise StateTransitionError(
                "Split agreement is already closed",
                agreement_id=agreement_id,
                end_date=record.end_date,
            )
        if end_date <= record.effective_date:
            raise ValidationError(
                "end_date must be after effective_date",
                agreement_id=agreement_id,
                effective_date=record.effective_date,
                end_date=end_date,
            )
        with self._session.begin_nested():
            self._repo.close(record, end_date=end_date, closed_at=utcnow())
            self._enforce_timeline(record.entity_id, record.split_type)
        logger.info("Closed split agreement {} at {}", agreement_id, end_date)
        return to_agreement(record)

    def _enforce_timeline(self, entity_id: str, split_type: str) -> None:
        if self._settings.split_validation_mode == "strict":
            self.validate_timeline(entity_id, split_type)

    @staticmethod
    def _build(
        *,
        entity_id: str,
        split_type: str,
        recipient_id: str,
        percentage: Any,
        effective_date: date,
        end_date: date | None = None,
        role: str | None = None,
    ) -> SplitAgreement:
        if not entity_id or not recipient_id:
            raise ValidationError(
                "entity_id and recipient_id are required", entity_id=entity_id, recipient_id=recipient_id
            )
        if split_type not in SPLIT_TYPES:
            raise ValidationError(f"Unknown split type '{split_type}'", split_type=split_type)
        value = parse_amount(percentage, field="percentage")
        if value <= 0 or value > HUNDRED:
            raise ValidationError(
                "percentage must be greater than 0 and at most 100",
                entity_id=entity_id,
                recipient_id=recipient_id,
                percentage=value,
            )
        if value.normalize().as_tuple().exponent < -PERCENT_SCALE:
            raise ValidationError(
                f"percentage carries more than {PERCENT_SCALE} decimal places",
                entity_id=entity_id,
                recipient_id=recipient_id,
                percentage=value,
            )
        if not isinstance(effective_date, date):
            raise ValidationError("effective_date is required", entity_id=entity_id)
        if end_date is not None and end_date <= effective_date:
            raise ValidationError(
                "end_date must be after effective_date",
                effective_date=effective_date,
                end_date=end_date,
            )
        return SplitAgreement(
            agreement_id=str(uuid.uuid4()),
            entity_id=entity_id,
            split_type=split_type,
            recipient_id=recipient_id,
            percentage=value,
            effective_date=effective_date,
            end_date=end_date,
            role=role,
        )


__all__ = ["SplitResolver"]
