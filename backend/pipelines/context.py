from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

from loguru import logger

from royalties.core.config import Settings
from royalties.db import SessionScope
from royalties.domain import QuarantineEntry
from royalties.errors import RoyaltyError
from royalties.repositories import QuarantineRepository


@dataclass(slots=True)
class PipelineContext:
    """Runtime context shared by the stages of one pipeline run."""

    run_id: str
    run_date: date
    settings: Settings
    session_scope: SessionScope

    def quarantine(self, kind: str, item_key: str | None, exc: RoyaltyError) -> None:
        logger.opt(exception=exc).error("Run {} quarantined {} {}: {}", self.run_id, kind, item_key, exc.message)
        with self.session_scope() as session:
            QuarantineRepository(session).add(
                QuarantineEntry(
                    kind=kind,
                    item_key=item_key,
                    reason=exc.message,
                    retriable=getattr(exc, "retriable", False),
                    details={"run_id": self.run_id, **exc.to_dict()},
                )
            )


def resolve_summary_path(explicit: Path | None, settings: Settings, name: str, run_id: str) -> Path | None:
    if explicit is not None:
        return explicit
    if settings.pipeline_summary_dir:
        return Path(settings.pipeline_summary_dir).expanduser() / f"{name}-{run_id}.json"
    return None


def write_summary(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(payload, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
