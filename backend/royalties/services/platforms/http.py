"""Generic JSON-over-HTTP distribution platform adapter."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

import httpx
from dateutil import parser as date_parser
from loguru import logger

from royalties.core.http import request_with_retry
from royalties.domain import DistributionCallback
from royalties.errors import ExternalError
from royalties.models import DistributionEventType

CALLBACK_EVENT_TYPES = {
    DistributionEventType.PROCESSING.value,
    DistributionEventType.ACCEPTED.value,
    DistributionEventType.REJECTED.value,
    DistributionEventType.REMOVED.value,
}

EVENT_ALIASES = {
    "live": DistributionEventType.ACCEPTED.value,
    "delivered": DistributionEventType.ACCEPTED.value,
    "failed": DistributionEventType.REJECTED.value,
    "error": DistributionEventType.REJECTED.value,
    "taken_down": DistributionEventType.REMOVED.value,
    "takedown": DistributionEventType.REMOVED.value,
    "in_review": DistributionEventType.PROCESSING.value,
}


def _parse_occurred_at(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = date_parser.isoparse(value.strip())
        except (TypeError, ValueError, OverflowError):
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_callback_payload(platform_id: str, payload: Mapping[str, Any]) -> DistributionCallback:
    """Validate a platform status event.

    Accepts ``event_type`` or ``status`` for the event name and
    ``platform_release_id`` or ``release_reference`` for the platform id.
    """

    if not isinstance(payload, Mapping):
        raise ExternalError("Callback payload must be an object", retriable=False, platform_id=platform_id)

    release_ref = payload.get("platform_release_id") or payload.get("release_reference")
    raw_event = payload.get("event_type") or payload.get("status")
    occurred_at = _parse_occurred_at(payload.get("occurred_at") or payload.get("timestamp"))

    problems: list[str] = []
    if not isinstance(release_ref, str) or not release_ref.strip():
        problems.append("platform_release_id")
    event_type = None
    if isinstance(raw_event, str):
        normalized = raw_event.strip().lower()
        event_type = EVENT_ALIASES.get(normalized, normalized)
    if event_type not in CALLBACK_EVENT_TYPES:
        problems.append("event_type")
    if occurred_at is None:
        problems.append("occurred_at")
    if problems:
        raise ExternalError(
            "Malformed distribution callback",
            retriable=False,
            platform_id=platform_id,
            invalid_fields=problems,
            payload=dict(payload),
        )

    message = payload.get("message") or payload.get("error")
    return DistributionCallback(
        platform_id=platform_id,
        platform_release_id=release_ref.strip(),
        event_type=event_type,
        occurred_at=occurred_at,
        message=str(message) if message else None,
        payload=dict(payload),
    )


class HttpDistributionPlatform:
    """Submit and withdraw releases through a platform's JSON API."""

    def __init__(
        self,
        platform_id: str,
        *,
        base_url: str,
        submit_path: str = "/releases",
        cancel_path: str = "/releases/{platform_release_id}",
        api_key: str | None = None,
        timeout: float = 10.0,
        attempts: int = 3,
        backoff: tuple[float, ...] = (0.5, 1.0, 2.0),
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.platform_id = platform_id
        self.submit_path = submit_path
        self.cancel_path = cancel_path
        self.attempts = attempts
        self.backoff = backoff
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self.client = httpx.Client(base_url=base_url, timeout=timeout, headers=headers, transport=transport)

    def submit(self, release_id: str) -> str:
        logger.info("Submitting release {} to {}", release_id, self.platform_id)
        response = request_with_retry(
            self.client,
            "POST",
            self.submit_path,
            attempts=self.attempts,
            backoff=self.backoff,
            json={"release_id": release_id},
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalError(
                "Platform returned a non-JSON submission response",
                retriable=False,
                platform_id=self.platform_id,
                release_id=release_id,
            ) from exc
        reference = None
        if isinstance(body, dict):
            reference = body.get("platform_release_id") or body.get("id")
        if not reference:
            raise ExternalError(
                "Platform did not return a release reference",
                retriable=False,
                platform_id=self.platform_id,
                release_id=release_id,
            )
        return str(reference)

    def cancel(self, platform_release_id: str) -> None:
        logger.info("Requesting takedown of {} on {}", platform_release_id, self.platform_id)
        request_with_retry(
            self.client,
            "DELETE",
            self.cancel_path.format(platform_release_id=platform_release_id),
            attempts=self.attempts,
            backoff=self.backoff,
        )

    def parse_callback(self, payload: Mapping[str, Any]) -> DistributionCallback:
        return parse_callback_payload(self.platform_id, payload)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "HttpDistributionPlatform":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["CALLBACK_EVENT_TYPES", "HttpDistributionPlatform", "parse_callback_payload"]
