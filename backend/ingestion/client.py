from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Iterable

import httpx
from loguru import logger

from royalties.core.config import settings
from royalties.core.http import request_with_retry
from royalties.errors import ExternalError


def decode_json(response: httpx.Response) -> Any:
    """Decode a JSON body keeping every number exact."""

    try:
        return json.loads(response.text, parse_float=Decimal)
    except json.JSONDecodeError as exc:
        raise ExternalError(
            "Response body is not valid JSON", retriable=False, url=str(response.request.url)
        ) from exc


class RevenueReportClient:
    """Thin wrapper around a platform's paged revenue report feed."""

    def __init__(
        self,
        *,
        platform_id: str,
        base_url: str | None = None,
        report_path: str | None = None,
        page_size: int | None = None,
        timeout: float = 10.0,
        attempts: int | None = None,
        backoff: tuple[float, ...] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.platform_id = platform_id
        self.base_url = base_url or str(settings.report_feed_base_url)
        self.report_path = report_path or settings.report_feed_path
        self.page_size = page_size or settings.report_feed_page_size
        self.attempts = attempts or settings.external_retry_attempts
        self.backoff = backoff if backoff is not None else settings.external_retry_schedule
        self.timeout = timeout
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _build_params(self, *, report_id: str, cursor: str | None, offset: int) -> dict[str, Any]:
        params: dict[str, Any] = {
            "platform": self.platform_id,
            "report_id": report_id,
            "limit": self.page_size,
            "offset": offset,
        }
        if cursor:
            params["cursor"] = cursor
        return params

    def fetch_page(self, *, report_id: str, cursor: str | None, offset: int) -> Any:
        params = self._build_params(report_id=report_id, cursor=cursor, offset=offset)
        logger.info("Report feed GET {} params={}", self.report_path, params)
        response = request_with_retry(
            self.client,
            "GET",
            self.report_path,
            attempts=self.attempts,
            backoff=self.backoff,
            params=params,
        )
        return decode_json(response)

    def iter_rows(self, report_id: str) -> Iterable[dict[str, Any]]:
        cursor: str | None = None
        offset = 0
        while True:
            payload = self.fetch_page(report_id=report_id, cursor=cursor, offset=offset)

            next_cursor: str | None = None
            if isinstance(payload, list):
                rows = payload
            elif isinstance(payload, dict):
                candidates: tuple[Any, ...] = (
                    payload.get("rows"),
                    payload.get("data"),
                    payload.get("items"),
                )
                rows = next((value for value in candidates if isinstance(value, list)), [])
                next_cursor = payload.get("next_cursor") or payload.get("cursor")
            else:
                rows = []

            if not rows:
                break

            for row in rows:
                yield row

            if next_cursor:
                cursor = next_cursor
                offset = 0
            else:
                cursor = None
                offset += self.page_size

            if not cursor and len(rows) < self.page_size:
                break

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "RevenueReportClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
