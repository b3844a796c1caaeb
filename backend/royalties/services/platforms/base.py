"""Contract implemented by distribution platform adapters."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from royalties.domain import DistributionCallback


class DistributionPlatform(Protocol):
    """Opaque submission target for releases."""

    platform_id: str

    def submit(self, release_id: str) -> str:
        """Submit ``release_id`` and return the platform's own release id.

        Raises :class:`royalties.errors.ExternalError` when the platform refuses
        or cannot be reached.
        """

    def cancel(self, platform_release_id: str) -> None:
        """Ask the platform to take the release down."""

    def parse_callback(self, payload: Mapping[str, Any]) -> DistributionCallback:
        """Turn a raw callback body into a :class:`DistributionCallback`.

        Raises :class:`royalties.errors.ExternalError` for malformed payloads.
        """


__all__ = ["DistributionPlatform"]
