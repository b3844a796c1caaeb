"""Lookup of distribution platform adapters by platform id."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Mapping

from royalties.core.config import Settings
from royalties.errors import ValidationError

from .base import DistributionPlatform
from .http import HttpDistributionPlatform


class UnknownPlatformError(ValidationError):
    """Raised when a release targets a platform without a registered adapter."""


class PlatformRegistry:
    def __init__(self, platforms: Mapping[str, DistributionPlatform] | None = None) -> None:
        self._platforms: dict[str, DistributionPlatform] = {}
        for platform in (platforms or {}).values():
            self.register(platform)

    def register(self, platform: DistributionPlatform) -> None:
        """Register or replace the adapter for ``platform.platform_id``."""

        self._platforms[platform.platform_id.lower()] = platform

    def get(self, platform_id: str) -> DistributionPlatform:
        try:
            return self._platforms[platform_id.lower()]
        except KeyError as exc:
            raise UnknownPlatformError(
                f"Distribution platform '{platform_id}' is not registered",
                platform_id=platform_id,
                available=self.available(),
            ) from exc

    def available(self) -> tuple[str, ...]:
        return tuple(sorted(self._platforms))

    def close(self) -> None:
        for platform in self._platforms.values():
            closer = getattr(platform, "close", None)
            if callable(closer):
                closer()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        factory: Callable[..., DistributionPlatform] = HttpDistributionPlatform,
    ) -> "PlatformRegistry":
        registry = cls()
        for platform_id, options in settings.distribution_platforms.items():
            kwargs: dict[str, Any] = dict(options)
            if "base_url" not in kwargs:
                raise ValidationError(
                    "Distribution platform configuration needs a base_url", platform_id=platform_id
                )
            kwargs.setdefault("attempts", settings.external_retry_attempts)
            kwargs.setdefault("backoff", settings.external_retry_schedule)
            registry.register(factory(platform_id, **kwargs))
        return registry


__all__ = ["PlatformRegistry", "UnknownPlatformError"]
