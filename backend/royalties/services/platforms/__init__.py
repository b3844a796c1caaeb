"""Distribution platform adapters exposed to the status tracker."""

from .base import DistributionPlatform
from .http import HttpDistributionPlatform, parse_callback_payload
from .registry import PlatformRegistry, UnknownPlatformError

__all__ = [
    "DistributionPlatform",
    "HttpDistributionPlatform",
    "PlatformRegistry",
    "UnknownPlatformError",
    "parse_callback_payload",
]
