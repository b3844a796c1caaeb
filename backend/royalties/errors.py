"""Error taxonomy shared by every engine component.

Errors carry a ``context`` mapping (entity id, period, conflicting agreements,
current state, ...) so callers can surface enough detail for manual remediation.
"""

from __future__ import annotations

from typing import Any


class RoyaltyError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "context": {key: jsonable(value) for key, value in self.context.items()},
        }


class ValidationError(RoyaltyError):
    """Malformed input rejected before any mutation."""


class DuplicateError(RoyaltyError):
    """Replay of an ingestion or accrual that was already applied."""


class SplitIntegrityError(RoyaltyError):
    """Split agreements do not partition 100% of an entity/type/period."""


class StateTransitionError(RoyaltyError):
    """Operation attempted on an entity in an incompatible state."""


class ExternalError(RoyaltyError):
    """A collaborator (platform callback, rate lookup, report feed) misbehaved."""

    def __init__(self, message: str, *, retriable: bool = True, **context: Any) -> None:
        super().__init__(message, **context)
        self.retriable = retriable


def jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set)):
        return [jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): jsonable(item) for key, item in value.items()}
    return str(value)


__all__ = [
    "DuplicateError",
    "ExternalError",
    "RoyaltyError",
    "SplitIntegrityError",
    "StateTransitionError",
    "ValidationError",
    "jsonable",
]
