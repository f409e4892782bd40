"""Error taxonomy shared by the allotment engine and its callers."""

from __future__ import annotations

from typing import Any


class AllotmentError(Exception):
    """Base exception for allotment workflow failures."""

    def to_detail(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": str(self)}


class AllotmentValidationError(AllotmentError, ValueError):
    """Raised when settings, channel config or operation arguments are invalid."""


class AllotmentNotFoundError(AllotmentError):
    """Raised when a room type, date or channel does not exist."""


class CapacityExceededError(AllotmentError):
    """Raised when a proposed allocation vector breaks the capacity ceiling."""

    def __init__(self, *, ceiling: int, proposed_total: int, reason: str) -> None:
        super().__init__(reason)
        self.ceiling = ceiling
        self.proposed_total = proposed_total

    @property
    def shortfall(self) -> int:
        return max(0, self.proposed_total - self.ceiling)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            ceiling=self.ceiling,
            proposed_total=self.proposed_total,
            shortfall=self.shortfall,
        )
        return detail


class InsufficientAllocationError(AllotmentError):
    """Raised when a channel has fewer free units than an operation needs."""

    def __init__(self, *, channel_name: str, available: int, requested: int) -> None:
        super().__init__(
            f"channel {channel_name} has {available} free units, {requested} requested"
        )
        self.channel_name = channel_name
        self.available = available
        self.requested = requested

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.available)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            channel_name=self.channel_name,
            available=self.available,
            requested=self.requested,
            shortfall=self.shortfall,
        )
        return detail


class StaleVersionError(AllotmentError):
    """Raised when the caller's read version is behind the stored version."""

    def __init__(self, *, expected_version: int, current_version: int) -> None:
        super().__init__(
            f"allotment version {expected_version} is stale; current version is {current_version}"
        )
        self.expected_version = expected_version
        self.current_version = current_version

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            expected_version=self.expected_version,
            current_version=self.current_version,
        )
        return detail


class OperationCancelledError(AllotmentError):
    """Raised when an operation is cancelled or times out before committing."""
