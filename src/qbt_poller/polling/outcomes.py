"""
Poll outcome types.

A poll either yields the item list or one classified failure. Outcomes are
produced per tick and never retained.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, TypedDict


class TorrentInfo(TypedDict, total=False):
    """One entry of /api/v2/torrents/info. Opaque to the engine."""

    hash: str
    name: str
    progress: float
    state: str
    size: int
    dlspeed: int
    upspeed: int
    eta: int
    ratio: float
    num_seeds: int
    num_leechs: int
    added_on: int
    completed: int


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    AUTH_FAILURE = "auth_failure"
    HTTP_ERROR = "http_error"
    TRANSPORT_ERROR = "transport_error"


FAILURE_DESCRIPTIONS = {
    FailureKind.TIMEOUT: "request timed out",
    FailureKind.AUTH_FAILURE: "authentication failed",
    FailureKind.HTTP_ERROR: "unexpected HTTP status",
    FailureKind.TRANSPORT_ERROR: "connection error",
}


@dataclass(frozen=True)
class PollOutcome:
    """Result of one poll."""

    items: list[Any] | None = None
    failure: FailureKind | None = None
    status: int | None = None
    detail: str = ""

    @classmethod
    def ok(cls, items: list[Any]) -> "PollOutcome":
        return cls(items=items)

    @classmethod
    def failed(
        cls, kind: FailureKind, detail: str = "", status: int | None = None
    ) -> "PollOutcome":
        return cls(failure=kind, status=status, detail=detail)

    @property
    def is_ok(self) -> bool:
        return self.failure is None

    def describe(self) -> str:
        """Human-readable summary for failure reports."""
        if self.failure is None:
            return f"Fetched {len(self.items or [])} torrents"

        reason = FAILURE_DESCRIPTIONS[self.failure]
        if self.status is not None:
            reason = f"{reason} ({self.status})"
        return f"Failed to connect to qBittorrent: {reason}"
