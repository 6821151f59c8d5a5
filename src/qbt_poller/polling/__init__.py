"""
Polling system for the qBittorrent poller.

This package contains the timer-driven scheduler, the backoff policy and the
poll outcome types.
"""

from .backoff import compute_backoff_interval
from .outcomes import FailureKind, PollOutcome, TorrentInfo
from .scheduler import PollScheduler

__all__ = [
    "FailureKind",
    "PollOutcome",
    "PollScheduler",
    "TorrentInfo",
    "compute_backoff_interval",
]
