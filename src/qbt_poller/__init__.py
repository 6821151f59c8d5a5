"""
qBittorrent Poller

A session-managed polling engine for the qBittorrent Web API: keeps an
authenticated session, polls the torrent list with backoff and recovery, and
forwards start/pause commands.
"""

__version__ = "0.1.0"

from .channel import QueueChannel
from .config import NormalizedConfig, Settings, normalize_config, validate_config
from .engine import PollingEngine
from .exceptions import QBPollerError
from .state import EngineState

__all__ = [
    "EngineState",
    "NormalizedConfig",
    "PollingEngine",
    "QBPollerError",
    "QueueChannel",
    "Settings",
    "normalize_config",
    "validate_config",
]
