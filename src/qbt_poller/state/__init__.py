"""
State management for the qBittorrent poller.

This package provides the engine state machine that gates polling,
authentication and shutdown.
"""

from .machine import VALID_TRANSITIONS, EngineState, EngineStateMachine

__all__ = [
    "EngineState",
    "EngineStateMachine",
    "VALID_TRANSITIONS",
]
