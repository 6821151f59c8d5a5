"""
Engine state machine for the qBittorrent poller.

The engine is always in exactly one state. Transitions outside the table
below are rejected and logged, which keeps a stopped engine stopped and a
paused engine from being pulled into authentication.
"""

from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class EngineState(str, Enum):
    """Operating mode of the polling engine."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    POLLING = "polling"
    PAUSED = "paused"
    ERROR = "error"
    STOPPED = "stopped"


VALID_TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.IDLE: frozenset(
        {EngineState.AUTHENTICATING, EngineState.POLLING, EngineState.STOPPED}
    ),
    EngineState.AUTHENTICATING: frozenset(
        {EngineState.POLLING, EngineState.ERROR, EngineState.STOPPED}
    ),
    EngineState.POLLING: frozenset(
        {
            EngineState.PAUSED,
            EngineState.ERROR,
            EngineState.STOPPED,
            EngineState.AUTHENTICATING,
        }
    ),
    EngineState.PAUSED: frozenset({EngineState.POLLING, EngineState.STOPPED}),
    EngineState.ERROR: frozenset(
        {EngineState.AUTHENTICATING, EngineState.POLLING, EngineState.STOPPED}
    ),
    EngineState.STOPPED: frozenset(),
}


class EngineStateMachine:
    """Holds the current engine state and enforces legal transitions."""

    def __init__(self, initial: EngineState = EngineState.IDLE) -> None:
        self._state = initial

    @property
    def state(self) -> EngineState:
        """Get the current state."""
        return self._state

    @property
    def accepts_ticks(self) -> bool:
        """Check if scheduled poll ticks should run."""
        return self._state not in (EngineState.PAUSED, EngineState.STOPPED)

    @property
    def is_stopped(self) -> bool:
        return self._state is EngineState.STOPPED

    def can_transition(self, new_state: EngineState) -> bool:
        """Check if a transition is allowed from the current state."""
        return new_state is self._state or new_state in VALID_TRANSITIONS[self._state]

    def transition(self, new_state: EngineState) -> bool:
        """
        Move to a new state if the transition table allows it.

        Requesting the current state is a no-op and succeeds.

        Args:
            new_state: Target state

        Returns:
            True if the engine is now in new_state
        """
        if new_state is self._state:
            return True

        if new_state not in VALID_TRANSITIONS[self._state]:
            logger.warning(
                "Invalid state transition",
                current=self._state.value,
                requested=new_state.value,
            )
            return False

        previous = self._state
        self._state = new_state
        logger.debug(
            "State transition", previous=previous.value, current=new_state.value
        )

        return True
