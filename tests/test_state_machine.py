"""
Tests for the engine state machine.
"""

import pytest

from qbt_poller.state import VALID_TRANSITIONS, EngineState, EngineStateMachine


class TestEngineStateMachine:
    """Test state transitions."""

    def setup_method(self):
        """Set up test fixtures."""
        self.machine = EngineStateMachine()

    def test_initial_state_is_idle(self):
        """Test the default initial state."""
        assert self.machine.state is EngineState.IDLE
        assert self.machine.accepts_ticks is True
        assert self.machine.is_stopped is False

    @pytest.mark.parametrize(
        "source,target",
        [
            (source, target)
            for source, targets in VALID_TRANSITIONS.items()
            for target in targets
        ],
    )
    def test_allowed_transitions(self, source, target):
        """Test every transition listed in the table is accepted."""
        machine = EngineStateMachine(source)

        assert machine.transition(target) is True
        assert machine.state is target

    @pytest.mark.parametrize(
        "source,target",
        [
            (source, target)
            for source in EngineState
            for target in EngineState
            if target is not source and target not in VALID_TRANSITIONS[source]
        ],
    )
    def test_rejected_transitions(self, source, target):
        """Test transitions outside the table leave the state unchanged."""
        machine = EngineStateMachine(source)

        assert machine.transition(target) is False
        assert machine.state is source

    def test_paused_cannot_authenticate(self):
        """Test that a paused engine is not pulled into authentication."""
        self.machine.transition(EngineState.POLLING)
        self.machine.transition(EngineState.PAUSED)

        assert self.machine.transition(EngineState.AUTHENTICATING) is False
        assert self.machine.state is EngineState.PAUSED
        assert self.machine.accepts_ticks is False

    def test_stopped_is_terminal(self):
        """Test that nothing leaves STOPPED."""
        self.machine.transition(EngineState.STOPPED)

        for state in EngineState:
            if state is not EngineState.STOPPED:
                assert self.machine.transition(state) is False
        assert self.machine.is_stopped is True
        assert self.machine.accepts_ticks is False

    def test_self_transition_is_noop(self):
        """Test requesting the current state succeeds without change."""
        self.machine.transition(EngineState.POLLING)

        assert self.machine.transition(EngineState.POLLING) is True
        assert self.machine.state is EngineState.POLLING
        assert self.machine.can_transition(EngineState.POLLING) is True

    def test_can_transition_matches_table(self):
        """Test can_transition does not change the state."""
        assert self.machine.can_transition(EngineState.AUTHENTICATING) is True
        assert self.machine.can_transition(EngineState.PAUSED) is False
        assert self.machine.state is EngineState.IDLE
