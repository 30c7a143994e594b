"""
Tests for the per-provider sync state machine.
"""

import pytest

from core import InvalidSyncTransition
from sync import state


class TestTransitions:
    @pytest.mark.parametrize("current,target", [
        (state.UNSYNCED, state.PUSHING),
        (state.PUSHING, state.SYNCED),
        (state.PUSHING, state.ERROR),
        (state.ERROR, state.PUSHING),
        (state.SYNCED, state.PULLING_UPDATE),
        (state.PULLING_UPDATE, state.SYNCED),
        (state.SYNCED, state.PUSHING),
    ])
    def test_allowed(self, current, target):
        assert state.transition(current, target) == target

    @pytest.mark.parametrize("current,target", [
        (state.UNSYNCED, state.SYNCED),
        (state.ERROR, state.SYNCED),
        (state.PULLING_UPDATE, state.ERROR),
        (state.SYNCED, state.UNSYNCED),
        ("bogus", state.PUSHING),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(InvalidSyncTransition) as exc_info:
            state.transition(current, target)

        assert exc_info.value.context == {"current": current, "target": target}

    def test_transient_states_are_not_persisted(self):
        assert state.PUSHING not in state.PERSISTED_STATES
        assert state.PULLING_UPDATE not in state.PERSISTED_STATES
        assert state.PERSISTED_STATES == {"unsynced", "synced", "error"}
