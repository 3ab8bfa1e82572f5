"""Tests for the request lifecycle transition map and status groups."""

from __future__ import annotations

import pytest

from expert_connect.core.errors import Conflict
from expert_connect.core.models import RequestStatus
from expert_connect.state_machine import (
    ACTIVE_STATES,
    LOAD_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    is_terminal,
    sql_in,
    validate_transition,
)


class TestTransitionRules:
    """Test the state transition map is correct."""

    def test_queued_can_be_offered(self):
        assert RequestStatus.OFFERED in TRANSITIONS[RequestStatus.QUEUED]

    def test_queued_cannot_be_assigned_directly(self):
        assert RequestStatus.ASSIGNED not in TRANSITIONS[RequestStatus.QUEUED]

    def test_offered_returns_to_queued(self):
        assert RequestStatus.QUEUED in TRANSITIONS[RequestStatus.OFFERED]

    def test_offered_to_assigned(self):
        assert RequestStatus.ASSIGNED in TRANSITIONS[RequestStatus.OFFERED]

    def test_offered_cannot_complete(self):
        assert RequestStatus.COMPLETED not in TRANSITIONS[RequestStatus.OFFERED]

    def test_assigned_to_connected_or_completed(self):
        assert RequestStatus.CONNECTED in TRANSITIONS[RequestStatus.ASSIGNED]
        assert RequestStatus.COMPLETED in TRANSITIONS[RequestStatus.ASSIGNED]

    def test_only_queued_times_out(self):
        sources = {s for s, targets in TRANSITIONS.items() if RequestStatus.TIMED_OUT in targets}
        assert sources == {RequestStatus.QUEUED}

    def test_every_active_state_can_cancel(self):
        for status in ACTIVE_STATES:
            assert RequestStatus.CANCELLED in TRANSITIONS[status]


class TestTerminalStates:
    """Terminal states have no outbound transitions."""

    def test_terminal_set(self):
        assert TERMINAL_STATES == {RequestStatus.CANCELLED, RequestStatus.TIMED_OUT, RequestStatus.COMPLETED}

    def test_no_outbound(self):
        for status in TERMINAL_STATES:
            assert len(TRANSITIONS[status]) == 0
            assert is_terminal(status)

    def test_active_and_terminal_partition_statuses(self):
        assert ACTIVE_STATES | TERMINAL_STATES == set(RequestStatus)
        assert not ACTIVE_STATES & TERMINAL_STATES

    def test_load_states_are_active(self):
        assert LOAD_STATES <= ACTIVE_STATES


class TestValidateTransition:
    def test_legal_move_passes(self):
        validate_transition(RequestStatus.ASSIGNED, RequestStatus.CONNECTED)

    def test_illegal_move_raises_conflict(self):
        with pytest.raises(Conflict, match="queued -> completed"):
            validate_transition(RequestStatus.QUEUED, RequestStatus.COMPLETED)

    def test_terminal_cannot_move(self):
        with pytest.raises(Conflict):
            validate_transition(RequestStatus.COMPLETED, RequestStatus.CANCELLED)


class TestSqlIn:
    def test_sorted_quoted_values(self):
        assert sql_in(LOAD_STATES) == "'assigned', 'connected'"
