"""Connection request lifecycle: legal transitions and status groups."""

from __future__ import annotations

from expert_connect.core.errors import Conflict
from expert_connect.core.models import RequestStatus


# ---------------------------------------------------------------------------
# Legal transition map
# ---------------------------------------------------------------------------

TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.QUEUED: {
        RequestStatus.OFFERED,
        RequestStatus.CANCELLED,
        RequestStatus.TIMED_OUT,
    },
    RequestStatus.OFFERED: {
        RequestStatus.QUEUED,  # reject or expiry
        RequestStatus.ASSIGNED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.ASSIGNED: {
        RequestStatus.CONNECTED,
        RequestStatus.COMPLETED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.CONNECTED: {
        RequestStatus.COMPLETED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.CANCELLED: set(),  # terminal
    RequestStatus.TIMED_OUT: set(),  # terminal
    RequestStatus.COMPLETED: set(),  # terminal
}

TERMINAL_STATES = frozenset({
    RequestStatus.CANCELLED,
    RequestStatus.TIMED_OUT,
    RequestStatus.COMPLETED,
})

# A client may hold at most one request in these states.
ACTIVE_STATES = frozenset({
    RequestStatus.QUEUED,
    RequestStatus.OFFERED,
    RequestStatus.ASSIGNED,
    RequestStatus.CONNECTED,
})

# States an expert is involved in, as seen from the expert's side.
EXPERT_ACTIVE_STATES = frozenset({
    RequestStatus.OFFERED,
    RequestStatus.ASSIGNED,
    RequestStatus.CONNECTED,
})

# States that hold one unit of expert load (current_active_clients).
LOAD_STATES = frozenset({
    RequestStatus.ASSIGNED,
    RequestStatus.CONNECTED,
})


def sql_in(states) -> str:
    """Render a status set as an SQL ``IN`` list (enum values only)."""
    return ", ".join(f"'{s.value}'" for s in sorted(states, key=lambda s: s.value))


def is_terminal(status: RequestStatus) -> bool:
    return status in TERMINAL_STATES


def validate_transition(current: RequestStatus, target: RequestStatus) -> None:
    """Raise Conflict if ``current -> target`` is not a legal move."""
    allowed = TRANSITIONS.get(current, set())
    if target not in allowed:
        raise Conflict(
            f"Illegal transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {sorted(s.value for s in allowed)}"
        )
