"""Row-level reads and guarded writes shared by every component.

Every function takes an open transaction from ``Database.transaction()``.
Writes that move a request between states are guarded on the expected prior
status; a guard that matches no row raises Conflict.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from expert_connect.core.errors import Conflict
from expert_connect.core.models import (
    ConnectionRequest,
    ExpertAvailability,
    RequestStatus,
    UserSummary,
)
from expert_connect.state_machine import ACTIVE_STATES, EXPERT_ACTIVE_STATES, sql_in

logger = logging.getLogger(__name__)

EXPERT_ROLE_SQL = "LOWER(TRIM(COALESCE(u.role, ''))) = 'expert'"


def _row_to_request(row: dict[str, Any]) -> ConnectionRequest:
    return ConnectionRequest(**row)


def _row_to_availability(row: dict[str, Any]) -> ExpertAvailability:
    return ExpertAvailability(**row)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

async def get_user(tx, user_id: int) -> UserSummary | None:
    row = await tx.fetchrow(
        "SELECT id, role, display_name, email FROM users WHERE id = $1", user_id
    )
    return UserSummary(**row) if row else None


# ---------------------------------------------------------------------------
# Connection requests
# ---------------------------------------------------------------------------

async def get_request(tx, request_id: int, lock: bool = False) -> ConnectionRequest | None:
    query = "SELECT * FROM connection_requests WHERE id = $1"
    if lock:
        query += " FOR UPDATE"
    row = await tx.fetchrow(query, request_id)
    return _row_to_request(row) if row else None


async def get_active_request_for_client(tx, client_id: int) -> ConnectionRequest | None:
    row = await tx.fetchrow(
        f"""
        SELECT * FROM connection_requests
        WHERE client_id = $1 AND status IN ({sql_in(ACTIVE_STATES)})
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        client_id,
    )
    return _row_to_request(row) if row else None


async def get_active_request_for_expert(tx, expert_id: int) -> ConnectionRequest | None:
    row = await tx.fetchrow(
        f"""
        SELECT * FROM connection_requests
        WHERE expert_id = $1 AND status IN ({sql_in(EXPERT_ACTIVE_STATES)})
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        expert_id,
    )
    return _row_to_request(row) if row else None


async def insert_queued_request(tx, client_id: int, now: datetime) -> ConnectionRequest:
    row = await tx.fetchrow(
        """
        INSERT INTO connection_requests (client_id, status, created_at, updated_at)
        VALUES ($1, $2, $3, $3)
        RETURNING *
        """,
        client_id, RequestStatus.QUEUED, now,
    )
    return _row_to_request(row)


async def update_request(
    tx,
    request_id: int,
    expected: RequestStatus,
    now: datetime,
    **fields: Any,
) -> ConnectionRequest:
    """Update a request only if it is still in ``expected`` state."""
    fields["updated_at"] = now
    set_clauses = []
    values: list[Any] = []
    for i, (key, val) in enumerate(fields.items(), start=1):
        set_clauses.append(f"{key} = ${i}")
        values.append(val)

    n = len(values)
    query = (
        f"UPDATE connection_requests SET {', '.join(set_clauses)} "
        f"WHERE id = ${n + 1} AND status = ${n + 2} "
        f"RETURNING *"
    )
    values.append(request_id)
    values.append(expected)

    row = await tx.fetchrow(query, *values)
    if row is None:
        raise Conflict(f"Request {request_id} is no longer {expected.value}")
    return _row_to_request(row)


async def queue_position(tx, request_id: int) -> int | None:
    """1-based FIFO position of a queued request, None if it is not queued."""
    position = await tx.fetchval(
        """
        SELECT COUNT(*)
        FROM connection_requests q
        JOIN connection_requests cur ON cur.id = $1
        WHERE cur.status = 'queued'
          AND q.status = 'queued'
          AND (q.created_at, q.id) <= (cur.created_at, cur.id)
        """,
        request_id,
    )
    return int(position) if position else None


async def normalize_positions(tx, now: datetime, capacity: int, avg_session_seconds: int) -> int:
    """Recompute position and wait estimate for every queued row.

    Rows currently locked by another transaction are skipped; their figures
    are refreshed by that transaction's own recompute or the next one.
    Returns the number of rows changed.
    """
    rows = await tx.fetch(
        """
        WITH ordered AS (
            SELECT id, ROW_NUMBER() OVER (ORDER BY created_at, id) AS new_position
            FROM connection_requests
            WHERE status = 'queued'
        ),
        figures AS (
            SELECT
                id,
                new_position,
                CASE WHEN $1::int > 0
                     THEN ((new_position + $1::int - 1) / $1::int) * $2::int
                END AS new_wait
            FROM ordered
        ),
        lockable AS (
            SELECT id FROM connection_requests
            WHERE status = 'queued'
            FOR UPDATE SKIP LOCKED
        )
        UPDATE connection_requests
        SET position = f.new_position,
            estimated_wait_seconds = f.new_wait,
            updated_at = $3
        FROM figures AS f
        WHERE connection_requests.id = f.id
          AND f.id IN (SELECT id FROM lockable)
          AND (COALESCE(connection_requests.position, -1) <> f.new_position
               OR COALESCE(connection_requests.estimated_wait_seconds, -1) <> COALESCE(f.new_wait, -1))
        RETURNING connection_requests.id
        """,
        capacity, avg_session_seconds, now,
    )
    # Counted from RETURNING; sqlite3 reports no rowcount for WITH ... UPDATE.
    return len(rows)


# ---------------------------------------------------------------------------
# Expert availability
# ---------------------------------------------------------------------------

async def get_availability(tx, expert_id: int, lock: bool = False) -> ExpertAvailability | None:
    query = "SELECT * FROM expert_availability WHERE expert_id = $1"
    if lock:
        query += " FOR UPDATE"
    row = await tx.fetchrow(query, expert_id)
    return _row_to_availability(row) if row else None


async def ensure_provisioned(tx, now: datetime) -> int:
    """Insert a default row (online, capacity 1) for experts lacking one."""
    return await tx.execute(
        f"""
        INSERT INTO expert_availability (
            expert_id, is_online, max_concurrent_clients, current_active_clients,
            created_at, updated_at
        )
        SELECT u.id, TRUE, 1, 0, $1::timestamptz, $1::timestamptz
        FROM users u
        WHERE {EXPERT_ROLE_SQL}
          AND NOT EXISTS (SELECT 1 FROM expert_availability ea WHERE ea.expert_id = u.id)
        ON CONFLICT (expert_id) DO NOTHING
        """,
        now,
    )


async def free_capacity(tx, expert_id: int, now: datetime) -> int:
    """Slots left after current load and un-expired offers; 0 for a missing row."""
    free = await tx.fetchval(
        """
        SELECT ea.max_concurrent_clients - ea.current_active_clients - (
            SELECT COUNT(*) FROM connection_requests q
            WHERE q.expert_id = ea.expert_id
              AND q.status = 'offered'
              AND q.offer_expires_at > $2
        )
        FROM expert_availability ea
        WHERE ea.expert_id = $1
        """,
        expert_id, now,
    )
    return max(int(free or 0), 0)


async def total_online_capacity(tx) -> int:
    capacity = await tx.fetchval(
        f"""
        SELECT COALESCE(SUM(ea.max_concurrent_clients), 0)
        FROM expert_availability ea
        JOIN users u ON u.id = ea.expert_id
        WHERE {EXPERT_ROLE_SQL}
          AND ea.is_online = TRUE
        """
    )
    return int(capacity or 0)


async def increment_load(tx, expert_id: int, now: datetime) -> None:
    """Take one unit of capacity; also a fairness rotation event."""
    changed = await tx.execute(
        """
        UPDATE expert_availability
        SET current_active_clients = current_active_clients + 1,
            last_assigned_at = $2,
            updated_at = $2
        WHERE expert_id = $1
          AND current_active_clients < max_concurrent_clients
        """,
        expert_id, now,
    )
    if changed == 0:
        raise Conflict(f"Expert {expert_id} has no free slots")


async def decrement_load(tx, expert_id: int, now: datetime) -> None:
    changed = await tx.execute(
        """
        UPDATE expert_availability
        SET current_active_clients = current_active_clients - 1,
            updated_at = $2
        WHERE expert_id = $1
          AND current_active_clients > 0
        """,
        expert_id, now,
    )
    if changed == 0:
        logger.warning("decrement_load: no load to release for expert_id %s", expert_id)
