"""Operator reporting - queue and capacity aggregates for dashboards."""

from __future__ import annotations

from datetime import timedelta

from expert_connect.core import repository as repo
from expert_connect.core.clock import Clock, utc_now
from expert_connect.core.models import QueueOverview, RejectionReasonCount

TOP_REJECTION_REASONS = 10
NO_REASON = "(no reason)"

_WAIT_SECONDS = {
    "postgres": "EXTRACT(EPOCH FROM (assigned_at - created_at))",
    "sqlite": "(julianday(assigned_at) - julianday(created_at)) * 86400.0",
}


class QueueReporter:
    """Read-only aggregates. Never locks, never writes."""

    def __init__(self, db, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    async def queue_overview(self) -> QueueOverview:
        now = self.clock()
        day_ago = now - timedelta(days=1)
        week_ago = now - timedelta(days=7)
        wait_expr = _WAIT_SECONDS[self.db.dialect]

        async with self.db.transaction(readonly=True) as tx:
            requests = await tx.fetchrow(
                """
                SELECT
                    COUNT(*) FILTER (WHERE status = 'queued') AS queued_requests,
                    COUNT(*) FILTER (WHERE status = 'offered') AS offered_requests,
                    COUNT(*) FILTER (WHERE status = 'assigned') AS assigned_requests,
                    COUNT(*) FILTER (WHERE status = 'connected') AS connected_requests,
                    COUNT(*) FILTER (WHERE rejected_at IS NOT NULL) AS rejected_requests_total,
                    COUNT(*) FILTER (WHERE rejected_at >= $1) AS rejected_requests_24h,
                    COUNT(*) FILTER (WHERE rejected_at >= $2) AS rejected_requests_7d
                FROM connection_requests
                """,
                day_ago, week_ago,
            )

            experts = await tx.fetchrow(
                f"""
                SELECT
                    COUNT(*) AS total_experts,
                    COUNT(*) FILTER (WHERE ea.is_online = TRUE) AS online_experts,
                    COALESCE(SUM(ea.max_concurrent_clients)
                             FILTER (WHERE ea.is_online = TRUE), 0) AS total_capacity_online,
                    COALESCE(SUM(ea.current_active_clients)
                             FILTER (WHERE ea.is_online = TRUE), 0) AS active_load_online,
                    COALESCE(SUM(ea.current_active_clients), 0) AS active_load_all
                FROM users u
                LEFT JOIN expert_availability ea ON ea.expert_id = u.id
                WHERE {repo.EXPERT_ROLE_SQL}
                """
            )

            reasons = await tx.fetch(
                f"""
                SELECT
                    COALESCE(NULLIF(TRIM(rejected_reason), ''), '{NO_REASON}') AS reason,
                    COUNT(*) AS count
                FROM connection_requests
                WHERE rejected_at >= $1
                GROUP BY 1
                ORDER BY count DESC, reason ASC
                LIMIT $2
                """,
                week_ago, TOP_REJECTION_REASONS,
            )

            avg_wait = await tx.fetchval(
                f"""
                SELECT AVG({wait_expr})
                FROM connection_requests
                WHERE assigned_at IS NOT NULL
                  AND assigned_at >= $1
                """,
                week_ago,
            )

        data = {k: int(v or 0) for k, v in requests.items()}
        data.update({k: int(v or 0) for k, v in experts.items()})
        data["available_slots_online"] = max(
            data["total_capacity_online"] - data["active_load_online"], 0
        )
        data["top_rejection_reasons_7d"] = [
            RejectionReasonCount(reason=r["reason"], count=int(r["count"])) for r in reasons
        ]
        data["avg_assignment_wait_seconds"] = round(float(avg_wait)) if avg_wait is not None else None
        return QueueOverview(**data)
