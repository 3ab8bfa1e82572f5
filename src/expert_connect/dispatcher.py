"""Matching dispatcher - pairs queued requests with eligible experts.

Each dispatch attempt is one short transaction that skip-locks the oldest
queued request and the least-recently-assigned eligible expert, then turns
the pair into a time-boxed offer. Any number of workers may run attempts
concurrently: a row held by one worker is skipped by the others, so no
request is offered twice and no expert is offered beyond its free capacity.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from expert_connect.core import repository as repo
from expert_connect.core.clock import Clock, utc_now
from expert_connect.core.config import Settings
from expert_connect.core.models import (
    BatchResult,
    DispatchAttempt,
    DispatchOutcome,
    Notification,
    RequestStatus,
    SweepResult,
)
from expert_connect.notifier import Notifier, deliver
from expert_connect.queue import ConnectionQueue

logger = logging.getLogger(__name__)


_LOCK_QUEUE_HEAD = """
    SELECT * FROM connection_requests
    WHERE status = 'queued'
    ORDER BY created_at ASC, id ASC
    LIMIT 1
    FOR UPDATE SKIP LOCKED
"""

# An un-expired offer counts against capacity before it is accepted.
# $2 is the requesting client, who is never offered their own request.
_LOCK_ELIGIBLE_EXPERT = f"""
    SELECT ea.*
    FROM expert_availability ea
    WHERE ea.is_online = TRUE
      AND ea.expert_id <> $2
      AND EXISTS (
          SELECT 1 FROM users u
          WHERE u.id = ea.expert_id AND {repo.EXPERT_ROLE_SQL}
      )
      AND ea.current_active_clients + (
          SELECT COUNT(*) FROM connection_requests q
          WHERE q.expert_id = ea.expert_id
            AND q.status = 'offered'
            AND q.offer_expires_at > $1
      ) < ea.max_concurrent_clients
    ORDER BY ea.last_assigned_at ASC NULLS FIRST, ea.expert_id ASC
    LIMIT 1
    FOR UPDATE SKIP LOCKED
"""


class MatchingDispatcher:
    """Runs dispatch attempts, batches, and the offer expiry sweeps."""

    def __init__(
        self,
        db,
        queue: ConnectionQueue,
        notifier: Notifier,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.queue = queue
        self.notifier = notifier
        self.settings = settings or Settings()
        self.clock = clock

    async def dispatch_once(self) -> DispatchAttempt:
        """Offer the oldest queued request to one eligible expert."""
        now = self.clock()
        async with self.db.transaction() as tx:
            await repo.ensure_provisioned(tx, now)

            head = await tx.fetchrow(_LOCK_QUEUE_HEAD)
            if head is None:
                return DispatchAttempt(outcome=DispatchOutcome.QUEUE_EMPTY)
            request_id = head["id"]

            expert = await tx.fetchrow(_LOCK_ELIGIBLE_EXPERT, now, head["client_id"])
            if expert is None:
                await self.queue.refresh(tx, now)
                return DispatchAttempt(
                    outcome=DispatchOutcome.NO_EXPERT_AVAILABLE,
                    request_id=request_id,
                )
            expert_id = expert["expert_id"]

            # The filter may have read a snapshot older than the row lock;
            # recount load and live offers in a fresh statement.
            if await repo.free_capacity(tx, expert_id, now) < 1:
                logger.info(
                    "Expert %s filled up while request %s was being matched",
                    expert_id, request_id,
                )
                await self.queue.refresh(tx, now)
                return DispatchAttempt(
                    outcome=DispatchOutcome.NO_EXPERT_AVAILABLE,
                    request_id=request_id,
                )

            offered = await repo.update_request(
                tx, request_id, RequestStatus.QUEUED, now,
                status=RequestStatus.OFFERED,
                expert_id=expert_id,
                position=None,
                estimated_wait_seconds=0,
                offered_at=now,
                offer_expires_at=now + timedelta(seconds=self.settings.offer_ttl_seconds),
            )
            # An offer is a fairness rotation event, not only an acceptance.
            await tx.execute(
                """
                UPDATE expert_availability
                SET last_assigned_at = $2, updated_at = $2
                WHERE expert_id = $1
                """,
                expert_id, now,
            )
            await self.queue.refresh(tx, now)

        logger.info(
            "Offered request %s to expert %s (expires %s)",
            request_id, expert_id, offered.offer_expires_at,
        )
        await deliver(
            self.notifier,
            expert_id,
            Notification(
                title="New client request",
                body="You have a new request. Tap to accept.",
                data={
                    "type": "expert_connect_offer_created",
                    "expert_connect_request_id": request_id,
                    "client_user_id": offered.client_id,
                    "expert_user_id": expert_id,
                    "offer_expires_at": offered.offer_expires_at.isoformat(),
                },
            ),
            "expert_connect.offer.created",
        )
        return DispatchAttempt(
            outcome=DispatchOutcome.OFFERED,
            request_id=request_id,
            expert_id=expert_id,
            offer_expires_at=offered.offer_expires_at,
        )

    async def dispatch_batch(self, max_attempts: int | None = None) -> BatchResult:
        """Run attempts until the limit, an empty queue, or an expert shortage."""
        limit = max_attempts if max_attempts is not None else self.settings.dispatch_batch
        result = BatchResult()
        for _ in range(limit):
            attempt = await self.dispatch_once()
            result.attempts += 1
            if attempt.offered:
                result.offered_count += 1
                continue
            # The shortage is global; retrying it in this cycle gains nothing.
            result.stopped_by = attempt.outcome
            break
        return result

    async def expire_offers(self, limit: int | None = None) -> SweepResult:
        """Return lapsed offers to the queue at their original FIFO place."""
        limit = limit if limit is not None else self.settings.expire_batch
        now = self.clock()
        async with self.db.transaction() as tx:
            rows = await tx.fetch(
                """
                UPDATE connection_requests
                SET status = 'queued',
                    expert_id = NULL,
                    offered_at = NULL,
                    offer_expires_at = NULL,
                    updated_at = $2
                WHERE id IN (
                    SELECT id FROM connection_requests
                    WHERE status = 'offered'
                      AND offer_expires_at < $2
                    ORDER BY offer_expires_at ASC, id ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id
                """,
                limit, now,
            )
            if rows:
                await self.queue.refresh(tx, now)

        ids = sorted(r["id"] for r in rows)
        if ids:
            logger.info("Expired %d offer(s): %s", len(ids), ids)
        return SweepResult(count=len(ids), request_ids=ids)

    async def expire_stale_requests(self, limit: int | None = None) -> SweepResult:
        """Give up on requests queued longer than ``queue_timeout_seconds``."""
        timeout = self.settings.queue_timeout_seconds
        if timeout <= 0:
            return SweepResult()
        limit = limit if limit is not None else self.settings.expire_batch
        now = self.clock()
        cutoff = now - timedelta(seconds=timeout)
        async with self.db.transaction() as tx:
            rows = await tx.fetch(
                """
                UPDATE connection_requests
                SET status = 'timed_out',
                    position = NULL,
                    estimated_wait_seconds = NULL,
                    timed_out_at = $3,
                    updated_at = $3
                WHERE id IN (
                    SELECT id FROM connection_requests
                    WHERE status = 'queued'
                      AND created_at < $2
                    ORDER BY created_at ASC, id ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, client_id
                """,
                limit, cutoff, now,
            )
            if rows:
                await self.queue.refresh(tx, now)

        for row in rows:
            await deliver(
                self.notifier,
                row["client_id"],
                Notification(
                    title="No expert available",
                    body="No expert could take your request in time. Please try again later.",
                    data={
                        "type": "expert_connect_request_timed_out",
                        "expert_connect_request_id": row["id"],
                        "client_user_id": row["client_id"],
                    },
                ),
                "expert_connect.request.timed_out",
            )
        ids = sorted(r["id"] for r in rows)
        if ids:
            logger.info("Timed out %d queued request(s): %s", len(ids), ids)
        return SweepResult(count=len(ids), request_ids=ids)
