"""Dispatch worker - the control loop that drives expiry and matching.

Two triggers feed one cycle runner: wake signals published by the service
(new request, capacity change, reject, cancel) and a fixed interval tick.
Only one cycle runs at a time per process; triggers that arrive while a
cycle is running collapse into a single follow-up run. Several worker
processes may run against the same database.

Usage:
    expert-connect-worker                    # via pyproject.toml entrypoint
    python -m expert_connect.worker          # direct
"""

from __future__ import annotations

import asyncio
import logging
import signal

from expert_connect.core.config import Settings
from expert_connect.core.models import CycleResult
from expert_connect.service import ExpertConnectService

logger = logging.getLogger(__name__)


class DispatchWorker:
    def __init__(self, service: ExpertConnectService | None = None, settings: Settings | None = None):
        self.settings = settings or (service.settings if service else Settings())
        self.service = service or ExpertConnectService.from_settings(self.settings)
        self._running = False
        self._cycle_running = False
        self._rerun_requested = False
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self.cycles_run = 0

    async def run_cycle(self, trigger: str) -> CycleResult:
        """One pass: expire lapsed offers, time out stale requests, dispatch."""
        expired = await self.service.dispatcher.expire_offers()
        timed_out = await self.service.dispatcher.expire_stale_requests()
        dispatched = await self.service.dispatcher.dispatch_batch()
        self.cycles_run += 1

        if expired.count or timed_out.count or dispatched.offered_count:
            logger.info(
                "Cycle (%s): expired=%d timed_out=%d offered=%d stopped_by=%s",
                trigger, expired.count, timed_out.count,
                dispatched.offered_count, dispatched.stopped_by,
            )
        return CycleResult(trigger=trigger, expired=expired, timed_out=timed_out, dispatched=dispatched)

    async def request_cycle(self, trigger: str) -> None:
        """Run a cycle now, or mark one to run after the current cycle."""
        if self._cycle_running:
            self._rerun_requested = True
            return

        self._cycle_running = True
        try:
            while True:
                self._rerun_requested = False
                try:
                    await self.run_cycle(trigger)
                except Exception:
                    logger.exception("Dispatch cycle error (%s)", trigger)
                if not self._rerun_requested:
                    break
                trigger = "rerun"
        finally:
            self._cycle_running = False

    def on_wake(self) -> None:
        """Wake handler; schedules a cycle without blocking the publisher."""
        task = asyncio.get_running_loop().create_task(self.request_cycle("wake"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for wake-triggered cycles scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def start(self) -> None:
        """Connect, subscribe to wakes, and tick until stopped."""
        await self.service.connect()
        await self.service.wake.subscribe(self.on_wake)
        self._running = True
        logger.info(
            "Dispatch worker started (%s backend, interval %.1fs, batch %d)",
            self.service.db.dialect,
            self.settings.dispatch_interval_seconds,
            self.settings.dispatch_batch,
        )

        await self.request_cycle("startup")
        while self._running:
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.settings.dispatch_interval_seconds,
                )
            except asyncio.TimeoutError:
                await self.request_cycle("interval")

    def stop(self) -> None:
        """Ask the loop to exit after the current tick."""
        self._running = False
        self._stop_event.set()

    async def close(self) -> None:
        """Graceful shutdown: unsubscribe, finish in-flight cycles, disconnect."""
        self.stop()
        await self.service.wake.unsubscribe(self.on_wake)
        await self.drain()
        await self.service.close()
        logger.info("Dispatch worker stopped")


async def _run() -> None:
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    worker = DispatchWorker(settings=settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            pass  # Windows

    try:
        await worker.start()
    finally:
        await worker.close()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
