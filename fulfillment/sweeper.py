"""
Seat Fulfillment — Sweeper Scheduler

Periodically reconciles paid orders with their fulfillment state:

    start() ──initial_delay──► run_once() ──interval──► run_once() ...

Each cycle loads a batch of pending orders and hands them to a bounded
pool of asyncio workers sharing one queue. Every order is fulfilled
while holding its credit/uid/account locks, after re-reading it from the
store so a stale batch snapshot is never acted on.

A cycle that starts while another is still running returns immediately
with ``skipped_reason="already_running"``. A disabled feature flag makes
the cycle a no-op (``skipped_reason="feature_disabled"``).

Usage:
    sweeper = Sweeper(store, fulfiller, LockManager(), flags, settings, notifier)
    stop = sweeper.start()
    ...
    await stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

from fulfillment.alerts import AlertNotifier
from fulfillment.config import SweeperSettings
from fulfillment.flags import FeatureFlags
from fulfillment.locks import LockManager, lock_keys_for
from fulfillment.logging import log_event
from fulfillment.state_machine import OrderFulfiller
from fulfillment.store import OrderStore
from fulfillment.types import FulfillmentOutcome, FulfillmentStatus, Order

logger = logging.getLogger("seat_fulfillment.sweeper")

Disposer = Callable[[], Awaitable[None]]


@dataclass
class SweepReport:
    """Counters for one sweep cycle."""
    skipped_reason: str = ""
    loaded: int = 0
    processed: int = 0
    fulfilled: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: float = 0.0

    def record(self, outcome: FulfillmentOutcome):
        if outcome.skipped:
            self.skipped += 1
            return
        self.processed += 1
        if outcome.status == FulfillmentStatus.FULFILLED:
            self.fulfilled += 1
        elif outcome.status == FulfillmentStatus.RETRYING:
            self.retrying += 1
        elif outcome.status == FulfillmentStatus.FAILED:
            self.failed += 1

    def to_dict(self) -> dict:
        return asdict(self)


async def _noop() -> None:
    return None


class Sweeper:
    def __init__(
        self,
        store: OrderStore,
        fulfiller: OrderFulfiller,
        locks: LockManager,
        flags: FeatureFlags,
        settings: SweeperSettings,
        notifier: AlertNotifier | None = None,
    ):
        self.store = store
        self.fulfiller = fulfiller
        self.locks = locks
        self.flags = flags
        self.settings = settings
        self.notifier = notifier or fulfiller.notifier
        self._slot = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._manual: set[asyncio.Task] = set()
        self.last_report: SweepReport | None = None

    @property
    def state(self) -> str:
        return "running" if self._slot.locked() else "idle"

    # ── Scheduling ───────────────────────────────────────────────

    def start(self) -> Disposer:
        """Schedule the periodic sweep; returns an async disposer."""
        if not self.settings.enabled:
            logger.info("Order sweeper disabled by config")
            return _noop
        if self._timer is not None and not self._timer.done():
            raise RuntimeError("sweeper already started")

        self._timer = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            "Order sweeper started (initial_delay=%ds, interval=%ds, concurrency=%d, batch=%d)",
            self.settings.initial_delay_seconds, self.settings.interval_seconds,
            self.settings.concurrency, self.settings.batch_size,
        )
        return self.stop

    async def _loop(self):
        await asyncio.sleep(self.settings.initial_delay_seconds)
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep cycle failed")
            await asyncio.sleep(self.settings.interval_seconds)

    async def stop(self) -> None:
        """Cancel the timer and wait for an in-flight cycle to finish."""
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            # Never cancel mid-cycle: wait for the slot, then cancel the sleep.
            async with self._slot:
                timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        if self._manual:
            await asyncio.gather(*list(self._manual), return_exceptions=True)
        logger.info("Order sweeper stopped")

    def trigger(self) -> asyncio.Task:
        """Run one out-of-band cycle now."""
        task = asyncio.get_running_loop().create_task(self.run_once())
        self._manual.add(task)
        task.add_done_callback(self._manual.discard)
        return task

    # ── One cycle ────────────────────────────────────────────────

    async def run_once(self) -> SweepReport:
        if self._slot.locked():
            logger.debug("Sweep skipped: previous cycle still running")
            return SweepReport(skipped_reason="already_running")

        async with self._slot:
            if not self.flags.is_enabled(self.settings.feature_flag):
                logger.debug("Sweep skipped: feature '%s' disabled", self.settings.feature_flag)
                return SweepReport(skipped_reason="feature_disabled")

            t0 = time.monotonic()
            report = SweepReport()
            try:
                orders = self.store.load_pending_orders(self.settings.batch_size)
                report.loaded = len(orders)
                if orders:
                    await self._process(orders, report)
            finally:
                await self.notifier.drain()
                report.duration_ms = round((time.monotonic() - t0) * 1000, 1)
                self.last_report = report

            if report.loaded:
                log_event(logger, logging.INFO, "Sweep cycle complete", **report.to_dict())
            return report

    async def _process(self, orders: list[Order], report: SweepReport):
        queue: asyncio.Queue[Order] = asyncio.Queue()
        for order in orders:
            queue.put_nowait(order)

        async def worker():
            while True:
                try:
                    order = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    outcome = await self.locks.with_locks(
                        lock_keys_for(order), lambda: self._fulfill_latest(order),
                    )
                    if outcome is not None:
                        report.record(outcome)
                    else:
                        report.skipped += 1
                except Exception as e:
                    report.errors += 1
                    logger.exception("Order %s failed unexpectedly: %s", order.order_no, e)
                finally:
                    queue.task_done()

        workers = max(1, min(self.settings.concurrency, len(orders)))
        await asyncio.gather(*(worker() for _ in range(workers)))

    async def _fulfill_latest(self, order: Order) -> FulfillmentOutcome | None:
        latest = self.store.load_order(order.order_no)
        if latest is None:
            logger.warning("Order %s vanished before processing", order.order_no)
            return None
        return await self.fulfiller.fulfill(latest)
