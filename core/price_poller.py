"""
copytrader Core: Price Polling Scheduler

Every ``interval_seconds`` a tick is spawned that prices each active
position, persists the new price/peak/trailing state and closes positions
whose exit rule fired. Ticks are not awaited by the scheduler, so a slow
tick can overlap the next one. Each re-price is an atomic read-evaluate-write
on the registry and the close guard keeps sells single-flight.
"""

import asyncio
import time
from typing import Optional, Set
import logging

from core.context import BotContext
from core.exceptions import CriticalDataUnavailable, ExecutionFailed, RepositoryInconsistency
from core.position_manager import evaluate
from core.position_state import Position
from core.safe_sell import SafeSeller
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


class PricePoller:

    def __init__(self, ctx: BotContext, seller: SafeSeller, interval_seconds: Optional[float] = None):
        self.ctx = ctx
        self.seller = seller
        self.interval = interval_seconds or ctx.config.polling.interval_seconds
        self._ticks: Set[asyncio.Task] = set()

    async def tick(self) -> int:
        """
        Check every active, unguarded position once.

        Returns:
            Number of positions closed by this tick
        """
        started = time.monotonic()
        positions = [p for p in self.ctx.registry.list_active() if not self.ctx.guard.is_held(p.id)]
        if not positions:
            return 0

        results = await asyncio.gather(
            *(self._check_position(p) for p in positions),
            return_exceptions=True,
        )

        closed = 0
        for position, result in zip(positions, results):
            if isinstance(result, RepositoryInconsistency):
                logger.critical(f"Repository inconsistency for {position.id}: {result}")
                self.ctx.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Position repository inconsistency",
                    str(result),
                    {"position_id": position.id, "asset": position.asset},
                )
            elif isinstance(result, BaseException):
                logger.error(f"Price check failed for {position.asset} ({position.id}): {result}")
            elif result:
                closed += 1

        elapsed = time.monotonic() - started
        self.ctx.metrics.observe_tick(elapsed)
        self.ctx.refresh_gauges()
        logger.debug(f"Tick checked {len(positions)} position(s) in {elapsed:.2f}s, closed {closed}")
        return closed

    async def _check_position(self, position: Position) -> bool:
        try:
            quote = await asyncio.to_thread(self.ctx.oracle.get_price, position.asset)
        except CriticalDataUnavailable as e:
            logger.warning(f"No price for {position.asset} this tick: {e.original or e}")
            return False

        def reprice(current: Position):
            evaluation = evaluate(current, quote.price_sol)
            return evaluation.changes_for(current), evaluation

        # Re-evaluated on the latest indexed record under the write lock.
        updated, evaluation = await self.ctx.registry.apply(position.id, reprice)
        if updated is None:
            return False

        if evaluation.change_pct is not None:
            logger.info(
                f"{position.asset}: price={quote.price_sol} SOL change={evaluation.change_pct:+.2f}% "
                f"peak={evaluation.highest_price}"
            )

        if not evaluation.should_exit:
            return False

        reason = evaluation.decision.value
        logger.info(f"{reason} triggered for {position.asset} ({position.id})")
        try:
            return await self.seller.close_position(updated, reason)
        except ExecutionFailed as e:
            logger.error(f"Sell for {reason} on {position.asset} failed: {e}")
            self.ctx.metrics.record_sell_failure("execution")
            return False

    def spawn_tick(self) -> asyncio.Task:
        task = asyncio.create_task(self.tick(), name="price-tick")
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    async def run(self, stop_event: asyncio.Event) -> None:
        """Spawn a tick every interval until ``stop_event`` is set."""
        logger.info(f"Price polling every {self.interval}s")
        while not stop_event.is_set():
            self.spawn_tick()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
        await self.wait_idle()
        logger.info("Price polling stopped")

    async def wait_idle(self) -> None:
        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)
