"""
copytrader Core: Safe-Sell Protocol

Sells a position's recorded quantity and, when the execution service
reports an insufficient balance, reconciles once against the ledger:

- ledger holds some of the asset: retry once with exactly that amount
- ledger holds none: the position is stale, close it as ``zero_balance``

Every closer (mirror sells, the price poller, liquidation) goes through
``close_position`` so the close guard is the single place where two
triggers for the same position meet.
"""

import asyncio
from decimal import Decimal
import logging

from core.context import BotContext
from core.exceptions import ExecutionFailed, InsufficientBalance
from core.position_state import Position
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

ZERO_BALANCE = "zero_balance"


class SafeSeller:

    def __init__(self, ctx: BotContext):
        self.ctx = ctx

    async def _sell(self, position: Position, quantity: Decimal) -> str:
        return await asyncio.to_thread(
            self.ctx.execution.sell, position.asset, quantity, position.venue
        )

    async def safe_sell(self, position: Position) -> bool:
        """
        Sell ``position.quantity`` with one balance-reconciliation retry.

        Returns:
            True if a sell transaction was accepted

        Raises:
            ExecutionFailed: First attempt failed for a reason other than balance
            LedgerUnavailable: Balance reconciliation could not read the ledger
        """
        try:
            signature = await self._sell(position, position.quantity)
            logger.info(f"Sold {position.quantity} {position.asset} ({signature})")
            return True
        except InsufficientBalance as e:
            logger.warning(
                f"Insufficient balance selling {position.quantity} {position.asset}: {e}; "
                f"checking ledger"
            )

        held = await asyncio.to_thread(self.ctx.ledger.get_token_balance, self.ctx.owner, position.asset)

        if held <= 0:
            logger.warning(f"Ledger shows no {position.asset}; closing {position.id} as {ZERO_BALANCE}")
            await self.ctx.registry.close(position.id, ZERO_BALANCE)
            self.ctx.metrics.record_position_closed(ZERO_BALANCE)
            self.ctx.metrics.record_sell_failure("zero_balance")
            return False

        logger.info(f"Retrying sell of {position.asset} with ledger quantity {held} (recorded {position.quantity})")
        try:
            signature = await self._sell(position, held)
        except ExecutionFailed as e:
            logger.error(f"Retry sell failed for {position.asset} ({position.id}): {e}")
            self.ctx.metrics.record_sell_failure("retry_failed")
            self.ctx.alerts.notify(
                AlertSeverity.CRITICAL,
                "Sell retry failed",
                f"Could not sell {held} {position.asset}; position left open",
                {"position_id": position.id, "asset": position.asset, "error": str(e)},
            )
            return False

        logger.info(f"Sold {held} {position.asset} on retry ({signature})")
        return True

    async def close_position(self, position: Position, reason: str) -> bool:
        """
        Guarded sell-then-close.

        Returns:
            True if this call sold and closed the position; False if another
            close was already in flight or the sell did not go through
        """
        guard = self.ctx.guard
        if not guard.try_acquire(position.id):
            logger.debug(f"Close already in flight for {position.id}; skipping {reason}")
            return False

        self.ctx.refresh_gauges()
        try:
            # Re-read under the guard; a previous holder may have closed it.
            current = self.ctx.registry.get(position.id)
            if current is None or not current.is_active():
                logger.debug(f"Position {position.id} no longer active; skipping {reason}")
                return False

            if not await self.safe_sell(current):
                return False

            await self.ctx.registry.close(current.id, reason)
            self.ctx.metrics.record_position_closed(reason)
            change = current.change_pct()
            logger.info(
                f"Closed {current.asset} ({current.id}) reason={reason} "
                f"entry={current.entry_price} last={current.current_price}"
                + (f" pnl={change:+.2f}%" if change is not None else "")
            )
            return True
        finally:
            guard.release(position.id)
            self.ctx.refresh_gauges()
