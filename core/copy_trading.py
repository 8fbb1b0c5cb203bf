"""
copytrader Core: Trade Event Classification and Mirroring

Each watched-wallet notification becomes one asyncio task:

    classify → BUY  → venue → multi-buy policy → buy → confirm → ledger + oracle → registry
             → SELL → active EXACT position? → guarded safe-sell → close
             → IGNORE

Handlers never raise into the feed; failures are logged (and alerted where
an operator must act) and the notification is dropped.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Set
import logging

from core.context import BotContext
from core.exceptions import (
    ConfirmationTimeout,
    CriticalDataUnavailable,
    ExecutionFailed,
    OracleUnavailable,
    RepositoryInconsistency,
)
from core.position_state import Position, TradeMode
from core.safe_sell import SafeSeller
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

MIRROR_SELL = "mirror_sell"
CONFIRMED_STATUSES = ("confirmed", "finalized")


class TradeAction(Enum):
    BUY = "buy"
    SELL = "sell"
    IGNORE = "ignore"


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


@dataclass(frozen=True)
class TradeEvent:
    """One decoded watched-wallet trade notification."""
    signature: str
    asset: str
    direction: str
    sol_delta: Decimal
    asset_delta: Decimal
    venue_hints: List[str] = field(default_factory=list)
    price_sol: Optional[Decimal] = None
    signer: Optional[str] = None

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "TradeEvent":
        """
        Decode a feed message.

        Raises:
            ValueError: If the mint, direction or amounts are missing or unparseable
        """
        asset = msg.get("ca")
        if not asset:
            raise ValueError("trade message has no mint (ca)")
        sol_delta = _decimal(msg.get("solAmount"))
        asset_delta = _decimal(msg.get("tokenAmount"))
        if sol_delta is None or asset_delta is None:
            raise ValueError(f"trade message for {asset} has unparseable amounts")

        hints = msg.get("dexs") or []
        if isinstance(hints, str):
            hints = [hints]

        return cls(
            signature=str(msg.get("signature") or ""),
            asset=asset,
            direction=str(msg.get("trade") or "").lower(),
            sol_delta=sol_delta,
            asset_delta=asset_delta,
            venue_hints=[str(h) for h in hints],
            price_sol=_decimal(msg.get("priceInSol")),
            signer=msg.get("signer"),
        )


def classify(event: TradeEvent) -> TradeAction:
    """BUY: spent SOL on a buy. SELL: gave up tokens on a sell. Anything else is ignored."""
    if event.direction == "buy" and event.sol_delta < 0:
        return TradeAction.BUY
    if event.direction == "sell" and event.asset_delta < 0:
        return TradeAction.SELL
    return TradeAction.IGNORE


class CopyTrader:
    """
    Mirrors the watched wallet's trades onto the controlled wallet.

    Responsibilities:
    - Drop duplicate deliveries by signature
    - Dispatch one task per notification and track it until done
    - Serialize buys per asset so quick repeats cannot double-buy
    """

    def __init__(self, ctx: BotContext, seller: SafeSeller, dedupe_window: int = 1000):
        self.ctx = ctx
        self.seller = seller
        self.dedupe_window = dedupe_window
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def _is_duplicate(self, signature: str) -> bool:
        if not signature:
            return False
        if signature in self._seen:
            return True
        self._seen[signature] = None
        while len(self._seen) > self.dedupe_window:
            self._seen.popitem(last=False)
        return False

    def submit(self, event: TradeEvent) -> Optional[asyncio.Task]:
        """Schedule ``event`` for handling; returns the task, or None for duplicates."""
        if self._is_duplicate(event.signature):
            logger.info(f"Duplicate notification {event.signature} dropped")
            self.ctx.metrics.record_event("duplicate")
            return None

        task = asyncio.create_task(self.handle_event(event), name=f"trade-{event.signature[:12]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight notification tasks to finish."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info(f"Waiting for {len(pending)} in-flight notification(s)")
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning(f"{len(still_pending)} notification task(s) still running after {timeout}s")

    async def handle_event(self, event: TradeEvent) -> None:
        action = classify(event)
        self.ctx.metrics.record_event(action.value)
        logger.info(
            f"Watched wallet {event.direction or '?'} {event.asset} "
            f"sol={event.sol_delta} tokens={event.asset_delta} ({event.signature}) → {action.value}"
        )

        try:
            if action == TradeAction.BUY:
                await self._mirror_buy(event)
            elif action == TradeAction.SELL:
                await self._mirror_sell(event)
        except RepositoryInconsistency as e:
            logger.critical(f"Repository inconsistency handling {event.signature}: {e}")
            self.ctx.alerts.notify(
                AlertSeverity.CRITICAL,
                "Position repository inconsistency",
                str(e),
                {"signature": event.signature, "asset": event.asset, "operation": e.operation},
            )
        except ConfirmationTimeout as e:
            logger.error(f"Buy for {event.asset} not confirmed; position not recorded: {e}")
            self.ctx.alerts.notify(
                AlertSeverity.CRITICAL,
                "Buy confirmation timeout",
                f"{e}. SOL may have been spent on {event.asset} without a tracked position",
                {"tx_ref": e.tx_ref, "asset": event.asset, "signature": event.signature},
            )
        except ExecutionFailed as e:
            logger.error(f"Execution failed mirroring {action.value} of {event.asset}: {e}")
            if action == TradeAction.SELL:
                self.ctx.metrics.record_sell_failure("execution")
        except CriticalDataUnavailable as e:
            logger.error(f"{e.source} unavailable mirroring {action.value} of {event.asset}: {e.original or e}")
        except Exception as e:
            logger.exception(f"Unexpected error handling {event.signature}: {e}")
        finally:
            self.ctx.refresh_gauges()

    async def _mirror_buy(self, event: TradeEvent) -> Optional[Position]:
        trading = self.ctx.config.trading
        venue, used_fallback = self.ctx.venues.resolve_or_fallback(event.venue_hints)
        if used_fallback:
            logger.warning(f"Could not map venue for {event.signature}; defaulting to {venue}")

        async with self.ctx.asset_locks.hold(event.asset):
            existing = self.ctx.registry.find_active_by_asset(event.asset)
            if existing is not None and not trading.enable_multi_buy:
                logger.info(f"Multi-buy disabled and {event.asset} already held ({existing.id}); skipping buy")
                return None

            if trading.trade_mode == TradeMode.EXACT:
                spend = abs(event.sol_delta)
            else:
                spend = trading.buy_amount_sol

            logger.info(
                f"Mirroring BUY of {event.asset}: watched spent {abs(event.sol_delta)} SOL, "
                f"buying {spend} SOL on {venue}"
            )
            signature = await asyncio.to_thread(self.ctx.execution.buy, event.asset, spend, venue)
            await self._await_confirmation(signature)

            quantity = await asyncio.to_thread(
                self.ctx.ledger.get_token_balance, self.ctx.owner, event.asset
            )
            if quantity <= 0:
                logger.error(f"Buy {signature} confirmed but ledger shows no {event.asset}; not recording")
                self.ctx.alerts.notify(
                    AlertSeverity.WARNING,
                    "Confirmed buy with empty balance",
                    f"{signature} left no {event.asset} in the wallet",
                    {"asset": event.asset, "tx_ref": signature},
                )
                return None

            if existing is not None:
                updated = await self.ctx.registry.update(
                    existing.id,
                    quantity=quantity,
                    buy_amount=existing.buy_amount + spend,
                )
                if updated is not None:
                    logger.info(f"Multi-buy: {existing.id} ({event.asset}) quantity now {quantity}")
                    return updated
                # Closed while we were buying; record the new holding as its own position.

            entry_price = await self._entry_price(event, spend, quantity)
            position = await self.ctx.registry.create(
                asset=event.asset,
                venue=venue,
                trade_mode=trading.trade_mode,
                quantity=quantity,
                entry_price=entry_price,
                buy_amount=spend,
                origin_signature=event.signature,
                stop_loss_pct=trading.stop_loss_pct if trading.trade_mode == TradeMode.SAFE else None,
                take_profit_pct=trading.take_profit_pct if trading.trade_mode == TradeMode.SAFE else None,
                trailing=trading.trailing_stop.build() if trading.trade_mode == TradeMode.SAFE else None,
            )
            self.ctx.metrics.record_position_opened(trading.trade_mode.value)
            return position

    async def _await_confirmation(self, signature: str) -> None:
        """
        Poll the ledger until ``signature`` is confirmed.

        Raises:
            ConfirmationTimeout: Not confirmed within the configured window
            ExecutionFailed: Transaction landed with an error
        """
        trading = self.ctx.config.trading
        timeout = trading.confirmation_timeout_seconds
        interval = trading.confirmation_poll_seconds

        async def poll() -> None:
            while True:
                try:
                    status = await asyncio.to_thread(self.ctx.ledger.get_signature_status, signature)
                except CriticalDataUnavailable as e:
                    logger.debug(f"Status check for {signature} failed: {e}; retrying")
                    status = None
                if status in CONFIRMED_STATUSES:
                    return
                await asyncio.sleep(interval)

        logger.info(f"Waiting up to {timeout:.0f}s for {signature} to confirm")
        try:
            await asyncio.wait_for(poll(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ConfirmationTimeout(signature, timeout)

    async def _entry_price(self, event: TradeEvent, spend: Decimal, quantity: Decimal) -> Decimal:
        try:
            quote = await asyncio.to_thread(self.ctx.oracle.get_price, event.asset)
            return quote.price_sol
        except OracleUnavailable:
            logger.warning(f"No oracle price for {event.asset}; deriving entry from fill")
        if quantity > 0 and spend > 0:
            return spend / quantity
        return event.price_sol or Decimal("0")

    async def _mirror_sell(self, event: TradeEvent) -> bool:
        # Waits behind an in-flight buy of the same asset.
        async with self.ctx.asset_locks.hold(event.asset):
            position = self.ctx.registry.find_active_by_asset(event.asset, TradeMode.EXACT)
            if position is None:
                logger.info(f"Watched wallet sold {event.asset} but no EXACT position is open; ignoring")
                return False
            logger.info(f"Mirroring SELL of {event.asset}: closing {position.id} on {position.venue}")
            return await self.seller.close_position(position, MIRROR_SELL)
