"""
copytrader Runner: Main Loop

Wires the collaborators into a BotContext and runs one of two modes:

COPY:
1. Rebuild the active position index from the store
2. Listen to the watched wallet's trades (one task per notification)
3. Re-price every active position on a fixed interval and apply exits

SELLING (``app.bot_mode: SELLING`` or ``--liquidate``):
1. Rebuild the active position index
2. Safe-sell every active position
3. Exit
"""

import asyncio
import signal
from pathlib import Path
from typing import Optional
import logging

from core.context import BotContext
from core.copy_trading import CopyTrader
from core.execution_client import ExecutionClient
from core.exceptions import CriticalDataUnavailable, ExecutionFailed
from core.position_registry import PositionRegistry
from core.price_oracle import PriceOracle
from core.price_poller import PricePoller
from core.safe_sell import SafeSeller
from core.solana_ledger import SolanaLedger
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.position_store import JsonPositionStore
from infra.trade_feed import TradeFeed
from tools.config_validator import AppConfig, load_config

logger = logging.getLogger(__name__)

LIQUIDATION = "liquidation"
SHUTDOWN_GRACE_SECONDS = 30.0


def configure_logging(config: AppConfig, level: Optional[str] = None) -> None:
    log_file = config.logging.file
    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, (level or config.logging.level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


class CopyTradingBot:
    """
    Process orchestrator.

    Responsibilities:
    - Build collaborators and the shared context
    - Load the registry (fatal if the store is unreadable)
    - Run COPY or SELLING mode
    - Stop cleanly on SIGINT/SIGTERM
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        liquidate: bool = False,
        store=None,
        execution=None,
        oracle=None,
        ledger=None,
        alerts: Optional[AlertService] = None,
        feed_connect=None,
    ):
        self.config = config
        self.mode = "SELLING" if liquidate else config.app.bot_mode
        self._feed_connect = feed_connect

        endpoints = config.endpoints
        trading = config.trading

        store = store or JsonPositionStore(config.storage.positions_file)
        self.ctx = BotContext(
            config=config,
            registry=PositionRegistry(store),
            execution=execution or ExecutionClient(
                endpoints.execution_url,
                config.wallet.public_key,
                slippage_pct=trading.slippage_pct,
                priority_fee=trading.priority_fee_sol,
            ),
            oracle=oracle or PriceOracle(endpoints.price_url, endpoints.price_api_key),
            ledger=ledger or SolanaLedger(endpoints.solana_rpc),
            metrics=MetricsRecorder(
                enabled=config.monitoring.metrics_enabled,
                port=config.monitoring.metrics_port,
            ),
            alerts=alerts or AlertService.from_config(config.monitoring.alerts.model_dump()),
        )
        self.seller = SafeSeller(self.ctx)
        self.copier = CopyTrader(self.ctx, self.seller, dedupe_window=config.feed.dedupe_window)
        self.poller = PricePoller(self.ctx, self.seller)
        self.feed: Optional[TradeFeed] = None
        self._stop_event: Optional[asyncio.Event] = None

        logger.info(
            f"Initialized CopyTradingBot mode={self.mode} trade_mode={trading.trade_mode.value} "
            f"watched={config.wallet.watched_wallet}"
        )

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - Initiating graceful shutdown")
        logger.warning("=" * 80)
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_stop)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self._handle_stop))

    async def run(self) -> int:
        """Run the configured mode; returns a process exit code."""
        self._stop_event = asyncio.Event()
        # Unreadable store is fatal: RepositoryError propagates
        self.ctx.registry.store.initialize()
        count = self.ctx.registry.load()
        self.ctx.metrics.start()
        self.ctx.refresh_gauges()
        logger.info(f"Starting copytrader in mode={self.mode} with {count} active position(s)")

        self._install_signal_handlers()
        if self.mode == "SELLING":
            failed = await self.liquidate_all()
            return 1 if failed else 0
        await self.run_copy()
        return 0

    async def run_copy(self) -> None:
        feed_cfg = self.config.feed
        self.feed = TradeFeed(
            feed_cfg.url,
            feed_cfg.api_key,
            self.config.wallet.watched_wallet,
            self.copier.submit,
            reconnect_delay=feed_cfg.reconnect_delay_seconds,
            ping_interval=feed_cfg.ping_interval_seconds,
            metrics=self.ctx.metrics,
            connect=self._feed_connect,
        )

        feed_task = asyncio.create_task(self.feed.run(self._stop_event), name="trade-feed")
        poll_task = asyncio.create_task(self.poller.run(self._stop_event), name="price-poller")
        logger.info("Bot is now listening to watched-wallet trades...")

        await self._stop_event.wait()
        await self.feed.stop()
        await asyncio.gather(feed_task, poll_task, return_exceptions=True)
        await self.copier.wait_idle(timeout=SHUTDOWN_GRACE_SECONDS)
        logger.info("copytrader stopped cleanly.")

    def stop(self) -> None:
        self._handle_stop()

    async def liquidate_all(self) -> int:
        """
        Safe-sell every active position.

        Returns:
            Number of positions that could not be closed
        """
        positions = self.ctx.registry.list_active()
        logger.info(f"Liquidating {len(positions)} active position(s)")

        failed = 0
        for position in positions:
            try:
                closed = await self.seller.close_position(position, LIQUIDATION)
            except (ExecutionFailed, CriticalDataUnavailable) as e:
                logger.error(f"Liquidation of {position.asset} ({position.id}) failed: {e}")
                closed = False
            if closed:
                continue
            current = self.ctx.registry.get(position.id)
            if current is not None and not current.is_active():
                # Force-closed for zero balance; nothing left to sell.
                continue
            failed += 1
            self.ctx.alerts.notify(
                AlertSeverity.CRITICAL,
                "Liquidation failed",
                f"Could not close {position.asset}",
                {"position_id": position.id, "quantity": str(position.quantity)},
            )

        logger.info(f"Liquidation finished: {len(positions) - failed} closed, {failed} failed")
        return failed


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="copytrader - watched-wallet copy trading bot")
    parser.add_argument("--config", default="config/app.yaml", help="Path to app.yaml")
    parser.add_argument("--liquidate", action="store_true", help="Sell every active position and exit")
    parser.add_argument("--log-level", default=None, help="Override logging.level from config")

    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config, args.log_level)

    bot = CopyTradingBot(config, liquidate=args.liquidate)
    raise SystemExit(asyncio.run(bot.run()))


if __name__ == "__main__":
    main()
