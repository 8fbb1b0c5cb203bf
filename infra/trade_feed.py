"""
Trade feed websocket client.

Subscribes to the watched wallet's trades and hands each decoded
``TradeEvent`` to a callback without awaiting it. The connection is
re-established after a fixed delay whenever it drops; notifications missed
while disconnected are not replayed.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import WebSocketException

from core.copy_trading import TradeEvent
from core.exceptions import FeedDisconnected

logger = logging.getLogger(__name__)


class TradeFeed:

    def __init__(
        self,
        url: str,
        api_key: str,
        watched_wallet: str,
        on_event: Callable[[TradeEvent], Any],
        *,
        reconnect_delay: float = 5.0,
        ping_interval: float = 10.0,
        metrics=None,
        connect: Optional[Callable[..., Any]] = None,
    ):
        """
        Args:
            url: Feed websocket URL
            api_key: Feed API key sent in the subscribe request
            watched_wallet: Only trades signed by this wallet are forwarded
            on_event: Called synchronously with each event (e.g. CopyTrader.submit)
            reconnect_delay: Fixed wait before reconnecting (seconds)
            ping_interval: Keep-alive ping interval (seconds)
            metrics: Optional MetricsRecorder for reconnect counts
            connect: websockets.connect-compatible factory (tests)
        """
        self.url = url
        self.api_key = api_key
        self.watched_wallet = watched_wallet
        self.on_event = on_event
        self.reconnect_delay = reconnect_delay
        self.ping_interval = ping_interval
        self.metrics = metrics
        self._connect = connect or websockets.connect
        self._ws = None
        self._stopping = False
        self.messages_received = 0
        self.events_forwarded = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def subscribe_payload(self) -> Dict[str, Any]:
        return {
            "apiKey": self.api_key,
            "method": "subscribeTrade",
            "tokens": [self.watched_wallet],
        }

    def _handle_message(self, raw: Any) -> Optional[TradeEvent]:
        """Decode one frame; forward it if it is a trade signed by the watched wallet."""
        self.messages_received += 1
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Error parsing feed message: {e}")
            return None

        if not isinstance(msg, dict):
            logger.debug(f"Ignoring non-object feed message: {msg!r}")
            return None
        if msg.get("signer") != self.watched_wallet:
            return None

        try:
            event = TradeEvent.from_message(msg)
        except ValueError as e:
            logger.warning(f"Dropping undecodable trade {msg.get('signature')}: {e}")
            return None

        self.events_forwarded += 1
        self.on_event(event)
        return event

    async def _session(self) -> None:
        async with self._connect(self.url, ping_interval=self.ping_interval) as ws:
            self._ws = ws
            try:
                payload = self.subscribe_payload()
                await ws.send(json.dumps(payload))
                logger.info(f"Feed connected; subscribed to trades for {self.watched_wallet}")
                async for raw in ws:
                    self._handle_message(raw)
            finally:
                self._ws = None
        raise FeedDisconnected("feed connection closed")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Connect, subscribe and forward events until ``stop_event`` is set."""
        self._stopping = False
        while not stop_event.is_set() and not self._stopping:
            try:
                await self._session()
            except (FeedDisconnected, WebSocketException, OSError, asyncio.TimeoutError) as e:
                if stop_event.is_set() or self._stopping:
                    break
                logger.warning(f"Feed disconnected: {e}. Reconnecting in {self.reconnect_delay:.0f}s...")
                if self.metrics is not None:
                    self.metrics.record_reconnect()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.reconnect_delay)
            except asyncio.TimeoutError:
                continue
        logger.info("Trade feed stopped")

    async def stop(self) -> None:
        self._stopping = True
        ws = self._ws
        if ws is not None:
            await ws.close()
