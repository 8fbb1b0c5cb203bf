"""Prometheus-backed metrics hooks for the feed, poller and position lifecycle."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "copytrader_"


class MetricsRecorder:
    """
    Expose copy-trading stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        # Local mirrors so tests and logs can read values without scraping
        self._events: Dict[str, int] = {}
        self._closed: Dict[str, int] = {}
        self._sell_failures: Dict[str, int] = {}
        self._reconnects = 0

        self._events_counter = Counter(
            f"{METRIC_PREFIX}feed_events_total",
            "Watched-wallet notifications by classified action",
            labelnames=("action",),
        )
        self._opened_counter = Counter(
            f"{METRIC_PREFIX}positions_opened_total",
            "Positions opened by trade mode",
            labelnames=("mode",),
        )
        self._closed_counter = Counter(
            f"{METRIC_PREFIX}positions_closed_total",
            "Positions closed by reason",
            labelnames=("reason",),
        )
        self._sell_failures_counter = Counter(
            f"{METRIC_PREFIX}sell_failures_total",
            "Sell attempts that did not close a position",
            labelnames=("kind",),
        )
        self._reconnects_counter = Counter(
            f"{METRIC_PREFIX}feed_reconnects_total",
            "Trade feed reconnect attempts",
        )
        self._active_gauge = Gauge(
            f"{METRIC_PREFIX}active_positions",
            "Number of currently active positions",
        )
        self._closing_gauge = Gauge(
            f"{METRIC_PREFIX}closes_in_flight",
            "Positions with a sell currently in flight",
        )
        self._tick_summary = Summary(
            f"{METRIC_PREFIX}poll_tick_duration_seconds",
            "Duration of one price polling tick",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_event(self, action: str) -> None:
        self._events[action] = self._events.get(action, 0) + 1
        self._events_counter.labels(action=action).inc()

    def record_position_opened(self, mode: str) -> None:
        self._opened_counter.labels(mode=mode).inc()

    def record_position_closed(self, reason: str) -> None:
        self._closed[reason] = self._closed.get(reason, 0) + 1
        self._closed_counter.labels(reason=reason).inc()

    def record_sell_failure(self, kind: str) -> None:
        self._sell_failures[kind] = self._sell_failures.get(kind, 0) + 1
        self._sell_failures_counter.labels(kind=kind).inc()

    def record_reconnect(self) -> None:
        self._reconnects += 1
        self._reconnects_counter.inc()

    def record_active_positions(self, count: int) -> None:
        self._active_gauge.set(count)

    def record_closes_in_flight(self, count: int) -> None:
        self._closing_gauge.set(count)

    def observe_tick(self, duration_seconds: float) -> None:
        self._tick_summary.observe(duration_seconds)

    def events_snapshot(self) -> Dict[str, int]:
        return dict(self._events)

    def closed_snapshot(self) -> Dict[str, int]:
        return dict(self._closed)

    def sell_failures_snapshot(self) -> Dict[str, int]:
        return dict(self._sell_failures)

    @property
    def reconnects(self) -> int:
        return self._reconnects
