"""Process-scoped wiring shared by the feed handlers, the poller and the runner."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from core.close_guard import AssetLocks, CloseGuard
from core.position_registry import PositionRegistry
from core.venue import VenueResolver
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder

if TYPE_CHECKING:
    from tools.config_validator import AppConfig


@dataclass
class BotContext:
    """
    Everything a handler needs, built once by the runner.

    ``execution``, ``oracle`` and ``ledger`` are duck-typed so tests can
    hand in fakes.
    """
    config: "AppConfig"
    registry: PositionRegistry
    execution: object
    oracle: object
    ledger: object
    metrics: MetricsRecorder
    alerts: AlertService
    guard: CloseGuard = field(default_factory=CloseGuard)
    asset_locks: AssetLocks = field(default_factory=AssetLocks)
    venues: Optional[VenueResolver] = None

    def __post_init__(self):
        if self.venues is None:
            self.venues = VenueResolver(self.config.trading.preferred_venue)

    @property
    def owner(self) -> str:
        return self.config.wallet.public_key

    def refresh_gauges(self) -> None:
        self.metrics.record_active_positions(len(self.registry))
        self.metrics.record_closes_in_flight(len(self.guard))
