"""
copytrader Core: Position State

Position record, trade modes and lifecycle states.

States: ACTIVE → CLOSED (never reopened)

Quantities and prices are Decimals end to end; they are serialized as
strings so the JSON repository never round-trips them through floats.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class TradeMode(Enum):
    """Position sizing and exit policy"""
    EXACT = "EXACT"  # Size mirrors the watched wallet, exit on its sell
    SAFE = "SAFE"    # Fixed size, exit on TP/SL/trailing only


class PositionStatus(Enum):
    """Position lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"


def _dec(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _dec_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrailingStop:
    """Trailing stop settings plus its ratchet state."""
    distance_pct: Decimal
    activation_pct: Decimal
    activated: bool = False
    stop_price: Optional[Decimal] = None

    @property
    def enabled(self) -> bool:
        return self.distance_pct > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distance_pct": str(self.distance_pct),
            "activation_pct": str(self.activation_pct),
            "activated": self.activated,
            "stop_price": _dec_str(self.stop_price),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TrailingStop"]:
        if not data:
            return None
        return cls(
            distance_pct=_dec(data.get("distance_pct", "0")),
            activation_pct=_dec(data.get("activation_pct", "0")),
            activated=bool(data.get("activated", False)),
            stop_price=_dec(data.get("stop_price")),
        )


@dataclass(frozen=True)
class Position:
    """
    A mirrored holding of one asset.

    Instances are immutable; the registry swaps in a new instance
    (``dataclasses.replace``) after every persisted change.
    """
    id: str
    asset: str
    venue: str
    trade_mode: TradeMode
    quantity: Decimal
    entry_price: Decimal
    buy_amount: Decimal = Decimal("0")
    current_price: Optional[Decimal] = None
    highest_price: Optional[Decimal] = None
    status: PositionStatus = PositionStatus.ACTIVE
    stop_loss_pct: Optional[Decimal] = None
    take_profit_pct: Optional[Decimal] = None
    trailing: Optional[TrailingStop] = None
    origin_signature: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    def __post_init__(self):
        if not self.asset:
            raise ValueError("Position asset is required")
        if self.quantity < 0:
            raise ValueError("Position quantity cannot be negative")
        if self.current_price is None:
            object.__setattr__(self, "current_price", self.entry_price)
        if self.highest_price is None:
            object.__setattr__(self, "highest_price", self.entry_price)

    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    def change_pct(self, price: Optional[Decimal] = None) -> Optional[Decimal]:
        """Percent move from entry to ``price`` (default: current price)."""
        price = self.current_price if price is None else price
        if price is None or self.entry_price <= 0:
            return None
        return (price - self.entry_price) / self.entry_price * 100

    def with_changes(self, **changes: Any) -> "Position":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "asset": self.asset,
            "venue": self.venue,
            "trade_mode": self.trade_mode.value,
            "quantity": str(self.quantity),
            "buy_amount": str(self.buy_amount),
            "entry_price": str(self.entry_price),
            "current_price": _dec_str(self.current_price),
            "highest_price": _dec_str(self.highest_price),
            "status": self.status.value,
            "stop_loss_pct": _dec_str(self.stop_loss_pct),
            "take_profit_pct": _dec_str(self.take_profit_pct),
            "trailing": self.trailing.to_dict() if self.trailing else None,
            "origin_signature": self.origin_signature,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "close_reason": self.close_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=data["id"],
            asset=data["asset"],
            venue=data.get("venue") or "jupiter",
            trade_mode=TradeMode(data.get("trade_mode", "EXACT")),
            quantity=_dec(data.get("quantity", "0")),
            buy_amount=_dec(data.get("buy_amount", "0")),
            entry_price=_dec(data.get("entry_price", "0")),
            current_price=_dec(data.get("current_price")),
            highest_price=_dec(data.get("highest_price")),
            status=PositionStatus(data.get("status", "active")),
            stop_loss_pct=_dec(data.get("stop_loss_pct")),
            take_profit_pct=_dec(data.get("take_profit_pct")),
            trailing=TrailingStop.from_dict(data.get("trailing")),
            origin_signature=data.get("origin_signature"),
            created_at=_ts(data.get("created_at")) or utcnow(),
            updated_at=_ts(data.get("updated_at")),
            closed_at=_ts(data.get("closed_at")),
            close_reason=data.get("close_reason"),
        )
