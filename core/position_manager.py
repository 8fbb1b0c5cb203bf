"""
Position Management: Exit Logic for Take-Profit, Stop-Loss and Trailing Stop

Evaluates one SAFE position against a fresh price quote. EXACT positions
never exit here; they follow the watched wallet's sells.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional
import logging

from core.position_state import Position, TradeMode, TrailingStop

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class ExitDecision(Enum):
    NONE = "none"
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"


@dataclass(frozen=True)
class ExitEvaluation:
    """Outcome of one evaluation plus the trailing state to persist."""
    decision: ExitDecision
    current_price: Decimal
    change_pct: Optional[Decimal]
    highest_price: Optional[Decimal]
    trailing: Optional[TrailingStop]

    @property
    def should_exit(self) -> bool:
        return self.decision != ExitDecision.NONE

    def changes_for(self, position: Position) -> dict:
        """Fields that differ from ``position`` and should be persisted."""
        changes = {"current_price": self.current_price}
        if self.highest_price is not None and self.highest_price != position.highest_price:
            changes["highest_price"] = self.highest_price
        if self.trailing != position.trailing:
            changes["trailing"] = self.trailing
        return changes


def _trail_stop(highest: Decimal, distance_pct: Decimal) -> Decimal:
    return highest * (1 - distance_pct / HUNDRED)


def evaluate(position: Position, current_price: Decimal) -> ExitEvaluation:
    """
    Decide whether ``position`` should exit at ``current_price``.

    Priority order: take_profit > stop_loss > trailing_stop

    Does not mutate the position; the returned evaluation carries the
    updated highest price and trailing record.
    """
    trailing = position.trailing
    highest = position.highest_price

    def result(decision: ExitDecision, change: Optional[Decimal]) -> ExitEvaluation:
        return ExitEvaluation(
            decision=decision,
            current_price=current_price,
            change_pct=change,
            highest_price=highest,
            trailing=trailing,
        )

    if position.trade_mode != TradeMode.SAFE:
        return result(ExitDecision.NONE, position.change_pct(current_price))

    change_pct = position.change_pct(current_price)
    if change_pct is None:
        logger.warning(f"Position {position.id} has no usable entry price; skipping exit check")
        return result(ExitDecision.NONE, None)

    # 1. Take-profit
    if position.take_profit_pct is not None and change_pct >= position.take_profit_pct:
        return result(ExitDecision.TAKE_PROFIT, change_pct)

    # 2. Stop-loss
    if position.stop_loss_pct is not None and change_pct <= -position.stop_loss_pct:
        return result(ExitDecision.STOP_LOSS, change_pct)

    # 3. Trailing stop (ratchets up, never loosens)
    if trailing is not None and trailing.enabled:
        highest = max(highest if highest is not None else current_price, current_price)
        activated = trailing.activated
        stop_price = trailing.stop_price

        if not activated and change_pct >= trailing.activation_pct:
            activated = True
            stop_price = _trail_stop(highest, trailing.distance_pct)
            logger.info(
                f"Trailing stop activated for {position.id} at {change_pct:+.2f}%: stop={stop_price}"
            )

        if activated:
            candidate = _trail_stop(highest, trailing.distance_pct)
            stop_price = candidate if stop_price is None else max(stop_price, candidate)
            trailing = TrailingStop(
                distance_pct=trailing.distance_pct,
                activation_pct=trailing.activation_pct,
                activated=True,
                stop_price=stop_price,
            )
            if current_price <= stop_price:
                return result(ExitDecision.TRAILING_STOP, change_pct)

    return result(ExitDecision.NONE, change_pct)
