"""
Tests for the price polling scheduler.
"""

import asyncio
import threading
import time
from decimal import Decimal

import pytest

from core.exceptions import ExecutionFailed
from core.position_state import PositionStatus, TradeMode, TrailingStop
from core.price_poller import PricePoller
from core.safe_sell import SafeSeller
from tests.helpers.fakes import FakeOracle, build_context


async def _open(ctx, asset="MintA", mode=TradeMode.SAFE, trailing=None, tp="20", sl="10"):
    return await ctx.registry.create(
        asset=asset,
        venue="meteora",
        trade_mode=mode,
        quantity=Decimal("100"),
        entry_price=Decimal("1.00"),
        take_profit_pct=Decimal(tp) if tp else None,
        stop_loss_pct=Decimal(sl) if sl else None,
        trailing=trailing,
    )


def _poller(ctx):
    return PricePoller(ctx, SafeSeller(ctx))


@pytest.mark.asyncio
async def test_take_profit_closes_position(ctx, oracle, execution):
    position = await _open(ctx)
    oracle.set_price("MintA", "1.21")

    assert await _poller(ctx).tick() == 1
    closed = ctx.registry.get(position.id)
    assert closed.status == PositionStatus.CLOSED
    assert closed.close_reason == "take_profit"
    assert execution.sells == [("MintA", Decimal("100"), "meteora")]


@pytest.mark.asyncio
async def test_stop_loss_closes_position(ctx, oracle):
    position = await _open(ctx)
    oracle.set_price("MintA", "0.89")
    await _poller(ctx).tick()
    assert ctx.registry.get(position.id).close_reason == "stop_loss"


@pytest.mark.asyncio
async def test_hold_persists_current_price(ctx, oracle, execution):
    position = await _open(ctx)
    oracle.set_price("MintA", "1.05")

    assert await _poller(ctx).tick() == 0
    assert execution.sells == []
    assert ctx.registry.get(position.id).current_price == Decimal("1.05")
    assert ctx.registry.store.get(position.id)["current_price"] == "1.05"


@pytest.mark.asyncio
async def test_trailing_state_persisted_between_ticks(ctx, oracle):
    position = await _open(ctx, tp=None, sl=None, trailing=TrailingStop(Decimal("10"), Decimal("15")))
    poller = _poller(ctx)

    for price in ("1.20", "1.30"):
        oracle.set_price("MintA", price)
        await poller.tick()
    stored = ctx.registry.get(position.id)
    assert stored.trailing.activated
    assert stored.trailing.stop_price == Decimal("1.17")
    assert stored.highest_price == Decimal("1.30")

    oracle.set_price("MintA", "1.16")
    assert await poller.tick() == 1
    assert ctx.registry.get(position.id).close_reason == "trailing_stop"


@pytest.mark.asyncio
async def test_exact_positions_are_priced_but_not_closed(ctx, oracle, execution):
    position = await _open(ctx, mode=TradeMode.EXACT, tp=None, sl=None)
    oracle.set_price("MintA", "0.10")
    await _poller(ctx).tick()
    assert execution.sells == []
    assert ctx.registry.get(position.id).current_price == Decimal("0.10")


@pytest.mark.asyncio
async def test_oracle_outage_skips_only_that_asset(ctx, oracle):
    a = await _open(ctx, asset="MintA")
    b = await _open(ctx, asset="MintB")
    oracle.set_price("MintB", "0.50")

    assert await _poller(ctx).tick() == 1
    assert ctx.registry.get(a.id).is_active()
    assert ctx.registry.get(b.id).close_reason == "stop_loss"


@pytest.mark.asyncio
async def test_guarded_positions_are_skipped(ctx, oracle, execution):
    position = await _open(ctx)
    oracle.set_price("MintA", "1.50")
    ctx.guard.try_acquire(position.id)

    assert await _poller(ctx).tick() == 0
    assert oracle.calls == []
    assert execution.sells == []


@pytest.mark.asyncio
async def test_sell_failure_keeps_position_active(ctx, oracle, execution):
    position = await _open(ctx)
    oracle.set_price("MintA", "1.50")
    execution.sell_results = [ExecutionFailed("venue down")]

    assert await _poller(ctx).tick() == 0
    assert ctx.registry.get(position.id).is_active()
    assert ctx.metrics.sell_failures_snapshot() == {"execution": 1}


@pytest.mark.asyncio
async def test_run_ticks_until_stopped(ctx, oracle):
    await _open(ctx)
    oracle.set_price("MintA", "1.01")
    poller = PricePoller(ctx, SafeSeller(ctx), interval_seconds=0.01)
    stop = asyncio.Event()

    runner = asyncio.create_task(poller.run(stop))
    await asyncio.sleep(0.1)
    stop.set()
    await asyncio.wait_for(runner, timeout=2)

    assert len(oracle.calls) >= 2


class _SlowFirstOracle(FakeOracle):
    """Answers each call from a queue of (price, delay) pairs."""

    def __init__(self, answers):
        super().__init__()
        self.answers = list(answers)
        self._lock = threading.Lock()

    def get_price(self, asset):
        with self._lock:
            price, delay = self.answers.pop(0)
        time.sleep(delay)
        self.set_price(asset, price)
        return super().get_price(asset)


async def _trailing_at_peak(ctx):
    position = await _open(
        ctx,
        tp=None,
        sl=None,
        trailing=TrailingStop(Decimal("10"), Decimal("10"), activated=True, stop_price=Decimal("1.17")),
    )
    return await ctx.registry.update(position.id, highest_price=Decimal("1.30"))


@pytest.mark.asyncio
async def test_overlapping_ticks_never_lower_trailing_stop(tmp_path, execution):
    oracle = _SlowFirstOracle([("1.31", 0.3), ("1.40", 0.0)])
    ctx = build_context(tmp_path, execution=execution, oracle=oracle)
    position = await _trailing_at_peak(ctx)
    poller = _poller(ctx)

    slow = asyncio.create_task(poller.tick())
    await asyncio.sleep(0.05)
    await poller.tick()
    stored = ctx.registry.get(position.id)
    assert stored.highest_price == Decimal("1.40")
    assert stored.trailing.stop_price == Decimal("1.260")

    assert await slow == 0
    stored = ctx.registry.get(position.id)
    assert stored.status == PositionStatus.ACTIVE
    assert stored.highest_price == Decimal("1.40")
    assert stored.trailing.stop_price == Decimal("1.260")
    assert stored.current_price == Decimal("1.31")
    assert execution.sells == []


@pytest.mark.asyncio
async def test_slow_tick_keeps_concurrent_quantity_update(tmp_path):
    oracle = _SlowFirstOracle([("1.35", 0.2)])
    ctx = build_context(tmp_path, oracle=oracle)
    position = await _trailing_at_peak(ctx)

    slow = asyncio.create_task(_poller(ctx).tick())
    await asyncio.sleep(0.05)
    await ctx.registry.update(position.id, quantity=Decimal("250"), buy_amount=Decimal("0.2"))
    await slow

    stored = ctx.registry.get(position.id)
    assert stored.quantity == Decimal("250")
    assert stored.buy_amount == Decimal("0.2")
    assert stored.highest_price == Decimal("1.35")
    assert stored.trailing.stop_price == Decimal("1.215")
