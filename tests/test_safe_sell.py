"""
Tests for the safe-sell protocol and the guarded close helper.
"""

from decimal import Decimal

import pytest

from core.exceptions import ExecutionFailed, InsufficientBalance, LedgerUnavailable
from core.position_state import PositionStatus, TradeMode
from core.safe_sell import SafeSeller


async def _open(ctx, quantity="100", asset="MintA"):
    return await ctx.registry.create(
        asset=asset,
        venue="pumpfun",
        trade_mode=TradeMode.SAFE,
        quantity=Decimal(quantity),
        entry_price=Decimal("1.00"),
    )


@pytest.mark.asyncio
async def test_sells_recorded_quantity(ctx, execution):
    position = await _open(ctx)
    assert await SafeSeller(ctx).safe_sell(position) is True
    assert execution.sells == [("MintA", Decimal("100"), "pumpfun")]


@pytest.mark.asyncio
async def test_insufficient_balance_retries_with_ledger_quantity(ctx, execution, ledger):
    execution.sell_results = [InsufficientBalance("insufficient spl token balance")]
    ledger.balances["MintA"] = "37.5"
    position = await _open(ctx)

    assert await SafeSeller(ctx).safe_sell(position) is True
    assert [amount for _, amount, _ in execution.sells] == [Decimal("100"), Decimal("37.5")]
    assert ctx.registry.get(position.id).is_active()


@pytest.mark.asyncio
async def test_zero_ledger_balance_force_closes(ctx, execution, ledger):
    execution.sell_results = [InsufficientBalance("insufficient balance")]
    ledger.balances["MintA"] = "0"
    position = await _open(ctx)

    assert await SafeSeller(ctx).safe_sell(position) is False
    closed = ctx.registry.get(position.id)
    assert closed.status == PositionStatus.CLOSED
    assert closed.close_reason == "zero_balance"
    assert len(execution.sells) == 1
    assert ctx.metrics.closed_snapshot() == {"zero_balance": 1}


@pytest.mark.asyncio
async def test_failed_retry_leaves_position_open_and_alerts(ctx, execution, ledger):
    execution.sell_results = [
        InsufficientBalance("insufficient balance"),
        ExecutionFailed("slippage exceeded"),
    ]
    ledger.balances["MintA"] = "50"
    position = await _open(ctx)

    assert await SafeSeller(ctx).safe_sell(position) is False
    assert ctx.registry.get(position.id).is_active()
    assert ctx.alerts.titles() == ["Sell retry failed"]
    assert ctx.metrics.sell_failures_snapshot() == {"retry_failed": 1}


@pytest.mark.asyncio
async def test_other_failures_propagate(ctx, execution):
    execution.sell_results = [ExecutionFailed("service down", status_code=503)]
    position = await _open(ctx)

    with pytest.raises(ExecutionFailed, match="service down"):
        await SafeSeller(ctx).safe_sell(position)
    assert ctx.registry.get(position.id).is_active()


@pytest.mark.asyncio
async def test_ledger_failure_during_reconciliation_propagates(ctx, execution, ledger):
    execution.sell_results = [InsufficientBalance("insufficient balance")]
    ledger.balances["MintA"] = LedgerUnavailable("getTokenAccountsByOwner")
    position = await _open(ctx)

    with pytest.raises(LedgerUnavailable):
        await SafeSeller(ctx).safe_sell(position)


class TestClosePosition:

    @pytest.mark.asyncio
    async def test_closes_with_reason(self, ctx):
        position = await _open(ctx)
        assert await SafeSeller(ctx).close_position(position, "take_profit") is True
        closed = ctx.registry.get(position.id)
        assert closed.status == PositionStatus.CLOSED
        assert closed.close_reason == "take_profit"
        assert not ctx.guard.is_held(position.id)
        assert ctx.metrics.closed_snapshot() == {"take_profit": 1}

    @pytest.mark.asyncio
    async def test_skips_when_close_in_flight(self, ctx, execution):
        position = await _open(ctx)
        ctx.guard.try_acquire(position.id)

        assert await SafeSeller(ctx).close_position(position, "stop_loss") is False
        assert execution.sells == []
        assert ctx.guard.is_held(position.id)

    @pytest.mark.asyncio
    async def test_releases_guard_on_error(self, ctx, execution):
        execution.sell_results = [ExecutionFailed("boom")]
        position = await _open(ctx)

        with pytest.raises(ExecutionFailed):
            await SafeSeller(ctx).close_position(position, "stop_loss")
        assert not ctx.guard.is_held(position.id)
        assert ctx.registry.get(position.id).is_active()

    @pytest.mark.asyncio
    async def test_already_closed_position_is_not_sold_again(self, ctx, execution):
        position = await _open(ctx)
        seller = SafeSeller(ctx)
        assert await seller.close_position(position, "mirror_sell") is True
        assert await seller.close_position(position, "stop_loss") is False
        assert len(execution.sells) == 1
        assert ctx.registry.get(position.id).close_reason == "mirror_sell"

    @pytest.mark.asyncio
    async def test_zero_balance_close_keeps_its_reason(self, ctx, execution, ledger):
        execution.sell_results = [InsufficientBalance("insufficient balance")]
        position = await _open(ctx)

        assert await SafeSeller(ctx).close_position(position, "stop_loss") is False
        assert ctx.registry.get(position.id).close_reason == "zero_balance"
