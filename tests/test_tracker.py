"""Tests for the live trading manager: execution, closes, emergency stop."""

from __future__ import annotations

import asyncio

import pytest

from autotrade.config.schema import RiskLimits, TradingConfig
from autotrade.execution import ExecutionQueue, PaperGateway
from autotrade.tracker import ClosedPosition, LiveTradingManager
from conftest import make_consensus

PRICES = {"BTC": 100.0, "ETH": 50.0, "SOL": 20.0}


def _setup(config: TradingConfig | None = None, limits: RiskLimits | None = None, gateway=None):
    gateway = gateway or PaperGateway(prices=PRICES)
    queue = ExecutionQueue(gateway, retry_delay_s=0)
    tracker = LiveTradingManager(gateway, queue, config=config or TradingConfig(), limits=limits or RiskLimits())
    return gateway, queue, tracker


class _BrokenAccountGateway(PaperGateway):
    async def get_positions(self):
        raise ConnectionError("account endpoint down")


class _GatedGateway(PaperGateway):
    """Paper account whose fills and closes can be held mid-call."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.hold_fills = False
        self.hold_closes = False
        self.fill_started = asyncio.Event()
        self.release_fill = asyncio.Event()
        self.close_filled = asyncio.Event()
        self.release_close = asyncio.Event()

    async def execute(self, order):
        if self.hold_fills:
            self.fill_started.set()
            await self.release_fill.wait()
        return await super().execute(order)

    async def close(self, instrument, idempotency_key=None):
        result = await super().close(instrument, idempotency_key)
        if self.hold_closes:
            self.close_filled.set()
            await self.release_close.wait()
        return result


class TestExecuteApprovedSignal:
    def test_opens_position(self):
        gateway, _, tracker = _setup()
        result = asyncio.run(tracker.execute_approved_signal(make_consensus(), 100.0))

        assert result.ok
        assert result.kind == "executed"
        assert result.executed_price == 100.0
        position = tracker.positions["BTC"]
        assert position.side == "LONG"
        assert position.size == pytest.approx(1.0)
        assert position.stop_loss == pytest.approx(97.0)
        assert position.take_profit == pytest.approx(106.0)
        assert position.source_ids == ["a", "b"]
        assert tracker.total_trades == 1

    def test_market_order_becomes_protected_limit_ioc(self):
        gateway, _, tracker = _setup()
        asyncio.run(tracker.execute_approved_signal(make_consensus(), 100.0))
        order = gateway.orders[0]
        assert order.order_type == "LIMIT"
        assert order.time_in_force == "IOC"
        assert order.price == pytest.approx(100.5)
        assert order.metadata["reference_price"] == 100.0

    def test_short_protection_is_a_floor(self):
        gateway, _, tracker = _setup()
        asyncio.run(tracker.execute_approved_signal(make_consensus(direction="SHORT"), 100.0))
        assert gateway.orders[0].price == pytest.approx(99.5)

    def test_slippage_beyond_band_not_filled(self):
        gateway, _, tracker = _setup()
        gateway.set_price("BTC", 101.0)
        result = asyncio.run(tracker.execute_approved_signal(make_consensus(entry=100.0), 100.0))

        assert not result.ok
        assert result.kind == "transient"
        assert "IOC order not filled" in result.reason
        assert gateway.executed_count == 0
        assert tracker.positions == {}
        assert tracker.emergency_stop is False

    def test_slippage_disabled_sends_market(self):
        gateway, _, tracker = _setup(config=TradingConfig(slippage_pct=0))
        asyncio.run(tracker.execute_approved_signal(make_consensus(), 100.0))
        assert gateway.orders[0].order_type == "MARKET"

    def test_signal_levels_take_precedence(self):
        _, _, tracker = _setup()
        signal = make_consensus(weighted_stop_loss=95.0, weighted_take_profit=120.0)
        asyncio.run(tracker.execute_approved_signal(signal, 100.0))
        assert tracker.positions["BTC"].stop_loss == 95.0
        assert tracker.positions["BTC"].take_profit == 120.0

    def test_leverage_clamped(self):
        gateway, _, tracker = _setup(limits=RiskLimits(max_leverage=5))
        asyncio.run(tracker.execute_approved_signal(make_consensus(leverage=20), 100.0))
        assert gateway.orders[0].leverage == 5

    def test_disabled(self):
        gateway, _, tracker = _setup(config=TradingConfig(enabled=False))
        result = asyncio.run(tracker.execute_approved_signal(make_consensus(), 100.0))
        assert result.kind == "disabled"
        assert gateway.orders == []

    def test_local_safety_check_rejects(self):
        gateway, _, tracker = _setup(limits=RiskLimits(max_order_size_usd=50))
        result = asyncio.run(tracker.execute_approved_signal(make_consensus(), 100.0))
        assert result.kind == "policy"
        assert "exceeds maximum" in result.reason
        assert gateway.orders == []

    def test_duplicate_and_hedge_rejected(self):
        _, _, tracker = _setup()

        async def scenario():
            await tracker.execute_approved_signal(make_consensus(), 100.0)
            dup = await tracker.execute_approved_signal(make_consensus(), 100.0)
            hedge = await tracker.execute_approved_signal(make_consensus(direction="SHORT"), 100.0)
            return dup, hedge

        dup, hedge = asyncio.run(scenario())
        assert dup.kind == "policy"
        assert dup.reason.startswith("duplicate")
        assert hedge.kind == "policy"
        assert hedge.reason.startswith("hedging not allowed")
        assert len(tracker.positions) == 1

    def test_concurrent_duplicates_execute_once(self):
        gateway, _, tracker = _setup()

        async def scenario():
            return await asyncio.gather(
                tracker.execute_approved_signal(make_consensus(), 100.0),
                tracker.execute_approved_signal(make_consensus(), 100.0),
            )

        results = asyncio.run(scenario())
        assert sorted(r.kind for r in results) == ["executed", "policy"]
        assert gateway.executed_count == 1
        assert len(tracker.positions) == 1

    def test_daily_loss_blocks_new_trades(self):
        gateway, _, tracker = _setup(limits=RiskLimits(max_daily_loss=40))

        async def scenario():
            await tracker.execute_approved_signal(make_consensus(), 100.0)
            gateway.set_price("BTC", 50.0)
            return await tracker.execute_approved_signal(make_consensus("ETH", entry=50.0), 100.0)

        result = asyncio.run(scenario())
        assert result.kind == "policy"
        assert "daily loss" in result.reason
        assert tracker.daily_pnl == pytest.approx(-50.0)
        assert tracker.total_drawdown == pytest.approx(-50.0)


class TestClosePosition:
    def test_realized_pnl_from_fill(self):
        gateway, queue, tracker = _setup()
        closed: list[ClosedPosition] = []
        tracker.on_position_closed(closed.append)

        async def scenario():
            await tracker.execute_approved_signal(make_consensus(), 100.0)
            gateway.set_price("BTC", 110.0)
            return await tracker.close_position("BTC")

        result = asyncio.run(scenario())
        assert result.ok
        assert result.realized_pnl == pytest.approx(10.0)
        assert result.executed_price == 110.0
        assert tracker.positions == {}
        assert tracker.daily_pnl == pytest.approx(10.0)
        assert closed[0].reason == "manual"
        assert closed[0].position.source_ids == ["a", "b"]
        assert queue.history()[-1].action == "close"

    def test_unknown_instrument(self):
        _, _, tracker = _setup()
        result = asyncio.run(tracker.close_position("DOGE"))
        assert not result.ok
        assert result.reason == "no position found for DOGE"

    def test_exit_levels_close_on_refresh(self):
        gateway, _, tracker = _setup()
        closed: list[ClosedPosition] = []
        tracker.on_position_closed(closed.append)

        async def scenario():
            await tracker.execute_approved_signal(make_consensus(), 100.0)
            gateway.set_price("BTC", 107.0)
            await tracker.refresh()
            synced = tracker.positions["BTC"]
            return synced, await tracker.check_exits()

        synced, exited = asyncio.run(scenario())
        assert synced.current_price == 107.0
        assert synced.take_profit == pytest.approx(106.0)
        assert synced.source_ids == ["a", "b"]
        assert exited == ["BTC"]
        assert closed[0].reason == "take_profit"
        assert closed[0].realized_pnl == pytest.approx(7.0)

    def test_external_close_detected(self):
        gateway, _, tracker = _setup()
        closed: list[ClosedPosition] = []
        tracker.on_position_closed(closed.append)

        async def scenario():
            await tracker.execute_approved_signal(make_consensus(), 100.0)
            await gateway.close("BTC")
            await tracker.refresh()

        asyncio.run(scenario())
        assert tracker.positions == {}
        assert closed[0].reason == "external"

    def test_refresh_during_close_counts_pnl_once(self):
        gateway = _GatedGateway(prices=PRICES)
        _, _, tracker = _setup(gateway=gateway)
        closed: list[ClosedPosition] = []
        tracker.on_position_closed(closed.append)

        async def scenario():
            await tracker.execute_approved_signal(make_consensus(), 100.0)
            gateway.set_price("BTC", 90.0)
            gateway.hold_closes = True
            closing = asyncio.create_task(tracker.close_position("BTC"))
            await gateway.close_filled.wait()
            await tracker.refresh()
            gateway.release_close.set()
            return await closing

        result = asyncio.run(scenario())
        assert result.realized_pnl == pytest.approx(-10.0)
        assert [(c.reason, c.realized_pnl) for c in closed] == [("manual", pytest.approx(-10.0))]
        assert tracker.get_status().realized_pnl == pytest.approx(-10.0)
        assert tracker.positions == {}


class TestEmergencyStop:
    def test_fill_after_trip_is_unwound(self):
        gateway = _GatedGateway(prices=PRICES)
        gateway.hold_fills = True
        _, _, tracker = _setup(gateway=gateway)

        async def scenario():
            execution = asyncio.create_task(tracker.execute_approved_signal(make_consensus(), 100.0))
            await gateway.fill_started.wait()
            await tracker.activate_emergency_stop("manual")
            gateway.release_fill.set()
            result = await execution
            return result, await gateway.get_positions()

        result, holdings = asyncio.run(scenario())
        assert result.ok
        assert result.reason == "unwound after emergency stop"
        assert tracker.positions == {}
        assert tracker.close_attempts == [("BTC", "emergency_stop")]
        assert gateway.close_calls == ["BTC"]
        assert holdings == []

    def test_critical_error_trips_and_flattens(self):
        gateway, queue, tracker = _setup()

        async def scenario():
            await tracker.execute_approved_signal(make_consensus("ETH", entry=50.0), 100.0)
            gateway.fail_next("Insufficient balance")
            critical = await tracker.execute_approved_signal(make_consensus(), 100.0)
            after = await tracker.execute_approved_signal(make_consensus("SOL", entry=20.0), 100.0)
            return critical, after

        critical, after = asyncio.run(scenario())
        assert critical.kind == "critical"
        assert tracker.emergency_stop is True
        assert "Insufficient balance" in tracker.emergency_reason
        assert queue.halted is True
        assert tracker.close_attempts == [("ETH", "emergency_stop")]
        assert gateway.close_calls == ["ETH"]
        assert tracker.positions == {}
        assert after.kind == "halted"
        assert tracker.failed_trades == 1

    def test_every_position_gets_a_close_attempt(self):
        gateway, _, tracker = _setup()

        async def scenario():
            await tracker.execute_approved_signal(make_consensus("BTC"), 100.0)
            await tracker.execute_approved_signal(make_consensus("ETH", entry=50.0), 100.0)
            gateway.fail_next("exchange unavailable")
            await tracker.activate_emergency_stop("manual")

        asyncio.run(scenario())
        assert tracker.emergency_stop is True
        assert {i for i, _ in tracker.close_attempts} == {"BTC", "ETH"}
        assert len(tracker.positions) == 1

    def test_activate_twice_is_noop(self):
        _, _, tracker = _setup()

        async def scenario():
            await tracker.execute_approved_signal(make_consensus(), 100.0)
            await tracker.activate_emergency_stop("first")
            await tracker.activate_emergency_stop("second")

        asyncio.run(scenario())
        assert tracker.emergency_reason == "first"
        assert len(tracker.close_attempts) == 1

    def test_reset(self):
        gateway, queue, tracker = _setup()

        async def scenario():
            await tracker.activate_emergency_stop("manual")
            first = tracker.reset_emergency_stop()
            second = tracker.reset_emergency_stop()
            result = await tracker.execute_approved_signal(make_consensus(), 100.0)
            return first, second, result

        first, second, result = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert queue.halted is False
        assert result.ok

    def test_listeners_see_transitions(self):
        _, _, tracker = _setup()
        seen = []
        unsubscribe = tracker.subscribe(lambda status: seen.append(status.emergency_stop))

        async def scenario():
            await tracker.activate_emergency_stop("manual")
            unsubscribe()
            tracker.reset_emergency_stop()

        asyncio.run(scenario())
        assert True in seen
        assert seen[-1] is True


class TestRefresh:
    def test_refresh_failure_keeps_cache(self):
        gateway = _BrokenAccountGateway(prices=PRICES)
        _, _, tracker = _setup(gateway=gateway)
        ok = asyncio.run(tracker.refresh())
        assert ok is False
        assert tracker.get_status().last_refresh is None

    def test_execution_proceeds_when_refresh_fails(self):
        gateway = _BrokenAccountGateway(prices=PRICES)
        _, _, tracker = _setup(gateway=gateway)
        result = asyncio.run(tracker.execute_approved_signal(make_consensus(), 100.0))
        assert result.ok

    def test_status_snapshot(self):
        _, _, tracker = _setup()

        async def scenario():
            await tracker.execute_approved_signal(make_consensus(), 100.0)
            await tracker.refresh()

        asyncio.run(scenario())
        status = tracker.get_status()
        assert status.active_positions == 1
        assert status.equity == pytest.approx(10000.0)
        assert status.total_drawdown == 0.0
        assert status.positions[0].instrument == "BTC"

    def test_refresh_loop(self):
        _, _, tracker = _setup(config=TradingConfig(refresh_interval_s=0.01))

        async def scenario():
            await tracker.start()
            await asyncio.sleep(0.05)
            await tracker.stop()

        asyncio.run(scenario())
        assert tracker.get_status().last_refresh is not None

    def test_update_config_updates_queue_patterns(self):
        _, queue, tracker = _setup()
        tracker.update_config(TradingConfig(critical_error_patterns=["margin call"]))
        assert queue.critical_patterns == ("margin call",)
