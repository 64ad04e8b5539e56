"""
Unit tests for range orders.
"""
import asyncio
import re
from decimal import Decimal

import pytest

from concentrated_lp.models import OrderDirection, OrderStatus
from concentrated_lp.range_orders import (
    MINIMAL_AMOUNT,
    RangeOrderConfig,
    RangeOrderEngine,
)


def order_config(**overrides):
    config = dict(
        token0="0xaaa", token1="0xbbb", fee=3000, direction='buy',
        amount=100, target_price="0.055", range_width="0.1",
    )
    config.update(overrides)
    return RangeOrderConfig(**config)


class TestOrderRange:
    """Test range placement math."""

    def test_buy_range_centred_on_target(self):
        price_range = RangeOrderEngine.calculate_order_range(
            Decimal('0.05'), Decimal('0.055'), Decimal('0.1'), OrderDirection.BUY
        )
        assert price_range.min == Decimal('0.0549725')
        assert price_range.max == Decimal('0.0550275')
        assert price_range.width == Decimal('0.055') * Decimal('0.001')

    def test_buy_range_clamped_above_current(self):
        price_range = RangeOrderEngine.calculate_order_range(
            Decimal('0.05'), Decimal('0.0501'), Decimal('1'), OrderDirection.BUY
        )
        assert price_range.min == Decimal('0.05') * Decimal('1.001')
        assert price_range.min > Decimal('0.05')

    def test_sell_range_clamped_below_current(self):
        price_range = RangeOrderEngine.calculate_order_range(
            Decimal('0.05'), Decimal('0.0499'), Decimal('1'), OrderDirection.SELL
        )
        assert price_range.max == Decimal('0.05') * Decimal('0.999')
        assert price_range.max < Decimal('0.05')


class TestPlaceRangeOrder:
    """Test placing orders."""

    @pytest.fixture
    def engine(self, registry, config, alert_manager):
        return RangeOrderEngine(registry, config=config, alert_manager=alert_manager)

    @pytest.mark.asyncio
    async def test_buy_order_above_current_price(self, engine, registry, ledger):
        result = await engine.place_range_order(order_config())

        assert result.success, result.error
        assert re.match(r"^ro_b1_[0-9a-z]{6}$", result.order_id)
        assert result.price_range.min > Decimal('0.05')
        assert result.estimated_fill_price == Decimal('0.055')

        position = registry.get_position(result.position_id)
        assert position.strategy == 'range_order'
        request = next(params for name, params in ledger.calls if name == 'add_liquidity')
        assert request['amount0_desired'] == MINIMAL_AMOUNT
        assert request['amount1_desired'] == Decimal(100)

    @pytest.mark.asyncio
    async def test_sell_order_below_current_price(self, engine, ledger):
        result = await engine.place_range_order(order_config(direction='sell', target_price="0.045"))

        assert result.success, result.error
        assert result.order_id.startswith("ro_s1_")
        assert result.price_range.max < Decimal('0.05')
        request = next(params for name, params in ledger.calls if name == 'add_liquidity')
        assert request['amount0_desired'] == Decimal(100)
        assert request['amount1_desired'] == MINIMAL_AMOUNT

    @pytest.mark.asyncio
    async def test_buy_at_or_below_current_rejected(self, engine, ledger):
        result = await engine.place_range_order(order_config(target_price="0.05"))

        assert not result.success
        assert result.error == 'Invalid range for buy order: price must be above current price'
        assert ledger.call_count('add_liquidity') == 0

    @pytest.mark.asyncio
    async def test_sell_at_or_above_current_rejected(self, engine):
        result = await engine.place_range_order(order_config(direction='sell', target_price="0.06"))

        assert not result.success
        assert result.error == 'Invalid range for sell order: price must be below current price'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides, message", [
        ({'direction': 'hold'}, 'Direction must be "buy" or "sell"'),
        ({'amount': 0}, 'Amount must be positive'),
        ({'target_price': -1}, 'Target price must be positive'),
        ({'range_width': 11}, 'Range width must be between 0 and 10%'),
        ({'range_width': 0}, 'Range width must be between 0 and 10%'),
        ({'fee': 2500}, 'Invalid fee tier'),
        ({'token1': "0xAAA"}, 'Token0 and token1 must be different'),
    ])
    async def test_validation_messages(self, engine, ledger, overrides, message):
        result = await engine.place_range_order(order_config(**overrides))

        assert not result.success
        assert result.error == message
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_ledger_failure_reported_in_result(self, engine, ledger):
        ledger.fail('add_liquidity', Exception("execution reverted"))

        result = await engine.place_range_order(order_config())

        assert not result.success
        assert "add_liquidity failed" in result.error
        assert engine.get_all_orders() == []


class TestOrderLifecycle:
    """Test cancel, fill and cleanup."""

    @pytest.fixture
    def engine(self, registry, config, alert_manager):
        return RangeOrderEngine(registry, config=config, alert_manager=alert_manager)

    @pytest.mark.asyncio
    async def test_cancel_active_order(self, engine, registry):
        placed = await engine.place_range_order(order_config())

        result = await engine.cancel_range_order(placed.order_id)

        assert result.success
        assert engine.get_order(placed.order_id).status == OrderStatus.CANCELLED
        assert registry.get_position(placed.position_id) is None

    @pytest.mark.asyncio
    async def test_cancel_twice_fails_without_touching_ledger(self, engine, ledger):
        placed = await engine.place_range_order(order_config())
        await engine.cancel_range_order(placed.order_id)
        removals = ledger.call_count('remove_liquidity')

        result = await engine.cancel_range_order(placed.order_id)

        assert not result.success
        assert result.error == 'Cannot cancel order with status: cancelled'
        assert ledger.call_count('remove_liquidity') == removals

    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, engine):
        result = await engine.cancel_range_order("ro_b9_missing")
        assert not result.success
        assert result.error == 'Order not found'

    @pytest.mark.asyncio
    async def test_fills_when_price_reaches_target(self, engine, registry, ledger, alert_manager):
        placed = await engine.place_range_order(order_config())
        ledger.set_price("0xaaa", "0xbbb", 3000, "0.055")

        assert await engine.update_order_statuses() == 1

        order = engine.get_order(placed.order_id)
        assert order.status == OrderStatus.FILLED
        assert order.execution_price == Decimal('0.055')
        assert order.filled_at is not None
        assert registry.get_position(placed.position_id) is None
        alert_manager.send_order_filled_notification.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_fill_away_from_target(self, engine, ledger):
        placed = await engine.place_range_order(order_config())
        ledger.set_price("0xaaa", "0xbbb", 3000, "0.052")

        assert await engine.update_order_statuses() == 0
        assert engine.get_order(placed.order_id).status == OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_manual_orders_are_not_filled(self, engine, ledger):
        placed = await engine.place_range_order(order_config(auto_execute=False))
        ledger.set_price("0xaaa", "0xbbb", 3000, "0.055")

        assert await engine.update_order_statuses() == 0
        assert engine.get_order(placed.order_id).status == OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_execution_marks_expired(self, engine, ledger):
        placed = await engine.place_range_order(order_config())
        ledger.set_price("0xaaa", "0xbbb", 3000, "0.055")
        ledger.fail('remove_liquidity', Exception("execution reverted"))

        assert await engine.update_order_statuses() == 0
        assert engine.get_order(placed.order_id).status == OrderStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_price_failure_skips_order(self, engine, ledger):
        placed = await engine.place_range_order(order_config())
        ledger.fail('get_pool_data', Exception("execution reverted"))

        assert await engine.update_order_statuses() == 0
        assert engine.get_order(placed.order_id).status == OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_cleanup_drops_old_terminal_orders(self, engine):
        old = await engine.place_range_order(order_config())
        await engine.cancel_range_order(old.order_id)
        active = await engine.place_range_order(order_config())
        engine.get_order(old.order_id).created_at -= 8 * 24 * 3600
        engine.get_order(active.order_id).created_at -= 8 * 24 * 3600

        assert engine.cleanup() == 1
        assert engine.get_order(old.order_id) is None
        assert engine.get_order(active.order_id) is not None

    @pytest.mark.asyncio
    async def test_cleanup_enforces_cap_terminal_first(self, engine):
        first = await engine.place_range_order(order_config())
        second = await engine.place_range_order(order_config())
        third = await engine.place_range_order(order_config())
        await engine.cancel_range_order(third.order_id)
        engine.max_orders = 2

        assert engine.cleanup() == 1
        assert engine.get_order(third.order_id) is None
        assert engine.get_order(first.order_id) is not None
        assert engine.get_order(second.order_id) is not None

    @pytest.mark.asyncio
    async def test_statistics(self, engine, ledger):
        first = await engine.place_range_order(order_config())
        await engine.place_range_order(order_config(direction='sell', target_price="0.045", amount=50))
        await engine.cancel_range_order(first.order_id)

        stats = engine.get_statistics()
        assert stats['total_orders'] == 2
        assert stats['active_orders'] == 1
        assert stats['cancelled_orders'] == 1
        assert stats['filled_orders'] == 0
        assert stats['total_volume'] == Decimal(150)
        assert stats['success_rate'] == 0.0
        assert len(engine.get_active_orders()) == 1

    @pytest.mark.asyncio
    async def test_monitoring_start_and_stop(self, engine, ledger):
        placed = await engine.place_range_order(order_config())
        ledger.set_price("0xaaa", "0xbbb", 3000, "0.055")

        engine.start_monitoring(interval=0.01)
        await asyncio.sleep(0.05)
        await engine.stop_monitoring()

        assert engine.get_order(placed.order_id).status == OrderStatus.FILLED
        assert engine._monitor_task is None
