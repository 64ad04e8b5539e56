"""
Unit tests for the position registry.
"""
import asyncio
from decimal import Decimal

import pytest
from web3.exceptions import TimeExhausted

from concentrated_lp.exceptions import (
    InvalidAmount,
    InvalidPrice,
    InvalidTick,
    LedgerError,
    PositionNotFound,
    StrandedRebalanceError,
    ValidationError,
)
from concentrated_lp.position_registry import (
    AddLiquidityByTicksParams,
    AddLiquidityParams,
    PositionRegistry,
    RECONCILE_PAGE_SIZE,
)
from concentrated_lp.repository import InMemoryPositionRepository
from concentrated_lp.tick_math import TickMath

from conftest import NO_DELAY_RETRY, WALLET, FakeLedgerClient, ledger_position


def add_params(**overrides):
    params = dict(
        token0="0xaaa", token1="0xbbb", fee=3000,
        min_price=0.045, max_price=0.055,
        amount0_desired=1000, amount1_desired=50,
    )
    params.update(overrides)
    return AddLiquidityParams(**params)


class TestAddLiquidity:
    """Test opening positions."""

    @pytest.mark.asyncio
    async def test_add_by_price(self, registry, ledger):
        position_id = await registry.add_liquidity_by_price(add_params())

        position = registry.get_position(position_id)
        assert position_id.startswith("lp_")
        assert position.tick_lower == TickMath.price_to_tick(0.045)
        assert position.tick_upper == TickMath.price_to_tick(0.055)
        assert position.liquidity > 0
        assert position.in_range is True
        assert position.wallet_address == WALLET
        assert position.token_id == "1"
        assert ledger.call_count('add_liquidity') == 1

    @pytest.mark.asyncio
    async def test_slippage_minimums_sent_to_ledger(self, registry, ledger):
        await registry.add_liquidity_by_price(add_params(slippage_tolerance=0.02))

        _, request = ledger.calls[0]
        assert request['amount0_min'] == Decimal('980.00')
        assert request['amount1_min'] == Decimal('49.00')
        assert request['tick_spacing'] == 60

    @pytest.mark.asyncio
    async def test_ids_are_unique_for_identical_requests(self, registry):
        first = await registry.add_liquidity_by_price(add_params())
        second = await registry.add_liquidity_by_price(add_params())
        assert first != second
        assert len(registry.get_all_positions()) == 2

    @pytest.mark.asyncio
    async def test_reversed_tokens_are_stored_canonically(self, registry):
        position_id = await registry.add_liquidity_by_price(add_params(
            token0="0xbbb", token1="0xaaa", min_price=10, max_price=20,
            amount0_desired=50, amount1_desired=1000,
        ))

        position = registry.get_position(position_id)
        assert position.token0 == "0xaaa"
        assert position.token1 == "0xbbb"
        assert position.min_price == Decimal('0.05')
        assert position.max_price == Decimal('0.1')
        assert position.amount0 == Decimal(1000)
        assert position.amount1 == Decimal(50)

    @pytest.mark.asyncio
    async def test_add_by_ticks(self, registry):
        position_id = await registry.add_liquidity_by_ticks(AddLiquidityByTicksParams(
            token0="0xaaa", token1="0xbbb", fee=500, tick_lower=-30600, tick_upper=-29400,
            amount0_desired=10, amount1_desired=0,
        ))
        position = registry.get_position(position_id)
        assert (position.tick_lower, position.tick_upper) == (-30600, -29400)
        assert position.min_price < position.max_price

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides, error", [
        ({'token1': "0xAAA"}, ValidationError),
        ({'fee': 2500}, ValidationError),
        ({'min_price': 0.06}, InvalidPrice),
        ({'min_price': -1}, InvalidPrice),
        ({'max_price': 'abc'}, InvalidPrice),
        ({'amount0_desired': 0, 'amount1_desired': 0}, InvalidAmount),
        ({'amount0_desired': -5}, InvalidAmount),
        ({'slippage_tolerance': 1.5}, ValidationError),
    ])
    async def test_invalid_requests_never_reach_ledger(self, registry, ledger, overrides, error):
        with pytest.raises(error):
            await registry.add_liquidity_by_price(add_params(**overrides))
        assert ledger.calls == []
        assert registry.get_all_positions() == []

    @pytest.mark.asyncio
    async def test_inverted_ticks_rejected(self, registry):
        with pytest.raises(InvalidTick):
            await registry.add_liquidity_by_ticks(AddLiquidityByTicksParams(
                token0="0xaaa", token1="0xbbb", fee=500, tick_lower=100, tick_upper=100,
                amount0_desired=1, amount1_desired=1,
            ))

    @pytest.mark.asyncio
    async def test_transient_ledger_errors_are_retried(self, registry, ledger):
        ledger.fail('add_liquidity', ConnectionError("connection reset"), times=2)
        position_id = await registry.add_liquidity_by_price(add_params())
        assert registry.get_position(position_id) is not None
        assert ledger.call_count('add_liquidity') == 3

    @pytest.mark.asyncio
    async def test_permanent_ledger_error_fails_once(self, registry, ledger):
        ledger.fail('add_liquidity', Exception("execution reverted: STF"))
        with pytest.raises(LedgerError):
            await registry.add_liquidity_by_price(add_params())
        assert ledger.call_count('add_liquidity') == 1
        assert registry.get_all_positions() == []

    @pytest.mark.asyncio
    async def test_unconfirmed_transaction_is_not_resent(self, registry, ledger):
        ledger.fail('add_liquidity', TimeExhausted("Transaction 0xabc is not in the chain after 120 seconds"),
                    times=1)
        with pytest.raises(LedgerError):
            await registry.add_liquidity_by_price(add_params())
        assert ledger.call_count('add_liquidity') == 1
        assert registry.get_all_positions() == []

    @pytest.mark.asyncio
    async def test_unconfirmed_withdrawal_is_not_resent(self, registry, ledger):
        position_id = await registry.add_liquidity_by_price(add_params())
        ledger.fail('remove_liquidity', TimeExhausted("Transaction 0xdef is not in the chain after 120 seconds"),
                    times=1)
        with pytest.raises(LedgerError):
            await registry.remove_liquidity(position_id, 1)
        assert ledger.call_count('remove_liquidity') == 1

    @pytest.mark.asyncio
    async def test_stores_ticks_placed_by_ledger(self):
        ledger = FakeLedgerClient(snap_ticks=True)
        registry = PositionRegistry(ledger, WALLET, repository=InMemoryPositionRepository(),
                                    retry_options=NO_DELAY_RETRY)

        position_id = await registry.add_liquidity_by_price(add_params())

        position = registry.get_position(position_id)
        assert position.tick_lower % 60 == 0
        assert position.tick_upper % 60 == 0
        assert position.tick_lower != TickMath.price_to_tick(0.045)
        assert position.min_price == TickMath.tick_to_price(position.tick_lower)
        assert position.max_price == TickMath.tick_to_price(position.tick_upper)


class TestRemoveAndCollect:
    """Test withdrawing liquidity and collecting fees."""

    @pytest.mark.asyncio
    async def test_partial_remove(self, registry):
        position_id = await registry.add_liquidity_by_price(add_params())
        liquidity = registry.get_position(position_id).liquidity

        amount0, amount1 = await registry.remove_liquidity(position_id, liquidity / 4)

        position = registry.get_position(position_id)
        assert amount0 == Decimal(250)
        assert amount1 == Decimal('12.5')
        assert position.liquidity == liquidity * 3 / 4
        assert position.amount0 == Decimal(750)

    @pytest.mark.asyncio
    async def test_full_remove_deletes_position(self, registry):
        position_id = await registry.add_liquidity_by_price(add_params())
        liquidity = registry.get_position(position_id).liquidity

        await registry.remove_liquidity(position_id, liquidity)

        assert registry.get_position(position_id) is None
        stored = await registry.repository.find_one({'id': position_id})
        assert stored.is_active is False

    @pytest.mark.asyncio
    async def test_full_remove_releases_per_position_state(self, registry):
        removed = []
        registry.on_position_removed(removed.append)
        position_id = await registry.add_liquidity_by_price(add_params())
        liquidity = registry.get_position(position_id).liquidity

        await registry.remove_liquidity(position_id, liquidity)

        assert removed == [position_id]
        assert position_id not in registry._locks
        assert position_id not in registry._last_price_check_ms

    @pytest.mark.asyncio
    async def test_remove_validation(self, registry):
        position_id = await registry.add_liquidity_by_price(add_params())
        liquidity = registry.get_position(position_id).liquidity

        with pytest.raises(PositionNotFound):
            await registry.remove_liquidity("lp_missing", 1)
        with pytest.raises(InvalidAmount, match="Invalid liquidity amount"):
            await registry.remove_liquidity(position_id, "abc")
        with pytest.raises(InvalidAmount, match="Invalid liquidity amount"):
            await registry.remove_liquidity(position_id, -1)
        with pytest.raises(InvalidAmount):
            await registry.remove_liquidity(position_id, liquidity + 1)

    @pytest.mark.asyncio
    async def test_concurrent_removals_are_serialized(self, registry):
        position_id = await registry.add_liquidity_by_price(add_params())
        liquidity = registry.get_position(position_id).liquidity
        portion = liquidity * Decimal('0.6')

        results = await asyncio.gather(
            registry.remove_liquidity(position_id, portion),
            registry.remove_liquidity(position_id, portion),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidAmount)
        assert registry.get_position(position_id).liquidity == liquidity - portion

    @pytest.mark.asyncio
    async def test_collect_fees_moves_uncollected_to_collected(self, registry, ledger):
        position_id = await registry.add_liquidity_by_price(add_params())
        position = registry.get_position(position_id)
        ledger.ledger_positions = [ledger_position(
            position_id=position_id, tick_lower=position.tick_lower, tick_upper=position.tick_upper,
            liquidity=str(position.liquidity), tokens_owed0="3", tokens_owed1="0.1",
        )]
        await registry.reconcile()

        amount0, amount1 = await registry.collect_fees(position_id)

        position = registry.get_position(position_id)
        assert (amount0, amount1) == (Decimal(3), Decimal('0.1'))
        assert position.uncollected_fees0 == 0
        assert position.uncollected_fees1 == 0
        assert position.collected_fees0 == Decimal(3)

    @pytest.mark.asyncio
    async def test_collect_unknown_position(self, registry):
        with pytest.raises(PositionNotFound):
            await registry.collect_fees("lp_missing")


class TestRebalance:
    """Test moving a position to a new range."""

    @pytest.mark.asyncio
    async def test_rebalance_success(self, registry, ledger):
        old_id = await registry.add_liquidity_by_price(add_params())

        new_id = await registry.rebalance_position(old_id, 0.048, 0.052)

        assert new_id != old_id
        assert registry.get_position(old_id) is None
        new_position = registry.get_position(new_id)
        assert new_position.rebalance_count == 1
        assert new_position.tick_lower == TickMath.price_to_tick(0.048)
        assert new_position.amount0 == Decimal(1000)
        assert ledger.call_count('remove_liquidity') == 1

    @pytest.mark.asyncio
    async def test_rebalance_collects_outstanding_fees_first(self, registry, ledger):
        old_id = await registry.add_liquidity_by_price(add_params())
        position = registry.get_position(old_id)
        ledger.ledger_positions = [ledger_position(
            position_id=old_id, tick_lower=position.tick_lower, tick_upper=position.tick_upper,
            liquidity=str(position.liquidity), tokens_owed0="2",
        )]
        await registry.reconcile()

        await registry.rebalance_position(old_id, 0.048, 0.052)

        methods = [name for name, _ in ledger.calls if name in ('collect_fees', 'remove_liquidity', 'add_liquidity')]
        assert methods == ['add_liquidity', 'collect_fees', 'remove_liquidity', 'add_liquidity']

    @pytest.mark.asyncio
    async def test_failure_before_removal_leaves_position(self, registry, ledger):
        old_id = await registry.add_liquidity_by_price(add_params())
        ledger.fail('remove_liquidity', Exception("execution reverted"))

        with pytest.raises(LedgerError) as exc_info:
            await registry.rebalance_position(old_id, 0.048, 0.052)

        assert not isinstance(exc_info.value, StrandedRebalanceError)
        assert registry.get_position(old_id) is not None

    @pytest.mark.asyncio
    async def test_failure_after_removal_is_stranded(self, registry, ledger, alert_manager):
        old_id = await registry.add_liquidity_by_price(add_params())
        ledger.fail('add_liquidity', Exception("execution reverted"))

        with pytest.raises(StrandedRebalanceError) as exc_info:
            await registry.rebalance_position(old_id, 0.048, 0.052)

        error = exc_info.value
        assert error.position_id == old_id
        assert error.amount0 == Decimal(1000)
        assert error.amount1 == Decimal(50)
        assert registry.get_position(old_id) is None
        alert_manager.send_stranded_rebalance_alert.assert_called_once()

    @pytest.mark.asyncio
    async def test_invalid_new_range(self, registry):
        old_id = await registry.add_liquidity_by_price(add_params())
        with pytest.raises(InvalidPrice):
            await registry.rebalance_position(old_id, 0.052, 0.048)
        with pytest.raises(PositionNotFound):
            await registry.rebalance_position("lp_missing", 0.048, 0.052)


class TestReconcile:
    """Test syncing local state against the ledger."""

    @pytest.mark.asyncio
    async def test_discovers_ledger_positions(self, registry, ledger):
        ledger.ledger_positions = [
            ledger_position(),
            ledger_position(tick_lower=-2000, tick_upper=2000, liquidity="500"),
        ]

        positions = await registry.reconcile()

        assert len(positions) == 2
        ids = {p.id for p in positions}
        assert registry.deterministic_id(ledger_position()) in ids
        assert registry.last_reconcile_at is not None

    def test_deterministic_id_format(self, registry):
        assert registry.deterministic_id(ledger_position()) == "pos_0xaaa-0xbbb-3000--1000-1000_34567890"
        assert registry.deterministic_id(ledger_position(id="42")) == "42"

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, registry, ledger):
        ledger.ledger_positions = [
            ledger_position(),
            ledger_position(fee=500, tick_lower=-500, tick_upper=500),
        ]

        first = {p.id for p in await registry.reconcile()}
        second = {p.id for p in await registry.reconcile()}

        assert first == second
        assert len(second) == 2

    @pytest.mark.asyncio
    async def test_updates_existing_position(self, registry, ledger):
        ledger.ledger_positions = [ledger_position(liquidity="1000")]
        await registry.reconcile()
        ledger.ledger_positions = [ledger_position(liquidity="400", tokens_owed1="7")]

        positions = await registry.reconcile()

        assert len(positions) == 1
        assert positions[0].liquidity == Decimal(400)
        assert positions[0].uncollected_fees1 == Decimal(7)

    @pytest.mark.asyncio
    async def test_collision_keeps_both_records(self, registry, ledger, alert_manager):
        ledger.ledger_positions = [
            ledger_position(id="7", tick_lower=-1000, tick_upper=1000),
            ledger_position(id="7", tick_lower=-3000, tick_upper=3000),
        ]

        positions = await registry.reconcile()

        assert len(positions) == 2
        assert len(registry.last_collisions) == 1
        collision = registry.last_collisions[0]
        assert collision.position_id == "7"
        assert collision.safe_id.startswith("7_")
        assert registry.get_position(collision.safe_id).tick_lower == -3000
        assert registry.get_position("7").tick_lower == -1000
        alert_manager.send_collision_alert.assert_called_once()

        again = await registry.reconcile()
        assert {p.id for p in again} == {p.id for p in positions}

    @pytest.mark.asyncio
    async def test_zero_liquidity_closes_local_position(self, registry, ledger):
        ledger.ledger_positions = [ledger_position()]
        await registry.reconcile()
        ledger.ledger_positions = [ledger_position(liquidity="0")]

        positions = await registry.reconcile()

        assert positions == []

    @pytest.mark.asyncio
    async def test_closed_position_with_reused_id_is_not_a_collision(self, registry, ledger, alert_manager):
        removed = []
        registry.on_position_removed(removed.append)
        ledger.ledger_positions = [ledger_position(id="7", tick_lower=-1000, tick_upper=1000)]
        await registry.reconcile()
        ledger.ledger_positions = [ledger_position(id="7", tick_lower=-3000, tick_upper=3000, liquidity="0")]

        positions = await registry.reconcile()

        assert registry.last_collisions == []
        alert_manager.send_collision_alert.assert_not_called()
        assert len(positions) == 1
        assert positions[0].id == "7"
        assert removed == []

    @pytest.mark.asyncio
    async def test_closed_on_ledger_releases_per_position_state(self, registry, ledger):
        removed = []
        registry.on_position_removed(removed.append)
        ledger.ledger_positions = [ledger_position(id="7")]
        await registry.reconcile()
        ledger.ledger_positions = [ledger_position(id="7", liquidity="0")]

        await registry.reconcile()

        assert removed == ["7"]
        assert "7" not in registry._locks
        stored = await registry.repository.find_one({'id': "7"})
        assert stored.is_active is False

    @pytest.mark.asyncio
    async def test_minted_position_maps_back_to_local_record(self):
        ledger = FakeLedgerClient(snap_ticks=True)
        registry = PositionRegistry(ledger, WALLET, repository=InMemoryPositionRepository(),
                                    retry_options=NO_DELAY_RETRY)
        position_id = await registry.add_liquidity_by_price(add_params())
        ledger.ledger_positions = ledger.minted_positions()

        first = await registry.reconcile()
        second = await registry.reconcile()

        assert [p.id for p in first] == [position_id]
        assert [p.id for p in second] == [position_id]
        assert registry.last_collisions == []
        position = registry.get_position(position_id)
        assert position.token_id == "1"
        assert (position.tick_lower, position.tick_upper) == (
            ledger.positions[position_id]['tick_lower'], ledger.positions[position_id]['tick_upper']
        )

    @pytest.mark.asyncio
    async def test_ledger_ticks_replace_stale_local_range(self, registry, ledger):
        position_id = await registry.add_liquidity_by_price(add_params())
        position = registry.get_position(position_id)
        ledger.ledger_positions = [ledger_position(
            position_id="1", token_id="1", tick_lower=-30600, tick_upper=-28800,
            liquidity=str(position.liquidity),
        )]

        positions = await registry.reconcile()

        assert [p.id for p in positions] == [position_id]
        position = registry.get_position(position_id)
        assert (position.tick_lower, position.tick_upper) == (-30600, -28800)
        assert position.min_price == TickMath.tick_to_price(-30600)

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self, registry, ledger):
        broken = ledger_position(tick_lower=500, tick_upper=-500)
        missing = ledger_position()
        del missing['token0']
        ledger.ledger_positions = [broken, missing, ledger_position()]

        positions = await registry.reconcile()

        assert len(positions) == 1

    @pytest.mark.asyncio
    async def test_pages_until_short_batch(self, registry, ledger):
        ledger.ledger_positions = [
            ledger_position(tick_lower=-1000 - i, tick_upper=1000 + i)
            for i in range(RECONCILE_PAGE_SIZE * 2 + 5)
        ]

        positions = await registry.reconcile()

        assert len(positions) == RECONCILE_PAGE_SIZE * 2 + 5
        assert ledger.call_count('get_user_positions') == 3

    @pytest.mark.asyncio
    async def test_ledger_failure_raises(self, registry, ledger):
        ledger.fail('get_user_positions', Exception("execution reverted"))
        with pytest.raises(LedgerError):
            await registry.reconcile()


class TestPricesAndReads:
    """Test price refresh and read side."""

    @pytest.mark.asyncio
    async def test_price_inverts_for_reversed_order(self, registry, ledger):
        ledger.set_price("0xaaa", "0xbbb", 3000, 2)
        assert await registry.get_current_price("0xaaa", "0xbbb", 3000) == Decimal(2)
        assert await registry.get_current_price("0xbbb", "0xaaa", 3000) == Decimal('0.5')

    @pytest.mark.asyncio
    async def test_non_positive_price_rejected(self, registry, ledger):
        ledger.set_price("0xaaa", "0xbbb", 3000, 0)
        with pytest.raises(InvalidPrice):
            await registry.get_current_price("0xaaa", "0xbbb", 3000)

    @pytest.mark.asyncio
    async def test_update_prices_tracks_range(self, registry, ledger):
        position_id = await registry.add_liquidity_by_price(add_params())
        ledger.set_price("0xaaa", "0xbbb", 3000, "0.06")

        assert await registry.update_position_prices() == 1

        position = registry.get_position(position_id)
        assert position.in_range is False
        assert position.current_price == Decimal('0.06')
        assert position.amount0 == 0
        assert position.amount1 > 0

    @pytest.mark.asyncio
    async def test_readers_get_copies(self, registry):
        position_id = await registry.add_liquidity_by_price(add_params())
        copy = registry.get_position(position_id)
        copy.liquidity = Decimal(0)
        assert registry.get_position(position_id).liquidity > 0

    @pytest.mark.asyncio
    async def test_record_value_sets_initial_once(self, registry):
        position_id = await registry.add_liquidity_by_price(add_params())
        await registry.record_position_value(position_id, 100)
        await registry.record_position_value(position_id, 120)

        position = registry.get_position(position_id)
        assert position.initial_value_usd == Decimal(100)
        assert position.current_value_usd == Decimal(120)
        analytics = registry.get_position_analytics(position_id)
        assert analytics['profit_loss'] == Decimal(20)
        assert analytics['fee_tier'] == "0.3%"

    @pytest.mark.asyncio
    async def test_statistics(self, registry):
        await registry.add_liquidity_by_price(add_params())
        await registry.add_liquidity_by_price(add_params(fee=500))

        stats = registry.get_statistics()
        assert stats['total_positions'] == 2
        assert stats['in_range_positions'] == 2
        assert stats['by_fee_tier'] == {3000: 1, 500: 1}
        assert registry.get_status()['is_initialized'] is False

    @pytest.mark.asyncio
    async def test_load_from_repository(self, registry, ledger):
        repository = registry.repository
        position_id = await registry.add_liquidity_by_price(add_params())

        restored = PositionRegistry(ledger, WALLET, repository=repository, retry_options=NO_DELAY_RETRY)
        assert await restored.load_from_repository() == 1
        assert restored.get_position(position_id) is not None

    @pytest.mark.asyncio
    async def test_load_skips_closed_positions(self, ledger):
        repository = InMemoryPositionRepository()
        registry = PositionRegistry(ledger, WALLET, repository=repository, retry_options=NO_DELAY_RETRY)
        position_id = await registry.add_liquidity_by_price(add_params())
        await registry.remove_liquidity(position_id, registry.get_position(position_id).liquidity)

        restored = PositionRegistry(ledger, WALLET, repository=repository, retry_options=NO_DELAY_RETRY)
        assert await restored.load_from_repository() == 0
