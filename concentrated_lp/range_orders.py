"""
Range Order Engine
Emulates limit orders with narrow single-sided liquidity positions placed
above (buy) or below (sell) the current price
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .alert_manager import TelegramAlertManager
from .config import Config
from .exceptions import ConcentratedLPError, InvalidAmount, OrderNotFound
from .models import (
    OrderDirection,
    OrderStatus,
    PriceRange,
    RangeOrder,
)
from .position_registry import AddLiquidityParams, PositionRegistry
from .tick_math import VALID_FEE_TIERS
from .utils import random_suffix, to_decimal

logger = logging.getLogger(__name__)

FILL_TOLERANCE = Decimal('0.001')
MAX_RANGE_WIDTH_PERCENT = Decimal('10')
MINIMAL_AMOUNT = Decimal('0.000001')
BUY_RANGE_FLOOR = Decimal('1.001')
SELL_RANGE_CEILING = Decimal('0.999')


@dataclass
class RangeOrderConfig:
    token0: str
    token1: str
    fee: int
    direction: str
    amount: Any
    target_price: Any
    range_width: Any = Decimal('0.05')  # percent, 0.1 means 0.1%
    auto_execute: bool = True
    slippage_tolerance: Optional[float] = None


@dataclass
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    position_id: Optional[str] = None
    price_range: Optional[PriceRange] = None
    estimated_fill_price: Optional[Decimal] = None
    error: Optional[str] = None


class RangeOrderEngine:
    """Places, monitors, fills and cancels range orders"""

    def __init__(
        self,
        registry: PositionRegistry,
        config: Optional[Config] = None,
        alert_manager: Optional[TelegramAlertManager] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.registry = registry
        self.config = config or Config()
        self.alert_manager = alert_manager
        self.logger = logger or logging.getLogger(__name__)

        self.max_orders = self.config.MAX_RANGE_ORDERS
        self.retention_seconds = self.config.ORDER_RETENTION_DAYS * 24 * 3600

        self._orders: Dict[str, RangeOrder] = {}
        self._order_counter = 0
        self._monitor_task: Optional[asyncio.Task] = None
        self._running = False

        self.logger.info("RangeOrderEngine initialized")

    def _generate_order_id(self, direction: OrderDirection) -> str:
        self._order_counter += 1
        return f"ro_{direction.value[0]}{self._order_counter}_{random_suffix(6)}"

    @staticmethod
    def _validate_config(config: RangeOrderConfig) -> Optional[str]:
        if not config.token0 or not config.token1:
            return 'Token0 and token1 are required'
        if config.token0.lower() == config.token1.lower():
            return 'Token0 and token1 must be different'
        if config.direction not in (OrderDirection.BUY.value, OrderDirection.SELL.value):
            return 'Direction must be "buy" or "sell"'
        try:
            target_price = to_decimal(config.target_price, 'target_price')
            amount = to_decimal(config.amount, 'amount')
            range_width = to_decimal(config.range_width, 'range_width')
        except InvalidAmount as e:
            return str(e)
        if target_price <= 0:
            return 'Target price must be positive'
        if amount <= 0:
            return 'Amount must be positive'
        if range_width <= 0 or range_width > MAX_RANGE_WIDTH_PERCENT:
            return 'Range width must be between 0 and 10%'
        if config.fee not in VALID_FEE_TIERS:
            return 'Invalid fee tier'
        return None

    @staticmethod
    def calculate_order_range(current_price: Decimal, target_price: Decimal,
                              range_width: Decimal, direction: OrderDirection) -> PriceRange:
        """
        Range centred on the target, clamped so it never crosses the current price

        Args:
            current_price: Pool price at placement
            target_price: Desired fill price
            range_width: Total width as a percent of the target
            direction: buy sits above the current price, sell below

        Returns:
            PriceRange for the order's position
        """
        half_range = target_price * (range_width / 100) / 2
        if direction == OrderDirection.BUY:
            return PriceRange(
                min=max(target_price - half_range, current_price * BUY_RANGE_FLOOR),
                max=target_price + half_range,
            )
        return PriceRange(
            min=target_price - half_range,
            max=min(target_price + half_range, current_price * SELL_RANGE_CEILING),
        )

    @staticmethod
    def _range_on_correct_side(current_price: Decimal, price_range: PriceRange, direction: OrderDirection) -> bool:
        if direction == OrderDirection.BUY:
            return price_range.min > current_price
        return price_range.max < current_price

    async def place_range_order(self, config: RangeOrderConfig) -> OrderResult:
        """
        Place a range order

        Args:
            config: Order configuration

        Returns:
            OrderResult with the order id, position id and price range on success
        """
        try:
            self.logger.info(f"Placing {config.direction} range order: target={config.target_price} "
                             f"amount={config.amount} {config.token0}/{config.token1}")

            error = self._validate_config(config)
            if error:
                return OrderResult(success=False, error=error)

            direction = OrderDirection(config.direction)
            target_price = to_decimal(config.target_price, 'target_price')
            amount = to_decimal(config.amount, 'amount')
            range_width = to_decimal(config.range_width, 'range_width')

            current_price = await self.registry.get_current_price(config.token0, config.token1, config.fee)

            if direction == OrderDirection.BUY and target_price <= current_price:
                return OrderResult(success=False, error='Invalid range for buy order: price must be above current price')
            if direction == OrderDirection.SELL and target_price >= current_price:
                return OrderResult(success=False, error='Invalid range for sell order: price must be below current price')

            price_range = self.calculate_order_range(current_price, target_price, range_width, direction)
            if not self._range_on_correct_side(current_price, price_range, direction):
                side = 'above' if direction == OrderDirection.BUY else 'below'
                return OrderResult(
                    success=False,
                    error=f'Invalid range for {direction.value} order: price must be {side} current price'
                )

            # Single-sided: the full amount on the token being spent
            if direction == OrderDirection.BUY:
                amount0, amount1 = MINIMAL_AMOUNT, amount
            else:
                amount0, amount1 = amount, MINIMAL_AMOUNT

            position_id = await self.registry.add_liquidity_by_price(AddLiquidityParams(
                token0=config.token0,
                token1=config.token1,
                fee=config.fee,
                min_price=price_range.min,
                max_price=price_range.max,
                amount0_desired=amount0,
                amount1_desired=amount1,
                slippage_tolerance=config.slippage_tolerance,
                strategy='range_order',
            ))

            order_id = self._generate_order_id(direction)
            self._orders[order_id] = RangeOrder(
                order_id=order_id,
                position_id=position_id,
                direction=direction,
                token0=config.token0,
                token1=config.token1,
                fee=config.fee,
                target_price=target_price,
                range_width_percent=range_width,
                amount=amount,
                price_range=price_range,
                auto_execute=config.auto_execute,
            )

            self.logger.info(f"Range order placed: {order_id} position={position_id} "
                             f"range={price_range.min:.6f} - {price_range.max:.6f} current={current_price:.6f}")
            return OrderResult(
                success=True,
                order_id=order_id,
                position_id=position_id,
                price_range=price_range,
                estimated_fill_price=target_price,
            )

        except ConcentratedLPError as e:
            self.logger.error(f"Failed to place range order: {e}")
            return OrderResult(success=False, error=str(e))

    async def cancel_range_order(self, order_id: str) -> OrderResult:
        """Cancel an active order and withdraw its liquidity"""
        order = self._orders.get(order_id)
        if order is None:
            return OrderResult(success=False, order_id=order_id, error=str(OrderNotFound(order_id)))
        if order.status != OrderStatus.ACTIVE:
            return OrderResult(success=False, order_id=order_id,
                               error=f'Cannot cancel order with status: {order.status.value}')

        self.logger.info(f"Cancelling range order: {order_id}")
        try:
            position = self.registry.get_position(order.position_id)
            if position is not None:
                await self.registry.remove_liquidity(order.position_id, position.liquidity)
            else:
                self.logger.warning(f"Position {order.position_id} for order {order_id} already gone")
        except ConcentratedLPError as e:
            self.logger.error(f"Failed to cancel range order {order_id}: {e}")
            return OrderResult(success=False, order_id=order_id, error=str(e))

        order.status = OrderStatus.CANCELLED
        self.logger.info(f"Range order cancelled: {order_id}")
        return OrderResult(success=True, order_id=order_id, position_id=order.position_id)

    async def update_order_statuses(self) -> int:
        """
        Check every active order and fill those whose price reached the target

        Returns:
            Number of orders filled in this pass
        """
        filled = 0
        for order in self.get_orders_by_status(OrderStatus.ACTIVE):
            try:
                current_price = await self.registry.get_current_price(order.token0, order.token1, order.fee)
            except ConcentratedLPError as e:
                self.logger.warning(f"Skipping order {order.order_id}: price unavailable ({e})")
                continue

            if self._should_fill(order, current_price):
                if await self._execute_fill(order, current_price):
                    filled += 1
        return filled

    @staticmethod
    def _should_fill(order: RangeOrder, current_price: Decimal) -> bool:
        if not order.auto_execute or not order.price_range.contains(current_price):
            return False
        return abs(current_price - order.target_price) / order.target_price < FILL_TOLERANCE

    async def _execute_fill(self, order: RangeOrder, current_price: Decimal) -> bool:
        self.logger.info(f"Executing range order {order.order_id} at {current_price}")
        try:
            await self.registry.collect_fees(order.position_id)
            position = self.registry.get_position(order.position_id)
            liquidity = position.liquidity if position is not None else Decimal(0)
            amount0, amount1 = await self.registry.remove_liquidity(order.position_id, liquidity)
        except Exception as e:
            order.status = OrderStatus.EXPIRED
            self.logger.error(f"Range order {order.order_id} execution failed, marked expired: {e}")
            return False

        order.status = OrderStatus.FILLED
        order.filled_at = time.time()
        order.execution_price = current_price
        order.amount_filled = amount0 if order.direction == OrderDirection.BUY else amount1
        self.logger.info(f"Range order filled: {order.order_id} amount={order.amount_filled}")

        if self.alert_manager is not None:
            try:
                await asyncio.to_thread(
                    self.alert_manager.send_order_filled_notification,
                    order.order_id, order.direction.value, order.execution_price, order.amount_filled
                )
            except Exception as alert_error:
                self.logger.warning(f"Failed to send fill notification: {alert_error}")
        return True

    def cleanup(self, now: Optional[float] = None) -> int:
        """
        Drop old terminal orders and enforce the order cap

        Returns:
            Number of orders removed
        """
        now = now if now is not None else time.time()
        cutoff = now - self.retention_seconds
        removed = 0

        for order_id, order in list(self._orders.items()):
            if order.is_terminal and order.created_at < cutoff:
                del self._orders[order_id]
                removed += 1

        if len(self._orders) > self.max_orders:
            # Terminal orders go first, oldest first within each group
            candidates = sorted(
                self._orders.values(),
                key=lambda o: (not o.is_terminal, o.created_at)
            )
            for order in candidates[:len(self._orders) - self.max_orders]:
                if not order.is_terminal:
                    self.logger.warning(f"Evicting active order {order.order_id} to respect the order cap")
                del self._orders[order.order_id]
                removed += 1

        if removed:
            self.logger.info(f"Cleaned up {removed} range orders")
        return removed

    def get_order(self, order_id: str) -> Optional[RangeOrder]:
        return self._orders.get(order_id)

    def get_all_orders(self) -> List[RangeOrder]:
        return list(self._orders.values())

    def get_active_orders(self) -> List[RangeOrder]:
        return self.get_orders_by_status(OrderStatus.ACTIVE)

    def get_orders_by_status(self, status: OrderStatus) -> List[RangeOrder]:
        return [order for order in self._orders.values() if order.status == status]

    def get_statistics(self) -> Dict[str, Any]:
        orders = self.get_all_orders()
        counts = {status: 0 for status in OrderStatus}
        for order in orders:
            counts[order.status] += 1
        total = len(orders)
        return {
            'total_orders': total,
            'active_orders': counts[OrderStatus.ACTIVE],
            'filled_orders': counts[OrderStatus.FILLED],
            'cancelled_orders': counts[OrderStatus.CANCELLED],
            'expired_orders': counts[OrderStatus.EXPIRED],
            'total_volume': sum((order.amount for order in orders), Decimal(0)),
            'success_rate': counts[OrderStatus.FILLED] / total * 100 if total else 0.0,
        }

    # ---- background monitoring ----

    async def _monitor_loop(self, interval: float):
        while self._running:
            try:
                await self.update_order_statuses()
                self.cleanup()
            except ConcentratedLPError as e:
                self.logger.error(f"Order monitoring pass failed: {e}")
            await asyncio.sleep(interval)

    def start_monitoring(self, interval: Optional[float] = None):
        if self._running:
            return
        self._running = True
        interval = interval or self.config.ORDER_CHECK_INTERVAL_SECONDS
        self._monitor_task = asyncio.create_task(self._monitor_loop(interval))
        self.logger.info(f"Range order monitoring started (every {interval}s)")

    async def stop_monitoring(self):
        self._running = False
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        self.logger.info("Range order monitoring stopped")
