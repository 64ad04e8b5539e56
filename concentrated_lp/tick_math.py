"""
Concentrated Liquidity - Tick Math
Conversions between ticks, prices, sqrtPriceX96 and token amounts
"""
import logging
import math
from decimal import Decimal, InvalidOperation
from typing import Tuple, Union

from .exceptions import InvalidPrice, InvalidTick, ValidationError

logger = logging.getLogger(__name__)

Number = Union[int, float, str, Decimal]

TICK_BASE = Decimal('1.0001')
MIN_TICK = -887272
MAX_TICK = 887272
Q96 = 2 ** 96

FEE_TIER_TICK_SPACING = {
    100: 1,      # 0.01%
    500: 10,     # 0.05%
    3000: 60,    # 0.3%
    10000: 200,  # 1%
}
VALID_FEE_TIERS = tuple(sorted(FEE_TIER_TICK_SPACING))

_ZERO = Decimal(0)


def _as_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


class TickMath:
    """Pure tick and price math for concentrated liquidity positions"""

    @staticmethod
    def validate_tick(tick: int) -> int:
        """
        Reject ticks outside the protocol's global bound

        Args:
            tick: Tick index

        Returns:
            The tick, unchanged
        """
        if not isinstance(tick, int) or isinstance(tick, bool):
            raise InvalidTick(f"Tick must be an integer, got {tick!r}")
        if tick < MIN_TICK or tick > MAX_TICK:
            raise InvalidTick(f"Tick {tick} outside bounds [{MIN_TICK}, {MAX_TICK}]")
        return tick

    @staticmethod
    def price_to_tick(price: Number) -> int:
        """
        Convert price to the nearest tick

        Args:
            price: Price of token0 in token1, must be positive and finite

        Returns:
            Tick index, round(log(price) / log(1.0001))
        """
        try:
            value = float(price)
        except (TypeError, ValueError, InvalidOperation):
            raise InvalidPrice(f"Invalid price: {price!r}")
        if not math.isfinite(value) or value <= 0:
            raise InvalidPrice(f"Price must be positive and finite, got {price!r}")

        tick = int(round(math.log(value) / math.log(1.0001)))
        return TickMath.validate_tick(tick)

    @staticmethod
    def tick_to_price(tick: int) -> Decimal:
        """
        Convert tick to price

        Args:
            tick: Tick index within [MIN_TICK, MAX_TICK]

        Returns:
            1.0001 ** tick as Decimal
        """
        TickMath.validate_tick(tick)
        return TICK_BASE ** tick

    @staticmethod
    def tick_spacing(fee: int) -> int:
        """
        Tick spacing implied by a fee tier

        Args:
            fee: Fee in hundredths of a bip (100, 500, 3000, 10000)

        Returns:
            Tick spacing
        """
        if fee not in FEE_TIER_TICK_SPACING:
            raise ValidationError(f"Invalid fee tier: {fee}. Valid fees: {list(VALID_FEE_TIERS)}")
        return FEE_TIER_TICK_SPACING[fee]

    @staticmethod
    def nearest_usable_tick(tick: int, tick_spacing: int) -> int:
        """Round a tick to the nearest multiple of the spacing, staying inside the bound"""
        if tick_spacing <= 0:
            raise ValidationError(f"Tick spacing must be positive, got {tick_spacing}")
        rounded = int(round(tick / tick_spacing)) * tick_spacing
        if rounded < MIN_TICK:
            rounded += tick_spacing
        elif rounded > MAX_TICK:
            rounded -= tick_spacing
        return rounded

    @staticmethod
    def sqrt_price_x96_to_price(sqrt_price_x96: Number, decimals0: int = 18, decimals1: int = 18) -> Decimal:
        """
        Convert a Q64.96 square-root price to a human readable price

        Args:
            sqrt_price_x96: Square root price scaled by 2**96
            decimals0: Decimals of token0
            decimals1: Decimals of token1

        Returns:
            Price of token0 denominated in token1
        """
        sqrt_price = _as_decimal(sqrt_price_x96)
        if not sqrt_price.is_finite() or sqrt_price <= 0:
            raise InvalidPrice(f"Invalid sqrtPriceX96: {sqrt_price_x96!r}")
        ratio = sqrt_price / Decimal(Q96)
        return ratio * ratio * (Decimal(10) ** (decimals0 - decimals1))

    @staticmethod
    def price_to_sqrt_price_x96(price: Number, decimals0: int = 18, decimals1: int = 18) -> int:
        """Inverse of sqrt_price_x96_to_price, floored to an integer"""
        value = _as_decimal(price)
        if not value.is_finite() or value <= 0:
            raise InvalidPrice(f"Price must be positive and finite, got {price!r}")
        raw = value / (Decimal(10) ** (decimals0 - decimals1))
        return int(raw.sqrt() * Decimal(Q96))

    @staticmethod
    def is_price_in_range(price: Number, min_price: Number, max_price: Number) -> bool:
        value = _as_decimal(price)
        return _as_decimal(min_price) <= value <= _as_decimal(max_price)

    @staticmethod
    def amounts_for_position(
        liquidity: Number,
        current_price: Number,
        tick_lower: int,
        tick_upper: int
    ) -> Tuple[Decimal, Decimal]:
        """
        Token amounts represented by liquidity over a tick range

        Below the range the position is all token0, above it all token1,
        inside it a mix of both.

        Args:
            liquidity: Position liquidity
            current_price: Current pool price
            tick_lower: Lower tick bound
            tick_upper: Upper tick bound

        Returns:
            Tuple of (amount0, amount1); (0, 0) when any intermediate
            value is non-finite or negative
        """
        TickMath.validate_tick(tick_lower)
        TickMath.validate_tick(tick_upper)

        try:
            liq = _as_decimal(liquidity)
            price = _as_decimal(current_price)
            if not liq.is_finite() or not price.is_finite() or liq < 0 or price <= 0:
                logger.warning(f"Unusable inputs for amount calculation: liquidity={liquidity}, price={current_price}")
                return _ZERO, _ZERO

            price_lower = TickMath.tick_to_price(tick_lower)
            price_upper = TickMath.tick_to_price(tick_upper)
            sqrt_lower = price_lower.sqrt()
            sqrt_upper = price_upper.sqrt()

            if price <= price_lower:
                amount0 = liq * (1 / sqrt_lower - 1 / sqrt_upper)
                amount1 = _ZERO
            elif price >= price_upper:
                amount0 = _ZERO
                amount1 = liq * (sqrt_upper - sqrt_lower)
            else:
                sqrt_price = price.sqrt()
                amount0 = liq * (1 / sqrt_price - 1 / sqrt_upper)
                amount1 = liq * (sqrt_price - sqrt_lower)
        except (InvalidOperation, ArithmeticError, ValueError, TypeError) as e:
            logger.warning(f"Amount calculation failed for ticks [{tick_lower}, {tick_upper}]: {e}")
            return _ZERO, _ZERO

        for amount in (amount0, amount1):
            if not amount.is_finite() or amount < 0:
                logger.warning(f"Non-finite or negative amount for ticks [{tick_lower}, {tick_upper}]")
                return _ZERO, _ZERO

        return amount0, amount1
