"""
Fee Optimizer
Tracks fee accrual per position, values it in USD and decides when
collecting is worth the gas
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import numpy as np

from .config import Config
from .exceptions import PartialBatchFailure, PositionNotFound
from .models import ZERO, Position, time_in_range_percent
from .position_registry import PositionRegistry
from .utils import to_decimal

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 3600
MAX_SNAPSHOTS_PER_POSITION = 10000
ACCRUAL_RATE_SNAPSHOTS = 10
DEFAULT_WAIT_DAYS = 7
APR_PERCENTILES = (25, 50, 75, 90)

# Recommendation thresholds on gas / accrued fees
COLLECT_NOW_RATIO = 0.1
WAIT_RATIO = 0.5

PriceOracle = Callable[[str], Union[Decimal, Awaitable[Decimal]]]


@dataclass
class FeeSnapshot:
    timestamp: float
    fees0: Decimal
    fees1: Decimal
    fees_usd: float
    position_value_usd: float


@dataclass
class FeeCalculationResult:
    success: bool
    position_id: str
    total_fees_usd: Decimal = ZERO
    collected_fees_usd: Decimal = ZERO
    fees0: Decimal = ZERO
    fees1: Decimal = ZERO
    position_value_usd: Decimal = ZERO
    daily_fee_rate: float = 0.0
    estimated_apr: float = 0.0
    time_in_range_percentage: float = 0.0
    in_range: bool = False
    error: Optional[str] = None


@dataclass
class CollectionOptimization:
    success: bool
    position_id: str
    recommendation: Optional[str] = None
    accrued_fees_usd: float = 0.0
    current_collection_cost: float = 0.0
    cost_benefit_ratio: float = float('inf')
    optimal_collection_time: Optional[float] = None
    days_until_optimal: float = 0.0
    estimated_additional_yield: float = 0.0
    gas_cost_threshold: float = 0.0
    reasoning: str = ''
    error: Optional[str] = None


@dataclass
class PortfolioFeeSummary:
    total_fees_usd: Decimal
    total_positions: int
    successful_count: int
    failed_count: int
    total_collected_fees_usd: Decimal = ZERO
    failed_position_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    results: List[FeeCalculationResult] = field(default_factory=list)

    def raise_for_failures(self):
        """Raise PartialBatchFailure if any position failed"""
        if self.failed_count:
            raise PartialBatchFailure(self.failed_count, self.total_positions, self.errors, self.results)


class FeeOptimizer:
    """Fee analytics and collection timing for registry positions"""

    def __init__(
        self,
        registry: PositionRegistry,
        config: Optional[Config] = None,
        price_oracle: Optional[PriceOracle] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the optimizer

        Args:
            registry: Source of positions and pool prices
            config: Configuration object, supplies the gas cost estimate
            price_oracle: USD price per token address; by default token1 is
                worth 1 and token0 is worth the pool spot price
            logger: Logger to use instead of the module logger
        """
        self.registry = registry
        self.config = config or Config()
        self.price_oracle = price_oracle
        self.logger = logger or logging.getLogger(__name__)

        self.gas_cost_usd = float(self.config.DEFAULT_GAS_COST_USD)
        self._snapshots: Dict[str, List[FeeSnapshot]] = {}
        registry.on_position_removed(self.forget_position)

        self.logger.info("FeeOptimizer initialized")

    async def _token_prices(self, position: Position) -> Tuple[Decimal, Decimal]:
        if self.price_oracle is None:
            price0 = await self.registry.get_current_price(position.token0, position.token1, position.fee)
            return price0, Decimal(1)

        prices = []
        for token in (position.token0, position.token1):
            price = self.price_oracle(token)
            if inspect.isawaitable(price):
                price = await price
            prices.append(to_decimal(price, f'price of {token}'))
        return prices[0], prices[1]

    def _require(self, position_id: str) -> Position:
        position = self.registry.get_position(position_id)
        if position is None:
            raise PositionNotFound(position_id)
        return position

    # ---- snapshots ----

    async def record_fee_snapshot(self, position_id: str, now: Optional[float] = None) -> FeeSnapshot:
        """
        Record cumulative fees earned by a position

        Cumulative means collected plus uncollected, so collecting does
        not look like negative accrual.
        """
        position = self._require(position_id)
        price0, price1 = await self._token_prices(position)
        fees0 = position.collected_fees0 + position.uncollected_fees0
        fees1 = position.collected_fees1 + position.uncollected_fees1
        snapshot = FeeSnapshot(
            timestamp=now if now is not None else time.time(),
            fees0=fees0,
            fees1=fees1,
            fees_usd=float(fees0 * price0 + fees1 * price1),
            position_value_usd=float(self._position_value(position, price0, price1)),
        )

        snapshots = self._snapshots.setdefault(position_id, [])
        snapshots.append(snapshot)
        if len(snapshots) > MAX_SNAPSHOTS_PER_POSITION:
            del snapshots[:len(snapshots) - MAX_SNAPSHOTS_PER_POSITION]

        self.logger.debug(f"Fee snapshot recorded for {position_id}: ${snapshot.fees_usd:.6f}")
        return snapshot

    async def record_all_snapshots(self, now: Optional[float] = None) -> int:
        recorded = 0
        for position in self.registry.get_all_positions():
            try:
                await self.record_fee_snapshot(position.id, now)
                recorded += 1
            except Exception as e:
                self.logger.warning(f"Failed to record fee snapshot for {position.id}: {e}")
        return recorded

    def get_snapshots(self, position_id: str) -> List[FeeSnapshot]:
        return list(self._snapshots.get(position_id, []))

    def forget_position(self, position_id: str):
        self._snapshots.pop(position_id, None)

    # ---- valuation ----

    async def value_position(self, position_id: str) -> Decimal:
        """Mark-to-market USD value of the tokens held in a position"""
        position = self._require(position_id)
        price0, price1 = await self._token_prices(position)
        return position.amount0 * price0 + position.amount1 * price1

    async def record_all_values(self) -> int:
        """
        Revalue every position and store the result on the registry

        Returns:
            Number of positions valued
        """
        valued = 0
        for position in self.registry.get_all_positions():
            try:
                value = await self.value_position(position.id)
                await self.registry.record_position_value(position.id, value)
                valued += 1
            except Exception as e:
                self.logger.warning(f"Failed to value position {position.id}: {e}")
        return valued

    def fee_rate_over_window(self, position_id: str, window_seconds: float, now: Optional[float] = None) -> float:
        """
        Fee return over a time window, as a percent of position value

        Args:
            position_id: Position to measure
            window_seconds: Look-back window, also the period the rate is scaled to
            now: End of the window, defaults to the current time

        Returns:
            Percent of position value earned per window, 0 without enough data
        """
        now = now if now is not None else time.time()
        cutoff = now - window_seconds
        recent = [s for s in self._snapshots.get(position_id, []) if s.timestamp >= cutoff]
        if len(recent) < 2:
            return 0.0

        oldest, newest = recent[0], recent[-1]
        elapsed = newest.timestamp - oldest.timestamp
        if elapsed <= 0 or newest.position_value_usd <= 0:
            return 0.0
        return (newest.fees_usd - oldest.fees_usd) / newest.position_value_usd * (window_seconds / elapsed) * 100

    def accrual_rate_per_day(self, position_id: str) -> float:
        """USD fees earned per day over the most recent snapshots"""
        recent = self._snapshots.get(position_id, [])[-ACCRUAL_RATE_SNAPSHOTS:]
        if len(recent) < 2:
            return 0.0
        oldest, newest = recent[0], recent[-1]
        elapsed_days = (newest.timestamp - oldest.timestamp) / SECONDS_PER_DAY
        if elapsed_days <= 0:
            return 0.0
        return (newest.fees_usd - oldest.fees_usd) / elapsed_days

    # ---- per position ----

    @staticmethod
    def _position_value(position: Position, price0: Decimal, price1: Decimal) -> Decimal:
        if position.current_value_usd > 0:
            return position.current_value_usd
        return position.amount0 * price0 + position.amount1 * price1

    async def calculate_accrued_fees(self, position_id: str, now: Optional[float] = None) -> FeeCalculationResult:
        """
        Value the uncollected fees of a position in USD

        Args:
            position_id: Position to evaluate
            now: Evaluation time, defaults to the current time

        Returns:
            FeeCalculationResult; on failure success is False and error is set
        """
        now = now if now is not None else time.time()
        try:
            position = self._require(position_id)
            price0, price1 = await self._token_prices(position)

            fees_usd = position.uncollected_fees0 * price0 + position.uncollected_fees1 * price1
            collected_usd = position.collected_fees0 * price0 + position.collected_fees1 * price1
            value_usd = self._position_value(position, price0, price1)

            daily_rate = self.accrual_rate_per_day(position_id)
            if daily_rate <= 0:
                age_days = (now - position.created_at) / SECONDS_PER_DAY
                daily_rate = float(fees_usd) / age_days if age_days > 0 else 0.0

            estimated_apr = daily_rate * 365 / float(value_usd) * 100 if value_usd > 0 else 0.0

            tracked_ms = position.time_in_range_ms + position.time_out_of_range_ms
            if tracked_ms > 0:
                in_range_pct = time_in_range_percent(position)
            else:
                in_range_pct = 100.0 if position.in_range else 0.0

            return FeeCalculationResult(
                success=True,
                position_id=position_id,
                total_fees_usd=fees_usd,
                collected_fees_usd=collected_usd,
                fees0=position.uncollected_fees0,
                fees1=position.uncollected_fees1,
                position_value_usd=value_usd,
                daily_fee_rate=daily_rate,
                estimated_apr=estimated_apr,
                time_in_range_percentage=in_range_pct,
                in_range=position.in_range,
            )

        except Exception as e:
            self.logger.error(f"Failed to calculate accrued fees for {position_id}: {e}")
            return FeeCalculationResult(success=False, position_id=position_id, error=str(e))

    async def generate_collection_optimization(self, position_id: str,
                                               now: Optional[float] = None) -> CollectionOptimization:
        """
        Decide whether collecting fees now is worth the gas

        Recommends collect_now when gas is under 10% of accrued fees and
        wait when it is over 50%. In between, an in-range position should
        collect now and an out-of-range one should be rebalanced first.
        """
        now = now if now is not None else time.time()
        fees = await self.calculate_accrued_fees(position_id, now)
        if not fees.success:
            return CollectionOptimization(success=False, position_id=position_id, error=fees.error)

        accrued = float(fees.total_fees_usd)
        gas = self.gas_cost_usd
        ratio = gas / accrued if accrued > 0 else float('inf')

        # Collect once fees reach twice the gas cost
        target = gas * 2
        rate = self.accrual_rate_per_day(position_id)
        if rate > 0:
            days = max(0.0, target - accrued) / rate
        else:
            days = float(DEFAULT_WAIT_DAYS)
        additional_yield = max(0.0, rate * days)

        if ratio < COLLECT_NOW_RATIO:
            recommendation = 'collect_now'
            reasoning = f"Gas ${gas:.2f} is {ratio:.1%} of ${accrued:.2f} accrued fees"
        elif ratio > WAIT_RATIO:
            recommendation = 'wait'
            if accrued > 0:
                reasoning = f"Gas ${gas:.2f} would consume {ratio:.0%} of ${accrued:.2f} accrued fees"
            else:
                reasoning = "No fees accrued yet"
        elif fees.in_range:
            recommendation = 'collect_now'
            reasoning = f"Gas is {ratio:.0%} of accrued fees and the position is earning in range"
        else:
            recommendation = 'rebalance_first'
            reasoning = f"Gas is {ratio:.0%} of accrued fees and the position is out of range"

        return CollectionOptimization(
            success=True,
            position_id=position_id,
            recommendation=recommendation,
            accrued_fees_usd=accrued,
            current_collection_cost=gas,
            cost_benefit_ratio=ratio,
            optimal_collection_time=now + days * SECONDS_PER_DAY,
            days_until_optimal=days,
            estimated_additional_yield=additional_yield,
            gas_cost_threshold=target,
            reasoning=reasoning,
        )

    # ---- portfolio ----

    async def _calculate_all(self, positions: List[Position]) -> List[FeeCalculationResult]:
        return list(await asyncio.gather(*(self.calculate_accrued_fees(p.id) for p in positions)))

    async def get_total_fees_collected(self) -> PortfolioFeeSummary:
        """
        Sum uncollected and already collected fees across every position

        A failing position is counted and reported but never stops the sum
        over the others.
        """
        results = await self._calculate_all(self.registry.get_all_positions())
        succeeded = [r for r in results if r.success]
        failed = [r for r in results if not r.success]

        summary = PortfolioFeeSummary(
            total_fees_usd=sum((r.total_fees_usd for r in succeeded), ZERO),
            total_collected_fees_usd=sum((r.collected_fees_usd for r in succeeded), ZERO),
            total_positions=len(results),
            successful_count=len(succeeded),
            failed_count=len(failed),
            failed_position_ids=[r.position_id for r in failed],
            errors=[f"{r.position_id}: {r.error}" for r in failed],
            results=succeeded,
        )
        if failed:
            self.logger.warning(f"Fee aggregation: {len(failed)} of {len(results)} positions failed")
        return summary

    async def calculate_pool_fee_metrics(self, token0: str, token1: str, fee: int) -> Optional[Dict[str, Any]]:
        """APR distribution across the positions in one pool"""
        pool_tokens = sorted((token0.lower(), token1.lower()))
        positions = [
            p for p in self.registry.get_all_positions()
            if p.fee == fee and sorted((p.token0.lower(), p.token1.lower())) == pool_tokens
        ]
        if not positions:
            return None

        results = [r for r in await self._calculate_all(positions) if r.success]
        if not results:
            return None

        aprs = np.array([r.estimated_apr for r in results], dtype=float)
        ranked = sorted(results, key=lambda r: r.estimated_apr, reverse=True)
        return {
            'token0': token0,
            'token1': token1,
            'fee': fee,
            'position_count': len(results),
            'total_fees_usd': sum((r.total_fees_usd for r in results), ZERO),
            'average_apr': float(np.mean(aprs)),
            'liquidity_utilization': sum(1 for r in results if r.in_range) / len(results) * 100,
            'apr_percentiles': {p: float(np.percentile(aprs, p)) for p in APR_PERCENTILES},
            'top_performers': [r.position_id for r in ranked[:5]],
        }

    async def identify_collection_opportunities(self) -> List[CollectionOptimization]:
        """Positions that should collect now, largest accrued fees first"""
        positions = self.registry.get_all_positions()
        optimizations = await asyncio.gather(
            *(self.generate_collection_optimization(p.id) for p in positions)
        )
        opportunities = [o for o in optimizations if o.success and o.recommendation == 'collect_now']
        opportunities.sort(key=lambda o: o.accrued_fees_usd, reverse=True)
        return opportunities

    async def calculate_global_fee_metrics(self) -> Dict[str, Any]:
        results = await self._calculate_all(self.registry.get_all_positions())
        succeeded = [r for r in results if r.success]

        if succeeded:
            aprs = np.array([r.estimated_apr for r in succeeded], dtype=float)
            average_apr = float(np.mean(aprs))
            efficiency = sum(1 for r in succeeded if r.in_range) / len(succeeded) * 100
        else:
            average_apr = 0.0
            efficiency = 0.0

        ranked = sorted(succeeded, key=lambda r: r.estimated_apr, reverse=True)

        def summarize(r: FeeCalculationResult) -> Dict[str, Any]:
            return {'position_id': r.position_id, 'apr': r.estimated_apr, 'fees_usd': r.total_fees_usd}

        return {
            'total_positions': len(results),
            'in_range_positions': sum(1 for r in succeeded if r.in_range),
            'total_fees_uncollected_usd': sum((r.total_fees_usd for r in succeeded), ZERO),
            'total_fees_collected_usd': sum((r.collected_fees_usd for r in succeeded), ZERO),
            'average_apr': average_apr,
            'fee_efficiency': efficiency,
            'compounding_opportunities': sum(
                1 for r in succeeded if float(r.total_fees_usd) > self.gas_cost_usd * 2
            ),
            'top_performers': [summarize(r) for r in ranked[:5]],
            'poorest_performers': [summarize(r) for r in ranked[::-1][:5]],
            'failed_count': len(results) - len(succeeded),
        }

    def get_statistics(self) -> Dict[str, Any]:
        counts = [len(snaps) for snaps in self._snapshots.values()]
        timestamps = [s.timestamp for snaps in self._snapshots.values() for s in snaps]
        return {
            'total_snapshots': sum(counts),
            'positions_tracked': len(counts),
            'avg_snapshots_per_position': sum(counts) / len(counts) if counts else 0,
            'oldest_snapshot': min(timestamps) if timestamps else None,
            'newest_snapshot': max(timestamps) if timestamps else None,
        }
