"""
Concentrated Liquidity - Data Models
Positions, range orders, rebalance signals, actions and strategies
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import InvariantError
from .tick_math import MAX_TICK, MIN_TICK, TickMath

ZERO = Decimal('0')
SECONDS_PER_YEAR = 365 * 24 * 3600


class OrderDirection(str, Enum):
    BUY = 'buy'
    SELL = 'sell'


class OrderStatus(str, Enum):
    ACTIVE = 'active'
    FILLED = 'filled'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'


TERMINAL_ORDER_STATUSES = (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.EXPIRED)


class SignalType(str, Enum):
    PRICE_DEVIATION = 'price_deviation'
    LOW_UTILIZATION = 'low_utilization'
    HIGH_FEES = 'high_fees'
    VOLATILITY_CHANGE = 'volatility_change'
    PERFORMANCE_DECLINE = 'performance_decline'


class Urgency(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'


URGENCY_BONUS = {
    Urgency.CRITICAL: 4,
    Urgency.HIGH: 2,
    Urgency.MEDIUM: 1,
    Urgency.LOW: 0,
}


class ActionType(str, Enum):
    ADJUST_RANGE = 'adjust_range'
    COLLECT_FEES = 'collect_fees'
    CLOSE_POSITION = 'close_position'
    SPLIT_POSITION = 'split_position'
    MERGE_POSITIONS = 'merge_positions'


class ActionStatus(str, Enum):
    PENDING = 'pending'
    SCHEDULED = 'scheduled'
    EXECUTING = 'executing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass
class Position:
    """A concentrated liquidity allocation over [tick_lower, tick_upper]"""
    id: str
    token0: str
    token1: str
    fee: int
    tick_lower: int
    tick_upper: int
    min_price: Decimal
    max_price: Decimal
    liquidity: Decimal = ZERO
    amount0: Decimal = ZERO
    amount1: Decimal = ZERO
    uncollected_fees0: Decimal = ZERO
    uncollected_fees1: Decimal = ZERO
    in_range: bool = False
    created_at: float = field(default_factory=time.time)
    last_update: float = field(default_factory=time.time)

    wallet_address: str = ''
    token_id: Optional[str] = None
    token0_symbol: str = ''
    token1_symbol: str = ''
    current_price: Decimal = ZERO
    initial_value_usd: Decimal = ZERO
    current_value_usd: Decimal = ZERO
    collected_fees0: Decimal = ZERO
    collected_fees1: Decimal = ZERO
    total_fees_usd: Decimal = ZERO
    time_in_range_ms: int = 0
    time_out_of_range_ms: int = 0
    rebalance_count: int = 0
    last_rebalance_at: Optional[float] = None
    rebalance_timestamps: List[float] = field(default_factory=list)
    is_active: bool = True
    strategy: Optional[str] = None

    @classmethod
    def from_ticks(cls, position_id: str, token0: str, token1: str, fee: int,
                   tick_lower: int, tick_upper: int, **kwargs) -> 'Position':
        """Build a position with min/max price derived from its ticks"""
        return cls(
            id=position_id,
            token0=token0,
            token1=token1,
            fee=fee,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            min_price=TickMath.tick_to_price(tick_lower),
            max_price=TickMath.tick_to_price(tick_upper),
            **kwargs
        )

    def validate(self):
        """Raise InvariantError when the record is structurally corrupt"""
        if not MIN_TICK <= self.tick_lower <= MAX_TICK or not MIN_TICK <= self.tick_upper <= MAX_TICK:
            raise InvariantError(f"Position {self.id} ticks outside bounds: [{self.tick_lower}, {self.tick_upper}]")
        if self.tick_lower >= self.tick_upper:
            raise InvariantError(f"Position {self.id} has tick_lower >= tick_upper")
        if self.min_price >= self.max_price:
            raise InvariantError(f"Position {self.id} has min_price >= max_price")
        if self.liquidity < 0:
            raise InvariantError(f"Position {self.id} has negative liquidity")

    def core_identifiers(self) -> Tuple[str, str, int, int, int]:
        return (self.token0.lower(), self.token1.lower(), self.fee, self.tick_lower, self.tick_upper)

    def update_in_range_status(self, current_price: Decimal, elapsed_ms: int = 0):
        """
        Refresh in_range and credit the elapsed time to the matching bucket

        Args:
            current_price: Latest pool price
            elapsed_ms: Milliseconds since the previous observation
        """
        self.current_price = current_price
        self.in_range = TickMath.is_price_in_range(current_price, self.min_price, self.max_price)
        if elapsed_ms > 0:
            if self.in_range:
                self.time_in_range_ms += elapsed_ms
            else:
                self.time_out_of_range_ms += elapsed_ms
        self.last_update = time.time()

    def add_collected_fees(self, amount0: Decimal, amount1: Decimal, value_usd: Decimal = ZERO):
        self.collected_fees0 += amount0
        self.collected_fees1 += amount1
        self.total_fees_usd += value_usd
        self.last_update = time.time()

    def increment_rebalance(self, now: Optional[float] = None):
        now = now if now is not None else time.time()
        self.rebalance_count += 1
        self.last_rebalance_at = now
        self.rebalance_timestamps.append(now)
        # A day of history is all the frequency gate needs
        cutoff = now - 24 * 3600
        self.rebalance_timestamps = [ts for ts in self.rebalance_timestamps if ts >= cutoff]

    def update_value(self, value_usd: Decimal):
        self.current_value_usd = value_usd
        if self.initial_value_usd == ZERO:
            self.initial_value_usd = value_usd
        self.last_update = time.time()


# Computed views over a Position. None of these mutate their argument.

def token_pair(position: Position) -> str:
    symbol0 = position.token0_symbol or position.token0
    symbol1 = position.token1_symbol or position.token1
    return f"{symbol0}/{symbol1}"


def fee_tier_label(position: Position) -> str:
    return f"{position.fee / 10000:g}%"


def price_range_label(position: Position) -> str:
    return f"{position.min_price:.6g} - {position.max_price:.6g}"


def time_in_range_percent(position: Position) -> float:
    """Share of tracked time the position spent in range, 0-100"""
    total = position.time_in_range_ms + position.time_out_of_range_ms
    if total <= 0:
        return 0.0
    return position.time_in_range_ms / total * 100


def profit_loss(position: Position) -> Decimal:
    return position.current_value_usd + position.total_fees_usd - position.initial_value_usd


def current_apr(position: Position, now: Optional[float] = None) -> float:
    """Annualized fee return on the initial value, in percent"""
    now = now if now is not None else time.time()
    if position.initial_value_usd <= 0:
        return 0.0
    years = (now - position.created_at) / SECONDS_PER_YEAR
    if years <= 0:
        return 0.0
    return float(position.total_fees_usd / position.initial_value_usd) / years * 100


def is_stale(position: Position, max_age_seconds: float = 300, now: Optional[float] = None) -> bool:
    now = now if now is not None else time.time()
    return now - position.last_update > max_age_seconds


def is_same_position(a: Position, b: Position) -> bool:
    """Same pool, and the same ticks when both sides carry ticks"""
    if a.token0.lower() != b.token0.lower() or a.token1.lower() != b.token1.lower() or a.fee != b.fee:
        return False
    if a.tick_lower is not None and b.tick_lower is not None and a.tick_lower != b.tick_lower:
        return False
    if a.tick_upper is not None and b.tick_upper is not None and a.tick_upper != b.tick_upper:
        return False
    return True


@dataclass
class PriceRange:
    min: Decimal
    max: Decimal

    @property
    def width(self) -> Decimal:
        return self.max - self.min

    def contains(self, price: Decimal) -> bool:
        return self.min <= price <= self.max


@dataclass
class RangeOrder:
    """A directional limit order emulated by a narrow liquidity position"""
    order_id: str
    position_id: str
    direction: OrderDirection
    token0: str
    token1: str
    fee: int
    target_price: Decimal
    range_width_percent: Decimal
    amount: Decimal
    price_range: PriceRange
    auto_execute: bool = True
    status: OrderStatus = OrderStatus.ACTIVE
    created_at: float = field(default_factory=time.time)
    filled_at: Optional[float] = None
    execution_price: Optional[Decimal] = None
    amount_filled: Optional[Decimal] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


@dataclass
class RebalanceSignal:
    position_id: str
    signal_type: SignalType
    strength: float
    confidence: float
    urgency: Urgency
    trigger: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class ActionConstraints:
    max_gas_cost: float
    min_benefit_ratio: float
    max_slippage: float


@dataclass
class RebalanceAction:
    action_id: str
    position_id: str
    action_type: ActionType
    priority: int
    estimated_cost: float
    expected_benefit: float
    risk_score: float
    constraints: ActionConstraints
    parameters: Dict[str, Any] = field(default_factory=dict)
    status: ActionStatus = ActionStatus.PENDING
    signal: Optional[RebalanceSignal] = None
    created_at: float = field(default_factory=time.time)
    executed_at: Optional[float] = None
    completed_at: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def benefit_cost_ratio(self) -> float:
        if self.estimated_cost <= 0:
            return float('inf')
        return self.expected_benefit / self.estimated_cost


@dataclass
class RebalanceStrategy:
    """Named set of thresholds deciding when a position needs attention"""
    name: str
    description: str
    enabled: bool
    price_deviation_threshold: float   # percent
    utilization_threshold: float       # percent
    fee_threshold: float               # USD
    rebalance_interval: float          # seconds
    min_position_age: float            # seconds
    min_position_value: float          # USD
    max_rebalances_per_day: int
    volatility_adjustment: bool = False


def default_strategies() -> List[RebalanceStrategy]:
    return [
        RebalanceStrategy(
            name='conservative',
            description='Wide thresholds, rebalance rarely',
            enabled=True,
            price_deviation_threshold=10,
            utilization_threshold=30,
            fee_threshold=20,
            rebalance_interval=3600,
            min_position_age=24 * 3600,
            min_position_value=100,
            max_rebalances_per_day=2,
        ),
        RebalanceStrategy(
            name='moderate',
            description='Balanced thresholds for most pools',
            enabled=True,
            price_deviation_threshold=7,
            utilization_threshold=50,
            fee_threshold=10,
            rebalance_interval=1800,
            min_position_age=12 * 3600,
            min_position_value=50,
            max_rebalances_per_day=4,
            volatility_adjustment=True,
        ),
        RebalanceStrategy(
            name='aggressive',
            description='Tight thresholds, frequent adjustments',
            enabled=False,
            price_deviation_threshold=5,
            utilization_threshold=70,
            fee_threshold=5,
            rebalance_interval=900,
            min_position_age=6 * 3600,
            min_position_value=25,
            max_rebalances_per_day=8,
            volatility_adjustment=True,
        ),
    ]
