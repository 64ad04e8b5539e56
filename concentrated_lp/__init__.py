"""
Concentrated liquidity position management and rebalancing.
"""
from .exceptions import (
    ConcentratedLPError,
    ValidationError,
    InvalidPrice,
    InvalidTick,
    InvalidAmount,
    NotFoundError,
    PositionNotFound,
    OrderNotFound,
    LedgerError,
    StrandedRebalanceError,
    ReconciliationCollisionError,
    PartialBatchFailure,
    InvariantError,
)
from .tick_math import TickMath
from .models import Position, RangeOrder, RebalanceAction, RebalanceSignal, RebalanceStrategy
from .ledger_client import LedgerClient, Web3LedgerClient
from .repository import PositionRepository, InMemoryPositionRepository
from .retry import RetryOptions, with_retry
from .position_registry import PositionRegistry, AddLiquidityParams, AddLiquidityByTicksParams
from .range_orders import RangeOrderEngine, RangeOrderConfig, OrderResult
from .fee_optimizer import FeeOptimizer
from .rebalance_engine import RebalanceEngine

__version__ = '0.1.0'

__all__ = [
    'ConcentratedLPError', 'ValidationError', 'InvalidPrice', 'InvalidTick', 'InvalidAmount',
    'NotFoundError', 'PositionNotFound', 'OrderNotFound', 'LedgerError', 'StrandedRebalanceError',
    'ReconciliationCollisionError', 'PartialBatchFailure', 'InvariantError',
    'TickMath', 'Position', 'RangeOrder', 'RebalanceAction', 'RebalanceSignal', 'RebalanceStrategy',
    'LedgerClient', 'Web3LedgerClient', 'PositionRepository', 'InMemoryPositionRepository',
    'RetryOptions', 'with_retry', 'PositionRegistry', 'AddLiquidityParams', 'AddLiquidityByTicksParams',
    'RangeOrderEngine', 'RangeOrderConfig', 'OrderResult', 'FeeOptimizer', 'RebalanceEngine',
]
