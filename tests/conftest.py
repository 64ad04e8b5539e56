"""
Pytest configuration and shared fixtures.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest

from concentrated_lp.config import Config
from concentrated_lp.ledger_client import LedgerClient
from concentrated_lp.position_registry import PositionRegistry
from concentrated_lp.repository import InMemoryPositionRepository
from concentrated_lp.retry import RetryOptions
from concentrated_lp.tick_math import TickMath

WALLET = "0x1234567890abcdef1234567890abcdef12345678"

# Zero-delay policy so retry paths run instantly
NO_DELAY_RETRY = RetryOptions(max_retries=2, base_delay=0.0, max_delay=0.0, jitter=False)


class FakeLedgerClient(LedgerClient):
    """
    In-memory ledger.

    Prices are scripted per pool, failures are injected per method and
    every call is recorded.
    """

    def __init__(self, default_price: Any = Decimal('0.05'), snap_ticks: bool = False):
        self.default_price = Decimal(str(default_price))
        self.snap_ticks = snap_ticks
        self.prices: Dict[tuple, Decimal] = {}
        self.ledger_positions: List[Dict[str, Any]] = []
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[str, Exception] = {}
        self.fail_counts: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self.fee_owed: Dict[str, tuple] = {}
        self._next_token_id = 1

    # ---- scripting ----

    def set_price(self, token0: str, token1: str, fee: int, price: Any):
        self.prices[(token0.lower(), token1.lower(), fee)] = Decimal(str(price))

    def fail(self, method: str, error: Exception, times: Optional[int] = None):
        """Make method raise error, every time or only for the next `times` calls"""
        self.failures[method] = error
        if times is not None:
            self.fail_counts[method] = times

    def clear_failures(self):
        self.failures.clear()
        self.fail_counts.clear()

    def _maybe_fail(self, method: str):
        error = self.failures.get(method)
        if error is None:
            return
        if method in self.fail_counts:
            self.fail_counts[method] -= 1
            if self.fail_counts[method] <= 0:
                del self.failures[method]
                del self.fail_counts[method]
        raise error

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    # ---- LedgerClient ----

    async def add_liquidity(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(('add_liquidity', params))
        self._maybe_fail('add_liquidity')
        token_id = str(self._next_token_id)
        self._next_token_id += 1
        amount0 = Decimal(params['amount0_desired'])
        amount1 = Decimal(params['amount1_desired'])
        liquidity = (amount0 + amount1) * 100
        result = {'token_id': token_id, 'liquidity': liquidity, 'amount0': amount0, 'amount1': amount1}
        if self.snap_ticks:
            # Same placement the position manager applies on mint
            spacing = TickMath.tick_spacing(params['fee'])
            result['tick_lower'] = TickMath.nearest_usable_tick(params['tick_lower'], spacing)
            result['tick_upper'] = TickMath.nearest_usable_tick(params['tick_upper'], spacing)
        self.positions[params['position_id']] = dict(
            result,
            token0=params['token0'],
            token1=params['token1'],
            fee=params['fee'],
            tick_lower=result.get('tick_lower', params['tick_lower']),
            tick_upper=result.get('tick_upper', params['tick_upper']),
        )
        return result

    def minted_positions(self) -> List[Dict[str, Any]]:
        """Open positions keyed by token id, shaped like a chain position listing"""
        return [
            ledger_position(
                token0=held['token0'], token1=held['token1'], fee=held['fee'],
                tick_lower=held['tick_lower'], tick_upper=held['tick_upper'],
                liquidity=str(held['liquidity']),
                position_id=held['token_id'], token_id=held['token_id'],
            )
            for held in self.positions.values() if held['liquidity'] > 0
        ]

    async def remove_liquidity(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(('remove_liquidity', params))
        self._maybe_fail('remove_liquidity')
        held = self.positions.get(params['position_id'])
        if held is None or held['liquidity'] == 0:
            return {'amount0': Decimal(0), 'amount1': Decimal(0)}
        fraction = Decimal(params['liquidity']) / held['liquidity']
        amount0 = held['amount0'] * fraction
        amount1 = held['amount1'] * fraction
        held['liquidity'] -= Decimal(params['liquidity'])
        held['amount0'] -= amount0
        held['amount1'] -= amount1
        return {'amount0': amount0, 'amount1': amount1}

    async def collect_fees(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(('collect_fees', params))
        self._maybe_fail('collect_fees')
        fees0, fees1 = self.fee_owed.pop(params['position_id'], (params['amount0_max'], params['amount1_max']))
        return {'amount0': fees0, 'amount1': fees1}

    async def get_user_positions(self, owner: str, page: int, page_size: int) -> List[Dict[str, Any]]:
        self.calls.append(('get_user_positions', (owner, page, page_size)))
        self._maybe_fail('get_user_positions')
        start = (page - 1) * page_size
        return [dict(p) for p in self.ledger_positions[start:start + page_size]]

    async def get_pool_data(self, token0: str, token1: str, fee: int) -> Dict[str, Any]:
        self.calls.append(('get_pool_data', (token0, token1, fee)))
        self._maybe_fail('get_pool_data')
        price = self.prices.get((token0.lower(), token1.lower(), fee), self.default_price)
        # The fake pool reports the spot price directly in place of sqrtPriceX96
        return {'sqrt_price_x96': price, 'liquidity': 10 ** 18, 'tick': 0}

    async def calculate_spot_price(self, token0: str, token1: str, sqrt_price_x96: Any) -> Decimal:
        self._maybe_fail('calculate_spot_price')
        return Decimal(sqrt_price_x96)


def ledger_position(token0="0xaaa", token1="0xbbb", fee=3000, tick_lower=-1000, tick_upper=1000,
                    liquidity="1000", **extra) -> Dict[str, Any]:
    """Raw position as the ledger returns it"""
    position = {
        'token0': token0,
        'token1': token1,
        'fee': fee,
        'tick_lower': tick_lower,
        'tick_upper': tick_upper,
        'liquidity': liquidity,
    }
    position.update(extra)
    return position


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def alert_manager():
    return Mock()


@pytest.fixture
def registry(ledger, config, alert_manager):
    return PositionRegistry(
        ledger,
        WALLET,
        repository=InMemoryPositionRepository(),
        config=config,
        retry_options=NO_DELAY_RETRY,
        alert_manager=alert_manager,
    )
