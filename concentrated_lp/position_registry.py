"""
Position Registry for concentrated liquidity
Owns the local map of positions, performs liquidity operations through the
ledger client and reconciles local state against the ledger
"""
import asyncio
import copy
import logging
import secrets
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .alert_manager import TelegramAlertManager
from .config import Config
from .exceptions import (
    ConcentratedLPError,
    InvalidAmount,
    InvalidPrice,
    InvalidTick,
    InvariantError,
    LedgerError,
    NotFoundError,
    PositionNotFound,
    ReconciliationCollisionError,
    StrandedRebalanceError,
    ValidationError,
)
from .ledger_client import LedgerClient
from .models import (
    ZERO,
    Position,
    current_apr,
    fee_tier_label,
    is_same_position,
    is_stale,
    price_range_label,
    profit_loss,
    time_in_range_percent,
    token_pair,
)
from .repository import InMemoryPositionRepository, PositionRepository
from .retry import RETRY_PROFILES, RetryOptions, with_retry
from .tick_math import VALID_FEE_TIERS, TickMath
from .utils import ErrorHandler, now_ms, random_suffix, to_base36, to_decimal

logger = logging.getLogger(__name__)

RECONCILE_PAGE_SIZE = 100

Amounts = Tuple[Decimal, Decimal]


@dataclass
class AddLiquidityParams:
    token0: str
    token1: str
    fee: int
    min_price: Any
    max_price: Any
    amount0_desired: Any
    amount1_desired: Any
    slippage_tolerance: Optional[float] = None
    strategy: Optional[str] = None


@dataclass
class AddLiquidityByTicksParams:
    token0: str
    token1: str
    fee: int
    tick_lower: int
    tick_upper: int
    amount0_desired: Any
    amount1_desired: Any
    slippage_tolerance: Optional[float] = None
    strategy: Optional[str] = None


class PositionRegistry:
    """
    Authoritative in-memory store of liquidity positions.

    Mutations on one position id are serialized by a per-id asyncio.Lock;
    different ids proceed concurrently. Readers get deep copies.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        wallet_address: str,
        repository: Optional[PositionRepository] = None,
        config: Optional[Config] = None,
        retry: Callable[..., Awaitable[Any]] = with_retry,
        retry_options: Optional[RetryOptions] = None,
        alert_manager: Optional[TelegramAlertManager] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the registry

        Args:
            ledger: Ledger client used for every liquidity operation
            wallet_address: Owner of the positions
            repository: Persistence for position records
            config: Configuration object
            retry: Retry function wrapping each ledger call
            retry_options: Single policy for all calls; defaults to per-operation profiles
            alert_manager: Optional operator notifications
            logger: Logger to use instead of the module logger
        """
        self.ledger = ledger
        self.wallet_address = wallet_address or ''
        self.repository = repository or InMemoryPositionRepository()
        self.config = config or Config()
        self.retry = retry
        self.retry_options = retry_options
        self.alert_manager = alert_manager
        self.logger = logger or logging.getLogger(__name__)

        self.default_slippage = to_decimal(self.config.DEFAULT_SLIPPAGE, 'slippage')

        self._positions: Dict[str, Position] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_price_check_ms: Dict[str, int] = {}
        self._removal_listeners: List[Callable[[str], None]] = []
        self._instance_counter = 0

        self.last_collisions: List[ReconciliationCollisionError] = []
        self.last_reconcile_at: Optional[float] = None

        self.logger.info("PositionRegistry initialized")

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def position_lock(self, position_id: str) -> asyncio.Lock:
        """Lock serializing writers of one position id"""
        lock = self._locks.get(position_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[position_id] = lock
        return lock

    def on_position_removed(self, listener: Callable[[str], None]):
        """Call listener(position_id) whenever a position leaves the registry"""
        self._removal_listeners.append(listener)

    def _forget(self, position_id: str):
        self._positions.pop(position_id, None)
        self._last_price_check_ms.pop(position_id, None)
        self._locks.pop(position_id, None)
        for listener in self._removal_listeners:
            try:
                listener(position_id)
            except Exception as e:
                self.logger.warning(f"Removal listener failed for {position_id}: {e}")

    def _options(self, profile: str) -> RetryOptions:
        if self.retry_options is None:
            return RETRY_PROFILES[profile]
        if profile == 'transaction':
            # A broadcast transaction must never be resent on an ambiguous failure
            return replace(self.retry_options, retry_condition=RETRY_PROFILES['transaction'].retry_condition)
        return self.retry_options

    async def _call_ledger(self, operation_name: str, operation: Callable[[], Awaitable[Any]],
                           profile: str = 'standard') -> Any:
        """Run a ledger call under the retry policy, mapping failures to LedgerError"""
        try:
            result = await self.retry(operation, self._options(profile), operation_name)
        except (ValidationError, NotFoundError):
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            info = ErrorHandler.handle_transaction_error(e)
            self.logger.error(f"Ledger call {operation_name} failed: {info['message']} ({info['suggestion']})")
            raise LedgerError(f"{operation_name} failed: {e}", operation=operation_name) from e

        if result is None:
            raise LedgerError(f"{operation_name} failed: ledger returned no result", operation=operation_name)
        return result

    async def _alert(self, method: str, *args):
        if self.alert_manager is None:
            return
        try:
            await asyncio.to_thread(getattr(self.alert_manager, method), *args)
        except Exception as alert_error:
            self.logger.warning(f"Failed to send {method}: {alert_error}")

    def _require(self, position_id: str) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFound(position_id)
        return position

    def _next_position_id(self) -> str:
        """Random bytes + timestamp + instance counter, never derived from content"""
        while True:
            self._instance_counter += 1
            position_id = f"lp_{secrets.token_hex(4)}{to_base36(now_ms())}{to_base36(self._instance_counter)}"
            if position_id not in self._positions:
                return position_id

    def _slippage(self, slippage_tolerance: Optional[Any]) -> Decimal:
        if slippage_tolerance is None:
            return self.default_slippage
        slippage = to_decimal(slippage_tolerance, 'slippage')
        if slippage < 0 or slippage >= 1:
            raise ValidationError(f"Invalid slippage: {slippage_tolerance}")
        return slippage

    async def _persist(self, position: Position):
        await self.repository.save(copy.deepcopy(position))

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_pool(token0: str, token1: str, fee: int):
        if not token0 or not token1 or not isinstance(token0, str) or not isinstance(token1, str):
            raise ValidationError("Invalid token")
        if token0.lower() == token1.lower():
            raise ValidationError("Token0 and token1 must be different")
        if fee not in VALID_FEE_TIERS:
            raise ValidationError(f"Invalid fee tier: {fee}. Valid fees: {list(VALID_FEE_TIERS)}")

    @staticmethod
    def _validate_amounts(amount0_desired: Any, amount1_desired: Any) -> Amounts:
        amount0 = to_decimal(amount0_desired, 'amount0')
        amount1 = to_decimal(amount1_desired, 'amount1')
        if amount0 < 0 or amount1 < 0:
            raise InvalidAmount("Amounts must be non-negative")
        if amount0 <= 0 and amount1 <= 0:
            raise InvalidAmount("At least one amount must be greater than zero")
        return amount0, amount1

    @staticmethod
    def _parse_price(value: Any, field: str) -> Decimal:
        try:
            price = to_decimal(value, field)
        except InvalidAmount:
            raise InvalidPrice(f"Invalid {field}: {value!r}")
        if price <= 0:
            raise InvalidPrice("Invalid price range")
        return price

    # ------------------------------------------------------------------
    # liquidity operations
    # ------------------------------------------------------------------

    async def add_liquidity_by_price(self, params: AddLiquidityParams) -> str:
        """
        Open a position over a price range

        Args:
            params: Pool, price bounds and desired amounts

        Returns:
            New position id
        """
        self._validate_pool(params.token0, params.token1, params.fee)
        min_price = self._parse_price(params.min_price, 'min_price')
        max_price = self._parse_price(params.max_price, 'max_price')
        if min_price >= max_price:
            raise InvalidPrice("Invalid price range")
        amount0, amount1 = self._validate_amounts(params.amount0_desired, params.amount1_desired)
        slippage = self._slippage(params.slippage_tolerance)

        token0, token1 = params.token0, params.token1
        if token0.lower() > token1.lower():
            # Canonical order flips the quote direction
            token0, token1 = token1, token0
            amount0, amount1 = amount1, amount0
            min_price, max_price = 1 / max_price, 1 / min_price

        tick_lower = TickMath.price_to_tick(min_price)
        tick_upper = TickMath.price_to_tick(max_price)
        if tick_lower >= tick_upper:
            raise InvalidPrice(f"Price range {min_price}-{max_price} is narrower than one tick")

        self.logger.info(f"Adding liquidity by price range: {token0}/{token1} fee={params.fee} "
                         f"range={min_price}-{max_price}")
        return await self._open_position(
            token0, token1, params.fee, tick_lower, tick_upper, min_price, max_price,
            amount0, amount1, slippage, strategy=params.strategy
        )

    async def add_liquidity_by_ticks(self, params: AddLiquidityByTicksParams) -> str:
        """Open a position over an explicit tick range"""
        self._validate_pool(params.token0, params.token1, params.fee)
        TickMath.validate_tick(params.tick_lower)
        TickMath.validate_tick(params.tick_upper)
        if params.tick_lower >= params.tick_upper:
            raise InvalidTick("tick_lower must be below tick_upper")
        amount0, amount1 = self._validate_amounts(params.amount0_desired, params.amount1_desired)
        slippage = self._slippage(params.slippage_tolerance)

        token0, token1 = params.token0, params.token1
        tick_lower, tick_upper = params.tick_lower, params.tick_upper
        if token0.lower() > token1.lower():
            token0, token1 = token1, token0
            amount0, amount1 = amount1, amount0
            tick_lower, tick_upper = -tick_upper, -tick_lower

        self.logger.info(f"Adding liquidity by tick range: {token0}/{token1} fee={params.fee} "
                         f"ticks=[{tick_lower}, {tick_upper}]")
        return await self._open_position(
            token0, token1, params.fee, tick_lower, tick_upper,
            TickMath.tick_to_price(tick_lower), TickMath.tick_to_price(tick_upper),
            amount0, amount1, slippage, strategy=params.strategy
        )

    async def _open_position(self, token0: str, token1: str, fee: int, tick_lower: int, tick_upper: int,
                             min_price: Decimal, max_price: Decimal, amount0: Decimal, amount1: Decimal,
                             slippage: Decimal, **inherited) -> str:
        position_id = self._next_position_id()
        one_minus_slippage = 1 - slippage
        request = {
            'position_id': position_id,
            'wallet_address': self.wallet_address,
            'token0': token0,
            'token1': token1,
            'fee': fee,
            'tick_spacing': TickMath.tick_spacing(fee),
            'tick_lower': tick_lower,
            'tick_upper': tick_upper,
            'min_price': min_price,
            'max_price': max_price,
            'amount0_desired': amount0,
            'amount1_desired': amount1,
            'amount0_min': amount0 * one_minus_slippage,
            'amount1_min': amount1 * one_minus_slippage,
        }
        result = await self._call_ledger(
            'add_liquidity', lambda: self.ledger.add_liquidity(request), profile='transaction'
        )

        # The ledger may snap the range to the pool's tick spacing
        placed = (result.get('tick_lower'), result.get('tick_upper'))
        if None not in placed and (int(placed[0]), int(placed[1])) != (tick_lower, tick_upper):
            self.logger.info(f"Ledger placed {position_id} at ticks [{placed[0]}, {placed[1]}] "
                             f"instead of [{tick_lower}, {tick_upper}]")
            tick_lower, tick_upper = int(placed[0]), int(placed[1])
            min_price = TickMath.tick_to_price(tick_lower)
            max_price = TickMath.tick_to_price(tick_upper)

        position = Position(
            id=position_id,
            token0=token0,
            token1=token1,
            fee=fee,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            min_price=min_price,
            max_price=max_price,
            liquidity=to_decimal(result.get('liquidity') or 0, 'liquidity'),
            amount0=to_decimal(result.get('amount0') or amount0, 'amount0'),
            amount1=to_decimal(result.get('amount1') or amount1, 'amount1'),
            wallet_address=self.wallet_address,
            token_id=result.get('token_id'),
        )
        for key, value in inherited.items():
            if value is not None:
                setattr(position, key, value)

        try:
            price = await self.get_current_price(token0, token1, fee)
            position.update_in_range_status(price)
        except ConcentratedLPError as e:
            self.logger.warning(f"Could not determine range status for {position_id}: {e}")

        self._positions[position_id] = position
        self._last_price_check_ms[position_id] = now_ms()
        await self._persist(position)

        self.logger.info(f"Liquidity added successfully: {position_id} "
                         f"(liquidity={position.liquidity}, amount0={position.amount0}, amount1={position.amount1})")
        return position_id

    async def remove_liquidity(self, position_id: str, liquidity: Any,
                               slippage_tolerance: Optional[Any] = None) -> Amounts:
        """
        Withdraw liquidity from a position

        Args:
            position_id: Position to withdraw from
            liquidity: Amount of liquidity to remove
            slippage_tolerance: Fraction of expected amounts that may be lost

        Returns:
            Tuple of (amount0, amount1) received
        """
        self._require(position_id)
        try:
            amount = to_decimal(liquidity, 'liquidity')
        except InvalidAmount:
            raise InvalidAmount(f"Invalid liquidity amount: {liquidity}")
        if amount < 0:
            raise InvalidAmount(f"Invalid liquidity amount: {liquidity}")
        slippage = self._slippage(slippage_tolerance)

        async with self.position_lock(position_id):
            position = self._require(position_id)
            return await self._remove_locked(position, amount, slippage)

    async def _remove_locked(self, position: Position, amount: Decimal, slippage: Decimal) -> Amounts:
        if amount > position.liquidity:
            raise InvalidAmount(f"Cannot remove {amount} liquidity, position holds {position.liquidity}")

        fraction = amount / position.liquidity if position.liquidity > 0 else ZERO
        one_minus_slippage = 1 - slippage
        request = {
            'position_id': position.id,
            'token_id': position.token_id,
            'wallet_address': self.wallet_address,
            'token0': position.token0,
            'token1': position.token1,
            'fee': position.fee,
            'tick_lower': position.tick_lower,
            'tick_upper': position.tick_upper,
            'liquidity': amount,
            'amount0_min': position.amount0 * fraction * one_minus_slippage,
            'amount1_min': position.amount1 * fraction * one_minus_slippage,
        }
        self.logger.info(f"Removing {amount} liquidity from {position.id}")
        result = await self._call_ledger(
            'remove_liquidity', lambda: self.ledger.remove_liquidity(request), profile='transaction'
        )
        amount0 = to_decimal(result.get('amount0') or 0, 'amount0')
        amount1 = to_decimal(result.get('amount1') or 0, 'amount1')

        position.liquidity -= amount
        position.amount0 = position.amount0 * (1 - fraction)
        position.amount1 = position.amount1 * (1 - fraction)
        position.last_update = time.time()

        if position.liquidity == 0:
            position.is_active = False
            self._forget(position.id)
            self.logger.info(f"Position fully withdrawn and removed: {position.id}")
        await self._persist(position)

        self.logger.info(f"Liquidity removed: {position.id} amount0={amount0} amount1={amount1} "
                         f"remaining={position.liquidity}")
        return amount0, amount1

    async def collect_fees(self, position_id: str, amount0_max: Optional[Any] = None,
                           amount1_max: Optional[Any] = None) -> Amounts:
        """
        Collect accrued fees from a position

        Args:
            position_id: Position to collect from
            amount0_max: Cap on token0 collected, defaults to everything owed
            amount1_max: Cap on token1 collected, defaults to everything owed

        Returns:
            Tuple of (amount0, amount1) collected
        """
        self._require(position_id)
        async with self.position_lock(position_id):
            position = self._require(position_id)
            return await self._collect_locked(position, amount0_max, amount1_max)

    async def _collect_locked(self, position: Position, amount0_max: Optional[Any] = None,
                              amount1_max: Optional[Any] = None) -> Amounts:
        request = {
            'position_id': position.id,
            'token_id': position.token_id,
            'wallet_address': self.wallet_address,
            'token0': position.token0,
            'token1': position.token1,
            'fee': position.fee,
            'tick_lower': position.tick_lower,
            'tick_upper': position.tick_upper,
            'amount0_max': to_decimal(amount0_max, 'amount0_max') if amount0_max is not None else position.uncollected_fees0,
            'amount1_max': to_decimal(amount1_max, 'amount1_max') if amount1_max is not None else position.uncollected_fees1,
        }
        self.logger.info(f"Collecting fees from {position.id} "
                         f"(owed0={position.uncollected_fees0}, owed1={position.uncollected_fees1})")
        result = await self._call_ledger(
            'collect_fees', lambda: self.ledger.collect_fees(request), profile='transaction'
        )
        amount0 = to_decimal(result.get('amount0') or 0, 'amount0')
        amount1 = to_decimal(result.get('amount1') or 0, 'amount1')

        position.uncollected_fees0 = ZERO
        position.uncollected_fees1 = ZERO
        position.add_collected_fees(amount0, amount1)
        await self._persist(position)

        self.logger.info(f"Fees collected: {position.id} amount0={amount0} amount1={amount1}")
        return amount0, amount1

    async def rebalance_position(self, position_id: str, new_min_price: Any, new_max_price: Any,
                                 slippage_tolerance: Optional[Any] = None) -> str:
        """
        Move a position to a new price range: collect, remove everything, re-add

        The three steps are independent ledger calls. A failure before the
        removal leaves the position untouched and raises LedgerError. A
        failure after it raises StrandedRebalanceError carrying the
        withdrawn amounts.

        Args:
            position_id: Position to move
            new_min_price: Lower bound of the new range
            new_max_price: Upper bound of the new range
            slippage_tolerance: Slippage used for both the removal and the add

        Returns:
            Id of the new position
        """
        self._require(position_id)
        min_price = self._parse_price(new_min_price, 'new_min_price')
        max_price = self._parse_price(new_max_price, 'new_max_price')
        if min_price >= max_price:
            raise InvalidPrice("Invalid price range")
        tick_lower = TickMath.price_to_tick(min_price)
        tick_upper = TickMath.price_to_tick(max_price)
        if tick_lower >= tick_upper:
            raise InvalidPrice(f"Price range {min_price}-{max_price} is narrower than one tick")
        slippage = self._slippage(slippage_tolerance)

        async with self.position_lock(position_id):
            position = self._require(position_id)
            self.logger.info(f"Rebalancing {position_id}: {price_range_label(position)} -> {min_price} - {max_price}")

            if position.uncollected_fees0 > 0 or position.uncollected_fees1 > 0:
                await self._collect_locked(position)

            amount0, amount1 = await self._remove_locked(position, position.liquidity, slippage)

        try:
            if amount0 <= 0 and amount1 <= 0:
                raise InvalidAmount("Removal returned no tokens to re-add")
            new_position_id = await self._open_position(
                position.token0, position.token1, position.fee, tick_lower, tick_upper,
                min_price, max_price, amount0, amount1, slippage,
                initial_value_usd=position.initial_value_usd,
                strategy=position.strategy,
                token0_symbol=position.token0_symbol or None,
                token1_symbol=position.token1_symbol or None,
                rebalance_count=position.rebalance_count,
                rebalance_timestamps=list(position.rebalance_timestamps),
            )
        except ConcentratedLPError as e:
            stranded = StrandedRebalanceError(position_id, amount0, amount1, str(e))
            self.logger.error(f"CRITICAL: {stranded}")
            await self._alert('send_stranded_rebalance_alert', position_id, amount0, amount1, str(e))
            raise stranded from e

        async with self.position_lock(new_position_id):
            new_position = self._positions.get(new_position_id)
            if new_position is not None:
                new_position.increment_rebalance()
                await self._persist(new_position)

        self.logger.info(f"Position rebalanced: {position_id} -> {new_position_id}")
        return new_position_id

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------

    def deterministic_id(self, raw: Dict[str, Any], owner: Optional[str] = None) -> str:
        """Ledger id when present, otherwise derived from pool, ticks and owner"""
        for key in ('id', 'position_id'):
            if raw.get(key):
                return str(raw[key])
        owner = owner or self.wallet_address
        raw_id = f"{raw.get('token0', '')}-{raw.get('token1', '')}-{raw.get('fee', 0)}-" \
                 f"{raw.get('tick_lower', 0)}-{raw.get('tick_upper', 0)}"
        return f"pos_{raw_id}_{owner[4:12]}"

    @staticmethod
    def collision_safe_id(base_id: str) -> str:
        return f"{base_id}_{to_base36(now_ms())}_{random_suffix(4)}"

    def _position_from_ledger(self, raw: Dict[str, Any], position_id: str, owner: str) -> Position:
        position = Position.from_ticks(
            position_id,
            raw['token0'],
            raw['token1'],
            int(raw['fee']),
            int(raw['tick_lower']),
            int(raw['tick_upper']),
            liquidity=to_decimal(raw.get('liquidity') or 0, 'liquidity'),
            amount0=to_decimal(raw.get('amount0') or 0, 'amount0'),
            amount1=to_decimal(raw.get('amount1') or 0, 'amount1'),
            uncollected_fees0=to_decimal(raw.get('tokens_owed0') or raw.get('fees0') or 0, 'fees0'),
            uncollected_fees1=to_decimal(raw.get('tokens_owed1') or raw.get('fees1') or 0, 'fees1'),
            wallet_address=owner,
            token_id=raw.get('token_id'),
        )
        position.validate()
        return position

    def _find_local_match(self, incoming: Position, owner: str, claimed: Set[str]) -> Optional[str]:
        if incoming.token_id:
            # The ledger's token id is authoritative even when the ticks differ
            for position_id, position in self._positions.items():
                if position.token_id == incoming.token_id:
                    return position_id
        for position_id, position in self._positions.items():
            if position_id in claimed:
                continue
            if position.wallet_address not in ('', owner):
                continue
            if position.core_identifiers() == incoming.core_identifiers():
                return position_id
        return None

    async def reconcile(self, wallet_address: Optional[str] = None) -> List[Position]:
        """
        Sync local positions with the ledger

        Re-running with unchanged ledger data maps every ledger position
        onto the same local record.

        Args:
            wallet_address: Owner to reconcile, defaults to the registry wallet

        Returns:
            Snapshot of all positions after reconciliation
        """
        owner = wallet_address or self.wallet_address
        fetched: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._call_ledger(
                'get_user_positions',
                lambda: self.ledger.get_user_positions(owner, page, RECONCILE_PAGE_SIZE),
                profile='standard'
            )
            fetched.extend(batch)
            if len(batch) < RECONCILE_PAGE_SIZE:
                break
            page += 1

        collisions: List[ReconciliationCollisionError] = []
        claimed: Set[str] = set()
        skipped = 0
        for raw in fetched:
            try:
                position_id = await self._reconcile_one(raw, owner, claimed, collisions)
                if position_id:
                    claimed.add(position_id)
            except (ValidationError, InvariantError, KeyError, TypeError, ValueError) as e:
                skipped += 1
                self.logger.error(f"Skipping malformed ledger position {raw.get('id') or raw.get('position_id')}: {e}")

        self.last_collisions = collisions
        self.last_reconcile_at = time.time()
        self.logger.info(f"Reconciled {len(fetched)} ledger positions "
                         f"({len(collisions)} collisions, {skipped} skipped); {len(self._positions)} tracked")
        return self.get_all_positions()

    async def _reconcile_one(self, raw: Dict[str, Any], owner: str, claimed: Set[str],
                             collisions: List[ReconciliationCollisionError]) -> Optional[str]:
        base_id = self.deterministic_id(raw, owner)
        incoming = self._position_from_ledger(raw, base_id, owner)

        existing = self._positions.get(base_id)
        if existing is not None and is_same_position(existing, incoming):
            target_id = base_id
        else:
            target_id = self._find_local_match(incoming, owner, claimed)

        if incoming.liquidity == 0:
            if target_id is not None:
                await self._close_reconciled(target_id)
            return None

        if target_id is None and existing is not None:
            target_id = self.collision_safe_id(base_id)
            collision = ReconciliationCollisionError(
                base_id, target_id,
                existing=dict(zip(('token0', 'token1', 'fee', 'tick_lower', 'tick_upper'),
                                  existing.core_identifiers())),
                incoming=dict(zip(('token0', 'token1', 'fee', 'tick_lower', 'tick_upper'),
                                  incoming.core_identifiers())),
            )
            collisions.append(collision)
            self.logger.error(f"CRITICAL: Position ID collision detected! {collision}")
            await self._alert('send_collision_alert', base_id, target_id, collision.existing, collision.incoming)
        elif target_id is None:
            target_id = base_id

        async with self.position_lock(target_id):
            local = self._positions.get(target_id)
            if local is None:
                incoming.id = target_id
                self._positions[target_id] = incoming
                self._last_price_check_ms[target_id] = now_ms()
                await self._persist(incoming)
                self.logger.info(f"Discovered ledger position {target_id}")
            else:
                local.liquidity = incoming.liquidity
                local.uncollected_fees0 = incoming.uncollected_fees0
                local.uncollected_fees1 = incoming.uncollected_fees1
                if incoming.amount0 > 0 or incoming.amount1 > 0:
                    local.amount0 = incoming.amount0
                    local.amount1 = incoming.amount1
                if incoming.token_id:
                    local.token_id = incoming.token_id
                if (local.tick_lower, local.tick_upper) != (incoming.tick_lower, incoming.tick_upper):
                    local.tick_lower, local.tick_upper = incoming.tick_lower, incoming.tick_upper
                    local.min_price, local.max_price = incoming.min_price, incoming.max_price
                local.last_update = time.time()
                await self._persist(local)
        return target_id

    async def _close_reconciled(self, position_id: str):
        async with self.position_lock(position_id):
            local = self._positions.get(position_id)
            if local is None:
                return
            local.liquidity = ZERO
            local.is_active = False
            self._forget(position_id)
            await self._persist(local)
            self.logger.info(f"Ledger reports {position_id} closed; removed locally")

    async def load_from_repository(self) -> int:
        """Restore active positions persisted by a previous run"""
        stored = await self.repository.find({'is_active': True})
        loaded = 0
        for position in stored:
            try:
                position.validate()
            except InvariantError as e:
                self.logger.error(f"Skipping corrupt stored position: {e}")
                continue
            if position.liquidity > 0 and position.id not in self._positions:
                self._positions[position.id] = position
                self._last_price_check_ms[position.id] = now_ms()
                loaded += 1
        self.logger.info(f"Loaded {loaded} positions from repository")
        return loaded

    # ------------------------------------------------------------------
    # prices
    # ------------------------------------------------------------------

    async def get_current_price(self, token0: str, token1: str, fee: int) -> Decimal:
        """Price of token0 in token1, whatever order the caller uses"""
        canonical = token0.lower() <= token1.lower()
        pool_token0, pool_token1 = (token0, token1) if canonical else (token1, token0)

        pool = await self._call_ledger(
            'get_pool_data', lambda: self.ledger.get_pool_data(pool_token0, pool_token1, fee), profile='fast'
        )
        sqrt_price = pool.get('sqrt_price_x96', pool.get('sqrt_price'))
        price = await self._call_ledger(
            'calculate_spot_price',
            lambda: self.ledger.calculate_spot_price(pool_token0, pool_token1, sqrt_price),
            profile='fast'
        )
        try:
            price = to_decimal(price, 'price')
        except InvalidAmount:
            raise InvalidPrice(f"Ledger returned unusable price: {price!r}")
        if price <= 0:
            raise InvalidPrice(f"Ledger returned non-positive price: {price}")
        return price if canonical else 1 / price

    async def update_position_prices(self) -> int:
        """
        Refresh price, range status, time-in-range and amounts for every position

        Returns:
            Number of positions refreshed
        """
        pools: Dict[Tuple[str, str, int], List[str]] = {}
        for position in self._positions.values():
            pools.setdefault((position.token0, position.token1, position.fee), []).append(position.id)

        updated = 0
        for (token0, token1, fee), position_ids in pools.items():
            try:
                price = await self.get_current_price(token0, token1, fee)
            except ConcentratedLPError as e:
                self.logger.warning(f"Price refresh failed for {token0}/{token1} fee={fee}: {e}")
                continue

            for position_id in position_ids:
                async with self.position_lock(position_id):
                    position = self._positions.get(position_id)
                    if position is None:
                        continue
                    current_ms = now_ms()
                    elapsed = current_ms - self._last_price_check_ms.get(position_id, current_ms)
                    self._last_price_check_ms[position_id] = current_ms
                    position.update_in_range_status(price, elapsed)
                    position.amount0, position.amount1 = TickMath.amounts_for_position(
                        position.liquidity, price, position.tick_lower, position.tick_upper
                    )
                    updated += 1
        return updated

    async def record_position_value(self, position_id: str, value_usd: Any):
        """Store USD valuation computed by an analytics component"""
        async with self.position_lock(position_id):
            position = self._require(position_id)
            position.update_value(to_decimal(value_usd, 'value_usd'))
            await self.repository.update(position_id, {
                'current_value_usd': position.current_value_usd,
                'initial_value_usd': position.initial_value_usd,
            })

    # ------------------------------------------------------------------
    # read side
    # ------------------------------------------------------------------

    def get_position(self, position_id: str) -> Optional[Position]:
        position = self._positions.get(position_id)
        return copy.deepcopy(position) if position is not None else None

    def get_all_positions(self) -> List[Position]:
        return [copy.deepcopy(p) for p in self._positions.values()]

    def get_position_analytics(self, position_id: str) -> Dict[str, Any]:
        """Derived metrics for one position"""
        position = self._require(position_id)
        return {
            'position': copy.deepcopy(position),
            'token_pair': token_pair(position),
            'fee_tier': fee_tier_label(position),
            'price_range': price_range_label(position),
            'in_range': position.in_range,
            'time_in_range_percent': time_in_range_percent(position),
            'profit_loss': profit_loss(position),
            'apr': current_apr(position),
            'is_stale': is_stale(position),
        }

    def get_statistics(self) -> Dict[str, Any]:
        positions = list(self._positions.values())
        by_fee_tier: Dict[int, int] = {}
        for position in positions:
            by_fee_tier[position.fee] = by_fee_tier.get(position.fee, 0) + 1
        return {
            'total_positions': len(positions),
            'active_positions': sum(1 for p in positions if p.is_active),
            'in_range_positions': sum(1 for p in positions if p.in_range),
            'total_liquidity': sum((p.liquidity for p in positions), ZERO),
            'total_value_usd': sum((p.current_value_usd for p in positions), ZERO),
            'total_fees_usd': sum((p.total_fees_usd for p in positions), ZERO),
            'by_fee_tier': by_fee_tier,
            'last_reconcile_at': self.last_reconcile_at,
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            'total_positions': len(self._positions),
            'synced_at': self.last_reconcile_at,
            'is_initialized': self.last_reconcile_at is not None,
        }
