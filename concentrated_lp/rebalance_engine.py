"""
Rebalance Engine
Watches positions against named strategies, turns threshold breaches into
prioritized actions and executes them one at a time
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from .alert_manager import TelegramAlertManager
from .config import Config
from .exceptions import ConcentratedLPError, InvariantError, StrandedRebalanceError
from .fee_optimizer import FeeOptimizer
from .models import (
    URGENCY_BONUS,
    ActionConstraints,
    ActionStatus,
    ActionType,
    Position,
    RebalanceAction,
    RebalanceSignal,
    RebalanceStrategy,
    SignalType,
    Urgency,
    default_strategies,
    time_in_range_percent,
)
from .position_registry import PositionRegistry
from .utils import now_ms, random_suffix

logger = logging.getLogger(__name__)

SIGNAL_RETENTION_SECONDS = 3600
MAX_SIGNALS_PER_POSITION = 10
MARKET_DATA_WINDOW_SECONDS = 24 * 3600
REBALANCE_WINDOW_SECONDS = 24 * 3600

# Cost/benefit model for range adjustments
BASE_GAS_COST_USD = 30
SLIPPAGE_COST_RATE = 0.005
DAILY_VOLUME_RATE = 0.1
EXPECTED_UTILIZATION = 80

FEE_COLLECTION_COST_USD = 10


class RebalanceEngine:
    """
    Strategy-driven rebalancing for every position in the registry.

    Two loops run while started: monitoring analyzes positions and enqueues
    actions, execution pops the single highest-priority pending action.
    """

    def __init__(
        self,
        registry: PositionRegistry,
        fee_optimizer: FeeOptimizer,
        config: Optional[Config] = None,
        strategies: Optional[List[RebalanceStrategy]] = None,
        alert_manager: Optional[TelegramAlertManager] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the engine

        Args:
            registry: Position registry performing the ledger operations
            fee_optimizer: Values fees and gates fee collection
            config: Configuration object
            strategies: Initial strategies, defaults to conservative/moderate/aggressive
            alert_manager: Optional operator notifications for failed actions
            logger: Logger to use instead of the module logger
        """
        self.registry = registry
        self.fee_optimizer = fee_optimizer
        self.config = config or Config()
        self.alert_manager = alert_manager
        self.logger = logger or logging.getLogger(__name__)

        self.max_queue_size = self.config.MAX_QUEUE_SIZE
        self.max_history_size = self.config.MAX_HISTORY_SIZE
        self.execution_interval = self.config.EXECUTION_INTERVAL_SECONDS

        self.strategies: Dict[str, RebalanceStrategy] = {}
        self._base_deviation_thresholds: Dict[str, float] = {}
        for strategy in (strategies if strategies is not None else default_strategies()):
            self._register_strategy(strategy)

        self._signals: Dict[str, List[RebalanceSignal]] = {}
        registry.on_position_removed(self.forget_position)
        self._queue: List[RebalanceAction] = []
        self._history: List[RebalanceAction] = []
        self._market_conditions: List[Dict[str, Any]] = []

        self._queue_lock = asyncio.Lock()
        self._inflight_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._action_counter = 0
        self.is_running = False

        self.logger.info("RebalanceEngine initialized")

    # ---- strategies ----

    def _register_strategy(self, strategy: RebalanceStrategy):
        self.strategies[strategy.name] = strategy
        self._base_deviation_thresholds[strategy.name] = strategy.price_deviation_threshold

    def add_strategy(self, strategy: RebalanceStrategy):
        self._register_strategy(strategy)
        self.logger.info(f"Strategy added: {strategy.name} (enabled={strategy.enabled})")

    def remove_strategy(self, name: str) -> bool:
        removed = self.strategies.pop(name, None) is not None
        self._base_deviation_thresholds.pop(name, None)
        if removed:
            self.logger.info(f"Strategy removed: {name}")
        return removed

    def get_strategies(self) -> List[RebalanceStrategy]:
        return list(self.strategies.values())

    def _enabled_strategies(self) -> List[RebalanceStrategy]:
        return [s for s in self.strategies.values() if s.enabled]

    def update_market_conditions(self, volatility: float, volume_24h: float = 0.0,
                                 trend: str = 'sideways', now: Optional[float] = None):
        """
        Record market conditions and rescale volatility-sensitive strategies

        Args:
            volatility: Recent price volatility as a fraction (0.2 = 20%)
            volume_24h: Traded volume over the last day
            trend: 'up', 'down' or 'sideways'
        """
        now = now if now is not None else time.time()
        self._market_conditions.append({
            'volatility': volatility,
            'volume_24h': volume_24h,
            'trend': trend,
            'timestamp': now,
        })
        cutoff = now - MARKET_DATA_WINDOW_SECONDS
        self._market_conditions = [c for c in self._market_conditions if c['timestamp'] >= cutoff]

        for name, strategy in self.strategies.items():
            if strategy.volatility_adjustment:
                base = self._base_deviation_thresholds[name]
                strategy.price_deviation_threshold = base * (1 + max(0.0, volatility))
        self.logger.debug(f"Market conditions updated: volatility={volatility} trend={trend}")

    # ---- analysis ----

    @staticmethod
    def recent_rebalances(position: Position, now: float) -> int:
        cutoff = now - REBALANCE_WINDOW_SECONDS
        return sum(1 for ts in position.rebalance_timestamps if ts >= cutoff)

    def is_eligible(self, position: Position, strategy: RebalanceStrategy, now: Optional[float] = None) -> bool:
        now = now if now is not None else time.time()
        if now - position.created_at < strategy.min_position_age:
            return False
        if float(position.current_value_usd) < strategy.min_position_value:
            return False
        return self.recent_rebalances(position, now) < strategy.max_rebalances_per_day

    @staticmethod
    def calculate_price_deviation(position: Position, current_price: float) -> float:
        """Distance from the range midpoint, in percent of the midpoint"""
        center = float(position.min_price + position.max_price) / 2
        if center <= 0:
            return 0.0
        return abs(current_price - center) / center * 100

    @staticmethod
    def calculate_utilization(position: Position, current_price: float) -> float:
        """Time-weighted in-range percentage, or the current snapshot when no time is tracked"""
        if position.time_in_range_ms + position.time_out_of_range_ms > 0:
            return time_in_range_percent(position)
        in_range = float(position.min_price) <= current_price <= float(position.max_price)
        return 100.0 if in_range else 0.0

    def _signals_for_strategy(self, position: Position, strategy: RebalanceStrategy,
                              current_price: float, fees_usd: float, now: float) -> List[RebalanceSignal]:
        signals = []

        deviation = self.calculate_price_deviation(position, current_price)
        threshold = strategy.price_deviation_threshold
        if deviation >= threshold:
            signals.append(RebalanceSignal(
                position_id=position.id,
                signal_type=SignalType.PRICE_DEVIATION,
                strength=min(1.0, deviation / threshold),
                confidence=0.8,
                urgency=Urgency.HIGH if deviation > threshold * 1.5 else Urgency.MEDIUM,
                trigger={
                    'current_price': current_price,
                    'target_price': float(position.min_price + position.max_price) / 2,
                    'threshold_breached': deviation,
                    'strategy': strategy.name,
                },
                timestamp=now,
            ))

        utilization = self.calculate_utilization(position, current_price)
        threshold = strategy.utilization_threshold
        if utilization < threshold:
            signals.append(RebalanceSignal(
                position_id=position.id,
                signal_type=SignalType.LOW_UTILIZATION,
                strength=1 - utilization / threshold,
                confidence=0.7,
                urgency=Urgency.HIGH if utilization < threshold * 0.5 else Urgency.MEDIUM,
                trigger={
                    'current_price': current_price,
                    'utilization_rate': utilization,
                    'threshold_breached': threshold - utilization,
                    'strategy': strategy.name,
                },
                timestamp=now,
            ))

        threshold = strategy.fee_threshold
        if fees_usd >= threshold:
            signals.append(RebalanceSignal(
                position_id=position.id,
                signal_type=SignalType.HIGH_FEES,
                strength=min(1.0, fees_usd / (threshold * 2)),
                confidence=0.9,
                urgency=Urgency.HIGH if fees_usd > threshold * 3 else Urgency.LOW,
                trigger={
                    'current_price': current_price,
                    'threshold_breached': fees_usd,
                    'strategy': strategy.name,
                },
                timestamp=now,
            ))

        return signals

    async def _market_inputs(self, position: Position) -> tuple:
        current_price = float(await self.registry.get_current_price(position.token0, position.token1, position.fee))
        fees = await self.fee_optimizer.calculate_accrued_fees(position.id)
        if not fees.success:
            self.logger.warning(f"Fee valuation failed for {position.id}, treating fees as zero: {fees.error}")
            return current_price, 0.0
        return current_price, float(fees.total_fees_usd)

    async def check_rebalance_signals(self, position: Position, strategy: RebalanceStrategy,
                                      now: Optional[float] = None) -> List[RebalanceSignal]:
        """
        Evaluate one position against one strategy

        Args:
            position: Position snapshot
            strategy: Strategy supplying the thresholds
            now: Evaluation time, defaults to the current time

        Returns:
            Signals raised, empty when the position is not eligible
        """
        now = now if now is not None else time.time()
        if not strategy.enabled or not self.is_eligible(position, strategy, now):
            return []
        current_price, fees_usd = await self._market_inputs(position)
        return self._signals_for_strategy(position, strategy, current_price, fees_usd, now)

    async def analyze_position(self, position: Position, now: Optional[float] = None) -> List[RebalanceSignal]:
        """Run every enabled strategy on a position and enqueue the resulting actions"""
        now = now if now is not None else time.time()
        try:
            position.validate()
            strategies = [s for s in self._enabled_strategies() if self.is_eligible(position, s, now)]
            if not strategies:
                return []

            current_price, fees_usd = await self._market_inputs(position)
            signals = []
            for strategy in strategies:
                signals.extend(self._signals_for_strategy(position, strategy, current_price, fees_usd, now))

            if signals:
                self._store_signals(position.id, signals, now)
                actions = [self.create_action(position, signal, now) for signal in signals]
                await self._enqueue([a for a in actions if a is not None])
            return signals

        except InvariantError as e:
            self.logger.error(f"Skipping corrupt position {position.id}: {e}")
            return []
        except ConcentratedLPError as e:
            self.logger.error(f"Error analyzing position {position.id}: {e}")
            return []

    async def analyze_all_positions(self, now: Optional[float] = None) -> List[RebalanceSignal]:
        positions = [p for p in self.registry.get_all_positions() if p.is_active]
        results = await asyncio.gather(*(self.analyze_position(p, now) for p in positions))
        signals = [signal for batch in results for signal in batch]
        self.logger.info(f"Analyzed {len(positions)} positions, found {len(signals)} signals")
        return signals

    def _store_signals(self, position_id: str, new_signals: List[RebalanceSignal], now: float):
        cutoff = now - SIGNAL_RETENTION_SECONDS
        signals = self._signals.get(position_id, []) + new_signals
        self._signals[position_id] = [s for s in signals if s.timestamp >= cutoff][-MAX_SIGNALS_PER_POSITION:]

    def forget_position(self, position_id: str):
        self._signals.pop(position_id, None)

    def get_active_signals(self, position_id: Optional[str] = None) -> List[RebalanceSignal]:
        if position_id is not None:
            return list(self._signals.get(position_id, []))
        return [s for signals in self._signals.values() for s in signals]

    # ---- actions ----

    def _generate_action_id(self) -> str:
        self._action_counter += 1
        return f"rb_{now_ms()}_{self._action_counter}{random_suffix(6)}"

    @staticmethod
    def calculate_priority(signal: RebalanceSignal) -> int:
        priority = (signal.strength * 5 + URGENCY_BONUS[signal.urgency]) * signal.confidence
        return min(10, max(1, round(priority)))

    @staticmethod
    def calculate_risk_score(signal: RebalanceSignal) -> float:
        if signal.signal_type == SignalType.HIGH_FEES:
            return 0.1
        risk = 0.3
        if signal.signal_type == SignalType.PRICE_DEVIATION:
            risk += min(0.4, signal.strength * 0.4)
        return min(1.0, risk)

    @staticmethod
    def estimate_rebalance_cost(position: Position) -> float:
        return BASE_GAS_COST_USD + float(position.current_value_usd) * SLIPPAGE_COST_RATE

    @staticmethod
    def estimate_rebalance_benefit(position: Position) -> float:
        """Annualized extra fees from lifting utilization to the expected level"""
        improvement = (EXPECTED_UTILIZATION - time_in_range_percent(position)) / 100
        daily_volume = float(position.current_value_usd) * DAILY_VOLUME_RATE
        fee_rate = position.fee / 1_000_000
        return max(0.0, daily_volume * fee_rate * improvement * 365)

    def create_action(self, position: Position, signal: RebalanceSignal,
                      now: Optional[float] = None) -> Optional[RebalanceAction]:
        """Turn a signal into exactly one action, or None if no sensible action exists"""
        now = now if now is not None else time.time()

        if signal.signal_type in (SignalType.PRICE_DEVIATION, SignalType.LOW_UTILIZATION):
            current_price = signal.trigger['current_price']
            # Same width relative to price, centred on the current price
            relative_width = float(position.max_price - position.min_price) / current_price
            half_range = current_price * relative_width / 2
            new_min, new_max = current_price - half_range, current_price + half_range
            if new_min <= 0:
                self.logger.warning(f"Cannot centre {position.id} on {current_price}: range too wide")
                return None

            return RebalanceAction(
                action_id=self._generate_action_id(),
                position_id=position.id,
                action_type=ActionType.ADJUST_RANGE,
                priority=self.calculate_priority(signal),
                estimated_cost=self.estimate_rebalance_cost(position),
                expected_benefit=self.estimate_rebalance_benefit(position),
                risk_score=self.calculate_risk_score(signal),
                constraints=ActionConstraints(max_gas_cost=50, min_benefit_ratio=1.2, max_slippage=0.01),
                parameters={'new_min_price': new_min, 'new_max_price': new_max, 'liquidity_percentage': 100},
                signal=signal,
                created_at=now,
            )

        if signal.signal_type == SignalType.HIGH_FEES:
            return RebalanceAction(
                action_id=self._generate_action_id(),
                position_id=position.id,
                action_type=ActionType.COLLECT_FEES,
                priority=self.calculate_priority(signal),
                estimated_cost=FEE_COLLECTION_COST_USD,
                expected_benefit=float(signal.trigger['threshold_breached']),
                risk_score=self.calculate_risk_score(signal),
                constraints=ActionConstraints(max_gas_cost=20, min_benefit_ratio=2, max_slippage=0.005),
                signal=signal,
                created_at=now,
            )

        return None

    async def _enqueue(self, actions: List[RebalanceAction]):
        async with self._queue_lock:
            for action in actions:
                duplicate = any(
                    queued.position_id == action.position_id
                    and queued.action_type == action.action_type
                    and queued.status == ActionStatus.PENDING
                    for queued in self._queue
                )
                if duplicate:
                    self.logger.debug(f"{action.action_type.value} already queued for {action.position_id}")
                    continue
                self._queue.append(action)
                self.logger.info(f"Action queued: {action.action_type.value} for {action.position_id} "
                                 f"(priority={action.priority}, benefit=${action.expected_benefit:.2f})")

            # Stable sort keeps FIFO order within a priority
            self._queue.sort(key=lambda a: a.priority, reverse=True)
            if len(self._queue) > self.max_queue_size:
                dropped = self._queue[self.max_queue_size:]
                del self._queue[self.max_queue_size:]
                self.logger.warning(f"Action queue overflow, dropped {len(dropped)} lowest-priority actions")

    async def enqueue_action(self, action: RebalanceAction):
        await self._enqueue([action])

    def get_pending_actions(self) -> List[RebalanceAction]:
        return [a for a in self._queue if a.status == ActionStatus.PENDING]

    def get_history(self) -> List[RebalanceAction]:
        return list(self._history)

    async def _finish(self, action: RebalanceAction):
        action.completed_at = time.time()
        async with self._queue_lock:
            if action in self._queue:
                self._queue.remove(action)
            self._history.append(action)
            if len(self._history) > self.max_history_size:
                del self._history[:len(self._history) - self.max_history_size]

    async def _check_constraints(self, action: RebalanceAction) -> Optional[str]:
        if action.estimated_cost > action.constraints.max_gas_cost:
            return f"Estimated cost ${action.estimated_cost:.2f} exceeds max ${action.constraints.max_gas_cost:.2f}"
        if action.benefit_cost_ratio < action.constraints.min_benefit_ratio:
            return f"Benefit/cost ratio {action.benefit_cost_ratio:.2f} below {action.constraints.min_benefit_ratio}"
        if action.action_type == ActionType.COLLECT_FEES:
            optimization = await self.fee_optimizer.generate_collection_optimization(action.position_id)
            if not optimization.success:
                return f"Fee optimization failed: {optimization.error}"
            if optimization.recommendation != 'collect_now':
                return f"Fee optimizer recommends {optimization.recommendation}: {optimization.reasoning}"
        return None

    async def _run_action(self, action: RebalanceAction) -> Dict[str, Any]:
        params = action.parameters
        if action.action_type == ActionType.ADJUST_RANGE:
            new_position_id = await self.registry.rebalance_position(
                action.position_id, params['new_min_price'], params['new_max_price'],
                slippage_tolerance=action.constraints.max_slippage,
            )
            return {'new_position_id': new_position_id}

        if action.action_type == ActionType.COLLECT_FEES:
            amount0, amount1 = await self.registry.collect_fees(action.position_id)
            return {'amount0': amount0, 'amount1': amount1}

        if action.action_type == ActionType.CLOSE_POSITION:
            position = self.registry.get_position(action.position_id)
            amount0, amount1 = await self.registry.remove_liquidity(
                action.position_id, position.liquidity, slippage_tolerance=action.constraints.max_slippage
            )
            return {'amount0': amount0, 'amount1': amount1}

        raise NotImplementedError(f"Action type {action.action_type.value} is not supported")

    async def _execute(self, action: RebalanceAction) -> bool:
        async with self._inflight_lock:
            if action.status != ActionStatus.PENDING:
                return False

            if self.registry.get_position(action.position_id) is None:
                action.status = ActionStatus.CANCELLED
                action.error = f"Position {action.position_id} no longer exists"
                self.logger.info(f"Cancelled {action.action_id}: {action.error}")
                await self._finish(action)
                return False

            rejection = await self._check_constraints(action)
            if rejection:
                action.status = ActionStatus.CANCELLED
                action.error = rejection
                self.logger.info(f"Skipped {action.action_type.value} for {action.position_id}: {rejection}")
                await self._finish(action)
                return False

            self.logger.info(f"Executing {action.action_type.value} for position {action.position_id}")
            action.status = ActionStatus.EXECUTING
            action.executed_at = time.time()
            try:
                action.result = await self._run_action(action)
                action.status = ActionStatus.COMPLETED
            except (ConcentratedLPError, NotImplementedError) as e:
                action.status = ActionStatus.FAILED
                action.error = str(e)
                self.logger.error(f"Action {action.action_id} failed: {e}")
                if not isinstance(e, StrandedRebalanceError):
                    await self._alert_failure(action)

            await self._finish(action)
            elapsed = action.completed_at - action.executed_at
            self.logger.info(f"Action {action.action_id} {action.status.value} in {elapsed:.2f}s")
            return action.status == ActionStatus.COMPLETED

    async def _alert_failure(self, action: RebalanceAction):
        if self.alert_manager is None:
            return
        try:
            await asyncio.to_thread(
                self.alert_manager.send_error_notification,
                "Action Failed", action.error,
                {'action': action.action_type.value, 'position': action.position_id}
            )
        except Exception as alert_error:
            self.logger.warning(f"Failed to send failure alert: {alert_error}")

    async def execute_action(self, action_id: str) -> bool:
        """Execute a queued action immediately, returns True on completion"""
        action = next((a for a in self._queue if a.action_id == action_id), None)
        if action is None:
            self.logger.error(f"Action not found: {action_id}")
            return False
        return await self._execute(action)

    async def process_action_queue(self) -> bool:
        """Execute the highest-priority pending action, if any"""
        async with self._queue_lock:
            action = next((a for a in self._queue if a.status == ActionStatus.PENDING), None)
        if action is None:
            return False
        return await self._execute(action)

    # ---- loops ----

    def monitoring_interval(self) -> float:
        intervals = [s.rebalance_interval for s in self._enabled_strategies()]
        return min(intervals) if intervals else self.config.MONITORING_INTERVAL_SECONDS

    async def run_monitoring_cycle(self):
        """Reconcile, refresh prices and values, snapshot fees, then analyze"""
        try:
            await self.registry.reconcile()
        except ConcentratedLPError as e:
            self.logger.warning(f"Reconciliation failed, analyzing last known state: {e}")
        await self.registry.update_position_prices()
        await self.fee_optimizer.record_all_values()
        await self.fee_optimizer.record_all_snapshots()
        await self.analyze_all_positions()

    async def _monitoring_loop(self, interval: float):
        while self.is_running:
            try:
                await self.run_monitoring_cycle()
            except Exception as e:
                self.logger.error(f"Error in monitoring loop: {e}")
            await asyncio.sleep(interval)

    async def _execution_loop(self):
        while self.is_running:
            try:
                await self.process_action_queue()
            except Exception as e:
                self.logger.error(f"Error in execution loop: {e}")
            await asyncio.sleep(self.execution_interval)

    def start(self):
        if self.is_running:
            self.logger.warning("RebalanceEngine already running")
            return
        self.is_running = True
        interval = self.monitoring_interval()
        self._tasks = [
            asyncio.create_task(self._monitoring_loop(interval)),
            asyncio.create_task(self._execution_loop()),
        ]
        self.logger.info(f"RebalanceEngine started (monitoring every {interval}s, "
                         f"execution every {self.execution_interval}s)")

    async def stop(self):
        """Stop both loops; an action already executing runs to completion first"""
        if not self.is_running:
            return
        self.is_running = False
        async with self._inflight_lock:
            for task in self._tasks:
                task.cancel()
            for task in self._tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks = []
        self.logger.info("RebalanceEngine stopped")

    # ---- reporting ----

    def get_metrics(self) -> Dict[str, Any]:
        completed = [a for a in self._history if a.status == ActionStatus.COMPLETED]
        failed = [a for a in self._history if a.status == ActionStatus.FAILED]

        total_cost = sum(a.estimated_cost for a in completed)
        total_benefit = sum(a.expected_benefit for a in completed)
        execution_times = [a.completed_at - a.executed_at for a in completed
                           if a.completed_at is not None and a.executed_at is not None]
        attempted = len(completed) + len(failed)

        return {
            'total_rebalances': len(self._history),
            'successful_rebalances': len(completed),
            'failed_rebalances': len(failed),
            'total_cost_usd': total_cost,
            'total_benefit_usd': total_benefit,
            'avg_benefit_cost_ratio': total_benefit / total_cost if total_cost > 0 else 0.0,
            'avg_execution_time': sum(execution_times) / len(execution_times) if execution_times else 0.0,
            'performance_improvement': len(completed) / attempted * 100 if attempted else 0.0,
            'strategies_active': len(self._enabled_strategies()),
            'positions_managed': len(self._signals),
            'last_rebalance_time': max((a.executed_at or 0 for a in completed), default=0),
            'active_signals': sum(len(s) for s in self._signals.values()),
            'queued_actions': len(self.get_pending_actions()),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            'is_running': self.is_running,
            'strategies': [s.name for s in self._enabled_strategies()],
            'queue_size': len(self._queue),
            'history_size': len(self._history),
            'action_in_flight': self._inflight_lock.locked(),
            'market_conditions': self._market_conditions[-1] if self._market_conditions else None,
        }
