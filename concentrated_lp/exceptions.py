"""
Exception hierarchy for the concentrated liquidity engine.

    ConcentratedLPError (base)
    ├── ValidationError        caller-correctable input, never retried
    │   ├── InvalidPrice
    │   ├── InvalidTick
    │   └── InvalidAmount
    ├── NotFoundError          unknown position / order id
    │   ├── PositionNotFound
    │   └── OrderNotFound
    ├── LedgerError            ledger call failed after retries
    │   └── StrandedRebalanceError
    ├── ReconciliationCollisionError
    ├── PartialBatchFailure
    └── InvariantError

Rules:
    - ValidationError / NotFoundError: surface to caller as-is
    - LedgerError: surface to caller, no automatic recovery
    - StrandedRebalanceError: capital is out of the pool, needs an operator
    - ReconciliationCollisionError: recorded and alerted, never raised out of reconcile
    - InvariantError: log, skip the offending position, keep going
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional


class ConcentratedLPError(Exception):
    """Base exception for all engine errors."""
    pass


# ============ VALIDATION (caller-fixable) ============

class ValidationError(ConcentratedLPError):
    """Input failed validation. Never retried."""
    pass


class InvalidPrice(ValidationError):
    """Price is not a positive finite number."""
    pass


class InvalidTick(ValidationError):
    """Tick outside the protocol bound or ticks out of order."""
    pass


class InvalidAmount(ValidationError):
    """Amount or liquidity is not a usable non-negative number."""
    pass


# ============ NOT FOUND ============

class NotFoundError(ConcentratedLPError):
    """Unknown identifier."""
    pass


class PositionNotFound(NotFoundError):
    def __init__(self, position_id: str):
        super().__init__(f"Position not found: {position_id}")
        self.position_id = position_id


class OrderNotFound(NotFoundError):
    def __init__(self, order_id: str):
        super().__init__("Order not found")
        self.order_id = order_id


# ============ LEDGER ============

class LedgerError(ConcentratedLPError):
    """A ledger call failed even after retries.

    Treatment: report to the caller. The core does not retry again.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class StrandedRebalanceError(LedgerError):
    """Liquidity was withdrawn during a rebalance but could not be re-added.

    The withdrawn amounts sit in the wallet rather than in a position.
    Treatment: alert an operator; do not retry blindly.
    """

    def __init__(self, position_id: str, amount0: Decimal, amount1: Decimal, cause: str):
        super().__init__(
            f"Rebalance of {position_id} stranded after removal "
            f"(amount0={amount0}, amount1={amount1}): {cause}",
            operation="rebalance_position",
        )
        self.position_id = position_id
        self.amount0 = amount0
        self.amount1 = amount1
        self.cause = cause


# ============ RECONCILIATION ============

class ReconciliationCollisionError(ConcentratedLPError):
    """Deterministic id matched a local position with different core identifiers."""

    def __init__(self, position_id: str, safe_id: str, existing: Dict[str, Any], incoming: Dict[str, Any]):
        super().__init__(
            f"Position id collision on {position_id}: stored new record as {safe_id}"
        )
        self.position_id = position_id
        self.safe_id = safe_id
        self.existing = existing
        self.incoming = incoming


# ============ BATCH ============

class PartialBatchFailure(ConcentratedLPError):
    """Some sub-operations of a batch failed; the rest still produced results."""

    def __init__(self, failed_count: int, total: int, errors: Optional[List[str]] = None,
                 results: Optional[List[Any]] = None):
        super().__init__(f"{failed_count} of {total} operations failed")
        self.failed_count = failed_count
        self.total = total
        self.errors = errors or []
        self.results = results or []


# ============ INVARIANT ============

class InvariantError(ConcentratedLPError):
    """Position state violates a structural invariant.

    Treatment: log at ERROR, skip that position, continue with the rest.
    """
    pass
