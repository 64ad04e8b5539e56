"""
Concentrated Liquidity - Utility Functions
Logging setup, decimal coercion, id helpers and error classification
"""
import logging
import os
import secrets
import string
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from .exceptions import InvalidAmount

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_BASE36 = string.digits + string.ascii_lowercase


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """
    Set up logging configuration

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    handlers = [console_handler]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True
    )


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    Coerce a numeric value to Decimal

    Floats go through repr so 0.1 stays 0.1. Raises InvalidAmount for
    anything that is not a finite number.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid {field}: {value!r}")
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(repr(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Invalid {field}: {value!r}")
    if not result.is_finite():
        raise InvalidAmount(f"Invalid {field}: {value!r}")
    return result


def to_base36(number: int) -> str:
    """Encode a non-negative integer in lowercase base36"""
    if number < 0:
        raise ValueError("base36 encoding needs a non-negative integer")
    if number == 0:
        return '0'
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return ''.join(reversed(digits))


def random_suffix(length: int) -> str:
    """Random lowercase alphanumeric string"""
    return ''.join(secrets.choice(_BASE36) for _ in range(length))


def now_ms() -> int:
    return int(time.time() * 1000)


class ErrorHandler:
    """Error handling utilities"""

    @staticmethod
    def handle_transaction_error(error: Exception) -> Dict[str, Any]:
        """
        Classify a ledger failure into something an operator can act on

        Args:
            error: Exception object

        Returns:
            Error information dictionary with type, message and suggestion
        """
        error_msg = str(error)
        lowered = error_msg.lower()

        if "insufficient funds" in lowered or "insufficient balance" in lowered:
            return {
                'type': 'insufficient_funds',
                'message': 'Insufficient balance for the transaction or its gas',
                'suggestion': 'Top up the wallet before retrying'
            }
        elif "slippage" in lowered or "price slippage check" in lowered:
            return {
                'type': 'slippage',
                'message': 'Price moved beyond the slippage tolerance',
                'suggestion': 'Increase slippage tolerance or reduce position size'
            }
        elif "deadline" in lowered or "transaction too old" in lowered:
            return {
                'type': 'deadline',
                'message': 'Transaction deadline exceeded',
                'suggestion': 'Retry with a later deadline'
            }
        elif "nonce" in lowered:
            return {
                'type': 'nonce',
                'message': 'Nonce error',
                'suggestion': 'Wait for pending transactions or reset nonce'
            }
        elif "gas" in lowered:
            return {
                'type': 'gas',
                'message': 'Gas limit or gas price problem',
                'suggestion': 'Check gas settings and network congestion'
            }
        elif "timeout" in lowered or "connection" in lowered or "network" in lowered:
            return {
                'type': 'network',
                'message': 'Ledger endpoint unreachable',
                'suggestion': 'Check the RPC endpoint and retry later'
            }
        else:
            return {
                'type': 'unknown',
                'message': error_msg,
                'suggestion': 'Check transaction parameters and try again'
            }
