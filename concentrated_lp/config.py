"""
Configuration management for the concentrated liquidity engine.
Loads settings from environment variables.
"""
import os
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _resolve_private_key():
    private_key = os.getenv('PRIVATE_KEY')
    if not private_key:
        # Not set - fine for read-only use and tests
        return None
    if not private_key.startswith('${') or not private_key.endswith('}'):
        raise ValueError("PRIVATE_KEY must reference an environment variable using ${VARIABLE_NAME} format. Never store private keys directly in files!")

    env_var_name = private_key[2:-1]
    value = os.getenv(env_var_name)
    if not value:
        raise ValueError(f"Environment variable '{env_var_name}' referenced in PRIVATE_KEY is not set")
    return value


class Config:
    """Configuration class for position management and rebalancing"""

    # Network settings
    ETHEREUM_RPC_URL = os.getenv('ETHEREUM_RPC_URL', 'https://mainnet.infura.io/v3/YOUR_PROJECT_ID')
    PRIVATE_KEY = _resolve_private_key()
    WALLET_ADDRESS = os.getenv('WALLET_ADDRESS')

    # Chain configuration
    CHAIN_ID = int(os.getenv('CHAIN_ID', '1'))
    CHAIN_NAME = os.getenv('CHAIN_NAME', 'Ethereum Mainnet')
    MAX_GAS_LIMIT = int(os.getenv('MAX_GAS_LIMIT', '500000'))
    TRANSACTION_DEADLINE_SECONDS = int(os.getenv('TRANSACTION_DEADLINE_SECONDS', '1800'))

    # Protocol contract addresses
    UNISWAP_V3_FACTORY = os.getenv('UNISWAP_V3_FACTORY')
    UNISWAP_V3_POSITION_MANAGER = os.getenv('UNISWAP_V3_POSITION_MANAGER')

    # Trading defaults
    DEFAULT_SLIPPAGE = float(os.getenv('DEFAULT_SLIPPAGE', '0.01'))
    DEFAULT_GAS_COST_USD = float(os.getenv('DEFAULT_GAS_COST_USD', '5'))

    # Retry policy for ledger calls
    MAX_RETRIES = int(os.getenv('MAX_RETRIES', '3'))
    RETRY_BASE_DELAY_SECONDS = float(os.getenv('RETRY_BASE_DELAY_SECONDS', '1.0'))
    RETRY_MAX_DELAY_SECONDS = float(os.getenv('RETRY_MAX_DELAY_SECONDS', '30.0'))

    # Loop intervals
    MONITORING_INTERVAL_SECONDS = int(os.getenv('MONITORING_INTERVAL_SECONDS', '60'))
    EXECUTION_INTERVAL_SECONDS = int(os.getenv('EXECUTION_INTERVAL_SECONDS', '30'))
    ORDER_CHECK_INTERVAL_SECONDS = int(os.getenv('ORDER_CHECK_INTERVAL_SECONDS', '30'))

    # Memory bounds
    MAX_QUEUE_SIZE = int(os.getenv('MAX_QUEUE_SIZE', '100'))
    MAX_HISTORY_SIZE = int(os.getenv('MAX_HISTORY_SIZE', '1000'))
    MAX_RANGE_ORDERS = int(os.getenv('MAX_RANGE_ORDERS', '50'))
    ORDER_RETENTION_DAYS = int(os.getenv('ORDER_RETENTION_DAYS', '7'))

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FILE = os.getenv('LOG_FILE', 'logs/concentrated_lp.log')

    # Telegram alerting
    TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN', '')
    TELEGRAM_CHAT_ID = os.getenv('TELEGRAM_CHAT_ID', '')
    TELEGRAM_ENABLED = bool(TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)

    @classmethod
    def validate_config(cls) -> bool:
        """Validate that required configuration is present"""
        errors = []

        if not cls.ETHEREUM_RPC_URL or 'YOUR_PROJECT_ID' in cls.ETHEREUM_RPC_URL:
            errors.append("ETHEREUM_RPC_URL must be set to a valid RPC endpoint")

        if not cls.UNISWAP_V3_FACTORY:
            errors.append("UNISWAP_V3_FACTORY is required")

        if not cls.UNISWAP_V3_POSITION_MANAGER:
            errors.append("UNISWAP_V3_POSITION_MANAGER is required")

        if not cls.WALLET_ADDRESS:
            errors.append("WALLET_ADDRESS is required")

        for name in ('UNISWAP_V3_FACTORY', 'UNISWAP_V3_POSITION_MANAGER', 'WALLET_ADDRESS'):
            value = getattr(cls, name)
            if value and not cls._is_valid_address(value):
                errors.append(f"Invalid {name} format: {value}")

        if not 0 <= cls.DEFAULT_SLIPPAGE < 1:
            errors.append(f"DEFAULT_SLIPPAGE must be in [0, 1), got {cls.DEFAULT_SLIPPAGE}")

        if cls.DEFAULT_GAS_COST_USD < 0:
            errors.append(f"DEFAULT_GAS_COST_USD must be non-negative, got {cls.DEFAULT_GAS_COST_USD}")

        if cls.MAX_RETRIES < 0:
            errors.append(f"MAX_RETRIES must be non-negative, got {cls.MAX_RETRIES}")

        if cls.RETRY_BASE_DELAY_SECONDS > cls.RETRY_MAX_DELAY_SECONDS:
            errors.append("RETRY_BASE_DELAY_SECONDS cannot exceed RETRY_MAX_DELAY_SECONDS")

        for name in ('MONITORING_INTERVAL_SECONDS', 'EXECUTION_INTERVAL_SECONDS',
                     'ORDER_CHECK_INTERVAL_SECONDS', 'MAX_QUEUE_SIZE', 'MAX_HISTORY_SIZE',
                     'MAX_RANGE_ORDERS'):
            if getattr(cls, name) <= 0:
                errors.append(f"{name} must be positive")

        if errors:
            raise ValueError("Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors))

        return True

    @staticmethod
    def _is_valid_address(address: str) -> bool:
        """Check if address is valid Ethereum address format"""
        if not address:
            return False
        return address.startswith('0x') and len(address) == 42 and all(c in '0123456789abcdefABCDEF' for c in address[2:])

    @classmethod
    def get_chain_info(cls) -> Dict[str, Any]:
        """Get chain information from environment"""
        return {
            'chain_id': cls.CHAIN_ID,
            'chain_name': cls.CHAIN_NAME,
            'rpc_url': cls.ETHEREUM_RPC_URL,
            'factory': cls.UNISWAP_V3_FACTORY,
            'position_manager': cls.UNISWAP_V3_POSITION_MANAGER,
        }
