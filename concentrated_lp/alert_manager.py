"""
Concentrated Liquidity - Telegram Alert Manager
Notifies an operator about events the engine cannot resolve on its own
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from .config import Config

logger = logging.getLogger(__name__)


class TelegramAlertManager:
    """Sends engine notifications to a Telegram chat"""

    def __init__(self, config: Config, test_connection: bool = True):
        """
        Initialize Telegram alert manager

        Args:
            config: Configuration object
            test_connection: Call getMe once at startup when alerts are enabled
        """
        self.config = config
        self.bot_token = config.TELEGRAM_BOT_TOKEN
        self.chat_id = config.TELEGRAM_CHAT_ID
        self.enabled = config.TELEGRAM_ENABLED

        if self.enabled:
            logger.info("Telegram alerts enabled")
            if test_connection and not self._test_connection():
                logger.warning("Telegram connection test failed - alerts may not work")
        else:
            logger.info("Telegram alerts disabled (missing bot token or chat ID)")

    def _test_connection(self) -> bool:
        try:
            url = f"https://api.telegram.org/bot{self.bot_token}/getMe"
            response = requests.get(url, timeout=10)
            return response.status_code == 200
        except requests.RequestException as e:
            logger.error(f"Telegram connection test failed: {e}")
            return False

    def _send_message(self, message: str, parse_mode: str = "HTML") -> bool:
        """
        Send message to Telegram

        Args:
            message: Message to send
            parse_mode: Message parse mode (HTML or Markdown)

        Returns:
            True if message sent successfully, False otherwise
        """
        if not self.enabled:
            logger.debug("Telegram alerts disabled - not sending message")
            return False

        try:
            url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
            data = {
                'chat_id': self.chat_id,
                'text': message,
                'parse_mode': parse_mode,
                'disable_web_page_preview': True
            }
            response = requests.post(url, data=data, timeout=10)

            if response.status_code == 200:
                logger.debug("Telegram message sent successfully")
                return True
            logger.error(f"Failed to send Telegram message: {response.status_code} - {response.text}")
            return False

        except requests.RequestException as e:
            logger.error(f"Error sending Telegram message: {e}")
            return False

    @staticmethod
    def _timestamp() -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def send_stranded_rebalance_alert(self, position_id: str, amount0: Decimal, amount1: Decimal, cause: str) -> bool:
        """
        Liquidity left the pool during a rebalance and was not re-added

        Args:
            position_id: Position being rebalanced
            amount0: Withdrawn token0 now sitting in the wallet
            amount1: Withdrawn token1 now sitting in the wallet
            cause: Error from the failed re-add
        """
        message = f"""
🚨 <b>IMMEDIATE ACTION REQUIRED</b>
⏰ {self._timestamp()}

🔴 <b>Rebalance stranded:</b> <code>{position_id}</code>
  • Withdrawn token0: {amount0}
  • Withdrawn token1: {amount1}
💬 <b>Cause:</b> {cause}

Funds are in the wallet, not in a position.
        """.strip()
        return self._send_message(message)

    def send_collision_alert(self, position_id: str, safe_id: str,
                             existing: Dict[str, Any], incoming: Dict[str, Any]) -> bool:
        message = f"""
⚠️ <b>Position id collision</b>
⏰ {self._timestamp()}

🆔 <b>Id:</b> <code>{position_id}</code>
📁 <b>Stored as:</b> <code>{safe_id}</code>
  • Existing: {existing}
  • Incoming: {incoming}
        """.strip()
        return self._send_message(message)

    def send_order_filled_notification(self, order_id: str, direction: str,
                                       execution_price: Decimal, amount_filled: Decimal) -> bool:
        message = f"""
✅ <b>Range order filled</b>
⏰ {self._timestamp()}

  • Order: <code>{order_id}</code>
  • Direction: {direction}
  • Execution price: {execution_price}
  • Amount filled: {amount_filled}
        """.strip()
        return self._send_message(message)

    def send_error_notification(self, error_type: str, error_message: str,
                                context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Send error notification

        Args:
            error_type: Type of error (e.g., "Action Failed", "Ledger Error")
            error_message: Error message
            context: Additional context information
        """
        context_text = ""
        if context:
            context_text = "\n📋 <b>Context:</b>\n"
            for key, value in context.items():
                context_text += f"  • {key}: {value}\n"

        message = f"""
🚨 <b>Error Alert</b>
⏰ {self._timestamp()}

❌ <b>Error Type:</b> {error_type}
💬 <b>Message:</b> {error_message}{context_text}
        """.strip()
        return self._send_message(message)

    def send_startup_notification(self, chain_name: str, wallet_address: str, position_count: int) -> bool:
        wallet = f"{wallet_address[:10]}...{wallet_address[-8:]}" if wallet_address else "n/a"
        message = f"""
🚀 <b>Liquidity engine started</b>
⏰ {self._timestamp()}

  • Chain: {chain_name}
  • Wallet: <code>{wallet}</code>
  • Positions: {position_count}
        """.strip()
        return self._send_message(message)

    def send_shutdown_notification(self, reason: str = "Manual shutdown") -> bool:
        message = f"""
🛑 <b>Liquidity engine stopped</b>
⏰ {self._timestamp()}

📝 <b>Reason:</b> {reason}
        """.strip()
        return self._send_message(message)
