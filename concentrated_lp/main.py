#!/usr/bin/env python3
"""
Main application for the concentrated liquidity engine.
Runs the reconcile, monitoring, execution and order loops, or prints a
one-shot status report.
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from .alert_manager import TelegramAlertManager
from .config import Config
from .exceptions import ConcentratedLPError
from .fee_optimizer import FeeOptimizer
from .ledger_client import LedgerClient, Web3LedgerClient
from .position_registry import PositionRegistry
from .range_orders import RangeOrderEngine
from .rebalance_engine import RebalanceEngine
from .utils import setup_logging

logger = logging.getLogger(__name__)


class LiquidityApp:
    """Wires the components together and owns their lifecycle"""

    def __init__(self, config: Optional[Config] = None, ledger: Optional[LedgerClient] = None,
                 alert_manager: Optional[TelegramAlertManager] = None):
        self.config = config or Config()
        self.alert_manager = alert_manager or TelegramAlertManager(self.config)
        self.ledger = ledger or Web3LedgerClient(self.config)

        self.registry = PositionRegistry(
            self.ledger,
            self.config.WALLET_ADDRESS,
            config=self.config,
            alert_manager=self.alert_manager,
        )
        self.fee_optimizer = FeeOptimizer(self.registry, self.config)
        self.rebalance_engine = RebalanceEngine(
            self.registry, self.fee_optimizer, self.config, alert_manager=self.alert_manager
        )
        self.range_orders = RangeOrderEngine(self.registry, self.config, alert_manager=self.alert_manager)

        self.running = False
        self._stop_event: Optional[asyncio.Event] = None

        logger.info("LiquidityApp initialized")

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.signal_handler, signum)

    def signal_handler(self, signum: int):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        if self._stop_event is not None:
            self._stop_event.set()

    async def start(self):
        """Reconcile, then run every loop until a stop is requested"""
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()

        await self.registry.load_from_repository()
        await self.registry.reconcile()
        positions = self.registry.get_all_positions()
        logger.info(f"Tracking {len(positions)} positions after reconciliation")

        try:
            await asyncio.to_thread(
                self.alert_manager.send_startup_notification,
                self.config.CHAIN_NAME, self.config.WALLET_ADDRESS, len(positions)
            )
        except Exception as alert_error:
            logger.warning(f"Failed to send startup notification: {alert_error}")

        self.rebalance_engine.start()
        self.range_orders.start_monitoring()
        self.running = True
        logger.info("Liquidity engine is now running... Press Ctrl+C to stop")

        await self._stop_event.wait()
        await self.stop("Received shutdown signal")

    async def stop(self, reason: str = "Manual shutdown"):
        if not self.running:
            return
        logger.info("Stopping liquidity engine...")
        await self.range_orders.stop_monitoring()
        await self.rebalance_engine.stop()
        self.running = False

        try:
            await asyncio.to_thread(self.alert_manager.send_shutdown_notification, reason)
        except Exception as alert_error:
            logger.warning(f"Failed to send shutdown notification: {alert_error}")
        logger.info("Liquidity engine stopped")

    async def status(self) -> dict:
        await self.registry.reconcile()
        return {
            'registry': self.registry.get_statistics(),
            'rebalance_engine': self.rebalance_engine.get_status(),
            'range_orders': self.range_orders.get_statistics(),
        }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='concentrated-lp',
        description='Concentrated liquidity position manager and rebalancing engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run all loops until Ctrl+C
  concentrated-lp run

  # Reconcile once and print statistics
  concentrated-lp status
        """
    )
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL')
    parser.add_argument('--log-file', default=None, help='Override LOG_FILE')

    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('run', help='Start the engine loops')
    subparsers.add_parser('status', help='Reconcile once and print registry statistics')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = Config()
    setup_logging(level=args.log_level or config.LOG_LEVEL, log_file=args.log_file or config.LOG_FILE)

    try:
        config.validate_config()
        logger.info("Configuration validation passed")
    except ValueError as e:
        logger.error(f"{e}")
        return 1

    try:
        if args.command == 'status':
            app = LiquidityApp(config)
            status = asyncio.run(app.status())
            print(json.dumps(status, indent=2, default=str))
        else:
            app = LiquidityApp(config)
            asyncio.run(app.start())
    except ConcentratedLPError as e:
        logger.error(f"Engine error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
