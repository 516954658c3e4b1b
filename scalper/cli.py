"""Command line entry point.

    python -m scalper --config config.yaml [--once] [--log-level DEBUG]

Exit codes: 0 on a clean stop, 1 when any market stopped on a fatal exchange
error, 2 for configuration problems.
"""
import argparse
import asyncio
import sys
from typing import List, Optional

from .coinbase_adapter import CoinbaseAdapter
from .config import BotConfig, ExchangeConfig
from .engine import TradingEngine
from .errors import ConfigError
from .exchange import ExchangeAdapter, PaperExchangeAdapter
from .logging_setup import logger, setup_logging
from .secrets import load_credentials


def build_adapter(exchange: ExchangeConfig) -> ExchangeAdapter:
    """Create the exchange adapter named by ``exchange.adapter``.

    The paper adapter reads public Coinbase market data and fills its own
    orders locally, so it needs no credentials.
    """
    network = exchange.network
    options = dict(
        base_url=exchange.base_url,
        timeout=network.connection_timeout,
        max_retries=network.max_retries,
        max_backoff_seconds=network.max_backoff_seconds,
        error_policy=network.error_policy(),
    )
    if exchange.adapter == "paper":
        market_data = CoinbaseAdapter(api_key="", secret="", **options)
        return PaperExchangeAdapter(market_data=market_data, match_orders=True)

    credentials = load_credentials(exchange.authentication)
    return CoinbaseAdapter.from_credentials(credentials, **options)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scalper", description="Scalping bot with stop-loss and trailing-stop exits"
    )
    parser.add_argument("--config", required=True, help="Path to YAML config file")
    parser.add_argument("--once", action="store_true", help="Run a single trade cycle per market and exit")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override logging.level from the config file",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = BotConfig.from_yaml(args.config)
        log_config = config.logging
        setup_logging(
            log_file=log_config.log_file,
            level=args.log_level or log_config.level,
            enable_console=log_config.enable_console,
        )
        adapter = build_adapter(config.exchange)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logger.info(f"Exchange adapter: {adapter.get_impl_name()}")
    engine = TradingEngine.from_config(config, adapter)
    try:
        asyncio.run(engine.run(max_cycles=1 if args.once else None))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")

    if engine.fatal_aborts:
        for market_id, abort in engine.fatal_aborts.items():
            logger.critical(f"[{market_id}] halted on fatal error: {abort.error}")
        return 1
    return 0
