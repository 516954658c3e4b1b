"""Offline demo of the scalping strategy on a scripted price path.

Shows:
1. Structured logging
2. A paper adapter with a scripted order book
3. Entry, fill detection and a trailing-stop exit driven cycle by cycle
"""
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path so we can import the scalper package
sys.path.insert(0, str(Path(__file__).parent.parent))

from scalper.config import StrategyConfig
from scalper.cycle import CycleCompleted, CycleDriver
from scalper.exchange import PaperExchangeAdapter
from scalper.logging_setup import logger, setup_logging
from scalper.strategy import ScalpingStopLossStrategy

MARKET = "BTC-USD"

# (bid, ask) per cycle: entry at 100, rally past the 2% target, pull back
PRICE_PATH = [
    ("100", "100.1"),
    ("99.9", "100"),
    ("101", "101.2"),
    ("102.8", "103"),
    ("103.9", "104"),
    ("102.9", "103"),
    ("102.8", "102.9"),
    ("102.9", "103.1"),
]


def main():
    setup_logging(log_file="logs/demo.log", level="INFO", enable_console=True)
    logger.info("=== Paper scalper demo ===")

    adapter = PaperExchangeAdapter(match_orders=True)
    config = StrategyConfig(
        entry_budget=Decimal("20"),
        min_profit_pct=Decimal("0.02"),
        max_loss_pct=Decimal("0.05"),
        trailing_pct=Decimal("0.01"),
    )
    driver = CycleDriver(adapter, ScalpingStopLossStrategy(adapter, MARKET, config))

    for bid, ask in PRICE_PATH:
        adapter.set_order_book(MARKET, bids=[(bid, "1")], asks=[(ask, "5")])
        result = driver.run_one_cycle()
        if isinstance(result, CycleCompleted):
            print(f"bid={bid:>7} ask={ask:>7} -> {result.decision.action.name:<20} {result.decision.reason}")
        else:
            print(f"bid={bid:>7} ask={ask:>7} -> {result}")

    print(f"\nFinal position: {driver.strategy.position.to_dict()}")
    print(f"Orders placed: {len(adapter.placed)}")


if __name__ == "__main__":
    main()
