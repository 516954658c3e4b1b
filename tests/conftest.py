from decimal import Decimal

import pytest

from scalper.config import StrategyConfig
from scalper.exchange import PaperExchangeAdapter
from scalper.models import PriceSnapshot
from scalper.money import Money
from scalper.strategy import ScalpingStopLossStrategy

MARKET = "BTC-USD"


def snap(bid, ask, market_id=MARKET):
    return PriceSnapshot(market_id, bid=Money(bid), ask=Money(ask))


@pytest.fixture
def strategy_config():
    return StrategyConfig(
        entry_budget=Decimal("20"),
        min_profit_pct=Decimal("0.02"),
        max_loss_pct=Decimal("0.05"),
        trailing_pct=Decimal("0.01"),
    )


@pytest.fixture
def adapter():
    return PaperExchangeAdapter()


@pytest.fixture
def strategy(adapter, strategy_config):
    return ScalpingStopLossStrategy(adapter, MARKET, strategy_config)
