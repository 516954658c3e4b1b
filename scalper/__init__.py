"""
Scalping bot with stop-loss and trailing-stop exits.

Trades one or more spot markets through a pluggable exchange adapter:
- Limit buy entry sized from a fixed quote-currency budget at the best bid
- Stop-loss sell when the ask falls below entry * (1 - max_loss_pct)
- Trailing-stop sell once the ask has passed entry * (1 + min_profit_pct)
- Decimal money arithmetic, no floats on prices or quantities
- Transient/fatal error classification with safe retries for order writes
- One periodic trade-cycle task per market (asyncio)
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    money: Fixed-scale decimal Money type
    position: Position state and exit thresholds
    strategy: Scalping state machine (entry, fills, exits)
    cycle: One trade cycle with error mapping
    engine: Periodic scheduling across markets
    exchange: Adapter interface and paper adapter
    coinbase_adapter: Coinbase Exchange REST integration
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from scalper.config import BotConfig
    >>> from scalper.cli import build_adapter
    >>> from scalper.engine import TradingEngine
    >>>
    >>> config = BotConfig.from_yaml("config.yaml")
    >>> engine = TradingEngine.from_config(config, build_adapter(config.exchange))
    >>> asyncio.run(engine.run())
"""

__version__ = "0.1.0"
