"""Configuration loader for the bot.

Supports YAML format with environment variable interpolation. The whole
configuration is parsed and validated once at startup; a missing mandatory
key raises ConfigError naming it before any trade cycle runs.
"""
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigError, ErrorPolicy
from .money import DEFAULT_SCALE, Money

_MISSING = object()


def _require(section: Mapping[str, Any], key: str, where: str) -> Any:
    value = section.get(key, _MISSING) if isinstance(section, Mapping) else _MISSING
    if value is _MISSING or value is None or value == "":
        raise ConfigError(f"Missing mandatory config key: {where}{key}")
    return value


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a decimal number, got {value!r}")
    try:
        # str() first so YAML floats like 0.02 keep their written digits
        result = Decimal(str(value).strip())
    except InvalidOperation:
        raise ConfigError(f"{name} must be a decimal number, got {value!r}")
    if not result.is_finite():
        raise ConfigError(f"{name} must be finite, got {value!r}")
    return result


def _int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "1", "on"):
        return True
    if text in ("false", "no", "0", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{key}' must be a mapping")
    return value


@dataclass
class NetworkConfig:
    """Timeouts, retry budget and the transient error allow-lists."""
    connection_timeout: float = 30
    non_fatal_error_codes: List[int] = field(default_factory=list)
    non_fatal_error_messages: List[str] = field(default_factory=list)
    max_retries: int = 3
    max_backoff_seconds: float = 30.0

    def __post_init__(self):
        if self.connection_timeout <= 0:
            raise ConfigError("exchange.network.connection_timeout must be positive")
        if self.max_retries < 0:
            raise ConfigError("exchange.network.max_retries must not be negative")

    def error_policy(self) -> ErrorPolicy:
        return ErrorPolicy.build(self.non_fatal_error_codes, self.non_fatal_error_messages)


@dataclass
class ExchangeConfig:
    """Exchange adapter settings."""
    adapter: str = "coinbase"
    base_url: str = "https://api.exchange.coinbase.com"
    authentication: Dict[str, str] = field(default_factory=dict)
    network: NetworkConfig = field(default_factory=NetworkConfig)

    ADAPTERS = ("coinbase", "paper")

    def __post_init__(self):
        if self.adapter not in self.ADAPTERS:
            raise ConfigError(
                f"exchange.adapter must be one of {', '.join(self.ADAPTERS)}, got {self.adapter!r}"
            )


@dataclass
class StrategyConfig:
    """Entry budget and exit thresholds for one market.

    Percentages are fractions: Decimal('0.02') means 2%.
    """
    entry_budget: Decimal
    min_profit_pct: Decimal
    max_loss_pct: Decimal
    trailing_pct: Decimal
    quantity_scale: int = DEFAULT_SCALE
    max_pending_entry_cycles: Optional[int] = None

    def __post_init__(self):
        if self.entry_budget <= 0:
            raise ConfigError(f"entry_budget must be positive, got {self.entry_budget}")
        try:
            Money(self.entry_budget)
        except ValueError as e:
            raise ConfigError(f"entry_budget {self.entry_budget} is out of range: {e}")
        for name in ("min_profit_pct", "max_loss_pct", "trailing_pct"):
            pct = getattr(self, name)
            if not Decimal(0) < pct < Decimal(1):
                raise ConfigError(f"{name} must be a fraction between 0 and 1, got {pct}")
        if self.quantity_scale < 0:
            raise ConfigError(f"quantity_scale must not be negative, got {self.quantity_scale}")
        if self.max_pending_entry_cycles is not None and self.max_pending_entry_cycles < 1:
            raise ConfigError("max_pending_entry_cycles must be at least 1 when set")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], where: str = "strategy.") -> "StrategyConfig":
        pending = data.get("max_pending_entry_cycles")
        return cls(
            entry_budget=_decimal(_require(data, "entry_budget", where), where + "entry_budget"),
            min_profit_pct=_decimal(_require(data, "min_profit_pct", where), where + "min_profit_pct"),
            max_loss_pct=_decimal(_require(data, "max_loss_pct", where), where + "max_loss_pct"),
            trailing_pct=_decimal(_require(data, "trailing_pct", where), where + "trailing_pct"),
            quantity_scale=_int(data.get("quantity_scale", DEFAULT_SCALE), where + "quantity_scale"),
            max_pending_entry_cycles=(
                _int(pending, where + "max_pending_entry_cycles") if pending is not None else None
            ),
        )


@dataclass
class MarketConfig:
    """A market to trade and the strategy settings for it."""
    id: str
    strategy: StrategyConfig
    name: str = ""
    base_currency: str = ""
    counter_currency: str = ""
    enabled: bool = True

    def __post_init__(self):
        if not self.name:
            self.name = self.id
        if not (self.base_currency and self.counter_currency) and "-" in self.id:
            base, counter = self.id.split("-", 1)
            self.base_currency = self.base_currency or base
            self.counter_currency = self.counter_currency or counter


@dataclass
class EngineConfig:
    """Trade cycle scheduling and fatal-error policy."""
    trade_cycle_interval: float = 60.0
    shutdown_on_fatal: bool = True
    halt_on_fatal_read: bool = False

    def __post_init__(self):
        if self.trade_cycle_interval <= 0:
            raise ConfigError("engine.trade_cycle_interval must be positive")


@dataclass
class LoggingConfig:
    """Log sinks."""
    log_file: str = "scalper.log"
    level: str = "INFO"
    enable_console: bool = True


@dataclass
class BotConfig:
    """Complete bot configuration."""
    exchange: ExchangeConfig
    markets: List[MarketConfig]
    engine: EngineConfig = field(default_factory=EngineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def enabled_markets(self) -> List[MarketConfig]:
        return [m for m in self.markets if m.enabled]

    @classmethod
    def from_yaml(cls, config_path: str) -> "BotConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            BotConfig instance

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigError: If a mandatory key is missing or a value is malformed

        Example YAML:
            exchange:
              adapter: coinbase
              authentication:
                key: "${SCALPER_KEY}"
                secret: "${SCALPER_SECRET}"
              network:
                connection_timeout: 30
                non_fatal_error_codes: [502, 503, 504]
                non_fatal_error_messages: ["Connection reset"]
            engine:
              trade_cycle_interval: 60
            markets:
              - id: BTC-USD
                strategy:
                  entry_budget: "20"
                  min_profit_pct: "0.02"
                  max_loss_pct: "0.05"
                  trailing_pct: "0.01"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file {config_path} is not valid YAML: {e}")
        return cls.from_mapping(data or {})

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BotConfig":
        """Build and validate the configuration from already-parsed key/values."""
        if not isinstance(data, Mapping):
            raise ConfigError("Config root must be a mapping")

        exchange_data = _section(data, "exchange")
        network_data = _section(exchange_data, "network")
        network = NetworkConfig(
            connection_timeout=float(
                _decimal(_require(network_data, "connection_timeout", "exchange.network."), "exchange.network.connection_timeout")
            ),
            non_fatal_error_codes=[
                _int(c, "exchange.network.non_fatal_error_codes") for c in network_data.get("non_fatal_error_codes") or []
            ],
            non_fatal_error_messages=[str(m) for m in network_data.get("non_fatal_error_messages") or []],
            max_retries=_int(network_data.get("max_retries", 3), "exchange.network.max_retries"),
            max_backoff_seconds=float(
                _decimal(network_data.get("max_backoff_seconds", 30), "exchange.network.max_backoff_seconds")
            ),
        )
        exchange = ExchangeConfig(
            adapter=str(exchange_data.get("adapter", "coinbase")),
            base_url=str(exchange_data.get("base_url", ExchangeConfig.base_url)),
            authentication={k: str(v) for k, v in _section(exchange_data, "authentication").items() if v is not None},
            network=network,
        )

        raw_markets = _require(data, "markets", "")
        if not isinstance(raw_markets, list):
            raise ConfigError("Config key 'markets' must be a list")
        markets = []
        for i, m in enumerate(raw_markets):
            where = f"markets[{i}]."
            if not isinstance(m, Mapping):
                raise ConfigError(f"{where[:-1]} must be a mapping")
            market_id = str(_require(m, "id", where))
            strategy_data = _require(m, "strategy", where)
            if not isinstance(strategy_data, Mapping):
                raise ConfigError(f"{where}strategy must be a mapping")
            markets.append(
                MarketConfig(
                    id=market_id,
                    strategy=StrategyConfig.from_mapping(strategy_data, where=f"{where}strategy."),
                    name=str(m.get("name") or ""),
                    base_currency=str(m.get("base_currency") or ""),
                    counter_currency=str(m.get("counter_currency") or ""),
                    enabled=_bool(m.get("enabled", True), f"{where}enabled"),
                )
            )
        ids = [m.id for m in markets]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate market ids in config: {', '.join(duplicates)}")

        engine_data = _section(data, "engine")
        engine = EngineConfig(
            trade_cycle_interval=float(
                _decimal(engine_data.get("trade_cycle_interval", 60), "engine.trade_cycle_interval")
            ),
            shutdown_on_fatal=_bool(engine_data.get("shutdown_on_fatal", True), "engine.shutdown_on_fatal"),
            halt_on_fatal_read=_bool(engine_data.get("halt_on_fatal_read", False), "engine.halt_on_fatal_read"),
        )

        logging_data = _section(data, "logging")
        logging = LoggingConfig(
            log_file=str(logging_data.get("log_file", "scalper.log")),
            level=str(logging_data.get("level", "INFO")).upper(),
            enable_console=_bool(logging_data.get("enable_console", True), "logging.enable_console"),
        )

        return cls(exchange=exchange, markets=markets, engine=engine, logging=logging)
