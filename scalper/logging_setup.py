"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from loguru import logger as _logger

# Records logged without a bound market still render the market column.
_logger.configure(extra={"market": "-"})

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[market]: <10}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(
    log_file: str = "scalper.log",
    level: str = "INFO",
    enable_console: bool = True,
) -> None:
    """Configure structured logging for the bot.

    Args:
        log_file: Path to log file; parent directories are created
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to stdout as well
    """
    _logger.remove()

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logger.add(
        str(log_path),
        format=LOG_FORMAT,
        level=level,
        rotation="100 MB",
        retention="7 days",
    )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=LOG_FORMAT,
            level=level,
            colorize=True,
        )


def market_logger(market_id: str):
    """Logger whose records carry the market id in the market column."""
    return _logger.bind(market=market_id)


logger = _logger
