"""Async trading engine: one periodic trade-cycle task per market.

Each market runs its own loop. A cycle is the blocking CycleDriver call,
pushed to a worker thread so a slow exchange round-trip on one market does
not delay the others:

    while not stopped:
        result = await to_thread(driver.run_one_cycle)
        wait trade_cycle_interval (or until stop())

A market whose driver returns FatalAbort stops trading. With
shutdown_on_fatal the whole engine stops as well.
"""
import asyncio
from typing import Dict, Mapping, Optional

from .config import BotConfig
from .cycle import CycleDriver, CycleResult, FatalAbort
from .exchange import ExchangeAdapter
from .logging_setup import logger
from .strategy import ScalpingStopLossStrategy


class TradingEngine:
    """Schedule trade cycles for every configured market."""

    def __init__(
        self,
        drivers: Mapping[str, CycleDriver],
        *,
        trade_cycle_interval: float = 60.0,
        shutdown_on_fatal: bool = True,
    ):
        self.drivers: Dict[str, CycleDriver] = dict(drivers)
        self.trade_cycle_interval = trade_cycle_interval
        self.shutdown_on_fatal = shutdown_on_fatal
        self.fatal_aborts: Dict[str, FatalAbort] = {}
        self._stop_event: Optional[asyncio.Event] = None

    @classmethod
    def from_config(cls, config: BotConfig, adapter: ExchangeAdapter) -> "TradingEngine":
        """Build one strategy and driver per enabled market, sharing ``adapter``."""
        drivers = {}
        for market in config.enabled_markets():
            strategy = ScalpingStopLossStrategy(adapter, market.id, market.strategy)
            drivers[market.id] = CycleDriver(
                adapter, strategy, halt_on_fatal_read=config.engine.halt_on_fatal_read
            )
        return cls(
            drivers,
            trade_cycle_interval=config.engine.trade_cycle_interval,
            shutdown_on_fatal=config.engine.shutdown_on_fatal,
        )

    async def run(self, max_cycles: Optional[int] = None) -> Dict[str, CycleResult]:
        """Run every market until stop(), a fatal abort, or ``max_cycles``.

        Args:
            max_cycles: Cycles per market before returning; None runs forever

        Returns:
            The last cycle result of each market that ran at least once
        """
        self._stop_event = asyncio.Event()
        results: Dict[str, CycleResult] = {}
        if not self.drivers:
            logger.warning("No enabled markets configured; nothing to trade")
            return results

        logger.info(
            f"Starting trading engine | markets={', '.join(self.drivers)} "
            f"interval={self.trade_cycle_interval}s"
        )
        await asyncio.gather(
            *(self._market_loop(market_id, driver, results, max_cycles) for market_id, driver in self.drivers.items())
        )
        logger.info("Trading engine stopped")
        return results

    def stop(self) -> None:
        """Signal every market loop to finish after its current cycle."""
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _market_loop(
        self,
        market_id: str,
        driver: CycleDriver,
        results: Dict[str, CycleResult],
        max_cycles: Optional[int],
    ) -> None:
        cycles = 0
        while not self.stopping:
            result = await asyncio.to_thread(driver.run_one_cycle)
            results[market_id] = result
            cycles += 1

            if isinstance(result, FatalAbort):
                self.fatal_aborts[market_id] = result
                logger.critical(f"[{market_id}] stopped trading: {result.error}")
                if self.shutdown_on_fatal:
                    logger.critical("Shutting down engine after fatal exchange error")
                    self.stop()
                return

            if max_cycles is not None and cycles >= max_cycles:
                return

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.trade_cycle_interval)
            except asyncio.TimeoutError:
                pass
