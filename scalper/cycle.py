"""
Trade cycle driver: one blocking evaluation of one market.

run_one_cycle() never raises. It returns exactly one of

    CycleCompleted(decision)  the strategy evaluated this cycle's prices
    CycleSkipped(reason)      nothing decided; state unchanged, try next cycle
    FatalAbort(error)         an order write failed fatally; market halted

Error mapping:

    read  + InsufficientMarketData  -> CycleSkipped
    read  + TransientNetworkError   -> CycleSkipped
    read  + FatalExchangeError      -> CycleSkipped (FatalAbort if halt_on_fatal_read)
    write + TransientNetworkError   -> CycleSkipped (adapter confirmed nothing applied)
    write + FatalExchangeError      -> FatalAbort   (includes AmbiguousWriteOutcome)

Once halted, the driver returns the same FatalAbort without touching the
exchange until an operator restarts the process.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from .errors import (
    ExchangeError,
    FatalExchangeError,
    InsufficientMarketData,
    TransientNetworkError,
)
from .exchange import ExchangeAdapter
from .logging_setup import market_logger
from .strategy import Decision, ScalpingStopLossStrategy


@dataclass(frozen=True)
class CycleCompleted:
    decision: Decision


@dataclass(frozen=True)
class CycleSkipped:
    reason: str


@dataclass(frozen=True)
class FatalAbort:
    error: ExchangeError


CycleResult = Union[CycleCompleted, CycleSkipped, FatalAbort]


class CycleDriver:
    """Runs the fetch -> decide -> order sequence for one market.

    Attributes:
        adapter: Exchange adapter shared with the strategy
        strategy: The market's position state machine
        halt_on_fatal_read: Treat fatal read errors like fatal write errors
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        strategy: ScalpingStopLossStrategy,
        *,
        halt_on_fatal_read: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.adapter = adapter
        self.strategy = strategy
        self.halt_on_fatal_read = halt_on_fatal_read
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.cycles_run = 0
        self._abort: Optional[FatalAbort] = None
        self.log = market_logger(strategy.market_id)

    @property
    def market_id(self) -> str:
        return self.strategy.market_id

    @property
    def halted(self) -> bool:
        return self._abort is not None

    def run_one_cycle(self) -> CycleResult:
        if self._abort is not None:
            self.log.error(f"Market halted after fatal error, not trading: {self._abort.error}")
            return self._abort

        self.cycles_run += 1
        position = self.strategy.position
        self.log.info(f"Cycle {self.cycles_run} | position={position.to_dict()}")

        # Reads: nothing has been sent to the exchange yet, so any failure
        # leaves the position exactly as it was.
        try:
            book = self.adapter.get_order_book(self.market_id)
            snapshot = book.snapshot(observed_at=self.clock())
            open_orders = self.adapter.get_open_orders(self.market_id) if position.is_pending else None
        except InsufficientMarketData as e:
            return self._skip(f"Insufficient market data: {e}")
        except TransientNetworkError as e:
            return self._skip(f"Transient exchange error while reading market data: {e}")
        except FatalExchangeError as e:
            if self.halt_on_fatal_read:
                return self._halt(e, "reading market data")
            self.log.opt(exception=e).error(f"Fatal exchange error while reading market data: {e}")
            return CycleSkipped(f"Fatal exchange error while reading market data: {e}")

        self.log.info(f"Current BID price={snapshot.bid} ASK price={snapshot.ask}")

        # Writes: the strategy only talks to the exchange to place or cancel.
        try:
            decision = self.strategy.evaluate(snapshot, open_orders)
        except TransientNetworkError as e:
            return self._skip(f"Order write not applied, will retry next cycle: {e}")
        except ExchangeError as e:
            return self._halt(e, "writing an order")

        self.log.info(f"Cycle {self.cycles_run} done | {decision.action.name}: {decision.reason}")
        return CycleCompleted(decision)

    def _skip(self, reason: str) -> CycleSkipped:
        self.log.warning(f"{reason} | waiting until next trade cycle")
        return CycleSkipped(reason)

    def _halt(self, error: ExchangeError, during: str) -> FatalAbort:
        self._abort = FatalAbort(error)
        self.log.opt(exception=error).critical(
            f"Fatal exchange error while {during}; halting market until operator restart. "
            f"Position: {self.strategy.position.to_dict()}"
        )
        return self._abort
