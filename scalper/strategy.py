"""
Scalping strategy with stop-loss and trailing-stop exits.

Each cycle the strategy gets a fresh PriceSnapshot (and, while an order is
resting, our open orders) and advances its Position by at most one step:

    FLAT           buy entry_budget worth at the bid          -> PENDING_ENTRY
    PENDING_ENTRY  entry order gone from the book (filled)    -> HOLDING
    HOLDING        ask below stop-loss, or below trailing stop -> PENDING_EXIT
    PENDING_EXIT   exit order gone from the book (filled)     -> FLAT

The trailing stop arms once the ask has exceeded the profit target
(entry * (1 + min_profit_pct)); from then on a sell fires when the ask drops
more than trailing_pct below the highest ask seen.

At most one order is submitted per cycle, and none while an order is resting.
Order placement errors propagate unchanged: the cycle driver decides whether
the market keeps trading.

Examples:
    >>> from decimal import Decimal
    >>> from scalper.exchange import PaperExchangeAdapter
    >>> adapter = PaperExchangeAdapter()
    >>> config = StrategyConfig(
    ...     entry_budget=Decimal("100"), min_profit_pct=Decimal("0.02"),
    ...     max_loss_pct=Decimal("0.05"), trailing_pct=Decimal("0.01"))
    >>> strategy = ScalpingStopLossStrategy(adapter, "BTC-USD", config)
    >>> snap = PriceSnapshot("BTC-USD", bid=Money("100"), ask=Money("101"))
    >>> strategy.evaluate(snap).action
    <Action.PLACE_ENTRY: 'place_entry'>
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional

from .config import StrategyConfig
from .exchange import ExchangeAdapter
from .logging_setup import market_logger
from .models import OpenOrder, OrderRequest, OrderSide, PriceSnapshot
from .money import Money
from .position import Position, PositionStatus


class Action(Enum):
    """What a cycle's evaluation did."""

    NONE = "none"
    PLACE_ENTRY = "place_entry"
    ENTRY_FILLED = "entry_filled"
    CANCEL_ENTRY = "cancel_entry"
    STOP_LOSS_EXIT = "stop_loss_exit"
    TRAILING_STOP_EXIT = "trailing_stop_exit"
    EXIT_FILLED = "exit_filled"


@dataclass(frozen=True)
class Decision:
    """Outcome of one evaluation.

    Attributes:
        action: What happened
        reason: Human-readable explanation for the log
        order: The order submitted this cycle, if any
        order_id: Exchange ID returned for ``order`` (or the cancelled order)
    """

    action: Action
    reason: str
    order: Optional[OrderRequest] = None
    order_id: Optional[str] = None

    @property
    def submitted_order(self) -> bool:
        return self.order is not None


class ScalpingStopLossStrategy:
    """Position state machine for a single market.

    Responsibilities:
    - Size and place the entry buy from the configured budget
    - Detect entry and exit fills from the open-orders view
    - Fire stop-loss and trailing-stop sells from the current ask

    Attributes:
        adapter: Exchange adapter used for order placement
        market_id: Market this instance trades
        config: Validated StrategyConfig
        position: Exclusively owned Position, mutated only by evaluate()
    """

    def __init__(self, adapter: ExchangeAdapter, market_id: str, config: StrategyConfig):
        self.adapter = adapter
        self.market_id = market_id
        self.config = config
        self.position = Position()
        self.log = market_logger(market_id)

    def evaluate(
        self, snapshot: PriceSnapshot, open_orders: Optional[Iterable[OpenOrder]] = None
    ) -> Decision:
        """Advance the position by one cycle.

        Args:
            snapshot: Best bid/ask for this cycle
            open_orders: Our resting orders on this market; required while the
                position is PENDING_ENTRY or PENDING_EXIT

        Returns:
            Decision describing the step taken

        Raises:
            ExchangeError: If placing or cancelling an order fails. The
                position is left unchanged in that case.
        """
        status = self.position.status
        self.log.info(f"Evaluating | status={status.name} bid={snapshot.bid} ask={snapshot.ask}")

        if status is PositionStatus.FLAT:
            return self._when_flat(snapshot)

        if status is PositionStatus.HOLDING:
            return self._when_holding(snapshot)

        if open_orders is None:
            raise ValueError(f"open_orders is required while {status.name}")
        resting = {o.id: o for o in open_orders}

        if status is PositionStatus.PENDING_ENTRY:
            return self._when_pending_entry(resting)
        return self._when_pending_exit(snapshot, resting)

    # -- FLAT --------------------------------------------------------------

    def entry_quantity(self, bid: Money) -> Money:
        """Base quantity bought for the entry budget at ``bid``, rounded down."""
        return (Money(self.config.entry_budget) / bid).round_down(self.config.quantity_scale)

    def _when_flat(self, snapshot: PriceSnapshot) -> Decision:
        bid = snapshot.bid
        if bid <= 0:
            return Decision(Action.NONE, f"Bid price {bid} is not positive; not entering")

        try:
            quantity = self.entry_quantity(bid)
        except ValueError as e:
            return Decision(Action.NONE, f"Cannot size entry at bid {bid}: {e}")
        if quantity.is_zero():
            return Decision(
                Action.NONE,
                f"Budget {self.config.entry_budget} buys nothing at bid {bid} "
                f"with {self.config.quantity_scale} decimals",
            )

        order = OrderRequest(self.market_id, OrderSide.BUY, quantity, bid)
        self.log.info(f"Sending entry order | {order}")
        order_id = self.adapter.place_order(order.market_id, order.side, order.quantity, order.limit_price)
        self.position.open_entry(order_id, bid, quantity)
        self.log.info(f"Entry order placed | order_id={order_id} price={bid} qty={quantity}")
        return Decision(Action.PLACE_ENTRY, f"Entry BUY at bid {bid}", order, order_id)

    # -- PENDING_ENTRY -----------------------------------------------------

    def _when_pending_entry(self, resting: Dict[str, OpenOrder]) -> Decision:
        """Wait for the entry fill, cancelling it once it has gone stale.

        A successful cancel returns the position to FLAT. Partial fills are not
        tracked: any base quantity bought before the cancel is left in the
        account and no exit is placed for it.
        """
        pos = self.position
        if pos.entry_order_id not in resting:
            pos.confirm_entry()
            self.log.info(
                f"Entry order filled | order_id={pos.entry_order_id} price={pos.entry_price} qty={pos.quantity}"
            )
            return Decision(Action.ENTRY_FILLED, f"Entry order {pos.entry_order_id} filled")

        cycles = pos.pending_cycles + 1
        limit = self.config.max_pending_entry_cycles
        if limit is not None and cycles > limit:
            order_id = pos.entry_order_id
            self.log.warning(
                f"Entry order unfilled for {cycles} cycles, cancelling | order_id={order_id}"
            )
            if self.adapter.cancel_order(order_id, self.market_id):
                self.log.warning(
                    f"Entry order {order_id} cancelled; any partial fill is left untracked in the account"
                )
                pos.abandon_entry()
                return Decision(
                    Action.CANCEL_ENTRY, f"Entry order {order_id} cancelled after {limit} cycles", order_id=order_id
                )
            # Not open any more on the exchange side: it filled meanwhile.
            pos.confirm_entry()
            return Decision(Action.ENTRY_FILLED, f"Entry order {order_id} filled before it could be cancelled")

        pos.pending_cycles = cycles
        return Decision(Action.NONE, f"Entry order {pos.entry_order_id} still open")

    # -- HOLDING -----------------------------------------------------------

    def _when_holding(self, snapshot: PriceSnapshot) -> Decision:
        pos = self.position
        cfg = self.config
        ask = snapshot.ask

        stop_loss = pos.stop_loss_price(cfg.max_loss_pct)
        if ask < stop_loss:
            return self._exit(
                Action.STOP_LOSS_EXIT, ask, f"Ask {ask} below stop-loss {stop_loss} (entry {pos.entry_price})"
            )

        target = pos.profit_target_price(cfg.min_profit_pct)
        if ask > target and pos.raise_high_water_mark(ask):
            self.log.info(f"New high-water mark {ask} (target {target})")

        if pos.high_water_mark <= target:
            return Decision(Action.NONE, f"Ask {ask} has not passed profit target {target}")

        trailing_stop = pos.trailing_stop_price(cfg.trailing_pct)
        if ask < trailing_stop:
            return self._exit(
                Action.TRAILING_STOP_EXIT,
                ask,
                f"Ask {ask} below trailing stop {trailing_stop} (high-water mark {pos.high_water_mark})",
            )
        return Decision(
            Action.NONE, f"Riding trend: ask {ask}, trailing stop {trailing_stop}, high {pos.high_water_mark}"
        )

    def _exit(self, action: Action, ask: Money, reason: str) -> Decision:
        pos = self.position
        order = OrderRequest(self.market_id, OrderSide.SELL, pos.quantity, ask)
        self.log.warning(f"{reason} | sending exit order {order}")
        order_id = self.adapter.place_order(order.market_id, order.side, order.quantity, order.limit_price)
        pos.open_exit(order_id)
        self.log.info(f"Exit order placed | order_id={order_id} price={ask} qty={pos.quantity}")
        return Decision(action, reason, order, order_id)

    # -- PENDING_EXIT ------------------------------------------------------

    def _when_pending_exit(self, snapshot: PriceSnapshot, resting: Dict[str, OpenOrder]) -> Decision:
        pos = self.position
        order_id = pos.exit_order_id
        if order_id not in resting:
            self.log.info(f"Exit order filled | order_id={order_id} qty={pos.quantity}")
            pos.close()
            return Decision(Action.EXIT_FILLED, f"Exit order {order_id} filled")

        pos.pending_cycles += 1
        exit_price = resting[order_id].price
        if snapshot.ask < exit_price:
            self.log.warning(
                f"Ask {snapshot.ask} is below our resting exit price {exit_price}; "
                f"market moved away from order {order_id} ({pos.pending_cycles} cycles open)"
            )
        return Decision(Action.NONE, f"Exit order {order_id} still open at {exit_price}")
