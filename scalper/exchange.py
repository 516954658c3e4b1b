"""
Exchange adapter contract and an in-memory paper adapter.

The strategy and cycle driver depend only on ExchangeAdapter. Each exchange
gets one implementation; retries, backoff and request signing are the
adapter's business and stay invisible to callers.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from .errors import ExchangeError, InsufficientMarketData
from .logging_setup import logger
from .models import Balance, OpenOrder, OrderBook, OrderSide
from .money import Money


class ExchangeAdapter(ABC):
    """Capabilities the trading core needs from an exchange.

    All prices and quantities are Money. Every method raises an ExchangeError
    subclass on failure (see scalper.errors for the taxonomy).
    """

    @abstractmethod
    def get_impl_name(self) -> str:
        """Human-readable adapter name for logs."""

    @abstractmethod
    def get_latest_price(self, market_id: str) -> Money:
        """Last traded price for the market."""

    @abstractmethod
    def get_order_book(self, market_id: str) -> OrderBook:
        """Current order book, each side best-first.

        Raises:
            InsufficientMarketData: If the bid or ask side is empty
        """

    @abstractmethod
    def get_open_orders(self, market_id: str) -> List[OpenOrder]:
        """Our resting orders on the market."""

    @abstractmethod
    def place_order(
        self, market_id: str, side: OrderSide, quantity: Money, price: Money
    ) -> str:
        """Place a limit order.

        Args:
            market_id: Market to trade
            side: BUY or SELL
            quantity: Base-currency amount
            price: Limit price in counter currency

        Returns:
            Exchange order ID

        Raises:
            TransientNetworkError: The order was confirmed not placed
            FatalExchangeError: Rejected, or (AmbiguousWriteOutcome) state unknown
        """

    @abstractmethod
    def cancel_order(self, order_id: str, market_id: str) -> bool:
        """Cancel a resting order.

        Returns:
            True if cancelled, False if the exchange no longer had it open
        """

    @abstractmethod
    def get_balances(self) -> Dict[str, Balance]:
        """Balances keyed by currency code."""


class PaperExchangeAdapter(ExchangeAdapter):
    """Adapter that trades against an in-memory book.

    Market data comes either from scripted books (``set_order_book``) or from a
    real adapter passed as ``market_data``; orders never leave the process.
    Tests drive fills explicitly with ``fill_order`` or let
    ``match_orders=True`` fill resting orders once the book crosses them.

    Failures can be queued per operation name with ``fail_next`` to exercise the
    error paths of callers.
    """

    DUMMY_BALANCE = "100.00"

    def __init__(
        self,
        *,
        market_data: Optional[ExchangeAdapter] = None,
        balances: Optional[Dict[str, Balance]] = None,
        match_orders: bool = False,
    ):
        self.market_data = market_data
        self.match_orders = match_orders
        self.books: Dict[str, OrderBook] = {}
        self.last_prices: Dict[str, Money] = {}
        self.orders: Dict[str, dict] = {}
        self.placed: List[Tuple[str, OrderSide, Money, Money]] = []
        self.cancelled: List[str] = []
        self.balances = balances if balances is not None else {}
        self._failures: Dict[str, Deque[ExchangeError]] = defaultdict(deque)
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def get_impl_name(self) -> str:
        if self.market_data is not None:
            return f"Paper trading adapter (market data: {self.market_data.get_impl_name()})"
        return "Paper trading adapter"

    # -- test/driver hooks -------------------------------------------------

    def set_order_book(
        self,
        market_id: str,
        bids: Sequence[Sequence],
        asks: Sequence[Sequence],
    ) -> None:
        """Script the book returned for a market. Levels are (price, qty) pairs."""
        self.books[market_id] = OrderBook.from_levels(market_id, bids, asks)

    def set_latest_price(self, market_id: str, price) -> None:
        self.last_prices[market_id] = Money(price)

    def fail_next(self, operation: str, error: ExchangeError) -> None:
        """Raise ``error`` on the next call to ``operation`` (e.g. "place_order")."""
        self._failures[operation].append(error)

    def fill_order(self, order_id: str) -> None:
        with self._lock:
            self.orders[order_id]["state"] = "filled"

    def _maybe_fail(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.popleft()

    # -- ExchangeAdapter ---------------------------------------------------

    def get_latest_price(self, market_id: str) -> Money:
        self._maybe_fail("get_latest_price")
        if self.market_data is not None:
            return self.market_data.get_latest_price(market_id)
        if market_id in self.last_prices:
            return self.last_prices[market_id]
        book = self._book(market_id)
        return book.snapshot().bid

    def get_order_book(self, market_id: str) -> OrderBook:
        self._maybe_fail("get_order_book")
        book = self._book(market_id)
        if not book.is_complete():
            # surface the empty side by name
            book.snapshot()
        return book

    def _book(self, market_id: str) -> OrderBook:
        if self.market_data is not None:
            book = self.market_data.get_order_book(market_id)
            self.books[market_id] = book
            return book
        if market_id not in self.books:
            raise InsufficientMarketData(f"{market_id}: no order book scripted")
        return self.books[market_id]

    def get_open_orders(self, market_id: str) -> List[OpenOrder]:
        self._maybe_fail("get_open_orders")
        with self._lock:
            if self.match_orders and market_id in self.books:
                self._match(market_id)
            return [
                OpenOrder(
                    id=oid,
                    market_id=o["market_id"],
                    side=o["side"],
                    price=o["price"],
                    quantity=o["quantity"],
                )
                for oid, o in self.orders.items()
                if o["market_id"] == market_id and o["state"] == "open"
            ]

    def _match(self, market_id: str) -> None:
        book = self.books[market_id]
        for oid, o in self.orders.items():
            if o["market_id"] != market_id or o["state"] != "open":
                continue
            if o["side"] is OrderSide.BUY and book.asks and book.asks[0][0] <= o["price"]:
                o["state"] = "filled"
            elif o["side"] is OrderSide.SELL and book.bids and book.bids[0][0] >= o["price"]:
                o["state"] = "filled"
            if o["state"] == "filled":
                logger.info(f"Paper order filled | order_id={oid} side={o['side'].name} price={o['price']}")

    def place_order(
        self, market_id: str, side: OrderSide, quantity: Money, price: Money
    ) -> str:
        self._maybe_fail("place_order")
        with self._lock:
            oid = f"PAPER-{next(self._ids)}"
            self.orders[oid] = {
                "market_id": market_id,
                "side": side,
                "price": price,
                "quantity": quantity,
                "state": "open",
            }
            self.placed.append((market_id, side, quantity, price))
        return oid

    def cancel_order(self, order_id: str, market_id: str) -> bool:
        self._maybe_fail("cancel_order")
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order["state"] != "open":
                return False
            order["state"] = "cancelled"
            self.cancelled.append(order_id)
            return True

    def get_balances(self) -> Dict[str, Balance]:
        self._maybe_fail("get_balances")
        if self.balances:
            return dict(self.balances)
        return {
            currency: Balance(currency, Money(self.DUMMY_BALANCE), Money(0))
            for currency in ("BTC", "USD", "EUR", "ETH")
        }
