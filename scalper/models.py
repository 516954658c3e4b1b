"""
Market and order records exchanged between the adapters and the strategy.

Everything here is a frozen snapshot: adapters build these from exchange
responses, the strategy reads them, and nobody mutates them afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Sequence, Tuple

from .errors import InsufficientMarketData
from .money import Money


class OrderSide(Enum):
    """Order side: BUY or SELL. Values are the wire spelling."""

    BUY = "buy"
    SELL = "sell"


PriceLevel = Tuple[Money, Money]  # (price, quantity)


@dataclass(frozen=True)
class PriceSnapshot:
    """Best bid/ask for one market, observed once per cycle."""

    market_id: str
    bid: Money
    ask: Money
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def spread(self) -> Money:
        return self.ask - self.bid


@dataclass(frozen=True)
class OrderBook:
    """Bids and asks for a market, each side ordered best-first.

    Attributes:
        market_id: Exchange market identifier (e.g. "BTC-USD")
        bids: Buy side, highest price first
        asks: Sell side, lowest price first
    """

    market_id: str
    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()

    @classmethod
    def from_levels(
        cls,
        market_id: str,
        bids: Sequence[Sequence],
        asks: Sequence[Sequence],
    ) -> "OrderBook":
        """Build a book from raw (price, quantity) pairs of str/Decimal/Money."""
        return cls(
            market_id=market_id,
            bids=tuple((Money(p), Money(q)) for p, q, *_ in bids),
            asks=tuple((Money(p), Money(q)) for p, q, *_ in asks),
        )

    def is_complete(self) -> bool:
        return bool(self.bids) and bool(self.asks)

    def snapshot(self, observed_at: Optional[datetime] = None) -> PriceSnapshot:
        """Best bid/ask as a PriceSnapshot.

        Raises:
            InsufficientMarketData: If either side of the book is empty
        """
        if not self.bids:
            raise InsufficientMarketData(f"{self.market_id}: exchange returned an empty bid side")
        if not self.asks:
            raise InsufficientMarketData(f"{self.market_id}: exchange returned an empty ask side")
        return PriceSnapshot(
            market_id=self.market_id,
            bid=self.bids[0][0],
            ask=self.asks[0][0],
            observed_at=observed_at or datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class OrderRequest:
    """A single limit order decided by the strategy."""

    market_id: str
    side: OrderSide
    quantity: Money
    limit_price: Money

    def __str__(self) -> str:
        return f"{self.side.name} {self.quantity} @ {self.limit_price} on {self.market_id}"


@dataclass(frozen=True)
class OpenOrder:
    """A resting order as reported by the exchange."""

    id: str
    market_id: str
    side: OrderSide
    price: Money
    quantity: Money


@dataclass(frozen=True)
class Balance:
    """Funds for one currency: free to trade, and reserved by open orders."""

    currency: str
    available: Money
    on_hold: Money

    @property
    def total(self) -> Money:
        return self.available + self.on_hold
