"""
Position state and exit threshold arithmetic.

This module provides the Position dataclass owned by one strategy instance:
- Lifecycle status (FLAT, PENDING_ENTRY, HOLDING, PENDING_EXIT)
- Entry order id and price, bought quantity
- Exit order id while a sell is resting
- High-water mark used by the trailing stop

raise_high_water_mark() implements the key invariant: the high-water mark only
moves upward, so the trailing stop derived from it never falls.

Examples:
    >>> from decimal import Decimal
    >>> pos = Position()
    >>> pos.open_entry("o1", Money("100"), Money("0.2"))
    >>> pos.confirm_entry()
    >>> str(pos.stop_loss_price(Decimal("0.05")))
    '95'
    >>> str(pos.profit_target_price(Decimal("0.02")))
    '102'
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from .money import ZERO, Money


class PositionStatus(Enum):
    """Position lifecycle states."""

    FLAT = "flat"  # No position, no resting order
    PENDING_ENTRY = "pending_entry"  # Buy submitted, not yet filled
    HOLDING = "holding"  # Bought; watching for an exit
    PENDING_EXIT = "pending_exit"  # Sell submitted, not yet filled


@dataclass
class Position:
    """Per-market position tracked across cycles.

    Attributes:
        status: Current PositionStatus
        entry_order_id: Exchange ID of the buy order (None when flat)
        exit_order_id: Exchange ID of the resting sell order
        entry_price: Limit price of the entry buy
        quantity: Base-currency quantity bought
        high_water_mark: Highest ask seen above the profit target
        pending_cycles: Consecutive cycles the current order has stayed open

    Invariants:
        - high_water_mark is non-decreasing while HOLDING
        - quantity is only set by open_entry()
    """

    status: PositionStatus = PositionStatus.FLAT
    entry_order_id: Optional[str] = None
    exit_order_id: Optional[str] = None
    entry_price: Money = ZERO
    quantity: Money = ZERO
    high_water_mark: Money = ZERO
    pending_cycles: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status in (PositionStatus.PENDING_ENTRY, PositionStatus.PENDING_EXIT)

    @property
    def resting_order_id(self) -> Optional[str]:
        """The order whose fill the machine is waiting for, if any."""
        if self.status is PositionStatus.PENDING_ENTRY:
            return self.entry_order_id
        if self.status is PositionStatus.PENDING_EXIT:
            return self.exit_order_id
        return None

    def stop_loss_price(self, max_loss_pct: Decimal) -> Money:
        """entry_price * (1 - max_loss_pct)."""
        return self.entry_price * (Decimal(1) - max_loss_pct)

    def profit_target_price(self, min_profit_pct: Decimal) -> Money:
        """entry_price * (1 + min_profit_pct)."""
        return self.entry_price * (Decimal(1) + min_profit_pct)

    def trailing_stop_price(self, trailing_pct: Decimal) -> Money:
        """high_water_mark * (1 - trailing_pct)."""
        return self.high_water_mark * (Decimal(1) - trailing_pct)

    def raise_high_water_mark(self, price: Money) -> bool:
        """Move the high-water mark up to ``price``; never moves it down.

        Returns:
            True if the mark changed
        """
        if price > self.high_water_mark:
            self.high_water_mark = price
            return True
        return False

    # -- transitions -------------------------------------------------------

    def open_entry(self, order_id: str, price: Money, quantity: Money) -> None:
        self.status = PositionStatus.PENDING_ENTRY
        self.entry_order_id = order_id
        self.entry_price = price
        self.quantity = quantity
        self.pending_cycles = 0

    def confirm_entry(self) -> None:
        self.status = PositionStatus.HOLDING
        self.high_water_mark = self.entry_price
        self.pending_cycles = 0

    def abandon_entry(self) -> None:
        """Back to FLAT after the entry order was cancelled unfilled."""
        self.status = PositionStatus.FLAT
        self.entry_order_id = None
        self.pending_cycles = 0

    def open_exit(self, order_id: str) -> None:
        self.status = PositionStatus.PENDING_EXIT
        self.exit_order_id = order_id
        self.pending_cycles = 0

    def close(self) -> None:
        """Exit filled: back to FLAT. quantity keeps the last fill size."""
        self.status = PositionStatus.FLAT
        self.entry_order_id = None
        self.exit_order_id = None
        self.high_water_mark = ZERO
        self.pending_cycles = 0

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Render for logs; Money values become strings."""
        return {
            "status": self.status.value,
            "entry_order_id": self.entry_order_id,
            "exit_order_id": self.exit_order_id,
            "entry_price": str(self.entry_price),
            "quantity": str(self.quantity),
            "high_water_mark": str(self.high_water_mark),
        }
