# tinvest_trader/trading/position_manager.py - Position sizing and mark refresh
"""Lot-based position sizing and price/P&L refresh for ledger positions."""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from tinvest_trader.models.trading import Position
from tinvest_trader.trading.broker_adapter import BrokerAdapter

logger = logging.getLogger(__name__)


@dataclass
class PurchaseSize:
    """Lot count for a prospective buy."""
    figi: str
    lots: int
    lot_size: int
    price: Decimal
    total_value: Decimal


class LotSizer:
    """Size buys so one position never exceeds a share of the trading limit."""

    def __init__(self, trading_limit: float, max_position_pct: float = 0.1, max_loss_threshold: float = 0.05):
        """Initialize lot sizer.

        Args:
            trading_limit: Capital the bot may deploy
            max_position_pct: Max position size as decimal (default: 0.1 = 10%)
            max_loss_threshold: Drawdown from the high-water mark that flags a position
        """
        self.trading_limit = Decimal(str(trading_limit))
        self.max_position_pct = Decimal(str(max_position_pct))
        self.max_loss_threshold = Decimal(str(max_loss_threshold))

    @property
    def budget_per_position(self) -> Decimal:
        return self.trading_limit * self.max_position_pct

    def purchase_quantity(self, price: Decimal, lot_size: int) -> int:
        """Whole lots affordable within the per-position budget; 0 when unsizable."""
        if lot_size <= 0 or price <= 0:
            return 0
        lots = self.budget_per_position / (Decimal(price) * lot_size)
        return int(math.floor(lots))

    async def size_purchase(self, gateway: BrokerAdapter, figi: str, price: Decimal) -> PurchaseSize:
        """Fetch the live lot size and size a buy at ``price``."""
        lot_size = await gateway.get_lot_size(figi)
        lots = self.purchase_quantity(price, lot_size)
        if lots == 0:
            logger.info(
                f"{figi}: no affordable lots (price {price}, lot size {lot_size}, "
                f"budget {self.budget_per_position})"
            )
        return PurchaseSize(
            figi=figi,
            lots=lots,
            lot_size=lot_size,
            price=price,
            total_value=price * lots * lot_size
        )

    @staticmethod
    def sell_quantity(position: Position) -> int:
        """Exits close the whole position."""
        return max(int(position.quantity), 0)

    @staticmethod
    def refresh_marks(
        position: Position,
        last_price: Decimal,
        now: datetime,
        lot_size: Optional[int] = None
    ) -> Position:
        """Copy of ``position`` with raised high-water mark and recomputed P&L.

        P&L is left unchanged when the lot size is unknown.
        """
        profit_loss = position.profit_loss
        if lot_size and lot_size > 0:
            profit_loss = (last_price - position.purchase_price) * position.quantity * lot_size
        return position.copy(
            max_price=max(position.max_price, last_price),
            profit_loss=profit_loss,
            update_date=now
        )

    def drawdown(self, position: Position, last_price: Decimal) -> Decimal:
        if position.max_price <= 0:
            return Decimal(0)
        return (position.max_price - last_price) / position.max_price

    def breaches_loss_threshold(self, position: Position, last_price: Decimal) -> bool:
        return self.drawdown(position, last_price) >= self.max_loss_threshold
