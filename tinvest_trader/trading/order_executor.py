# tinvest_trader/trading/order_executor.py - Trade intent to confirmed ledger update
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from tinvest_trader.models.trading import Direction, Instrument, Position
from tinvest_trader.trading.broker_adapter import BrokerAdapter
from tinvest_trader.trading.broker_gateway import coerce_enum
from tinvest_trader.trading.position_ledger import PositionLedger
from tinvest_trader.utils.exceptions import GatewayError, InvalidDirection, LedgerError, TradingHalted

logger = logging.getLogger(__name__)


class ExecutionStatus(Enum):
    FILLED = "filled"
    REJECTED = "rejected"


@dataclass
class ExecutionResult:
    """Outcome of one market order."""
    status: ExecutionStatus
    figi: str
    direction: Direction
    quantity: int
    price: Decimal = Decimal(0)
    total_cost: Optional[Decimal] = None
    reason: Optional[str] = None

    @property
    def filled(self) -> bool:
        return self.status == ExecutionStatus.FILLED


class OrderExecutor:
    """Executes market orders and records fills in the ledger.

    Orders are all-or-nothing: a fill updates the ledger, anything else
    leaves it untouched and is reported as rejected. When a halt gate (the
    reconciliation engine) is halted, no order reaches the broker.
    """

    def __init__(
        self,
        gateway: BrokerAdapter,
        ledger: PositionLedger,
        halt_gate=None,
        clock: Callable[[], datetime] = None
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.halt_gate = halt_gate
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def execute(self, figi: str, quantity: int, direction: Direction) -> ExecutionResult:
        """Place a market order and record the fill.

        Args:
            figi: Instrument FIGI
            quantity: Number of lots
            direction: BUY or SELL

        Returns:
            ExecutionResult with status ``filled`` or ``rejected``

        Raises:
            InvalidDirection: If direction is neither BUY nor SELL
            TradingHalted: If reconciliation has halted trading
            LedgerError: If the fill could not be written to the ledger
        """
        direction = coerce_enum(Direction, direction, InvalidDirection)

        if self.halt_gate is not None and self.halt_gate.is_halted:
            reason = getattr(self.halt_gate, 'halt_reason', None) or 'reconciliation failed'
            logger.error(f"Refusing {direction.name} {quantity} x {figi}: trading halted ({reason})")
            raise TradingHalted(f"Trading halted: {reason}", details={'figi': figi})

        if quantity <= 0:
            return self._rejected(figi, direction, quantity, f"quantity must be positive, got {quantity}")

        try:
            instrument = await self.gateway.resolve_instrument(figi)
        except GatewayError as e:
            return self._rejected(figi, direction, quantity, f"instrument lookup failed: {e.message}")

        price = await self.gateway.place_market_order(figi, quantity, direction)
        if price <= 0:
            return self._rejected(figi, direction, quantity, "order not confirmed by broker")

        try:
            if direction == Direction.BUY:
                self._record_buy(instrument, figi, quantity, price)
            else:
                self._record_sell(figi, quantity)
        except LedgerError:
            logger.critical(
                f"{direction.name} {quantity} x {figi} filled at {price} but the ledger update failed"
            )
            raise

        # cost is informational; the fill is already recorded
        lot_size = await self.gateway.get_lot_size(figi)
        total_cost = price * quantity * lot_size if lot_size > 0 else None
        if total_cost is None:
            logger.warning(f"Lot size unknown for {figi}; total cost of fill not computed")

        logger.info(
            f"Filled {direction.name} {quantity} lot(s) of {instrument.display_name} at {price}"
            + (f", total {total_cost}" if total_cost is not None else "")
        )
        return ExecutionResult(
            status=ExecutionStatus.FILLED,
            figi=figi,
            direction=direction,
            quantity=quantity,
            price=price,
            total_cost=total_cost
        )

    def _rejected(self, figi: str, direction: Direction, quantity: int, reason: str) -> ExecutionResult:
        logger.warning(f"{direction.name} {quantity} x {figi} rejected: {reason}")
        return ExecutionResult(
            status=ExecutionStatus.REJECTED,
            figi=figi,
            direction=direction,
            quantity=quantity,
            reason=reason
        )

    def _record_buy(self, instrument: Instrument, figi: str, quantity: int, price: Decimal) -> None:
        now = self._clock()
        existing = self.ledger.get(figi)

        if existing is None:
            position = Position(
                ticker=instrument.ticker or figi,
                figi=figi,
                quantity=Decimal(quantity),
                purchase_date=now,
                purchase_price=price,
                update_date=now,
                max_price=price,
                profit_loss=Decimal(0)
            )
        else:
            new_quantity = existing.quantity + quantity
            # weighted average entry price
            if new_quantity:
                average = (existing.purchase_price * existing.quantity + price * quantity) / new_quantity
            else:
                average = price
            position = existing.copy(
                quantity=new_quantity,
                purchase_price=average,
                update_date=now,
                max_price=max(existing.max_price, price)
            )

        self.ledger.upsert(position)

    def _record_sell(self, figi: str, quantity: int) -> None:
        existing = self.ledger.get(figi)
        if existing is None:
            logger.error(f"Sold {quantity} lot(s) of {figi} with no ledger position")
            return

        remaining = existing.quantity - quantity
        if remaining < 0:
            logger.warning(
                f"Sold {quantity} lot(s) of {figi} but ledger held {existing.quantity}; closing position"
            )
        if remaining <= 0:
            self.ledger.remove(figi)
        else:
            self.ledger.upsert(existing.copy(quantity=remaining, update_date=self._clock()))
