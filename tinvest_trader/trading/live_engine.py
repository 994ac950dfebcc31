# tinvest_trader/trading/live_engine.py - Reconciled trading session
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from tinvest_trader.middleware.rate_limiter import RateLimiter
from tinvest_trader.models.trading import Direction, Position
from tinvest_trader.trading.broker_adapter import BrokerAdapter
from tinvest_trader.trading.order_executor import ExecutionResult, OrderExecutor
from tinvest_trader.trading.position_ledger import PositionLedger
from tinvest_trader.trading.position_manager import LotSizer
from tinvest_trader.trading.reconciliation import ReconciliationEngine
from tinvest_trader.utils.exceptions import GatewayError, TradingBotException

logger = logging.getLogger(__name__)


@dataclass
class TradingSessionConfig:
    """Configuration for a trading session."""
    trading_limit: float = 30000.0
    max_position_pct: float = 0.1
    max_loss_threshold: float = 0.05
    require_market_open: bool = True  # Set False to trade sandbox outside exchange hours


class TradingSession:
    """One trading cycle against a single broker account.

    Order of work:
    - Reconcile the ledger with the broker; any failure halts the session
    - Check that a regular exchange session is open
    - Refresh marks, then execute sells and buys one at a time
    """

    def __init__(
        self,
        gateway: BrokerAdapter,
        ledger: PositionLedger,
        rate_limiter: Optional[RateLimiter] = None,
        config: TradingSessionConfig = None,
        account_id: Optional[str] = None,
        clock: Callable[[], datetime] = None
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.config = config or TradingSessionConfig()
        self.rate_limiter = rate_limiter or RateLimiter()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.reconciler = ReconciliationEngine(gateway, ledger, account_id, clock=self._clock)
        self.executor = OrderExecutor(gateway, ledger, halt_gate=self.reconciler, clock=self._clock)
        self.sizer = LotSizer(
            self.config.trading_limit,
            self.config.max_position_pct,
            self.config.max_loss_threshold
        )

        self.ready = False
        self.market_open = False

    async def preflight(self) -> bool:
        """Reconcile and check market hours; True when orders may be sent."""
        self.ready = False

        try:
            await self.reconciler.reconcile()
        except TradingBotException as e:
            logger.error(f"Preflight failed, trading halted: {e.message}")
            return False

        self.market_open = await self.gateway.is_market_open()
        if not self.market_open and self.config.require_market_open:
            logger.info("Market is closed; no orders this cycle")
            return False

        self.ready = True
        return True

    async def buy(self, figi: str) -> Optional[ExecutionResult]:
        """Buy as many lots as the per-position budget allows."""
        if not self.ready:
            logger.warning(f"Skipping buy of {figi}: preflight has not passed")
            return None

        await self.rate_limiter.wait()
        try:
            price = await self.gateway.get_quote(figi)
        except GatewayError as e:
            logger.warning(f"Skipping buy of {figi}: {e.message}")
            return None

        await self.rate_limiter.wait()
        size = await self.sizer.size_purchase(self.gateway, figi, price)
        if size.lots == 0:
            return None

        await self.rate_limiter.wait()
        return await self.executor.execute(figi, size.lots, Direction.BUY)

    async def sell(self, figi: str) -> Optional[ExecutionResult]:
        """Close the whole ledger position for ``figi``."""
        if not self.ready:
            logger.warning(f"Skipping sell of {figi}: preflight has not passed")
            return None

        position = self.ledger.get(figi)
        if position is None:
            logger.warning(f"Skipping sell of {figi}: not in ledger")
            return None

        quantity = self.sizer.sell_quantity(position)
        if quantity == 0:
            logger.warning(f"Skipping sell of {figi}: ledger quantity {position.quantity}")
            return None

        await self.rate_limiter.wait()
        return await self.executor.execute(figi, quantity, Direction.SELL)

    async def refresh_positions(self) -> List[Position]:
        """Update max price and P&L of every ledger position from live quotes.

        Returns:
            Positions whose drawdown from the high-water mark reaches the loss threshold
        """
        positions = self.ledger.load_all()
        refreshed = []
        flagged = []
        now = self._clock()

        for position in positions:
            try:
                await self.rate_limiter.wait()
                price = await self.gateway.get_quote(position.figi)
                await self.rate_limiter.wait()
                lot_size = await self.gateway.get_lot_size(position.figi)
            except GatewayError as e:
                logger.warning(f"Could not refresh {position.ticker}: {e.message}")
                refreshed.append(position)
                continue

            updated = self.sizer.refresh_marks(position, price, now, lot_size)
            refreshed.append(updated)
            if self.sizer.breaches_loss_threshold(updated, price):
                logger.warning(
                    f"{updated.ticker} is {self.sizer.drawdown(updated, price):.2%} below its high "
                    f"of {updated.max_price}"
                )
                flagged.append(updated)

        if positions:
            self.ledger.save_all(refreshed)
        return flagged

    async def run_cycle(
        self,
        buy_figis: Iterable[str] = (),
        sell_figis: Iterable[str] = ()
    ) -> Dict[str, List[ExecutionResult]]:
        """Preflight, refresh marks, then sells before buys, one instrument at a time."""
        results: Dict[str, List[ExecutionResult]] = {'sells': [], 'buys': []}

        if not await self.preflight():
            return results

        await self.refresh_positions()

        for figi in sell_figis:
            result = await self.sell(figi)
            if result is not None:
                results['sells'].append(result)

        for figi in buy_figis:
            result = await self.buy(figi)
            if result is not None:
                results['buys'].append(result)

        return results

    def get_status(self) -> Dict:
        report = self.reconciler.last_report
        return {
            'ready': self.ready,
            'market_open': self.market_open,
            'halted': self.reconciler.is_halted,
            'halt_reason': self.reconciler.halt_reason,
            'last_reconciliation': report.to_dict() if report else None,
            'positions': [p.to_row() for p in self.ledger.load_all()],
        }
