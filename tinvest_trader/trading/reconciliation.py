# tinvest_trader/trading/reconciliation.py
"""
Ledger/broker position reconciliation.

Every position in the local ledger must exist on the broker account with a
balance of exactly ``quantity * lot_size``. Any disagreement halts order
submission until an operator acknowledges it; the ledger is never rewritten
to match the broker.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from tinvest_trader.trading.broker_adapter import BrokerAdapter
from tinvest_trader.trading.position_ledger import PositionLedger
from tinvest_trader.utils.exceptions import (
    BalanceMismatch,
    LotSizeUnavailable,
    MissingOnServer,
    ReconciliationFailure,
    TradingBotException,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Outcome of a successful reconciliation."""
    checked: int
    reconciled_at: datetime
    positions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked': self.checked,
            'reconciled_at': self.reconciled_at.isoformat(),
            'positions': self.positions,
        }


class ReconciliationEngine:
    """
    Compares ledger positions with broker positions and gates trading.

    Should be run:
    - At startup
    - Before every trading cycle
    """

    def __init__(
        self,
        gateway: BrokerAdapter,
        ledger: PositionLedger,
        account_id: Optional[str] = None,
        clock: Callable[[], datetime] = None
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.account_id = account_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.halted = False
        self.halt_reason: Optional[str] = None
        self.last_report: Optional[ReconciliationReport] = None

    @property
    def is_halted(self) -> bool:
        return self.halted

    async def reconcile(self) -> ReconciliationReport:
        """
        Check every ledger position against the broker.

        Returns:
            Report of the matched positions

        Raises:
            MissingOnServer: If a ledger position is absent on the broker
            LotSizeUnavailable: If a lot size cannot be fetched
            BalanceMismatch: If lots times lot size differ from the broker balance
            TradingBotException: If the ledger or the broker cannot be read
        """
        logger.info("Starting position reconciliation...")

        try:
            report = await self._compare()
        except ReconciliationFailure as e:
            self._halt(e.message)
            raise
        except TradingBotException as e:
            self._halt(f"Reconciliation could not complete: {e.message}")
            raise

        self.last_report = report
        logger.info(f"Reconciliation passed: {report.checked} position(s) match the broker")
        return report

    async def _compare(self) -> ReconciliationReport:
        local_positions = self.ledger.load_all()
        server_positions = await self.gateway.get_positions(self.account_id)
        server_map = {p.figi: p for p in server_positions}

        matched = []
        for position in local_positions:
            label = f"{position.ticker} ({position.figi})"
            remote = server_map.get(position.figi)
            if remote is None:
                raise MissingOnServer(
                    f"{label}: {position.quantity} lot(s) in ledger but not on the broker account",
                    figi=position.figi,
                    details={'quantity': str(position.quantity)}
                )

            # fetched live each time; lot sizes change after corporate actions
            lot_size = await self.gateway.get_lot_size(position.figi)
            if lot_size <= 0:
                raise LotSizeUnavailable(
                    f"{label}: lot size unavailable, cannot verify balance {remote.balance}",
                    figi=position.figi,
                    details={'balance': str(remote.balance)}
                )

            expected = position.quantity * lot_size
            if expected != remote.balance:
                raise BalanceMismatch(
                    f"{label}: ledger {position.quantity} lot(s) x {lot_size} = {expected}, "
                    f"broker balance {remote.balance}",
                    figi=position.figi,
                    details={
                        'quantity': str(position.quantity),
                        'lot_size': lot_size,
                        'expected_balance': str(expected),
                        'server_balance': str(remote.balance),
                    }
                )

            matched.append({
                'figi': position.figi,
                'ticker': position.ticker,
                'quantity': str(position.quantity),
                'lot_size': lot_size,
                'balance': str(remote.balance),
            })

        return ReconciliationReport(
            checked=len(matched),
            reconciled_at=self._clock(),
            positions=matched
        )

    def _halt(self, reason: str) -> None:
        self.halted = True
        self.halt_reason = reason
        logger.critical(f"TRADING HALTED: {reason}")

    def acknowledge(self) -> None:
        """Operator confirmation that the discrepancy was investigated; re-enables trading."""
        if self.halted:
            logger.warning(f"Trading halt acknowledged by operator: {self.halt_reason}")
        self.halted = False
        self.halt_reason = None
