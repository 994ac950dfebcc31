# tinvest_trader/trading/__init__.py - Broker trading module
"""
Broker access, order execution and position bookkeeping.

Components:
- broker_adapter: Abstract interface for the broker channel
- broker_gateway: T-Invest REST implementation
- position_ledger: CSV ledger of open positions
- reconciliation: Ledger/broker agreement check that gates trading
- order_executor: Market orders recorded in the ledger
- position_manager: Lot sizing and mark refresh
- live_engine: Reconciled trading session
- sandbox: Sandbox account management
"""

from tinvest_trader.trading.broker_adapter import BrokerAdapter
from tinvest_trader.trading.broker_gateway import TInvestGateway
from tinvest_trader.trading.position_ledger import PositionLedger
from tinvest_trader.trading.reconciliation import ReconciliationEngine, ReconciliationReport
from tinvest_trader.trading.order_executor import OrderExecutor, ExecutionResult, ExecutionStatus
from tinvest_trader.trading.position_manager import LotSizer, PurchaseSize
from tinvest_trader.trading.live_engine import TradingSession, TradingSessionConfig
from tinvest_trader.trading.sandbox import SandboxAccountService

__all__ = [
    'BrokerAdapter',
    'TInvestGateway',
    'PositionLedger',
    'ReconciliationEngine',
    'ReconciliationReport',
    'OrderExecutor',
    'ExecutionResult',
    'ExecutionStatus',
    'LotSizer',
    'PurchaseSize',
    'TradingSession',
    'TradingSessionConfig',
    'SandboxAccountService',
]
