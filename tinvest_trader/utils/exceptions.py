# tinvest_trader/utils/exceptions.py - Custom exception classes
from typing import Optional, Dict, Any


class TradingBotException(Exception):
    """Base exception for the trading bot"""
    def __init__(self, message: str, error_code: str = None, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}


class GatewayError(TradingBotException):
    """Broker call failed; carries the endpoint and HTTP status when known"""
    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status: Optional[int] = None,
        error_code: str = None,
        details: Dict[str, Any] = None
    ):
        super().__init__(message, error_code=error_code, details=details)
        self.endpoint = endpoint
        self.status = status


class TransportError(GatewayError):
    """Network, timeout or HTTP-level failure reaching the broker"""
    pass


class BrokerAPIError(GatewayError):
    """Broker answered with an error payload"""
    pass


class NoDataError(GatewayError):
    """Broker answered but the requested data is empty"""
    pass


class NoPriceData(NoDataError):
    """No last price for the instrument"""
    pass


class InstrumentNotFound(GatewayError):
    """Instrument search matched nothing"""
    pass


class InvalidInterval(TradingBotException, ValueError):
    """Interval or indicator value outside the supported set"""
    pass


class InvalidDirection(TradingBotException, ValueError):
    """Order direction is neither BUY nor SELL"""
    pass


class ReconciliationFailure(TradingBotException):
    """Local ledger and broker positions disagree"""
    def __init__(self, message: str, figi: Optional[str] = None, details: Dict[str, Any] = None):
        super().__init__(message, details=details)
        self.figi = figi


class MissingOnServer(ReconciliationFailure):
    """Ledger position has no broker counterpart"""
    pass


class BalanceMismatch(ReconciliationFailure):
    """Ledger lots times lot size differ from the broker balance"""
    pass


class LotSizeUnavailable(ReconciliationFailure):
    """Lot size could not be determined so the balance cannot be checked"""
    pass


class TradingHalted(TradingBotException):
    """Order submission refused until reconciliation is acknowledged"""
    pass


class LedgerError(TradingBotException):
    """Position ledger file is malformed or inconsistent"""
    pass


class ConfigurationError(TradingBotException):
    """Configuration error"""
    pass
