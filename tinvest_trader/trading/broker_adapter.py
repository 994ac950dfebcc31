# tinvest_trader/trading/broker_adapter.py - Abstract broker interface
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from tinvest_trader.models.trading import (
    Candle,
    CandleInterval,
    Direction,
    Instrument,
    ServerPosition,
)


class BrokerAdapter(ABC):
    """Abstract interface for the broker channel.

    Implementations should handle:
    - Authentication and transport
    - Normalizing broker failures into the gateway error taxonomy
    - Market data, instrument and trading schedule lookups
    - Market order placement and position queries
    """

    @abstractmethod
    async def call(self, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one request to the broker.

        Args:
            endpoint: ``Service/Method`` path such as ``MarketDataService/GetLastPrices``
            payload: JSON request body

        Returns:
            Decoded JSON response

        Raises:
            TransportError: If the broker cannot be reached
            BrokerAPIError: If the broker answers with an error payload
        """
        pass

    @abstractmethod
    async def get_quote(self, figi: str) -> Decimal:
        """Get the last traded price.

        Raises:
            NoPriceData: If the broker has no price for the instrument
        """
        pass

    @abstractmethod
    async def get_lot_size(self, figi: str) -> int:
        """Get the lot size, or 0 when it cannot be determined."""
        pass

    @abstractmethod
    async def get_candles(
        self,
        figi: str,
        interval: CandleInterval,
        from_: Optional[datetime] = None,
        to: Optional[datetime] = None
    ) -> List[Candle]:
        """Get candle history ordered by time.

        Raises:
            InvalidInterval: If the interval is not supported
            NoDataError: If the broker returns no candles
        """
        pass

    @abstractmethod
    async def resolve_instrument(self, query: str) -> Instrument:
        """Find an instrument by ticker, name or FIGI; first match wins.

        Raises:
            InstrumentNotFound: If nothing matches
        """
        pass

    @abstractmethod
    async def is_market_open(self) -> bool:
        """Check whether a regular trading session is in progress. Never raises."""
        pass

    @abstractmethod
    async def place_market_order(self, figi: str, quantity: int, direction: Direction) -> Decimal:
        """Submit a market order.

        Args:
            figi: Instrument FIGI
            quantity: Number of lots
            direction: BUY or SELL

        Returns:
            Executed price per share, or ``Decimal(0)`` if the order was not confirmed
        """
        pass

    @abstractmethod
    async def get_portfolio(self) -> Dict[str, Any]:
        """Get the server-side portfolio snapshot, or an empty dict on failure."""
        pass

    @abstractmethod
    async def get_positions(self, account_id: Optional[str] = None) -> List[ServerPosition]:
        """Get security balances for the account.

        Raises:
            TransportError: If the broker cannot be reached
            BrokerAPIError: If the broker rejects the query
        """
        pass
