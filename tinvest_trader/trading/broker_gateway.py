# tinvest_trader/trading/broker_gateway.py - T-Invest REST gateway
import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from config.settings import settings
from tinvest_trader.models.trading import (
    Candle,
    CandleInterval,
    Direction,
    IndicatorInterval,
    IndicatorType,
    Instrument,
    ServerPosition,
    TechIndicator,
    format_timestamp,
    parse_timestamp,
    quotation_to_decimal,
)
from tinvest_trader.trading.broker_adapter import BrokerAdapter
from tinvest_trader.utils.exceptions import (
    BrokerAPIError,
    ConfigurationError,
    GatewayError,
    InstrumentNotFound,
    InvalidDirection,
    InvalidInterval,
    NoDataError,
    NoPriceData,
    TransportError,
)
from tinvest_trader.utils.logger import TRACE

logger = logging.getLogger(__name__)

REGULAR_SESSIONS = ("regular_trading_session", "regular_trading_session_evening")
FAILED_ORDER_STATUSES = ("EXECUTION_REPORT_STATUS_REJECTED", "EXECUTION_REPORT_STATUS_CANCELLED")
CANDLE_LIMIT = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_enum(enum_cls, value, error_cls=InvalidInterval):
    """Accept an enum member, its broker value or its name; anything else raises ``error_cls``."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        pass
    try:
        return enum_cls[value.upper() if isinstance(value, str) else value]
    except (KeyError, TypeError):
        raise error_cls(
            f"Unsupported {enum_cls.__name__}: {value!r}",
            details={'supported': [member.value for member in enum_cls]}
        ) from None


class TInvestGateway(BrokerAdapter):
    """Authenticated channel to the T-Invest REST API.

    All operations go through :meth:`call`, which turns transport problems
    and broker error payloads into :class:`TransportError` and
    :class:`BrokerAPIError`. Informational reads (lot size, market hours,
    portfolio) degrade to safe defaults; order placement reports failure
    with a zero price; position queries propagate.
    """

    def __init__(
        self,
        token: str,
        account_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        schedule_exchange: Optional[str] = None,
        portfolio_currency: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        if not token:
            raise ConfigurationError("Broker API token is required")

        self.token = token
        self.account_id = account_id
        self.base_url = base_url or settings.get_base_url()
        self.timeout = timeout if timeout is not None else settings.API_TIMEOUT
        self.schedule_exchange = schedule_exchange or settings.SCHEDULE_EXCHANGE
        self.portfolio_currency = portfolio_currency or settings.PORTFOLIO_CURRENCY
        self.session = session
        self._owns_session = session is None
        self._clock = clock

    @classmethod
    def from_settings(cls, config=None, **kwargs) -> 'TInvestGateway':
        """Build a gateway from application settings."""
        config = config or settings
        return cls(
            token=config.TINVEST_TOKEN,
            account_id=config.TINVEST_ACCOUNT_ID,
            base_url=config.get_base_url(),
            timeout=config.API_TIMEOUT,
            schedule_exchange=config.SCHEDULE_EXCHANGE,
            portfolio_currency=config.PORTFOLIO_CURRENCY,
            **kwargs
        )

    async def connect(self) -> 'TInvestGateway':
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
            logger.info(f"Connected to broker at {self.base_url}")
        return self

    async def close(self) -> None:
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def __aenter__(self):
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def call(self, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.session:
            raise RuntimeError("Session not initialized. Use async context manager.")

        url = f"{self.base_url}{endpoint}"
        body = payload or {}
        logger.log(TRACE, f"-> {endpoint} {json.dumps(body, default=str)}")

        # per-call deadline, also for an injected session
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with self.session.post(url, json=body, headers=self.headers, timeout=timeout) as resp:
                status = resp.status
                text = await resp.text()
        except asyncio.TimeoutError as e:
            logger.error(f"{endpoint} timed out after {self.timeout}s")
            raise TransportError(
                f"Timed out calling {endpoint}", endpoint=endpoint
            ) from e
        except aiohttp.ClientError as e:
            logger.error(f"{endpoint} transport failure: {e}", exc_info=True)
            raise TransportError(
                f"Failed to reach broker at {endpoint}: {e}", endpoint=endpoint
            ) from e

        logger.log(TRACE, f"<- {endpoint} [{status}] {text}")

        if status >= 400:
            raise self._classify_failure(endpoint, status, text)

        return self._decode(endpoint, status, text)

    def _decode(self, endpoint: str, status: int, text: str) -> Dict[str, Any]:
        if not text or not text.strip():
            return {}
        try:
            data = json.loads(text)
        except ValueError as e:
            logger.error(f"{endpoint} returned undecodable body [{status}]: {text[:200]}")
            raise TransportError(
                f"Undecodable response from {endpoint}", endpoint=endpoint, status=status,
                details={'body': text[:1000]}
            ) from e
        if not isinstance(data, dict):
            logger.error(f"{endpoint} returned unexpected payload type {type(data).__name__}")
            raise TransportError(
                f"Unexpected response shape from {endpoint}", endpoint=endpoint, status=status
            )
        return data

    def _classify_failure(self, endpoint: str, status: int, text: str) -> GatewayError:
        """Map an HTTP error status and whatever body came with it onto the error taxonomy."""
        try:
            body = json.loads(text) if text else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        message = body.get('message') or (text or '').strip()[:200] or f"HTTP {status}"
        description = body.get('description')
        code = body.get('code')
        details = body or {'body': (text or '')[:1000]}

        logger.error(
            f"{endpoint} failed [{status}] code={code} description={description}: {message}"
        )

        error_cls = TransportError if status >= 500 else BrokerAPIError
        return error_cls(
            f"{endpoint} failed: {message}",
            endpoint=endpoint,
            status=status,
            error_code=str(description or code or status),
            details=details
        )

    def _parse_items(self, endpoint: str, items: List[Dict[str, Any]], parser) -> list:
        try:
            return [parser(item) for item in items]
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            logger.error(f"{endpoint} returned malformed item: {e}")
            raise BrokerAPIError(
                f"Malformed response from {endpoint}: {e}", endpoint=endpoint
            ) from e

    async def get_quote(self, figi: str) -> Decimal:
        endpoint = "MarketDataService/GetLastPrices"
        data = await self.call(endpoint, {"figi": [figi]})

        prices = data.get("lastPrices") or []
        if not prices or not prices[0].get("price"):
            logger.warning(f"No price data for {figi}")
            raise NoPriceData(f"No price data for {figi}", endpoint=endpoint)

        return quotation_to_decimal(prices[0]["price"])

    async def get_lot_size(self, figi: str) -> int:
        try:
            data = await self.call(
                "InstrumentsService/GetInstrumentBy",
                {"idType": "INSTRUMENT_ID_TYPE_FIGI", "id": figi}
            )
        except GatewayError as e:
            logger.error(f"Lot size lookup failed for {figi}: {e.message}")
            return 0

        lot = (data.get("instrument") or {}).get("lot")
        try:
            lot = int(lot)
        except (TypeError, ValueError):
            logger.warning(f"No lot information for {figi}")
            return 0

        if lot <= 0:
            logger.warning(f"Broker reported non-positive lot size {lot} for {figi}")
            return 0
        return lot

    async def get_candles(
        self,
        figi: str,
        interval: CandleInterval,
        from_: Optional[datetime] = None,
        to: Optional[datetime] = None
    ) -> List[Candle]:
        interval = coerce_enum(CandleInterval, interval)
        to = to or self._clock()
        from_ = from_ or to - interval.lookback

        endpoint = "MarketDataService/GetCandles"
        data = await self.call(endpoint, {
            "figi": figi,
            "from": format_timestamp(from_),
            "to": format_timestamp(to),
            "interval": interval.value,
            "candleSourceType": "CANDLE_SOURCE_UNSPECIFIED",
            "limit": CANDLE_LIMIT,
        })

        raw = data.get("candles") or []
        if not raw:
            logger.warning(f"No {interval.value} candles for {figi} between {from_} and {to}")
            raise NoDataError(f"No candles for {figi}", endpoint=endpoint)

        candles = self._parse_items(endpoint, raw, Candle.from_api)
        return sorted(candles, key=lambda c: c.time)

    async def get_tech_indicators(
        self,
        instrument_uid: str,
        indicator_type: IndicatorType,
        interval: IndicatorInterval,
        type_of_price: str = "TYPE_OF_PRICE_CLOSE",
        length: Optional[int] = None,
        from_: Optional[datetime] = None,
        to: Optional[datetime] = None
    ) -> List[TechIndicator]:
        """Get a broker-computed indicator series such as an SMA.

        Args:
            instrument_uid: Instrument uid from :meth:`resolve_instrument`
            indicator_type: SMA, EMA, RSI, BB or MACD
            interval: Indicator granularity
            type_of_price: Price the indicator is computed on
            length: Indicator window

        Returns:
            Indicator points ordered by timestamp

        Raises:
            InvalidInterval: If interval or indicator type is not supported
            NoDataError: If the broker returns no points
        """
        indicator_type = coerce_enum(IndicatorType, indicator_type)
        interval = coerce_enum(IndicatorInterval, interval)
        to = to or self._clock()
        from_ = from_ or to - interval.lookback

        payload = {
            "indicatorType": indicator_type.value,
            "instrumentUid": instrument_uid,
            "from": format_timestamp(from_),
            "to": format_timestamp(to),
            "interval": interval.value,
            "typeOfPrice": type_of_price,
        }
        if length is not None:
            payload["length"] = length

        endpoint = "MarketDataService/GetTechAnalysis"
        data = await self.call(endpoint, payload)

        raw = data.get("technicalIndicators") or []
        if not raw:
            logger.warning(f"No {indicator_type.value} values for {instrument_uid}")
            raise NoDataError(f"No technical indicators for {instrument_uid}", endpoint=endpoint)

        points = self._parse_items(endpoint, raw, TechIndicator.from_api)
        return sorted(points, key=lambda p: p.timestamp)

    async def resolve_instrument(self, query: str) -> Instrument:
        endpoint = "InstrumentsService/FindInstrument"
        data = await self.call(endpoint, {
            "query": query,
            "instrumentKind": "INSTRUMENT_TYPE_SHARE",
        })

        found = data.get("instruments") or []
        if not found:
            logger.warning(f"Instrument not found: {query}")
            raise InstrumentNotFound(f"Instrument not found: {query}", endpoint=endpoint)

        return self._parse_items(endpoint, found[:1], Instrument.from_api)[0]

    async def is_market_open(self) -> bool:
        now = self._clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        try:
            data = await self.call("InstrumentsService/TradingSchedules", {
                "from": format_timestamp(day_start),
                "to": format_timestamp(day_start + timedelta(days=1) - timedelta(microseconds=1)),
            })
        except GatewayError as e:
            logger.error(f"Trading schedule lookup failed: {e.message}")
            return False

        schedule = next(
            (s for s in data.get("exchanges") or [] if s.get("exchange") == self.schedule_exchange),
            None
        )
        if schedule is None:
            logger.warning(f"Trading schedule {self.schedule_exchange} not found")
            return False

        today = self._find_day(schedule.get("days") or [], now)
        if today is None:
            logger.info(f"No {self.schedule_exchange} schedule for {now.date()}")
            return False
        if not today.get("isTradingDay"):
            logger.info(f"{now.date()} is not a trading day on {self.schedule_exchange}")
            return False

        for session in today.get("intervals") or []:
            if session.get("type") not in REGULAR_SESSIONS:
                continue
            bounds = session.get("interval") or {}
            try:
                start = parse_timestamp(bounds["startTs"])
                end = parse_timestamp(bounds["endTs"])
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning(f"Skipping malformed session interval: {session}")
                continue
            if start <= now <= end:
                return True

        logger.info(f"Market closed at {now.isoformat()}")
        return False

    @staticmethod
    def _find_day(days: List[Dict[str, Any]], now: datetime) -> Optional[Dict[str, Any]]:
        for day in days:
            try:
                if parse_timestamp(day["date"]).date() == now.date():
                    return day
            except (KeyError, TypeError, ValueError, AttributeError):
                continue
        return None

    async def place_market_order(self, figi: str, quantity: int, direction: Direction) -> Decimal:
        try:
            direction = coerce_enum(Direction, direction, InvalidDirection)
        except InvalidDirection as e:
            logger.error(f"Refusing order for {figi}: {e.message}")
            return Decimal(0)

        if quantity <= 0:
            logger.error(f"Refusing {direction.name} order for {figi}: quantity {quantity}")
            return Decimal(0)
        if not self.account_id:
            logger.error(f"Refusing {direction.name} order for {figi}: no account id configured")
            return Decimal(0)

        try:
            instrument = await self.resolve_instrument(figi)
            data = await self.call("OrdersService/PostOrder", {
                "figi": figi,
                "quantity": int(quantity),
                "direction": direction.value,
                "accountId": self.account_id,
                "orderType": "ORDER_TYPE_MARKET",
                "orderId": str(uuid.uuid4()),
                "instrumentId": instrument.uid,
            })
        except GatewayError as e:
            logger.error(
                f"Market order {direction.name} {quantity} x {figi} failed: {e.message} "
                f"details={e.details}"
            )
            return Decimal(0)

        status = data.get("executionReportStatus")
        if status in FAILED_ORDER_STATUSES:
            logger.error(
                f"Market order {data.get('orderId')} for {figi} ended with {status}: "
                f"{data.get('message', '')}"
            )
            return Decimal(0)

        try:
            price = quotation_to_decimal(data.get("executedOrderPrice"))
        except (TypeError, ValueError, ArithmeticError, AttributeError) as e:
            logger.error(
                f"Market order {data.get('orderId')} for {figi} has unreadable executed price: {e} "
                f"body={data}"
            )
            return Decimal(0)
        if price <= 0:
            logger.error(f"Market order {data.get('orderId')} for {figi} not confirmed (status {status})")
            return Decimal(0)

        logger.info(
            f"{direction.name} {quantity} lot(s) of {instrument.display_name}: "
            f"total {self._describe_amount(data.get('initialOrderPrice'))}, "
            f"price {price} per share, "
            f"commission {self._describe_amount(data.get('initialCommission'))} "
            f"(order {data.get('orderId')})"
        )
        return price

    @staticmethod
    def _describe_amount(value) -> str:
        """Money value for log lines; a malformed one is shown raw."""
        try:
            amount = quotation_to_decimal(value)
            return f"{amount} {(value or {}).get('currency', '')}".rstrip()
        except (TypeError, ValueError, ArithmeticError, AttributeError):
            return repr(value)

    async def get_portfolio(self) -> Dict[str, Any]:
        try:
            return await self.call("OperationsService/GetPortfolio", {
                "accountId": self.account_id,
                "currency": self.portfolio_currency,
            })
        except GatewayError as e:
            logger.error(f"Portfolio query failed for account {self.account_id}: {e.message}")
            return {}

    async def get_positions(self, account_id: Optional[str] = None) -> List[ServerPosition]:
        account_id = account_id or self.account_id
        if not account_id:
            raise ConfigurationError("No account id for position query")

        endpoint = "OperationsService/GetPositions"
        data = await self.call(endpoint, {"accountId": account_id})
        return self._parse_items(endpoint, data.get("securities") or [], ServerPosition.from_api)
