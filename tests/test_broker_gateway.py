# tests/test_broker_gateway.py - T-Invest gateway against a scripted HTTP session
import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import aiohttp
import pytest

from conftest import BASE_URL, NOW, SBER_FIGI, FakeResponse, FakeSession
from tinvest_trader.models.trading import CandleInterval, Direction, IndicatorType
from tinvest_trader.trading.broker_gateway import TInvestGateway
from tinvest_trader.utils.exceptions import (
    BrokerAPIError,
    ConfigurationError,
    InstrumentNotFound,
    InvalidInterval,
    NoDataError,
    NoPriceData,
    TransportError,
)

SESSIONS = [
    {"type": "opening_auction",
     "interval": {"startTs": "2024-10-07T06:50:00Z", "endTs": "2024-10-07T07:00:00Z"}},
    {"type": "regular_trading_session",
     "interval": {"startTs": "2024-10-07T07:00:00Z", "endTs": "2024-10-07T15:40:00Z"}},
    {"type": "closing_auction",
     "interval": {"startTs": "2024-10-07T15:40:00Z", "endTs": "2024-10-07T15:50:00Z"}},
    {"type": "regular_trading_session_evening",
     "interval": {"startTs": "2024-10-07T16:05:00Z", "endTs": "2024-10-07T20:50:00Z"}},
]

SBER_INSTRUMENT = {
    "instruments": [
        {"figi": SBER_FIGI, "ticker": "SBER", "name": "Сбер Банк", "uid": "e6123145-9665-43e0-8413-cd61b8aa9b13"},
        {"figi": "BBG0047315Y7", "ticker": "SBERP", "name": "Сбер Банк - привилегированные", "uid": "other"},
    ]
}

ORDER_FILLED = {
    "orderId": "ord-1",
    "executionReportStatus": "EXECUTION_REPORT_STATUS_FILL",
    "initialOrderPrice": {"currency": "rub", "units": "12517", "nano": 500000000},
    "executedOrderPrice": {"currency": "rub", "units": "250", "nano": 350000000},
    "initialCommission": {"currency": "rub", "units": "6", "nano": 260000000},
}


def schedules(exchange="MOEX_PLUS_WEEKEND", trading_day=True, date="2024-10-07T00:00:00Z", intervals=None):
    return {"exchanges": [{
        "exchange": exchange,
        "days": [{
            "date": date,
            "isTradingDay": trading_day,
            "intervals": SESSIONS if intervals is None else intervals,
        }],
    }]}


def make_gateway(session, now=NOW, account_id="acc-1"):
    return TInvestGateway(
        token="test-token",
        account_id=account_id,
        base_url=BASE_URL,
        schedule_exchange="MOEX_PLUS_WEEKEND",
        portfolio_currency="RUB",
        session=session,
        clock=lambda: now,
    )


class TestCall:
    """Test request construction and failure normalization."""

    @pytest.mark.asyncio
    async def test_request_shape(self, gateway, fake_session):
        fake_session.routes["MarketDataService/GetLastPrices"] = {"lastPrices": []}

        await gateway.call("MarketDataService/GetLastPrices", {"figi": [SBER_FIGI]})

        request = fake_session.requests[0]
        assert request["url"] == BASE_URL + "MarketDataService/GetLastPrices"
        assert request["headers"]["Authorization"] == "Bearer test-token"
        assert request["headers"]["Content-Type"] == "application/json"
        assert request["json"] == {"figi": [SBER_FIGI]}

    @pytest.mark.asyncio
    async def test_injected_session_gets_deadline(self, gateway, fake_session):
        await gateway.call("SandboxService/GetSandboxAccounts")

        timeout = fake_session.requests[0]["timeout"]
        assert isinstance(timeout, aiohttp.ClientTimeout)
        assert timeout.total == 5.0

    @pytest.mark.asyncio
    async def test_empty_payload_sent_as_object(self, gateway, fake_session):
        await gateway.call("SandboxService/GetSandboxAccounts")
        assert fake_session.requests[0]["json"] == {}

    @pytest.mark.asyncio
    async def test_broker_error_payload(self, gateway, fake_session):
        fake_session.routes["OrdersService/PostOrder"] = FakeResponse(
            {"code": 3, "message": "missing parameter: 'accountId'", "description": "30008"},
            status=400,
        )

        with pytest.raises(BrokerAPIError) as exc_info:
            await gateway.call("OrdersService/PostOrder", {})

        error = exc_info.value
        assert error.endpoint == "OrdersService/PostOrder"
        assert error.status == 400
        assert error.error_code == "30008"
        assert "accountId" in error.message

    @pytest.mark.asyncio
    async def test_plain_text_error_body(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/Shares"] = FakeResponse("Unauthorized", status=401)

        with pytest.raises(BrokerAPIError) as exc_info:
            await gateway.call("InstrumentsService/Shares")

        assert exc_info.value.details == {"body": "Unauthorized"}

    @pytest.mark.asyncio
    async def test_server_error_is_transport(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/Shares"] = FakeResponse("Bad Gateway", status=502)
        with pytest.raises(TransportError):
            await gateway.call("InstrumentsService/Shares")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [
        aiohttp.ClientConnectionError("connection reset"),
        asyncio.TimeoutError(),
    ])
    async def test_network_failures_are_transport(self, gateway, fake_session, failure):
        fake_session.routes["InstrumentsService/Shares"] = failure
        with pytest.raises(TransportError) as exc_info:
            await gateway.call("InstrumentsService/Shares")
        assert exc_info.value.endpoint == "InstrumentsService/Shares"

    @pytest.mark.asyncio
    async def test_undecodable_body(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/Shares"] = FakeResponse("<html>", status=200)
        with pytest.raises(TransportError):
            await gateway.call("InstrumentsService/Shares")

    @pytest.mark.asyncio
    async def test_requires_session(self):
        gateway = TInvestGateway(token="t", base_url=BASE_URL)
        with pytest.raises(RuntimeError):
            await gateway.call("InstrumentsService/Shares")

    def test_requires_token(self):
        with pytest.raises(ConfigurationError):
            TInvestGateway(token="", base_url=BASE_URL)


class TestMarketData:

    @pytest.mark.asyncio
    async def test_get_quote(self, gateway, fake_session):
        fake_session.routes["MarketDataService/GetLastPrices"] = {
            "lastPrices": [{"figi": SBER_FIGI, "price": {"units": "250", "nano": 350000000}}]
        }
        assert await gateway.get_quote(SBER_FIGI) == Decimal("250.35")

    @pytest.mark.asyncio
    async def test_get_quote_without_prices(self, gateway, fake_session):
        fake_session.routes["MarketDataService/GetLastPrices"] = {"lastPrices": []}
        with pytest.raises(NoPriceData):
            await gateway.get_quote(SBER_FIGI)

    @pytest.mark.asyncio
    async def test_get_lot_size(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/GetInstrumentBy"] = {"instrument": {"figi": SBER_FIGI, "lot": 10}}

        assert await gateway.get_lot_size(SBER_FIGI) == 10
        assert fake_session.requests[0]["json"] == {"idType": "INSTRUMENT_ID_TYPE_FIGI", "id": SBER_FIGI}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", [
        {"instrument": {"figi": SBER_FIGI}},
        {},
        FakeResponse({"code": 5, "message": "instrument not found"}, status=404),
        aiohttp.ClientConnectionError("down"),
    ])
    async def test_get_lot_size_unknown_is_zero(self, gateway, fake_session, outcome):
        fake_session.routes["InstrumentsService/GetInstrumentBy"] = outcome
        assert await gateway.get_lot_size(SBER_FIGI) == 0

    @pytest.mark.asyncio
    async def test_get_candles_default_window(self, gateway, fake_session):
        fake_session.routes["MarketDataService/GetCandles"] = {"candles": [
            {"open": {"units": "251"}, "high": {"units": "252"}, "low": {"units": "250"},
             "close": {"units": "251", "nano": 500000000}, "volume": "300",
             "time": "2024-10-07T09:55:00Z", "isComplete": False},
            {"open": {"units": "250"}, "high": {"units": "251"}, "low": {"units": "249"},
             "close": {"units": "251"}, "volume": "1200",
             "time": "2024-10-07T09:50:00Z", "isComplete": True},
        ]}

        candles = await gateway.get_candles(SBER_FIGI, CandleInterval.FIVE_MINUTES)

        payload = fake_session.requests[0]["json"]
        assert payload["from"] == "2024-10-06T10:00:00.000000Z"
        assert payload["to"] == "2024-10-07T10:00:00.000000Z"
        assert payload["interval"] == "CANDLE_INTERVAL_5_MIN"
        assert payload["candleSourceType"] == "CANDLE_SOURCE_UNSPECIFIED"
        assert [c.volume for c in candles] == [1200, 300]
        assert candles[1].close == Decimal("251.5")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval,days", [
        ("CANDLE_INTERVAL_HOUR", 7),
        ("DAY", 365),
    ])
    async def test_get_candles_lookback_by_interval(self, gateway, fake_session, interval, days):
        fake_session.routes["MarketDataService/GetCandles"] = {"candles": [
            {"close": {"units": "1"}, "volume": "1", "time": "2024-10-07T00:00:00Z"}
        ]}

        await gateway.get_candles(SBER_FIGI, interval)

        payload = fake_session.requests[0]["json"]
        start = datetime.strptime(payload["from"], "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)
        assert (NOW - start).days == days

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval", ["CANDLE_INTERVAL_1_MIN", "weekly", None, 5])
    async def test_get_candles_invalid_interval(self, gateway, fake_session, interval):
        with pytest.raises(InvalidInterval):
            await gateway.get_candles(SBER_FIGI, interval)
        assert fake_session.requests == []

    @pytest.mark.asyncio
    async def test_get_candles_empty(self, gateway, fake_session):
        fake_session.routes["MarketDataService/GetCandles"] = {"candles": []}
        with pytest.raises(NoDataError):
            await gateway.get_candles(SBER_FIGI, CandleInterval.DAY)

    @pytest.mark.asyncio
    async def test_get_tech_indicators(self, gateway, fake_session):
        fake_session.routes["MarketDataService/GetTechAnalysis"] = {"technicalIndicators": [
            {"timestamp": "2024-10-07T09:00:00Z", "signal": {"units": "250", "nano": 100000000}},
        ]}

        points = await gateway.get_tech_indicators(
            "uid-1", IndicatorType.SMA, "INDICATOR_INTERVAL_ONE_HOUR", length=3
        )

        payload = fake_session.requests[0]["json"]
        assert payload["indicatorType"] == "INDICATOR_TYPE_SMA"
        assert payload["interval"] == "INDICATOR_INTERVAL_ONE_HOUR"
        assert payload["typeOfPrice"] == "TYPE_OF_PRICE_CLOSE"
        assert payload["length"] == 3
        assert points[0].signal == Decimal("250.1")

    @pytest.mark.asyncio
    async def test_get_tech_indicators_rejects_unknown_values(self, gateway, fake_session):
        with pytest.raises(InvalidInterval):
            await gateway.get_tech_indicators("uid-1", "INDICATOR_TYPE_ADX", "INDICATOR_INTERVAL_ONE_DAY")
        with pytest.raises(InvalidInterval):
            await gateway.get_tech_indicators("uid-1", IndicatorType.EMA, "INDICATOR_INTERVAL_WEEK")
        assert fake_session.requests == []


class TestInstruments:

    @pytest.mark.asyncio
    async def test_resolve_takes_first_match(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = SBER_INSTRUMENT

        instrument = await gateway.resolve_instrument("SBER")

        assert instrument.display_name == "Сбер Банк (SBER)"
        assert instrument.uid == "e6123145-9665-43e0-8413-cd61b8aa9b13"
        assert fake_session.requests[0]["json"] == {
            "query": "SBER", "instrumentKind": "INSTRUMENT_TYPE_SHARE"
        }

    @pytest.mark.asyncio
    async def test_resolve_not_found(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = {"instruments": []}
        with pytest.raises(InstrumentNotFound):
            await gateway.resolve_instrument("NOPE")


class TestMarketHours:
    """isMarketOpen must answer False, never raise, for every closed outcome."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("now", [
        datetime(2024, 10, 7, 10, 0, tzinfo=timezone.utc),
        datetime(2024, 10, 7, 7, 0, tzinfo=timezone.utc),
        datetime(2024, 10, 7, 18, 30, tzinfo=timezone.utc),
    ])
    async def test_open_inside_regular_or_evening_session(self, now):
        session = FakeSession({"InstrumentsService/TradingSchedules": schedules()})
        assert await make_gateway(session, now).is_market_open() is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("now", [
        datetime(2024, 10, 7, 6, 55, tzinfo=timezone.utc),
        datetime(2024, 10, 7, 15, 45, tzinfo=timezone.utc),
        datetime(2024, 10, 7, 22, 0, tzinfo=timezone.utc),
    ])
    async def test_closed_outside_regular_sessions(self, now):
        session = FakeSession({"InstrumentsService/TradingSchedules": schedules()})
        assert await make_gateway(session, now).is_market_open() is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        schedules(trading_day=False),
        schedules(exchange="MOEX"),
        schedules(date="2024-10-08T00:00:00Z"),
        schedules(intervals=[]),
        {},
        FakeResponse({"code": 13, "message": "internal"}, status=500),
        aiohttp.ClientConnectionError("down"),
    ])
    async def test_closed_outcomes(self, response):
        session = FakeSession({"InstrumentsService/TradingSchedules": response})
        assert await make_gateway(session).is_market_open() is False

    @pytest.mark.asyncio
    async def test_requests_today(self):
        session = FakeSession({"InstrumentsService/TradingSchedules": schedules()})
        await make_gateway(session).is_market_open()
        payload = session.requests[0]["json"]
        assert payload["from"] == "2024-10-07T00:00:00.000000Z"
        assert payload["to"].startswith("2024-10-07T23:59:59")


class TestOrders:

    @pytest.mark.asyncio
    async def test_place_market_order(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = SBER_INSTRUMENT
        fake_session.routes["OrdersService/PostOrder"] = ORDER_FILLED

        price = await gateway.place_market_order(SBER_FIGI, 5, Direction.BUY)

        assert price == Decimal("250.35")
        order = fake_session.calls_to("OrdersService/PostOrder")[0]["json"]
        assert order["figi"] == SBER_FIGI
        assert order["quantity"] == 5
        assert order["direction"] == "ORDER_DIRECTION_BUY"
        assert order["accountId"] == "acc-1"
        assert order["orderType"] == "ORDER_TYPE_MARKET"
        assert order["instrumentId"] == "e6123145-9665-43e0-8413-cd61b8aa9b13"
        assert order["orderId"]

    @pytest.mark.asyncio
    async def test_each_order_gets_new_idempotency_key(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = SBER_INSTRUMENT
        fake_session.routes["OrdersService/PostOrder"] = ORDER_FILLED

        await gateway.place_market_order(SBER_FIGI, 1, Direction.SELL)
        await gateway.place_market_order(SBER_FIGI, 1, Direction.SELL)

        keys = {r["json"]["orderId"] for r in fake_session.calls_to("OrdersService/PostOrder")}
        assert len(keys) == 2

    @pytest.mark.asyncio
    async def test_broker_rejection_returns_zero(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = SBER_INSTRUMENT
        fake_session.routes["OrdersService/PostOrder"] = FakeResponse(
            {"code": 9, "message": "Not enough balance", "description": "30042"}, status=400
        )
        assert await gateway.place_market_order(SBER_FIGI, 5, Direction.BUY) == Decimal(0)

    @pytest.mark.asyncio
    async def test_rejected_status_returns_zero(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = SBER_INSTRUMENT
        fake_session.routes["OrdersService/PostOrder"] = dict(
            ORDER_FILLED, executionReportStatus="EXECUTION_REPORT_STATUS_REJECTED"
        )
        assert await gateway.place_market_order(SBER_FIGI, 5, Direction.BUY) == Decimal(0)

    @pytest.mark.asyncio
    async def test_unreadable_executed_price_returns_zero(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = SBER_INSTRUMENT
        fake_session.routes["OrdersService/PostOrder"] = dict(
            ORDER_FILLED, executedOrderPrice={"units": "abc", "nano": 0}
        )
        assert await gateway.place_market_order(SBER_FIGI, 5, Direction.BUY) == Decimal(0)

    @pytest.mark.asyncio
    async def test_unreadable_commission_keeps_fill(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = SBER_INSTRUMENT
        fake_session.routes["OrdersService/PostOrder"] = dict(
            ORDER_FILLED, initialCommission="n/a", initialOrderPrice=None
        )
        assert await gateway.place_market_order(SBER_FIGI, 5, Direction.BUY) == Decimal("250.35")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("direction", ["ORDER_DIRECTION_BUY", "buy", "BUY"])
    async def test_direction_by_value_or_name(self, gateway, fake_session, direction):
        fake_session.routes["InstrumentsService/FindInstrument"] = SBER_INSTRUMENT
        fake_session.routes["OrdersService/PostOrder"] = ORDER_FILLED

        assert await gateway.place_market_order(SBER_FIGI, 1, direction) == Decimal("250.35")
        order = fake_session.calls_to("OrdersService/PostOrder")[0]["json"]
        assert order["direction"] == "ORDER_DIRECTION_BUY"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("direction", ["HOLD", "ORDER_DIRECTION_UNSPECIFIED", None])
    async def test_unknown_direction_returns_zero(self, gateway, fake_session, direction):
        assert await gateway.place_market_order(SBER_FIGI, 1, direction) == Decimal(0)
        assert fake_session.requests == []

    @pytest.mark.asyncio
    async def test_unresolved_instrument_never_posts(self, gateway, fake_session):
        fake_session.routes["InstrumentsService/FindInstrument"] = {"instruments": []}

        assert await gateway.place_market_order(SBER_FIGI, 5, Direction.BUY) == Decimal(0)
        assert fake_session.calls_to("OrdersService/PostOrder") == []

    @pytest.mark.asyncio
    async def test_without_account_never_posts(self, fake_session):
        gateway = make_gateway(fake_session, account_id=None)
        assert await gateway.place_market_order(SBER_FIGI, 5, Direction.BUY) == Decimal(0)
        assert fake_session.requests == []


class TestAccount:

    @pytest.mark.asyncio
    async def test_get_positions(self, gateway, fake_session):
        fake_session.routes["OperationsService/GetPositions"] = {
            "money": [{"currency": "rub", "units": "5000", "nano": 0}],
            "securities": [
                {"figi": SBER_FIGI, "blocked": "0", "balance": "50", "instrumentType": "share"},
            ],
        }

        positions = await gateway.get_positions()

        assert positions[0].figi == SBER_FIGI
        assert positions[0].balance == Decimal("50")
        assert fake_session.requests[0]["json"] == {"accountId": "acc-1"}

    @pytest.mark.asyncio
    async def test_get_positions_propagates_failure(self, gateway, fake_session):
        fake_session.routes["OperationsService/GetPositions"] = aiohttp.ClientConnectionError("down")
        with pytest.raises(TransportError):
            await gateway.get_positions()

    @pytest.mark.asyncio
    async def test_get_portfolio(self, gateway, fake_session):
        fake_session.routes["OperationsService/GetPortfolio"] = {"totalAmountPortfolio": {"units": "1"}}

        assert await gateway.get_portfolio() == {"totalAmountPortfolio": {"units": "1"}}
        assert fake_session.requests[0]["json"] == {"accountId": "acc-1", "currency": "RUB"}

    @pytest.mark.asyncio
    async def test_get_portfolio_failure_is_empty(self, gateway, fake_session):
        fake_session.routes["OperationsService/GetPortfolio"] = FakeResponse("oops", status=503)
        assert await gateway.get_portfolio() == {}
