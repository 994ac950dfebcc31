# tests/conftest.py
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from tinvest_trader.models.trading import Instrument, Position, ServerPosition
from tinvest_trader.trading.broker_adapter import BrokerAdapter
from tinvest_trader.trading.broker_gateway import TInvestGateway
from tinvest_trader.trading.position_ledger import PositionLedger
from tinvest_trader.utils.exceptions import InstrumentNotFound, NoDataError, NoPriceData

BASE_URL = "https://broker.test/rest/tinkoff.public.invest.api.contract.v1."
NOW = datetime(2024, 10, 7, 10, 0, tzinfo=timezone.utc)
SBER_FIGI = "BBG004730N88"


class FakeResponse:
    """Stand-in for an aiohttp response."""

    def __init__(self, body: Any = None, status: int = 200):
        self.status = status
        self._body = body if body is not None else {}

    async def text(self) -> str:
        if isinstance(self._body, str):
            return self._body
        return json.dumps(self._body)


class _RequestContext:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """Records POSTs and answers from a per-endpoint script.

    A route value may be a dict (200 JSON body), a FakeResponse, an exception
    instance to raise, or a list of those consumed one per call.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes = routes or {}
        self.requests: List[Dict[str, Any]] = []

    def post(self, url, json=None, headers=None, timeout=None):
        endpoint = url[len(BASE_URL):] if url.startswith(BASE_URL) else url
        self.requests.append({
            'url': url, 'endpoint': endpoint, 'json': json, 'headers': headers, 'timeout': timeout
        })

        outcome = self.routes.get(endpoint, {})
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, dict):
            outcome = FakeResponse(outcome)
        return _RequestContext(outcome)

    def calls_to(self, endpoint: str) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r['endpoint'] == endpoint]

    async def close(self):
        pass


class FakeBroker(BrokerAdapter):
    """In-memory broker that keeps server balances in step with fills."""

    def __init__(self):
        self.prices: Dict[str, Decimal] = {}
        self.lot_sizes: Dict[str, int] = {}
        self.balances: Dict[str, Decimal] = {}
        self.instruments: Dict[str, Instrument] = {}
        self.fill_prices: Dict[str, Decimal] = {}
        self.candles: Dict[str, list] = {}
        self.market_open = True
        self.positions_error: Optional[Exception] = None
        self.orders: List[tuple] = []
        self.lot_size_calls = 0
        self.position_queries: List[Optional[str]] = []

    def add_instrument(self, figi, ticker, lot_size=1, price=None, name=None):
        self.instruments[figi] = Instrument(name=name or ticker, ticker=ticker, uid=f"uid-{figi}", figi=figi)
        self.lot_sizes[figi] = lot_size
        if price is not None:
            self.prices[figi] = Decimal(str(price))
            self.fill_prices[figi] = Decimal(str(price))

    async def call(self, endpoint, payload=None):
        return {}

    async def get_quote(self, figi):
        if figi not in self.prices:
            raise NoPriceData(f"No price data for {figi}")
        return self.prices[figi]

    async def get_lot_size(self, figi):
        self.lot_size_calls += 1
        return self.lot_sizes.get(figi, 0)

    async def get_candles(self, figi, interval, from_=None, to=None):
        if not self.candles.get(figi):
            raise NoDataError(f"No candles for {figi}")
        return self.candles[figi]

    async def resolve_instrument(self, query):
        if query not in self.instruments:
            raise InstrumentNotFound(f"Instrument not found: {query}")
        return self.instruments[query]

    async def is_market_open(self):
        return self.market_open

    async def place_market_order(self, figi, quantity, direction):
        self.orders.append((figi, quantity, direction))
        price = self.fill_prices.get(figi, Decimal(0))
        if price > 0:
            delta = Decimal(quantity * self.lot_sizes.get(figi, 0))
            if direction.name == "SELL":
                delta = -delta
            self.balances[figi] = self.balances.get(figi, Decimal(0)) + delta
        return price

    async def get_portfolio(self):
        return {}

    async def get_positions(self, account_id=None):
        self.position_queries.append(account_id)
        if self.positions_error is not None:
            raise self.positions_error
        return [
            ServerPosition(figi=figi, balance=balance)
            for figi, balance in self.balances.items()
            if balance != 0
        ]


def make_position(figi=SBER_FIGI, ticker="SBER", quantity="5", price="250.35", **overrides) -> Position:
    values = dict(
        ticker=ticker,
        figi=figi,
        quantity=Decimal(quantity),
        purchase_date=NOW,
        purchase_price=Decimal(price),
        update_date=NOW,
        max_price=Decimal(price),
        profit_loss=Decimal("0"),
    )
    values.update(overrides)
    return Position(**values)


@pytest.fixture
def ledger(tmp_path):
    """Ledger backed by a temporary CSV file"""
    return PositionLedger(tmp_path / "positions.csv")


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def gateway(fake_session):
    """Gateway wired to the fake session with a fixed clock"""
    return TInvestGateway(
        token="test-token",
        account_id="acc-1",
        base_url=BASE_URL,
        timeout=5.0,
        schedule_exchange="MOEX_PLUS_WEEKEND",
        portfolio_currency="RUB",
        session=fake_session,
        clock=lambda: NOW,
    )
