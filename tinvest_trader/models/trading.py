# tinvest_trader/models/trading.py - Broker and ledger data models
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

NANO = Decimal(10) ** 9

LEDGER_COLUMNS = [
    'ticker',
    'figi',
    'quantity',
    'purchaseDate',
    'purchasePrice',
    'updateDate',
    'maxPrice',
    'profitLoss',
]


class Direction(Enum):
    """Order direction."""
    BUY = "ORDER_DIRECTION_BUY"
    SELL = "ORDER_DIRECTION_SELL"


class CandleInterval(Enum):
    """Supported candle granularities."""
    FIVE_MINUTES = "CANDLE_INTERVAL_5_MIN"
    HOUR = "CANDLE_INTERVAL_HOUR"
    DAY = "CANDLE_INTERVAL_DAY"

    @property
    def lookback(self) -> timedelta:
        return _LOOKBACK[self.name]


class IndicatorInterval(Enum):
    """Supported technical indicator granularities."""
    FIVE_MINUTES = "INDICATOR_INTERVAL_FIVE_MINUTES"
    HOUR = "INDICATOR_INTERVAL_ONE_HOUR"
    DAY = "INDICATOR_INTERVAL_ONE_DAY"

    @property
    def lookback(self) -> timedelta:
        return _LOOKBACK[self.name]


class IndicatorType(Enum):
    SMA = "INDICATOR_TYPE_SMA"
    EMA = "INDICATOR_TYPE_EMA"
    RSI = "INDICATOR_TYPE_RSI"
    BB = "INDICATOR_TYPE_BB"
    MACD = "INDICATOR_TYPE_MACD"


# How far back history is requested when the caller gives no start time
_LOOKBACK = {
    'FIVE_MINUTES': timedelta(days=1),
    'HOUR': timedelta(days=7),
    'DAY': timedelta(days=365),
}


def quotation_to_decimal(value: Optional[Mapping[str, Any]]) -> Decimal:
    """Rebuild a decimal from the broker's ``{units, nano}`` pair.

    ``nano`` is billionths, so 0.05 arrives as ``{"units": "0", "nano": 50000000}``.
    Both parts carry the sign of the value.
    """
    if not value:
        return Decimal(0)
    units = Decimal(int(value.get('units') or 0))
    nano = int(value.get('nano') or 0)
    if nano == 0:
        return units
    return units + Decimal(nano) / NANO


def decimal_to_quotation(amount, currency: Optional[str] = None) -> Dict[str, Any]:
    """Split a decimal amount into the broker's ``{units, nano}`` pair."""
    amount = Decimal(str(amount))
    units = int(amount)
    nano = int((amount - units) * NANO)
    payload: Dict[str, Any] = {'units': str(units), 'nano': nano}
    if currency:
        payload['currency'] = currency
    return payload


_FRACTION = re.compile(r'\.(\d+)')


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 broker timestamp into an aware UTC datetime.

    The broker may send nanosecond fractions; they are truncated to microseconds.
    """
    text = value.strip().replace('Z', '+00:00').replace('z', '+00:00')
    text = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Render a datetime the way the broker expects request timestamps."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def _finite_decimal(raw: str, column: str) -> Decimal:
    try:
        value = Decimal(raw.strip())
    except (InvalidOperation, AttributeError) as e:
        raise ValueError(f"column '{column}' is not a number: {raw!r}") from e
    if not value.is_finite():
        raise ValueError(f"column '{column}' is not finite: {raw!r}")
    return value


@dataclass
class Position:
    """One open position as recorded in the local ledger.

    ``quantity`` is in lots; the broker reports balances in base units.
    """
    ticker: str
    figi: str
    quantity: Decimal
    purchase_date: datetime
    purchase_price: Decimal
    update_date: datetime
    max_price: Decimal
    profit_loss: Decimal = Decimal(0)

    @classmethod
    def from_row(cls, row: Mapping[str, str]) -> 'Position':
        """Build a position from a ledger row of text values.

        Raises:
            ValueError: If any column is missing, empty or unparsable
        """
        for column in LEDGER_COLUMNS:
            if column not in row:
                raise ValueError(f"missing column '{column}'")
            value = row[column]
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"column '{column}' is empty")

        return cls(
            ticker=row['ticker'].strip(),
            figi=row['figi'].strip(),
            quantity=_finite_decimal(row['quantity'], 'quantity'),
            purchase_date=datetime.fromisoformat(row['purchaseDate'].strip()),
            purchase_price=_finite_decimal(row['purchasePrice'], 'purchasePrice'),
            update_date=datetime.fromisoformat(row['updateDate'].strip()),
            max_price=_finite_decimal(row['maxPrice'], 'maxPrice'),
            profit_loss=_finite_decimal(row['profitLoss'], 'profitLoss'),
        )

    def to_row(self) -> Dict[str, str]:
        return {
            'ticker': self.ticker,
            'figi': self.figi,
            'quantity': str(self.quantity),
            'purchaseDate': self.purchase_date.isoformat(),
            'purchasePrice': str(self.purchase_price),
            'updateDate': self.update_date.isoformat(),
            'maxPrice': str(self.max_price),
            'profitLoss': str(self.profit_loss),
        }

    def copy(self, **changes) -> 'Position':
        return replace(self, **changes)


@dataclass
class ServerPosition:
    """Security balance reported by the broker, in base units."""
    figi: str
    balance: Decimal
    blocked: Decimal = Decimal(0)
    instrument_uid: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> 'ServerPosition':
        return cls(
            figi=payload['figi'],
            balance=Decimal(str(payload.get('balance') or 0)),
            blocked=Decimal(str(payload.get('blocked') or 0)),
            instrument_uid=payload.get('instrumentUid'),
        )


@dataclass
class Instrument:
    """First match of an instrument search."""
    name: str
    ticker: str
    uid: str
    figi: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.ticker})"

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> 'Instrument':
        return cls(
            name=payload.get('name', ''),
            ticker=payload.get('ticker', ''),
            uid=payload['uid'],
            figi=payload.get('figi'),
        )


@dataclass
class Candle:
    time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int
    is_complete: bool = True

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> 'Candle':
        return cls(
            time=parse_timestamp(payload['time']),
            open=quotation_to_decimal(payload.get('open')),
            high=quotation_to_decimal(payload.get('high')),
            low=quotation_to_decimal(payload.get('low')),
            close=quotation_to_decimal(payload.get('close')),
            volume=int(payload.get('volume') or 0),
            is_complete=bool(payload.get('isComplete', False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'time': self.time,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
            'is_complete': self.is_complete,
        }


@dataclass
class TechIndicator:
    """One point of a broker-computed technical indicator series."""
    timestamp: datetime
    signal: Optional[Decimal] = None
    upper_band: Optional[Decimal] = None
    middle_band: Optional[Decimal] = None
    lower_band: Optional[Decimal] = None
    macd: Optional[Decimal] = None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> 'TechIndicator':
        def optional(key):
            return quotation_to_decimal(payload[key]) if payload.get(key) else None

        return cls(
            timestamp=parse_timestamp(payload['timestamp']),
            signal=optional('signal'),
            upper_band=optional('upperBand'),
            middle_band=optional('middleBand'),
            lower_band=optional('lowerBand'),
            macd=optional('macd'),
        )
