# tinvest_trader/models/__init__.py - Data models module
from .trading import (
    LEDGER_COLUMNS,
    Direction,
    CandleInterval,
    IndicatorInterval,
    IndicatorType,
    Position,
    ServerPosition,
    Instrument,
    Candle,
    TechIndicator,
    quotation_to_decimal,
    decimal_to_quotation,
    parse_timestamp,
    format_timestamp,
)

__all__ = [
    "LEDGER_COLUMNS",
    "Direction",
    "CandleInterval",
    "IndicatorInterval",
    "IndicatorType",
    "Position",
    "ServerPosition",
    "Instrument",
    "Candle",
    "TechIndicator",
    "quotation_to_decimal",
    "decimal_to_quotation",
    "parse_timestamp",
    "format_timestamp",
]
