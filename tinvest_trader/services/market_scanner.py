# tinvest_trader/services/market_scanner.py
"""Read-only bulk scans over many instruments, paced by a shared rate limiter"""
import asyncio
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from tinvest_trader.middleware.rate_limiter import RateLimiter
from tinvest_trader.models.trading import CandleInterval
from tinvest_trader.trading.broker_adapter import BrokerAdapter
from tinvest_trader.trading.broker_gateway import coerce_enum
from tinvest_trader.utils.exceptions import GatewayError

logger = logging.getLogger(__name__)

CANDLE_COLUMNS = ['time', 'open', 'high', 'low', 'close', 'volume', 'is_complete']


class MarketScanner:
    """Scan quotes and candle history across an instrument list.

    A failure on one instrument is logged and yields an empty result for that
    instrument only; the scan continues.
    """

    def __init__(self, gateway: BrokerAdapter, rate_limiter: RateLimiter):
        self.gateway = gateway
        self.rate_limiter = rate_limiter

    async def fetch_quotes(self, figis: Iterable[str]) -> Dict[str, Optional[Decimal]]:
        """Last prices, one call at a time; ``None`` where no price is available."""
        quotes: Dict[str, Optional[Decimal]] = {}
        for figi in figis:
            await self.rate_limiter.wait()
            try:
                quotes[figi] = await self.gateway.get_quote(figi)
            except GatewayError as e:
                logger.warning(f"Quote unavailable for {figi}: {e.message}")
                quotes[figi] = None
        return quotes

    async def fetch_candle_frame(self, figi: str, interval: CandleInterval) -> pd.DataFrame:
        await self.rate_limiter.wait()
        try:
            candles = await self.gateway.get_candles(figi, interval)
        except GatewayError as e:
            logger.warning(f"Candles unavailable for {figi}: {e.message}")
            return pd.DataFrame(columns=CANDLE_COLUMNS)

        return pd.DataFrame([c.to_dict() for c in candles], columns=CANDLE_COLUMNS)

    async def fetch_candle_frames(
        self,
        figis: Iterable[str],
        interval: CandleInterval = CandleInterval.DAY,
        max_concurrency: int = 4
    ) -> Dict[str, pd.DataFrame]:
        """Candle history per FIGI.

        Requests may overlap up to ``max_concurrency``, but each one still
        takes its turn through the shared limiter.
        """
        interval = coerce_enum(CandleInterval, interval)
        semaphore = asyncio.Semaphore(max(1, max_concurrency))
        figis = list(figis)

        async def bounded(figi: str) -> pd.DataFrame:
            async with semaphore:
                return await self.fetch_candle_frame(figi, interval)

        frames = await asyncio.gather(*(bounded(figi) for figi in figis))
        return dict(zip(figis, frames))

    @staticmethod
    def rank_by_volume(frames: Dict[str, pd.DataFrame], top: int = 15) -> List[Tuple[str, int]]:
        """FIGIs ordered by total traded volume, largest first."""
        totals = pd.Series(
            {figi: int(frame['volume'].sum()) if not frame.empty else 0 for figi, frame in frames.items()},
            dtype='int64'
        )
        ranked = totals.sort_values(ascending=False, kind='stable').head(top)
        return [(figi, int(volume)) for figi, volume in ranked.items()]
