# tinvest_trader/utils/instrument_config.py - Monitored instrument loader
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import yaml

from tinvest_trader.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchedInstrument:
    """Ticker and FIGI of an instrument the bot trades."""
    ticker: str
    figi: str


class InstrumentConfigLoader:
    """Load the monitored instrument list from YAML."""

    def __init__(self, config_path: str = None):
        """Initialize instrument config loader.

        Args:
            config_path: Path to instruments.yaml config file
        """
        self.config_path = config_path or self._get_default_config_path()
        self.config = self._load_config()
        self.instruments = self._parse_instruments()

    def _get_default_config_path(self) -> str:
        """Get default configuration path."""
        project_root = Path(__file__).parent.parent.parent
        return str(project_root / "config" / "instruments.yaml")

    def _load_config(self) -> Dict:
        """Load configuration from YAML file."""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
            logger.info(f"Loaded instrument config from {self.config_path}")
            return config or {}
        except FileNotFoundError:
            logger.warning(f"Config file not found: {self.config_path}")
            return {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse {self.config_path}: {e}")
            raise ConfigurationError(f"Invalid instrument config: {self.config_path}") from e

    def _parse_instruments(self) -> List[WatchedInstrument]:
        entries = self.config.get('instruments') or []
        instruments = []
        seen = set()
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict) or not entry.get('ticker') or not entry.get('figi'):
                raise ConfigurationError(
                    f"Instrument entry #{index} needs both 'ticker' and 'figi'",
                    details={'entry': entry}
                )
            figi = str(entry['figi'])
            if figi in seen:
                raise ConfigurationError(f"Duplicate FIGI in instrument config: {figi}")
            seen.add(figi)
            instruments.append(WatchedInstrument(ticker=str(entry['ticker']), figi=figi))
        return instruments

    @property
    def tickers(self) -> List[str]:
        return [i.ticker for i in self.instruments]

    @property
    def figis(self) -> List[str]:
        return [i.figi for i in self.instruments]

    def ticker_for(self, figi: str) -> str:
        """Ticker configured for a FIGI, or the FIGI itself when unknown."""
        for instrument in self.instruments:
            if instrument.figi == figi:
                return instrument.ticker
        return figi
