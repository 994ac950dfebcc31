# tinvest_trader/trading/position_ledger.py - Durable local record of open positions
import logging
import os
import tempfile
from decimal import InvalidOperation
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd

from tinvest_trader.models.trading import LEDGER_COLUMNS, Position
from tinvest_trader.utils.exceptions import LedgerError

logger = logging.getLogger(__name__)


class PositionLedger:
    """CSV-backed ledger of the positions the bot believes it holds.

    The file holds one row per FIGI. Every mutation reads the whole file,
    changes one row and writes the whole file back through a temporary file
    and an atomic rename, so readers never see a partial write. Only one
    process may mutate a given ledger file.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load_all(self) -> List[Position]:
        """Load every position.

        Returns:
            Positions in file order; empty when the file does not exist yet

        Raises:
            LedgerError: If the file or any row is malformed
        """
        if not self.path.exists():
            return []

        try:
            frame = pd.read_csv(self.path, dtype=str, keep_default_na=False)
        except pd.errors.EmptyDataError as e:
            raise LedgerError(f"Ledger file {self.path} is empty, header missing") from e
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise LedgerError(f"Ledger file {self.path} cannot be parsed: {e}") from e

        missing = [column for column in LEDGER_COLUMNS if column not in frame.columns]
        if missing:
            raise LedgerError(
                f"Ledger file {self.path} is missing columns {missing}",
                details={'columns': list(frame.columns)}
            )

        positions = []
        seen = set()
        for index, row in enumerate(frame.to_dict(orient='records')):
            # header is line 1
            line = index + 2
            try:
                position = Position.from_row(row)
            except (ValueError, TypeError, InvalidOperation) as e:
                logger.error(f"Malformed ledger row at {self.path}:{line}: {e}")
                raise LedgerError(
                    f"Malformed ledger row at line {line}: {e}",
                    details={'row': row, 'line': line}
                ) from e
            if position.figi in seen:
                raise LedgerError(f"Duplicate FIGI {position.figi} at line {line}")
            seen.add(position.figi)
            positions.append(position)

        return positions

    def save_all(self, positions: Iterable[Position]) -> None:
        """Replace the ledger contents with ``positions``.

        Raises:
            LedgerError: If two positions share a FIGI
        """
        positions = list(positions)
        figis = [p.figi for p in positions]
        duplicates = sorted({f for f in figis if figis.count(f) > 1})
        if duplicates:
            raise LedgerError(f"Refusing to save duplicate FIGIs: {duplicates}")

        frame = pd.DataFrame([p.to_row() for p in positions], columns=LEDGER_COLUMNS)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix='.tmp'
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
                frame.to_csv(f, index=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug(f"Saved {len(positions)} position(s) to {self.path}")

    def get(self, figi: str) -> Optional[Position]:
        for position in self.load_all():
            if position.figi == figi:
                return position
        return None

    def upsert(self, position: Position) -> None:
        """Replace the row with the same FIGI in place, or append it."""
        positions = self.load_all()
        for index, existing in enumerate(positions):
            if existing.figi == position.figi:
                positions[index] = position
                break
        else:
            positions.append(position)
        self.save_all(positions)

    def remove(self, figi: str) -> bool:
        """Delete the row for ``figi``; returns False when there was none."""
        positions = self.load_all()
        remaining = [p for p in positions if p.figi != figi]
        if len(remaining) == len(positions):
            return False
        self.save_all(remaining)
        logger.info(f"Removed {figi} from ledger")
        return True
