"""
Instrument ledger - per-token price state for the active cycle.

Every observed token gets one InstrumentRecord. Tracked tokens (the selected
pair) additionally maintain a running peak and, while trough tracking is on,
a running low. Capturing the reference freezes those lows so later rules
compare against a fixed value instead of a moving minimum.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from core.logging_utils import get_logger
from core.models import InstrumentKind, InstrumentRecord, Tick

logger = get_logger(__name__)


class InstrumentLedger:
    """Owns all InstrumentRecords for one strategy instance."""

    def __init__(
        self,
        drop_threshold: float = 0.25,
        rise_margin: float = 3.0,
        peak_fall_margin: float = 5.0,
    ):
        self._records: dict[str, InstrumentRecord] = {}
        self._tracked: set[str] = set()
        self._trough_tracking = False
        self._reference_frozen = False
        self.drop_threshold = drop_threshold
        self.rise_margin = rise_margin
        self.peak_fall_margin = peak_fall_margin

    def configure(
        self,
        drop_threshold: Optional[float] = None,
        rise_margin: Optional[float] = None,
        peak_fall_margin: Optional[float] = None,
    ) -> None:
        """Refresh flag thresholds (called between batches from the store)."""
        if drop_threshold is not None:
            self.drop_threshold = drop_threshold
        if rise_margin is not None:
            self.rise_margin = rise_margin
        if peak_fall_margin is not None:
            self.peak_fall_margin = peak_fall_margin

    # Tracking controls
    def track(self, tokens: Iterable[str]) -> None:
        self._tracked.update(str(t) for t in tokens)
        for token in self._tracked:
            record = self._records.get(token)
            if record is not None and record.peak is None:
                record.peak = record.last
                record.peak_time = record.updated_at

    def start_trough_tracking(self) -> None:
        self._trough_tracking = True
        for token in self._tracked:
            record = self._records.get(token)
            if record is not None and record.low_at_ref is None:
                record.low_at_ref = record.last

    def capture_reference(self) -> None:
        """Freeze trough tracking and pin calc_ref on the tracked records."""
        self._reference_frozen = True
        for token in self._tracked:
            record = self._records.get(token)
            if record is None:
                continue
            record.calc_ref = record.last
            record.flags.calc_ref_reached = True
        logger.info("[LEDGER] Reference captured for %d tracked instruments", len(self._tracked))

    @property
    def tracked(self) -> frozenset[str]:
        return frozenset(self._tracked)

    @property
    def trough_tracking(self) -> bool:
        return self._trough_tracking and not self._reference_frozen

    @property
    def reference_frozen(self) -> bool:
        return self._reference_frozen

    # Mutations
    def upsert(self, tick: Tick) -> InstrumentRecord:
        """Create or update the record for tick.token."""
        now = tick.timestamp or datetime.now(timezone.utc)
        record = self._records.get(tick.token)
        if record is None:
            record = InstrumentRecord(
                token=tick.token,
                symbol=tick.symbol,
                kind=InstrumentKind.from_symbol(tick.symbol),
                first_price=tick.price,
                last=tick.price,
                updated_at=now,
            )
            self._records[tick.token] = record
        else:
            record.change = tick.price - record.last
            record.last = tick.price
            record.updated_at = now

        record.plus3 = record.last - record.first_price
        if record.buy_price is not None:
            record.change_from_buy = record.last - record.buy_price

        if tick.token in self._tracked:
            self._update_extremes(record, now)
        self._update_flags(record)
        return record

    def _update_extremes(self, record: InstrumentRecord, now: datetime) -> None:
        if record.peak is None or record.last > record.peak:
            record.prev_peak = record.peak
            record.peak = record.last
            record.peak_time = now

        if self.trough_tracking:
            if record.low_at_ref is None or record.last < record.low_at_ref:
                record.low_at_ref = record.last

    def _update_flags(self, record: InstrumentRecord) -> None:
        flags = record.flags
        if record.plus3 >= self.rise_margin:
            flags.plus3 = True
        if record.peak is not None and record.peak - record.last >= self.peak_fall_margin:
            flags.peak_and_fall = True
        if record.low_at_ref is not None and self.has_dropped(record):
            flags.interim_low = True

    def has_dropped(self, record: InstrumentRecord) -> bool:
        """True when the trough sits drop_threshold below the first price."""
        if record.low_at_ref is None:
            return False
        return record.low_at_ref <= record.first_price * (1 - self.drop_threshold)

    def mark_bought(self, token: str, price: float) -> InstrumentRecord:
        record = self._records[token]
        record.buy_price = price
        record.change_from_buy = 0.0
        return record

    def reprice(self, token: str, price: float) -> InstrumentRecord:
        """Replace the buy price (executed fill, averaged rebuy) keeping the live delta."""
        record = self._records[token]
        record.buy_price = price
        record.change_from_buy = record.last - price
        return record

    def clear_bought(self, token: str) -> None:
        record = self._records.get(token)
        if record is not None:
            record.buy_price = None
            record.change_from_buy = None

    def reset(self) -> None:
        """Discard every record and tracking state (cycle boundary only)."""
        count = len(self._records)
        self._records.clear()
        self._tracked.clear()
        self._trough_tracking = False
        self._reference_frozen = False
        logger.debug("[LEDGER] Reset (%d records dropped)", count)

    # Queries
    def get(self, token: Optional[str]) -> Optional[InstrumentRecord]:
        if token is None:
            return None
        return self._records.get(str(token))

    def __getitem__(self, token: str) -> InstrumentRecord:
        return self._records[token]

    def __contains__(self, token: object) -> bool:
        return token in self._records

    def __len__(self) -> int:
        return len(self._records)

    def nearest_below(self, kind: InstrumentKind, ceiling: float) -> Optional[InstrumentRecord]:
        """Record of the given kind whose last price is highest but <= ceiling."""
        candidates = [r for r in self._records.values() if r.kind is kind and r.last <= ceiling]
        if not candidates:
            return None
        return max(candidates, key=lambda r: (r.last, r.token))
