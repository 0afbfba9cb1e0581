"""Instrument kinds and the per-token observation record."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class InstrumentKind(Enum):
    CE = "CE"
    PE = "PE"
    OTHER = "OTHER"

    @classmethod
    def from_symbol(cls, symbol: str) -> "InstrumentKind":
        text = (symbol or "").strip().upper()
        if text.endswith("CE"):
            return cls.CE
        if text.endswith("PE"):
            return cls.PE
        return cls.OTHER

    def opposite(self) -> "InstrumentKind":
        if self is InstrumentKind.CE:
            return InstrumentKind.PE
        if self is InstrumentKind.PE:
            return InstrumentKind.CE
        return InstrumentKind.OTHER


@dataclass
class InstrumentFlags:
    plus3: bool = False
    peak_and_fall: bool = False
    calc_ref_reached: bool = False
    interim_low: bool = False


@dataclass
class InstrumentRecord:
    """Mutable price state for one token within the active cycle.

    Optional fields stay None until the ledger initializes them; nothing
    compares against a placeholder value.
    """
    token: str
    symbol: str
    kind: InstrumentKind
    first_price: float
    last: float
    change: Optional[float] = None
    plus3: float = 0.0
    peak: Optional[float] = None
    prev_peak: Optional[float] = None
    peak_time: Optional[datetime] = None
    low_at_ref: Optional[float] = None
    buy_price: Optional[float] = None
    change_from_buy: Optional[float] = None
    calc_ref: Optional[float] = None
    updated_at: Optional[datetime] = None
    flags: InstrumentFlags = field(default_factory=InstrumentFlags)

    @property
    def change_from_ref(self) -> Optional[float]:
        if self.calc_ref is None:
            return None
        return self.last - self.calc_ref
