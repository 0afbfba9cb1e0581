"""Trading mode definitions."""

from enum import Enum


class TradingMode(Enum):
    PAPER = "paper"
    LIVE = "live"

    @classmethod
    def from_str(cls, value: str) -> "TradingMode":
        return cls.LIVE if str(value).strip().lower() == "live" else cls.PAPER
