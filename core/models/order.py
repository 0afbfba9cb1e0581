"""Order request, acknowledgement and fill models."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    quantity: int
    reference_price: float
    token: Optional[str] = None


@dataclass(frozen=True)
class OrderAck:
    """Result of a placement. Paper acks already carry their fill."""
    accepted: bool
    order_id: str
    paper: bool = False
    executed_price: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class FillResult:
    order_id: str
    executed_price: float
    fallback: bool = False
    reason: str = ""
