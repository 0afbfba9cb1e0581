"""
Order execution utilities: error taxonomy, backoff and broker response parsing.
"""

import time
from dataclasses import dataclass
from typing import Any, Optional

from core.logging_utils import get_logger
from core.models import Side

logger = get_logger(__name__)

TERMINAL_FILL_STATUS = "COMPLETE"
TERMINAL_FAIL_STATUSES = {"REJECTED", "CANCELLED"}


class OrderError(Exception):
    """Base exception for order errors."""
    pass


class ExecutionError(OrderError):
    """Broker rejected or raised during placement."""
    pass


class FillResolutionError(OrderError):
    """Fill price could not be resolved from order history."""
    pass


def backoff_delay(attempt: int, base_delay: float = 0.5, max_delay: float = 4.0) -> float:
    """Exponential backoff: base * 2**attempt, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


def paper_order_id(side: Side) -> str:
    return f"PAPER_{side.name}_{int(time.time() * 1000)}"


@dataclass
class HistoryEntry:
    """Last known state of a broker order."""
    status: str
    average_price: float
    filled_quantity: int = 0
    status_message: Optional[str] = None


def parse_history_entry(entry: Any) -> HistoryEntry:
    """
    Normalize one order-history entry (dict or SDK object).
    """
    def get_field(name, default=None):
        if isinstance(entry, dict):
            return entry.get(name, default)
        return getattr(entry, name, default)

    return HistoryEntry(
        status=str(get_field("status", "") or "").upper(),
        average_price=float(get_field("average_price", 0) or 0),
        filled_quantity=int(get_field("filled_quantity", 0) or 0),
        status_message=get_field("status_message"),
    )


def fill_price_from_history(history: list) -> Optional[float]:
    """
    Return the executed price if the order reached a terminal fill.

    None means "not yet terminal, keep polling". Raises FillResolutionError
    for rejected/cancelled orders or a terminal fill without a price.
    """
    if not history:
        return None
    last = parse_history_entry(history[-1])
    if last.status in TERMINAL_FAIL_STATUSES:
        raise FillResolutionError(f"Order {last.status.lower()}: {last.status_message or 'no reason'}")
    if last.status != TERMINAL_FILL_STATUS:
        return None
    if last.average_price <= 0:
        raise FillResolutionError("Order complete but average price is zero")
    return last.average_price
