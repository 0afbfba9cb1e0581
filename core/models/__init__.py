"""Typed data models for the cycle engine."""

from core.models.instrument import InstrumentFlags, InstrumentKind, InstrumentRecord
from core.models.order import FillResult, OrderAck, OrderRequest, Side
from core.models.tick import Tick

__all__ = [
    "FillResult",
    "InstrumentFlags",
    "InstrumentKind",
    "InstrumentRecord",
    "OrderAck",
    "OrderRequest",
    "Side",
    "Tick",
]
