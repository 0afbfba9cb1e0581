"""Engine event definitions and the status/telemetry bus.

Operator views, the CLI summary and tests subscribe here. Paper and live runs
emit identical shapes, so consumers do not care where fills came from.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BlockTransitionEvent:
    from_block: str
    to_block: str
    cycle: int
    reason: str = ""
    ts: datetime = field(default_factory=_utc_now)


@dataclass
class TradeActionEvent:
    """Normalized buy/sell action as shown to the operator."""

    action: str  # "buy" or "sell"
    symbol: str
    price: float
    quantity: int
    timestamp: datetime
    cycle: int
    rule: str = ""
    order_id: str = ""
    paper: bool = True
    token: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class CycleSummaryEvent:
    cycle: int
    trades: int
    realized_pnl: float
    ts: datetime = field(default_factory=_utc_now)


@dataclass
class BatchErrorEvent:
    block: str
    error: str
    cycle: int
    ts: datetime = field(default_factory=_utc_now)


@dataclass
class ParameterChangeEvent:
    scope: str
    name: str
    old: Any
    new: Any
    accepted: bool = True
    ts: datetime = field(default_factory=_utc_now)


class EngineEventBus:
    """Minimal sync bus; a failing handler never breaks the tick path."""

    def __init__(self):
        self._block_handlers: List[Callable[[BlockTransitionEvent], None]] = []
        self._trade_handlers: List[Callable[[TradeActionEvent], None]] = []
        self._cycle_handlers: List[Callable[[CycleSummaryEvent], None]] = []
        self._error_handlers: List[Callable[[BatchErrorEvent], None]] = []
        self._param_handlers: List[Callable[[ParameterChangeEvent], None]] = []

    # Subscription helpers
    def on_block(self, handler: Callable[[BlockTransitionEvent], None]) -> None:
        self._block_handlers.append(handler)

    def on_trade(self, handler: Callable[[TradeActionEvent], None]) -> None:
        self._trade_handlers.append(handler)

    def on_cycle(self, handler: Callable[[CycleSummaryEvent], None]) -> None:
        self._cycle_handlers.append(handler)

    def on_error(self, handler: Callable[[BatchErrorEvent], None]) -> None:
        self._error_handlers.append(handler)

    def on_param(self, handler: Callable[[ParameterChangeEvent], None]) -> None:
        self._param_handlers.append(handler)

    # Emitters
    def _dispatch(self, handlers: list, event: Any, kind: str) -> None:
        for handler in list(handlers):
            try:
                handler(event)
            except Exception as e:
                logger.warning("[EVENT] %s handler error: %s", kind, e)
                continue

    def emit_block(self, event: BlockTransitionEvent) -> None:
        self._dispatch(self._block_handlers, event, "Block")

    def emit_trade(self, event: TradeActionEvent) -> None:
        self._dispatch(self._trade_handlers, event, "Trade")

    def emit_cycle(self, event: CycleSummaryEvent) -> None:
        self._dispatch(self._cycle_handlers, event, "Cycle")

    def emit_error(self, event: BatchErrorEvent) -> None:
        self._dispatch(self._error_handlers, event, "Error")

    def emit_param(self, event: ParameterChangeEvent) -> None:
        self._dispatch(self._param_handlers, event, "Param")


class EventRecorder:
    """Collects every event in order; used by the CLI summary and tests."""

    def __init__(self, bus: Optional[EngineEventBus] = None):
        self.blocks: List[BlockTransitionEvent] = []
        self.trades: List[TradeActionEvent] = []
        self.cycles: List[CycleSummaryEvent] = []
        self.errors: List[BatchErrorEvent] = []
        self.params: List[ParameterChangeEvent] = []
        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EngineEventBus) -> None:
        bus.on_block(self.blocks.append)
        bus.on_trade(self.trades.append)
        bus.on_cycle(self.cycles.append)
        bus.on_error(self.errors.append)
        bus.on_param(self.params.append)
