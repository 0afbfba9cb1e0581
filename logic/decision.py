"""
Decision engine - evaluates the ordered rule table against the ledger.

Each batch in the DECISION block runs one pass over the rules in priority
order. A rule fires at most once per cycle: its done flag is set before the
order is submitted, so a batch arriving while the order is still in flight
cannot submit it again. Fill prices from the broker arrive through tracked
tasks keyed by order id and are applied only in their completion callback.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from core.events import EngineEventBus, TradeActionEvent
from core.logger import log_trade
from core.logging_utils import get_logger
from core.models import InstrumentKind, InstrumentRecord, OrderAck, OrderRequest, Side
from core.parameters import RULE_NAMES, ParameterStore
from core.trading_interfaces import IExecutionGateway
from logic.ledger import InstrumentLedger
from logic.rules import Rule, build_rule_table

logger = get_logger(__name__)


@dataclass
class WorkingParams:
    """Per-cycle copy of the thresholds that rules are allowed to mutate."""
    target: float
    stoploss: float
    quantity: int

    @classmethod
    def from_store(cls, store: ParameterStore) -> "WorkingParams":
        return cls(
            target=store.get("target"),
            stoploss=store.get("stoploss"),
            quantity=store.get("quantity"),
        )


@dataclass
class TradeRecord:
    action: Side
    token: str
    symbol: str
    price: float
    quantity: int
    rule: str
    order_id: str
    paper: bool
    timestamp: datetime
    entry_price: Optional[float] = None  # buy price the sell is measured against
    filled: bool = False

    @property
    def pnl(self) -> float:
        if self.action is not Side.SELL or self.entry_price is None:
            return 0.0
        return (self.price - self.entry_price) * self.quantity


@dataclass
class CycleState:
    """Everything the decision rules know about the active cycle."""
    params: WorkingParams
    main_token: Optional[str] = None
    opposite_token: Optional[str] = None
    half_drop_token: Optional[str] = None
    held_token: Optional[str] = None
    held_quantity: int = 0
    first_fill: Optional[float] = None
    exited_kind: Optional[InstrumentKind] = None
    re_entered: bool = False
    target_net: bool = False
    reached_half_target: bool = False
    bought_sold: bool = False
    saved_params: Optional[WorkingParams] = None
    done: dict[str, bool] = field(default_factory=lambda: {name: False for name in RULE_NAMES})
    trades: list[TradeRecord] = field(default_factory=list)

    @property
    def realized_pnl(self) -> float:
        return sum(t.pnl for t in self.trades)

    def save_params(self) -> None:
        self.saved_params = replace(self.params)

    def restore_params(self) -> None:
        if self.saved_params is not None:
            self.params = replace(self.saved_params)


class DecisionEngine:
    """Runs the rule table for one strategy instance."""

    def __init__(
        self,
        ledger: InstrumentLedger,
        store: ParameterStore,
        gateway: IExecutionGateway,
        bus: Optional[EngineEventBus] = None,
        rules: Optional[dict[str, Rule]] = None,
    ):
        self.ledger = ledger
        self.store = store
        self.gateway = gateway
        self.bus = bus or EngineEventBus()
        self.rules = rules or build_rule_table()
        self.cycle = 0
        self.state = CycleState(params=WorkingParams.from_store(store))
        self.pending: dict[str, asyncio.Task] = {}
        self.overlaps: list[tuple[str, ...]] = []

    # Cycle lifecycle
    def start(self, main_token: str, opposite_token: str, half_drop_token: Optional[str]) -> None:
        self.state.main_token = main_token
        self.state.opposite_token = opposite_token
        self.state.half_drop_token = half_drop_token
        self.state.params = WorkingParams.from_store(self.store)

    def reset(self, cycle: int) -> None:
        """Drop all per-cycle state; late fills from the old cycle are ignored."""
        self.cycle = cycle
        self.state = CycleState(params=WorkingParams.from_store(self.store))
        self.overlaps.clear()

    @property
    def held(self) -> Optional[InstrumentRecord]:
        return self.ledger.get(self.state.held_token)

    def param(self, name: str):
        return self.store.get(name)

    # Evaluation
    def _update_latches(self) -> None:
        state = self.state
        held = self.held
        if held is None or held.change_from_buy is None or state.bought_sold:
            return
        change = held.change_from_buy
        if change >= self.param("half_target_threshold") and not state.done["stoploss_exit"]:
            state.reached_half_target = True
        if not state.target_net and change >= state.params.target - self.param("target_epsilon"):
            state.target_net = True
            logger.info("[DECISION] Target net cast for %s at change %.2f (target %.2f)",
                        held.symbol, change, state.params.target)

    def active_rules(self, order: list[str]) -> list[str]:
        """Rules whose guard currently holds (done rules excluded)."""
        return [
            name for name in order
            if not self.state.done[self.rules[name].done_flag] and self.rules[name].predicate(self)
        ]

    async def evaluate(self) -> list[str]:
        """One pass over the rule table. Returns the names of fired rules."""
        state = self.state
        if state.bought_sold:
            return []
        if not state.trades:
            # Operator changes still apply until the first order of the cycle
            state.params = WorkingParams.from_store(self.store)

        self._update_latches()
        order = self.store.rule_order()

        active = self.active_rules(order)
        if len(active) > 1:
            overlap = tuple(active)
            self.overlaps.append(overlap)
            logger.warning("[DECISION] Overlapping guards (first wins by priority): %s", ", ".join(overlap))

        fired: list[str] = []
        for name in order:
            if state.bought_sold:
                break
            rule = self.rules[name]
            if state.done[rule.done_flag] or not rule.predicate(self):
                continue
            state.done[rule.done_flag] = True
            logger.info("[DECISION] Cycle %d: %s fired", self.cycle, name)
            await rule.action(self)
            fired.append(name)
        return fired

    # Order helpers used by rule actions
    async def buy(
        self,
        record: InstrumentRecord,
        quantity: int,
        rule: str,
        on_fill: Optional[Callable[[float], None]] = None,
    ) -> TradeRecord:
        state = self.state
        request = OrderRequest(record.symbol, Side.BUY, quantity, record.last, record.token)
        ack = await self.gateway.place_order(request)

        if state.held_token != record.token:
            state.held_token = record.token
            state.held_quantity = 0
            state.target_net = False
            state.reached_half_target = False
            self.ledger.mark_bought(record.token, record.last)
        state.held_quantity += quantity

        trade = self._record_trade(Side.BUY, record, quantity, rule, ack)
        self._settle(ack, request, trade, on_fill or self._first_fill(record.token))
        return trade

    async def sell(
        self,
        rule: str,
        on_fill: Optional[Callable[[TradeRecord, float], None]] = None,
    ) -> Optional[TradeRecord]:
        state = self.state
        record = self.held
        if record is None:
            return None
        quantity = state.held_quantity
        request = OrderRequest(record.symbol, Side.SELL, quantity, record.last, record.token)
        ack = await self.gateway.place_order(request)

        trade = self._record_trade(Side.SELL, record, quantity, rule, ack, entry_price=record.buy_price)
        state.exited_kind = record.kind
        state.held_token = None
        state.held_quantity = 0
        state.target_net = False
        self.ledger.clear_bought(record.token)

        def apply(price: float) -> None:
            if on_fill is not None:
                on_fill(trade, price)

        self._settle(ack, request, trade, apply)
        return trade

    def _first_fill(self, token: str) -> Callable[[float], None]:
        """Fill handler for an opening buy: pin the buy price to the executed price."""
        def apply(price: float) -> None:
            self.state.first_fill = price
            if self.state.held_token == token:
                self.ledger.reprice(token, price)
        return apply

    def _record_trade(
        self,
        action: Side,
        record: InstrumentRecord,
        quantity: int,
        rule: str,
        ack: OrderAck,
        entry_price: Optional[float] = None,
    ) -> TradeRecord:
        trade = TradeRecord(
            action=action,
            token=record.token,
            symbol=record.symbol,
            price=record.last,
            quantity=quantity,
            rule=rule,
            order_id=ack.order_id,
            paper=ack.paper,
            timestamp=datetime.now(timezone.utc),
            entry_price=entry_price,
        )
        self.state.trades.append(trade)
        event = TradeActionEvent(
            action=action.value,
            symbol=record.symbol,
            price=record.last,
            quantity=quantity,
            timestamp=trade.timestamp,
            cycle=self.cycle,
            rule=rule,
            order_id=ack.order_id,
            paper=ack.paper,
            token=record.token,
        )
        log_trade(event.to_dict())
        self.bus.emit_trade(event)
        return trade

    # Fill tracking
    def _settle(self, ack: OrderAck, request: OrderRequest, trade: TradeRecord, apply: Callable[[float], None]) -> None:
        if ack.executed_price is not None:
            self._apply_fill(trade, ack.executed_price, apply)
            return

        cycle = self.cycle
        task = asyncio.create_task(self.gateway.resolve_fill(ack.order_id, request.reference_price))
        self.pending[ack.order_id] = task

        def done(t: asyncio.Task) -> None:
            self.pending.pop(ack.order_id, None)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.error("[DECISION] Fill task for %s failed: %s", ack.order_id, error)
                return
            if cycle != self.cycle:
                logger.info("[DECISION] Late fill for %s from cycle %d ignored", ack.order_id, cycle)
                return
            self._apply_fill(trade, t.result().executed_price, apply)

        task.add_done_callback(done)

    def _apply_fill(self, trade: TradeRecord, price: float, apply: Callable[[float], None]) -> None:
        trade.price = price
        trade.filled = True
        apply(price)

    async def settle(self) -> None:
        """Wait for every outstanding fill (CLI shutdown and tests)."""
        if self.pending:
            await asyncio.gather(*list(self.pending.values()), return_exceptions=True)

    def summary(self) -> dict:
        state = self.state
        return {
            "cycle": self.cycle,
            "trades": len(state.trades),
            "realized_pnl": round(state.realized_pnl, 4),
            "fired": [name for name, done in state.done.items() if done],
            "bought_sold": state.bought_sold,
            "overlaps": len(self.overlaps),
        }
