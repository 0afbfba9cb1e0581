"""
Cycle controller - the block state machine for one strategy instance.

    INIT -> UPDATE -> DECISION -> NEXT_CYCLE -> INIT ...

Each tick batch is ingested into the ledger (array order) and then handed
to the active block. While INIT is still waiting nothing is recorded: the
ledger starts from the batch that selects the pair, so first prices are
never older than the selection. A block that transitions hands the same
batch to the next block straight away, so UPDATE and DECISION can both
run on one delivery. A new cycle always starts on the following batch.

Errors never leave process_batch: the batch is abandoned, logged and
reported, and the controller keeps whatever block it was in.
"""

from enum import Enum
from typing import Iterable, Optional

from core.events import BatchErrorEvent, BlockTransitionEvent, CycleSummaryEvent, EngineEventBus
from core.logger import log_batch_error, log_block, log_cycle
from core.logging_utils import get_logger
from core.models import Tick
from core.parameters import ParameterStore, Scope
from core.trading_interfaces import IExecutionGateway
from logic.decision import DecisionEngine
from logic.ledger import InstrumentLedger
from logic.selector import Selection, TokenSelector, select_from_store

logger = get_logger(__name__)


class Block(str, Enum):
    INIT = "INIT"
    UPDATE = "UPDATE"
    DECISION = "DECISION"
    NEXT_CYCLE = "NEXT_CYCLE"


class CycleController:
    """Sequences selector, ledger and decision engine per tick batch."""

    def __init__(
        self,
        store: ParameterStore,
        gateway: IExecutionGateway,
        ledger: Optional[InstrumentLedger] = None,
        bus: Optional[EngineEventBus] = None,
        selector: Optional[TokenSelector] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.ledger = ledger or InstrumentLedger()
        self.bus = bus or EngineEventBus()
        self.selector = selector or TokenSelector()
        self.engine = DecisionEngine(self.ledger, store, gateway, self.bus)

        self.block = Block.INIT
        self.cycle = 0
        self.selection: Optional[Selection] = None
        self.half_drop_token: Optional[str] = None
        self.batches = 0
        self.failed_batches = 0

    # Public API
    async def process_batch(self, batch: Iterable) -> Block:
        """Process one tick batch; never raises."""
        self.batches += 1
        try:
            ticks = [Tick.from_raw(raw) for raw in batch]
            self._sync_params()
            if self.block is not Block.INIT:
                for tick in ticks:
                    self.ledger.upsert(tick)

            for _ in range(len(Block)):
                before = self.block
                await self._run_block(ticks)
                if self.block is before or self.block is Block.INIT:
                    break
        except Exception as e:
            self.failed_batches += 1
            logger.exception("[CYCLE] Batch %d abandoned in %s: %s", self.batches, self.block.value, e)
            record = BatchErrorEvent(block=self.block.value, error=str(e), cycle=self.cycle)
            log_batch_error({"block": record.block, "error": record.error, "cycle": record.cycle, "batch": self.batches})
            self.bus.emit_error(record)
        return self.block

    def status(self) -> dict:
        return {
            "block": self.block.value,
            "cycle": self.cycle,
            "main_token": self.engine.state.main_token,
            "opposite_token": self.engine.state.opposite_token,
            "held_token": self.engine.state.held_token,
            "trading_enabled": self.gateway.trading_enabled,
            "realized_pnl": self.engine.state.realized_pnl,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
        }

    # Internals
    def _sync_params(self) -> None:
        self.ledger.configure(
            drop_threshold=self.store.get("drop_threshold"),
            rise_margin=self.store.get("rise_margin"),
            peak_fall_margin=self.store.get("peak_fall_margin"),
        )
        self.gateway.set_trading_enabled(self.store.get("enable_trading"), reason="parameter")

    def _transition(self, to_block: Block, reason: str = "") -> None:
        from_block = self.block
        self.block = to_block
        logger.info("[CYCLE] Cycle %d: %s -> %s %s", self.cycle, from_block.value, to_block.value, reason)
        event = BlockTransitionEvent(from_block=from_block.value, to_block=to_block.value, cycle=self.cycle, reason=reason)
        log_block({"from": event.from_block, "to": event.to_block, "cycle": event.cycle, "reason": reason})
        self.bus.emit_block(event)

    async def _run_block(self, ticks: list[Tick]) -> None:
        if self.block is Block.INIT:
            self._run_init(ticks)
        elif self.block is Block.UPDATE:
            self._run_update()
        elif self.block is Block.DECISION:
            await self._run_decision()
        elif self.block is Block.NEXT_CYCLE:
            self._run_next_cycle()

    def _run_init(self, ticks: list[Tick]) -> None:
        selection = select_from_store(self.selector, ticks, self.store)
        if not selection:
            logger.debug("[CYCLE] Waiting in INIT: %s", selection.reason)
            return
        self.selection = selection
        for tick in ticks:
            self.ledger.upsert(tick)
        self.engine.state.main_token, self.engine.state.opposite_token = selection.tokens
        self.ledger.track(selection.tokens)
        self.ledger.start_trough_tracking()
        self._transition(Block.UPDATE, f"selected {selection.main.symbol}/{selection.opposite.symbol}")

    def _run_update(self) -> None:
        state = self.engine.state
        for token in (state.main_token, state.opposite_token):
            record = self.ledger.get(token)
            if record is None or not self.ledger.has_dropped(record):
                continue
            self.half_drop_token = record.token
            self.ledger.capture_reference()
            self.engine.start(state.main_token, state.opposite_token, record.token)
            logger.info(
                "[CYCLE] %s fell to %.2f from %.2f (threshold %.0f%%)",
                record.symbol, record.low_at_ref, record.first_price, self.ledger.drop_threshold * 100,
            )
            self._transition(Block.DECISION, f"drop on {record.symbol}")
            return

    async def _run_decision(self) -> None:
        await self.engine.evaluate()
        if self.engine.state.bought_sold:
            self._transition(Block.NEXT_CYCLE, "bought and sold")

    def _run_next_cycle(self) -> None:
        summary = self.engine.summary()
        log_cycle(summary)
        self.bus.emit_cycle(CycleSummaryEvent(
            cycle=self.cycle,
            trades=summary["trades"],
            realized_pnl=summary["realized_pnl"],
        ))
        logger.info("[CYCLE] Cycle %d complete: %d trades, P&L %.2f", self.cycle, summary["trades"], summary["realized_pnl"])

        self.ledger.reset()
        self.cycle += 1
        self.engine.reset(self.cycle)
        self.selection = None
        self.half_drop_token = None

        skip_after = self.store.get("skip_after_cycles")
        if skip_after and self.cycle >= skip_after and self.store.get("enable_trading"):
            self.store.update("enable_trading", False, Scope.GLOBAL, source="skip_after_cycles")
            self.gateway.set_trading_enabled(False, reason=f"{self.cycle} cycles completed")

        self._transition(Block.INIT, "reset")
