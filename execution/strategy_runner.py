"""
Strategy runner - one isolated engine instance fed by a FIFO batch queue.

Each runner owns its own ParameterStore, InstrumentLedger, ExecutionGateway
and CycleController; nothing mutable is shared between runners (one per
account). Batches are processed strictly one at a time in arrival order.
Control-channel updates that arrive while a batch is running wait until it
finishes, so a batch always sees one consistent set of parameters.
"""

import asyncio
import importlib
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from core.config import ConfigurationError, Settings, settings as default_settings
from core.events import EngineEventBus, ParameterChangeEvent
from core.logger import log_param_change
from core.logging_utils import get_logger, runner_context
from core.parameters import ParameterStore, ParameterValidationError, Scope
from core.trading_interfaces import IBrokerClient
from execution.gateway import ExecutionGateway
from logic.cycle import Block, CycleController
from logic.ledger import InstrumentLedger

logger = get_logger(__name__)

_STOP = object()


@dataclass(frozen=True)
class ControlMessage:
    """Parameter update from the external control channel."""
    scope: str
    name: str
    value: Any

    @classmethod
    def from_dict(cls, data: dict) -> "ControlMessage":
        return cls(scope=data.get("scope", "global"), name=data["name"], value=data.get("value"))


class StrategyRunner:
    """Consumes tick batches for one strategy instance."""

    def __init__(
        self,
        store: Optional[ParameterStore] = None,
        gateway: Optional[ExecutionGateway] = None,
        bus: Optional[EngineEventBus] = None,
        name: str = "default",
    ):
        self.name = name
        self.store = store or ParameterStore()
        self.bus = bus or EngineEventBus()
        self.gateway = gateway or ExecutionGateway(trading_enabled=self.store.get("enable_trading"))
        self.ledger = InstrumentLedger()
        self.controller = CycleController(self.store, self.gateway, self.ledger, self.bus)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._batch_lock = asyncio.Lock()
        self._running = False
        self.processed = 0

        self.store.on_change(self._on_param_change)

    def _on_param_change(self, scope: Scope, name: str, old: Any, new: Any) -> None:
        log_param_change({"runner": self.name, "scope": scope.value, "name": name, "old": old, "new": new})
        self.bus.emit_param(ParameterChangeEvent(scope=scope.value, name=name, old=old, new=new))

    # Feed
    def submit_batch(self, batch: Iterable) -> None:
        """Enqueue a batch; processing order is arrival order."""
        self._queue.put_nowait(list(batch))

    async def process(self, batch: Iterable) -> Block:
        """Process one batch immediately (serialized with the queue consumer)."""
        async with self._batch_lock:
            with runner_context(self.name):
                block = await self.controller.process_batch(batch)
            self.processed += 1
            return block

    async def run(self) -> None:
        """Consume queued batches until stop() is called."""
        self._running = True
        logger.info("[RUNNER] %s started in %s mode", self.name, "live" if self.gateway.is_live else "paper")
        try:
            while self._running:
                batch = await self._queue.get()
                try:
                    if batch is _STOP:
                        break
                    await self.process(batch)
                finally:
                    self._queue.task_done()
        finally:
            self._running = False
            logger.info("[RUNNER] %s stopped after %d batches", self.name, self.processed)

    async def drain(self) -> None:
        """Wait until every queued batch has been processed."""
        await self._queue.join()

    def stop(self) -> None:
        """Stop after the batch currently in flight."""
        self._queue.put_nowait(_STOP)

    # Control channel
    async def apply_control(self, message: "ControlMessage | dict") -> bool:
        """Validate and apply a parameter update between batches."""
        if isinstance(message, dict):
            try:
                message = ControlMessage.from_dict(message)
            except KeyError:
                logger.warning("[RUNNER] Control message without name: %s", message)
                return False
        try:
            scope = Scope.parse(message.scope)
        except ParameterValidationError as e:
            logger.warning("[RUNNER] %s", e)
            return False

        async with self._batch_lock:
            accepted = self.store.update(message.name, message.value, scope)
        if not accepted:
            self.bus.emit_param(ParameterChangeEvent(
                scope=scope.value, name=message.name, old=None, new=message.value, accepted=False,
            ))
        return accepted

    async def settle(self) -> None:
        await self.controller.engine.settle()

    def status(self) -> dict:
        status = self.controller.status()
        status["runner"] = self.name
        status["queued"] = self._queue.qsize()
        status["live"] = self.gateway.is_live
        return status


def load_broker_client(config: Settings) -> IBrokerClient:
    """Build the broker client named by BROKER_CLIENT_FACTORY (module:callable)."""
    path = config.broker_client_factory
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"BROKER_CLIENT_FACTORY must look like module:callable, got {path!r}")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load broker client factory {path}: {e}") from e
    client = factory(config)
    logger.info("[RUNNER] Broker client from %s", path)
    return client


def build_runner(
    config: Optional[Settings] = None,
    client: Optional[IBrokerClient] = None,
    overrides: Optional[dict[str, Any]] = None,
    name: Optional[str] = None,
) -> StrategyRunner:
    """Create a runner with the gateway wired for the configured mode.

    In live mode without an explicit client the factory from the settings
    supplies one; ConfigurationError if it cannot.
    """
    config = config or default_settings
    if client is None and not config.is_paper:
        client = load_broker_client(config)
    store = ParameterStore()
    for key, value in (overrides or {}).items():
        if not store.update(key, value, source="startup"):
            raise ParameterValidationError(f"Invalid startup parameter {key}={value!r}")
    gateway = ExecutionGateway(client=client, config=config, trading_enabled=store.get("enable_trading"))
    return StrategyRunner(store=store, gateway=gateway, name=name or config.strategy_name)
