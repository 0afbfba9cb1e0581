"""
Execution gateway - the engine's only door to the broker.

- place_order never raises: broker failures fall back to a paper fill at the
  reference price so the cycle keeps moving.
- resolve_fill never raises: polling failures, rejections and zero prices fall
  back to the reference price.
- No deduplication happens here; the decision engine's done flags own that.
"""

from typing import Optional

from core.config import Settings, settings as default_settings
from core.logger import log_fill, log_order
from core.logging_utils import get_logger
from core.mode_configs import TradingMode
from core.models import FillResult, OrderAck, OrderRequest
from core.trading_interfaces import IBrokerClient, IExecutionGateway
from execution.live_executor import LiveExecutor
from execution.order_utils import ExecutionError, FillResolutionError
from execution.paper_executor import PaperExecutor

logger = get_logger(__name__)


class ExecutionGateway(IExecutionGateway):
    """Routes orders to the live executor or the paper simulator."""

    def __init__(
        self,
        client: Optional[IBrokerClient] = None,
        config: Optional[Settings] = None,
        trading_enabled: bool = False,
    ):
        self.config = config or default_settings
        self.mode = TradingMode.from_str(self.config.trading_mode)
        self.paper = PaperExecutor()
        self.live = LiveExecutor(client, self.config) if client is not None else None
        self._trading_enabled = trading_enabled
        self.fallbacks = 0

    @property
    def trading_enabled(self) -> bool:
        return self._trading_enabled

    @property
    def is_live(self) -> bool:
        """True when orders would reach the broker."""
        return self._trading_enabled and self.mode is TradingMode.LIVE and self.live is not None

    def set_trading_enabled(self, enabled: bool, reason: Optional[str] = None) -> None:
        if enabled == self._trading_enabled:
            return
        self._trading_enabled = enabled
        logger.info("[GATEWAY] Trading %s%s", "enabled" if enabled else "disabled (paper fills)",
                    f": {reason}" if reason else "")

    async def place_order(self, request: OrderRequest) -> OrderAck:
        ack: OrderAck
        if self.is_live:
            try:
                ack = await self.live.submit(request)
            except ExecutionError as e:
                self.fallbacks += 1
                logger.error("[GATEWAY] Placement failed, paper fallback: %s", e)
                paper_ack = await self.paper.submit(request)
                ack = OrderAck(
                    accepted=True,
                    order_id=paper_ack.order_id,
                    paper=True,
                    executed_price=paper_ack.executed_price,
                    error=str(e),
                )
        else:
            ack = await self.paper.submit(request)

        log_order({
            "order_id": ack.order_id,
            "symbol": request.symbol,
            "token": request.token,
            "side": request.side.value,
            "quantity": request.quantity,
            "reference_price": request.reference_price,
            "paper": ack.paper,
            "error": ack.error,
        })
        return ack

    async def resolve_fill(self, order_id: str, reference_price: float) -> FillResult:
        if order_id in self.paper.orders or self.live is None:
            return await self.paper.resolve_fill(order_id, reference_price)

        try:
            result = await self.live.resolve_fill(order_id, reference_price)
        except FillResolutionError as e:
            logger.warning("[GATEWAY] Fill for %s unresolved, using reference %.2f: %s", order_id, reference_price, e)
            result = FillResult(order_id=order_id, executed_price=reference_price, fallback=True, reason=str(e))

        log_fill({
            "order_id": order_id,
            "executed_price": result.executed_price,
            "reference_price": reference_price,
            "fallback": result.fallback,
        })
        return result
