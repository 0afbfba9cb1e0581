"""Live executor implementation that wraps broker client calls."""

import asyncio

from core.config import Settings
from core.logging_utils import get_logger
from core.models import FillResult, OrderAck, OrderRequest
from core.trading_interfaces import IBrokerClient, IExecutor
from execution.order_utils import (
    ExecutionError,
    FillResolutionError,
    backoff_delay,
    fill_price_from_history,
)

logger = get_logger(__name__)


class LiveExecutor(IExecutor):
    """Places real orders through an authenticated broker client.

    The client is synchronous (as broker SDKs usually are), so every call
    runs in a worker thread to keep the event loop free for tick batches.
    """

    def __init__(self, client: IBrokerClient, config: Settings):
        self.client = client
        self.config = config

    async def submit(self, request: OrderRequest) -> OrderAck:
        try:
            order_id = await asyncio.to_thread(
                self.client.place_order,
                variety=self.config.order_variety,
                exchange=self.config.exchange,
                tradingsymbol=request.symbol,
                transaction_type=request.side.name,
                quantity=int(request.quantity),
                product=self.config.product,
                order_type=self.config.order_type,
            )
        except Exception as e:
            raise ExecutionError(f"{request.side.name} {request.symbol} failed: {e}") from e

        if not order_id:
            raise ExecutionError(f"{request.side.name} {request.symbol} returned no order id")

        logger.info(
            "[LIVE] %s %s x%d placed (ref %.2f, order %s)",
            request.side.name, request.symbol, request.quantity, request.reference_price, order_id,
        )
        return OrderAck(accepted=True, order_id=str(order_id), paper=False)

    async def resolve_fill(self, order_id: str, reference_price: float) -> FillResult:
        """Poll order history until a terminal fill; raises FillResolutionError."""
        attempts = max(1, self.config.fill_poll_attempts)
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                history = await asyncio.to_thread(self.client.order_history, order_id)
                price = fill_price_from_history(history)
                if price is not None:
                    return FillResult(order_id=order_id, executed_price=price)
            except FillResolutionError:
                raise
            except Exception as e:
                last_error = e
                logger.info("[LIVE] History lookup %d/%d for %s failed: %s", attempt + 1, attempts, order_id, e)

            if attempt < attempts - 1:
                await asyncio.sleep(
                    backoff_delay(attempt, self.config.fill_poll_base_delay, self.config.fill_poll_max_delay)
                )

        raise FillResolutionError(f"No terminal fill for {order_id} after {attempts} polls: {last_error}")
