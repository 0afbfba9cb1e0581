"""Paper executor: instantaneous fills at the reference price."""

from core.logging_utils import get_logger
from core.models import FillResult, OrderAck, OrderRequest
from core.trading_interfaces import IExecutor
from execution.order_utils import paper_order_id

logger = get_logger(__name__)


class PaperExecutor(IExecutor):
    """Executes simulated orders without touching the broker."""

    def __init__(self):
        self.orders: dict[str, OrderRequest] = {}

    async def submit(self, request: OrderRequest) -> OrderAck:
        order_id = paper_order_id(request.side)
        # Millisecond ids can collide when two orders land in one batch
        suffix = 1
        base_id = order_id
        while order_id in self.orders:
            order_id = f"{base_id}_{suffix}"
            suffix += 1
        self.orders[order_id] = request
        logger.info(
            "[PAPER] %s %s x%d @ %.2f (%s)",
            request.side.name, request.symbol, request.quantity, request.reference_price, order_id,
        )
        return OrderAck(
            accepted=True,
            order_id=order_id,
            paper=True,
            executed_price=request.reference_price,
        )

    async def resolve_fill(self, order_id: str, reference_price: float) -> FillResult:
        request = self.orders.get(order_id)
        price = request.reference_price if request is not None else reference_price
        return FillResult(order_id=order_id, executed_price=price)
