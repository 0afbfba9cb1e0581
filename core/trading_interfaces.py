"""Broker and executor interfaces for paper/live implementations."""

from typing import Any, Optional, Protocol

from core.models import FillResult, OrderAck, OrderRequest


class IBrokerClient(Protocol):
    """Authenticated broker session (owned outside the engine).

    Mirrors the shape of the usual retail options broker SDKs: placement
    returns a broker order id, history returns the order's status trail.
    """

    def place_order(
        self,
        variety: str,
        exchange: str,
        tradingsymbol: str,
        transaction_type: str,
        quantity: int,
        product: str,
        order_type: str,
        **kwargs: Any,
    ) -> str:
        ...

    def order_history(self, order_id: str) -> list[dict]:
        ...


class IExecutor(Protocol):
    """Executes orders for a given trading mode."""

    async def submit(self, request: OrderRequest) -> OrderAck:
        ...

    async def resolve_fill(self, order_id: str, reference_price: float) -> FillResult:
        ...


class IExecutionGateway(Protocol):
    """What the decision engine needs from order execution."""

    @property
    def trading_enabled(self) -> bool:
        ...

    async def place_order(self, request: OrderRequest) -> OrderAck:
        ...

    async def resolve_fill(self, order_id: str, reference_price: float) -> FillResult:
        ...

    def set_trading_enabled(self, enabled: bool, reason: Optional[str] = None) -> None:
        ...
