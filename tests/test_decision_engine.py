"""Tests for the decision engine and its rule table."""

import asyncio
import itertools

import pytest

from core.events import EventRecorder
from core.models import FillResult, OrderAck, Side, Tick
from core.parameters import DEFAULT_RULE_ORDER, ParameterStore
from execution.gateway import ExecutionGateway
from logic.decision import DecisionEngine
from logic.ledger import InstrumentLedger


class HeldFillGateway:
    """Gateway whose fills resolve only when the test releases them."""

    def __init__(self, fill_price: float):
        self.fill_price = fill_price
        self.release = asyncio.Event()
        self.orders = []
        self._ids = itertools.count(1)

    @property
    def trading_enabled(self) -> bool:
        return True

    def set_trading_enabled(self, enabled, reason=None):
        pass

    async def place_order(self, request):
        self.orders.append(request)
        return OrderAck(accepted=True, order_id=f"LIVE{next(self._ids)}", paper=False)

    async def resolve_fill(self, order_id, reference_price):
        await self.release.wait()
        return FillResult(order_id=order_id, executed_price=self.fill_price)


def _engine(gateway=None, **params) -> DecisionEngine:
    store = ParameterStore()
    for name, value in params.items():
        assert store.update(name, value), name
    return DecisionEngine(InstrumentLedger(), store, gateway or ExecutionGateway())


def _price(engine, token, price, symbol=None):
    symbols = {"A": "NIFTY24000CE", "B": "NIFTY24000PE"}
    engine.ledger.upsert(Tick(token=token, symbol=symbol or symbols[token], price=price))


async def _hold(engine, price=100.0):
    """Select A (CE) / B (PE), capture the reference and own A at `price`."""
    _price(engine, "A", price)
    _price(engine, "B", 100.0)
    engine.ledger.track(["A", "B"])
    engine.ledger.start_trough_tracking()
    engine.ledger.capture_reference()
    engine.start("A", "B", "A")
    state = engine.state
    state.save_params()
    state.done["initial_buy"] = True
    await engine.buy(engine.ledger["A"], state.params.quantity, "initial_buy")
    return state


async def _step(engine, token, price):
    _price(engine, token, price)
    return await engine.evaluate()


@pytest.mark.asyncio
async def test_profit_exit_arms_then_fires():
    engine = _engine(target=10.0, target_epsilon=0.5, rebuy_at=50.0)
    state = await _hold(engine)

    assert await _step(engine, "A", 105.0) == []
    assert await _step(engine, "A", 109.0) == []
    assert state.target_net is False

    assert await _step(engine, "A", 109.5) == []
    assert state.target_net is True

    assert await _step(engine, "A", 111.0) == ["target_exit"]
    sell = state.trades[-1]
    assert sell.action is Side.SELL
    assert sell.price == 111.0
    assert sell.price - sell.entry_price == 11.0
    assert state.bought_sold is True
    assert state.held_token is None


@pytest.mark.asyncio
async def test_armed_target_fires_a_point_under_target():
    engine = _engine(target=10.0, target_epsilon=0.5, rebuy_at=50.0)
    state = await _hold(engine)

    await _step(engine, "A", 109.5)
    assert await _step(engine, "A", 108.9) == ["target_exit"]
    assert state.bought_sold is True


@pytest.mark.asyncio
async def test_stoploss_exit_then_buy_back_then_target():
    engine = _engine(target=10.0, real_buy_stoploss=-10.0, rebuy_at=50.0, buy_back_ceiling=205.0)
    state = await _hold(engine)

    assert await _step(engine, "A", 89.0) == ["stoploss_exit"]
    assert state.held_token is None
    assert state.exited_kind.value == "CE"
    assert state.params.target == 21.0

    assert await _step(engine, "B", 60.0) == ["buy_back"]
    assert state.held_token == "B"
    assert engine.ledger["B"].buy_price == 60.0
    assert state.re_entered is True

    assert await _step(engine, "B", 80.0) == []
    assert await _step(engine, "B", 81.0) == ["target_exit"]
    assert state.bought_sold is True
    assert state.params.target == 10.0

    sells = [t for t in state.trades if t.action is Side.SELL]
    assert [t.rule for t in sells] == ["stoploss_exit", "target_exit"]
    assert state.realized_pnl == pytest.approx((-11.0 + 21.0) * state.params.quantity)


@pytest.mark.asyncio
async def test_buy_back_waits_for_candidate_under_ceiling():
    engine = _engine(real_buy_stoploss=-10.0, rebuy_at=50.0, buy_back_ceiling=50.0)
    state = await _hold(engine)

    assert await _step(engine, "A", 89.0) == ["stoploss_exit"]
    assert await _step(engine, "B", 70.0) == []
    assert state.held_token is None
    assert await _step(engine, "B", 45.0) == ["buy_back"]
    assert state.held_token == "B"


@pytest.mark.asyncio
async def test_rebuy_averages_and_rescales():
    engine = _engine(target=12.0, stoploss=-50.0, rebuy_at=7.0, quantity=75)
    state = await _hold(engine)

    assert await _step(engine, "A", 107.0) == ["rebuy"]
    record = engine.ledger["A"]
    assert record.buy_price == pytest.approx(103.5)
    assert record.change_from_buy == pytest.approx(3.5)
    assert state.held_quantity == 150
    assert state.params.target == 6.0
    assert state.params.stoploss == -25.0
    assert state.params.quantity == 150

    # Same batch again: the done flag keeps the rebuy from repeating
    trades = len(state.trades)
    assert await _step(engine, "A", 107.0) == []
    assert len(state.trades) == trades


@pytest.mark.asyncio
async def test_rebuy_exit_restores_and_re_enters_opposite():
    engine = _engine(target=12.0, stoploss=-50.0, rebuy_at=7.0, quantity=75)
    state = await _hold(engine)
    await _step(engine, "A", 107.0)

    assert await _step(engine, "A", 103.0) == ["rebuy_exit"]
    exit_trade = [t for t in state.trades if t.rule == "rebuy_exit" and t.action is Side.SELL][0]
    assert exit_trade.quantity == 150
    assert state.params.quantity == 75
    assert state.params.stoploss == -50.0
    # 0.5 below the 103.5 average, taken on twice the quantity
    assert state.params.target == pytest.approx(13.0)
    assert state.held_token == "B"
    assert state.held_quantity == 75


@pytest.mark.asyncio
async def test_breakeven_exit_after_half_target():
    engine = _engine(target=12.0, rebuy_at=50.0, half_target_threshold=5.0)
    state = await _hold(engine)

    await _step(engine, "A", 106.0)
    assert state.reached_half_target is True
    assert await _step(engine, "A", 100.0) == ["breakeven_exit"]
    assert state.held_token == "B"
    assert state.done["stoploss_exit"] is False


@pytest.mark.asyncio
async def test_final_stoploss_ends_cycle():
    engine = _engine(stoploss=-20.0, real_buy_stoploss=-30.0, rebuy_at=50.0)
    state = await _hold(engine)

    assert await _step(engine, "A", 79.0) == ["final_stoploss"]
    assert state.bought_sold is True
    assert await _step(engine, "A", 60.0) == []


@pytest.mark.asyncio
async def test_overlap_recorded_and_priority_applied():
    engine = _engine(target=8.0, target_epsilon=0.5, rebuy_at=7.0)
    state = await _hold(engine)

    fired = await _step(engine, "A", 108.0)

    assert fired[0] == "rebuy"
    assert engine.overlaps == [("rebuy", "target_exit")]
    assert state.done["rebuy"] is True

    engine.reset(1)
    assert engine.overlaps == []


@pytest.mark.asyncio
async def test_rule_order_parameter_changes_priority():
    order = DEFAULT_RULE_ORDER.replace("rebuy,", "").replace("target_exit", "target_exit,rebuy")
    engine = _engine(target=8.0, target_epsilon=0.5, rebuy_at=7.0, rule_order=order)
    state = await _hold(engine)

    assert await _step(engine, "A", 108.0) == ["target_exit"]
    assert state.done["rebuy"] is False
    assert state.bought_sold is True


@pytest.mark.asyncio
async def test_initial_buy_with_prebuy_buys_other_leg():
    engine = _engine(use_prebuy=True, prebuy_stoploss=-15.0)
    recorder = EventRecorder(engine.bus)
    _price(engine, "A", 70.0)
    _price(engine, "B", 100.0)
    engine.ledger.track(["A", "B"])
    engine.ledger.start_trough_tracking()
    engine.ledger.capture_reference()
    engine.start("A", "B", "A")

    assert await _step(engine, "B", 90.0) == []
    assert await _step(engine, "B", 84.0) == ["initial_buy"]
    assert engine.state.held_token == "A"
    assert recorder.trades[0].rule == "initial_buy"
    assert recorder.trades[0].action == "buy"


@pytest.mark.asyncio
async def test_initial_buy_without_prebuy_takes_opposite_below_ceiling():
    engine = _engine(use_prebuy=False, buy_same=False, buy_back_ceiling=205.0)
    _price(engine, "A", 70.0)
    _price(engine, "B", 100.0)
    _price(engine, "C", 250.0, symbol="NIFTY23900PE")
    engine.ledger.track(["A", "B"])
    engine.ledger.capture_reference()
    engine.start("A", "B", "A")

    assert await engine.evaluate() == ["initial_buy"]
    assert engine.state.held_token == "B"


@pytest.mark.asyncio
async def test_initial_buy_needs_frozen_reference():
    engine = _engine(use_prebuy=False)
    _price(engine, "A", 70.0)
    _price(engine, "B", 100.0)
    engine.start("A", "B", "A")
    assert await engine.evaluate() == []


@pytest.mark.asyncio
async def test_working_params_follow_store_until_first_trade():
    engine = _engine(target=10.0)
    engine.start("A", "B", "A")
    engine.store.update("target", 15.0)
    await engine.evaluate()
    assert engine.state.params.target == 15.0

    state = await _hold(engine)
    engine.store.update("target", 30.0)
    await _step(engine, "A", 101.0)
    assert state.params.target == 15.0


@pytest.mark.asyncio
async def test_broker_fill_reprices_buy_in_callback():
    gateway = HeldFillGateway(fill_price=101.0)
    engine = _engine(gateway=gateway, rebuy_at=50.0)
    await _hold(engine)

    record = engine.ledger["A"]
    assert record.buy_price == 100.0
    assert len(engine.pending) == 1

    gateway.release.set()
    await engine.settle()

    assert engine.pending == {}
    assert record.buy_price == 101.0
    assert engine.state.first_fill == 101.0
    assert engine.state.trades[0].filled is True


@pytest.mark.asyncio
async def test_fill_from_previous_cycle_is_ignored():
    gateway = HeldFillGateway(fill_price=101.0)
    engine = _engine(gateway=gateway, rebuy_at=50.0)
    state = await _hold(engine)
    trade = state.trades[0]

    engine.reset(1)
    gateway.release.set()
    await engine.settle()

    assert trade.filled is False
    assert trade.price == 100.0
    assert engine.state.first_fill is None
    assert engine.state.trades == []
