"""
Decision rule table.

Every rule is a guard (predicate) and an action over the engine's cycle
state, plus the key of the one-shot done flag that stops it re-firing.
Priority lives in the `rule_order` parameter, not in this module: the table
is a mapping and the engine walks it in the configured order.

Rules at a glance (default priority):
    initial_buy     first buy once the reference is captured
    rebuy           gain reached rebuy_at: buy again, average, halve target/stoploss, double qty
    rebuy_exit      after a rebuy, price back to the averaged buy: exit, restore, re-enter opposite
    breakeven_exit  half target seen, price back to buy: exit and re-enter opposite
    buy_back        after a stoploss exit: buy the opposite leg below the ceiling
    stoploss_exit   change <= real_buy_stoploss: exit and raise target by the loss
    target_exit     arm at target - epsilon, fire at/over target or a point under it (terminal)
    final_stoploss  change <= stoploss (terminal)
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from core.logging_utils import get_logger
from core.models import InstrumentKind, InstrumentRecord

if TYPE_CHECKING:
    from logic.decision import DecisionEngine, TradeRecord

logger = get_logger(__name__)

Predicate = Callable[["DecisionEngine"], bool]
Action = Callable[["DecisionEngine"], Awaitable[None]]

RE_ENTRY_RULES = ("rebuy_exit", "breakeven_exit", "buy_back")


@dataclass(frozen=True)
class Rule:
    name: str
    predicate: Predicate
    action: Action
    done_flag: str
    description: str = ""


# Helpers
def _change(engine: "DecisionEngine") -> Optional[float]:
    held = engine.held
    return held.change_from_buy if held is not None else None


def _exited(engine: "DecisionEngine") -> bool:
    """True once any exit-and-re-enter path has started this cycle."""
    done = engine.state.done
    return engine.state.re_entered or done["stoploss_exit"] or any(done[name] for name in RE_ENTRY_RULES)


def _re_entry_candidate(engine: "DecisionEngine", from_kind: Optional[InstrumentKind]) -> Optional[InstrumentRecord]:
    """Opposite-kind instrument priced nearest below the buy-back ceiling."""
    if from_kind is None or from_kind is InstrumentKind.OTHER:
        return None
    return engine.ledger.nearest_below(from_kind.opposite(), engine.param("buy_back_ceiling"))


def _initial_buy_choice(engine: "DecisionEngine") -> Optional[InstrumentRecord]:
    state = engine.state
    ledger = engine.ledger
    main = ledger.get(state.main_token)
    opposite = ledger.get(state.opposite_token)
    buy_same = engine.param("buy_same")

    if engine.param("use_prebuy"):
        if main is None or opposite is None:
            return None
        threshold = engine.param("prebuy_stoploss")
        fallen = None
        for record in (main, opposite):
            change = record.change_from_ref
            if change is not None and change <= threshold:
                fallen = record
                break
        if fallen is None:
            return None
        if buy_same:
            return fallen
        return opposite if fallen is main else main

    trigger = ledger.get(state.half_drop_token) or main
    if trigger is None:
        return None
    kind = trigger.kind if buy_same else trigger.kind.opposite()
    choice = ledger.nearest_below(kind, engine.param("buy_back_ceiling"))
    if choice is None:
        # No instrument of that kind under the ceiling; fall back to the selected leg
        for record in (main, opposite):
            if record is not None and record.kind is kind:
                return record
    return choice


# initial_buy
def can_initial_buy(engine: "DecisionEngine") -> bool:
    state = engine.state
    if state.held_token is not None or state.trades or not engine.ledger.reference_frozen:
        return False
    return _initial_buy_choice(engine) is not None


async def do_initial_buy(engine: "DecisionEngine") -> None:
    record = _initial_buy_choice(engine)
    if record is None:
        return
    state = engine.state
    state.save_params()
    logger.info("[DECISION] Initial buy %s at %.2f", record.symbol, record.last)
    await engine.buy(record, state.params.quantity, "initial_buy")


# rebuy
def can_rebuy(engine: "DecisionEngine") -> bool:
    change = _change(engine)
    if change is None or _exited(engine):
        return False
    return change >= engine.param("rebuy_at")


async def do_rebuy(engine: "DecisionEngine") -> None:
    state = engine.state
    record = engine.held
    first = state.first_fill if state.first_fill is not None else record.buy_price
    token = record.token

    def average(price: float) -> None:
        if state.held_token == token and first is not None:
            engine.ledger.reprice(token, (first + price) / 2)

    quantity = state.params.quantity
    trade = await engine.buy(record, quantity, "rebuy", on_fill=average)
    if not trade.filled and first is not None:
        engine.ledger.reprice(token, (first + trade.price) / 2)
    params = state.params
    params.target = params.target / 2
    params.stoploss = params.stoploss / 2
    params.quantity = params.quantity * 2
    logger.info("[DECISION] Rebuy: target %.2f stoploss %.2f quantity %d", params.target, params.stoploss, params.quantity)


# rebuy_exit
def can_rebuy_exit(engine: "DecisionEngine") -> bool:
    state = engine.state
    held = engine.held
    if held is None or held.buy_price is None or not state.done["rebuy"] or state.re_entered:
        return False
    if state.done["breakeven_exit"] or state.done["stoploss_exit"]:
        return False
    return held.last <= held.buy_price and _re_entry_candidate(engine, held.kind) is not None


async def do_rebuy_exit(engine: "DecisionEngine") -> None:
    state = engine.state
    params = state.params
    # Undo the rebuy scaling first; the loss bump is doubled to match
    params.target = params.target * 2
    params.stoploss = params.stoploss * 2
    params.quantity = max(1, params.quantity // 2)
    await engine.sell("rebuy_exit", on_fill=bump_target(engine, factor=2.0))
    await _re_enter(engine, "rebuy_exit")


# breakeven_exit
def can_breakeven_exit(engine: "DecisionEngine") -> bool:
    state = engine.state
    held = engine.held
    if held is None or held.buy_price is None or _exited(engine) or state.done["rebuy"]:
        return False
    return (
        state.reached_half_target
        and held.last <= held.buy_price
        and _re_entry_candidate(engine, held.kind) is not None
    )


async def do_breakeven_exit(engine: "DecisionEngine") -> None:
    await engine.sell("breakeven_exit", on_fill=bump_target(engine))
    await _re_enter(engine, "breakeven_exit")


# buy_back
def can_buy_back(engine: "DecisionEngine") -> bool:
    state = engine.state
    if not state.done["stoploss_exit"] or state.held_token is not None or state.re_entered:
        return False
    return _re_entry_candidate(engine, state.exited_kind) is not None


async def do_buy_back(engine: "DecisionEngine") -> None:
    await _re_enter(engine, "buy_back")


# stoploss_exit
def can_stoploss_exit(engine: "DecisionEngine") -> bool:
    state = engine.state
    change = _change(engine)
    if change is None or _exited(engine) or state.done["rebuy"] or state.reached_half_target:
        return False
    return change <= engine.param("real_buy_stoploss")


async def do_stoploss_exit(engine: "DecisionEngine") -> None:
    await engine.sell("stoploss_exit", on_fill=bump_target(engine))


# target_exit
def can_target_exit(engine: "DecisionEngine") -> bool:
    state = engine.state
    change = _change(engine)
    if change is None or not state.target_net:
        return False
    target = state.params.target
    return change >= target or change <= target - 1


async def do_target_exit(engine: "DecisionEngine") -> None:
    state = engine.state
    logger.info("[DECISION] Target %.2f reached on %s", state.params.target, engine.held.symbol)
    await engine.sell("target_exit")
    state.restore_params()
    state.bought_sold = True


# final_stoploss
def can_final_stoploss(engine: "DecisionEngine") -> bool:
    change = _change(engine)
    if change is None:
        return False
    return change <= engine.state.params.stoploss


async def do_final_stoploss(engine: "DecisionEngine") -> None:
    state = engine.state
    logger.info("[DECISION] Final stoploss %.2f hit on %s", state.params.stoploss, engine.held.symbol)
    await engine.sell("final_stoploss")
    state.restore_params()
    state.bought_sold = True


# Shared actions
def bump_target(engine: "DecisionEngine", factor: float = 1.0) -> Callable[["TradeRecord", float], None]:
    """
    Sell fill handler that raises the working target by the realised loss.

    The bump is applied from the fill price. rebuy_exit passes factor=2: the
    loss is per unit and that exit sells the doubled rebuy quantity.
    """
    cycle = engine.cycle

    def apply(trade: "TradeRecord", price: float) -> None:
        if engine.cycle != cycle or trade.entry_price is None:
            return
        bump = abs(price - trade.entry_price) * factor
        engine.state.params.target += bump
        logger.info("[DECISION] Target raised by %.2f to %.2f", bump, engine.state.params.target)

    return apply


async def _re_enter(engine: "DecisionEngine", rule: str) -> None:
    state = engine.state
    candidate = _re_entry_candidate(engine, state.exited_kind)
    if candidate is None:
        logger.warning("[DECISION] %s: no %s below ceiling to re-enter", rule,
                       state.exited_kind.opposite().value if state.exited_kind else "instrument")
        return
    state.re_entered = True
    logger.info("[DECISION] Re-entering on %s at %.2f", candidate.symbol, candidate.last)
    await engine.buy(candidate, state.params.quantity, rule)


def build_rule_table() -> dict[str, Rule]:
    rules = [
        Rule("initial_buy", can_initial_buy, do_initial_buy, "initial_buy",
             "First buy after the reference is captured"),
        Rule("rebuy", can_rebuy, do_rebuy, "rebuy",
             "Average down on strength: buy again, halve target and stoploss, double quantity"),
        Rule("rebuy_exit", can_rebuy_exit, do_rebuy_exit, "rebuy_exit",
             "Averaged position back to buy price: exit, restore sizing, re-enter opposite"),
        Rule("breakeven_exit", can_breakeven_exit, do_breakeven_exit, "breakeven_exit",
             "Half target seen then back to buy price: exit and re-enter opposite"),
        Rule("buy_back", can_buy_back, do_buy_back, "buy_back",
             "After a stoploss exit, buy the opposite leg below the ceiling"),
        Rule("stoploss_exit", can_stoploss_exit, do_stoploss_exit, "stoploss_exit",
             "Exit at real_buy_stoploss and raise the target by the loss"),
        Rule("target_exit", can_target_exit, do_target_exit, "target_exit",
             "Arm-then-fire profit target; ends the cycle"),
        Rule("final_stoploss", can_final_stoploss, do_final_stoploss, "final_stoploss",
             "Hard stoploss; ends the cycle"),
    ]
    return {rule.name: rule for rule in rules}
