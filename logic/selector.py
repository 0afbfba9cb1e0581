"""
Token selector - picks the CE/PE pair to trade from a tick batch.

The batch is split by instrument kind and filtered to a price band. When a
kind has no candidate the band widens by a fixed step on both sides (the
lower edge never below the configured floor) until both kinds qualify or
max_steps widenings are used up.
"""

from dataclasses import dataclass
from typing import Iterable

from core.logging_utils import get_logger
from core.models import InstrumentKind, Tick

logger = get_logger(__name__)


@dataclass(frozen=True)
class Band:
    lower: float
    upper: float

    def contains(self, price: float) -> bool:
        return self.lower <= price <= self.upper

    def __str__(self) -> str:
        return f"[{self.lower:g}, {self.upper:g}]"


@dataclass
class Selection:
    """Successful pick: one instrument per kind."""
    main: Tick
    opposite: Tick
    band: Band
    widenings: int = 0

    def __bool__(self) -> bool:
        return True

    @property
    def tokens(self) -> tuple[str, str]:
        return self.main.token, self.opposite.token


@dataclass
class SelectionInsufficient:
    """Not enough qualifying instruments in this batch; retry on the next one."""
    reason: str
    band: Band
    widenings: int = 0

    def __bool__(self) -> bool:
        return False


def _closest(ticks: list[Tick], target_price: float) -> Tick:
    return min(ticks, key=lambda t: (abs(t.price - target_price), t.price, t.token))


class TokenSelector:
    """Stateless band selector; parameters come from the store per call."""

    def __init__(self, kinds: tuple[InstrumentKind, InstrumentKind] = (InstrumentKind.CE, InstrumentKind.PE)):
        self.main_kind, self.opposite_kind = kinds

    def select(
        self,
        ticks: Iterable[Tick],
        base: float,
        diff: float,
        floor: float = 0.0,
        step: float = 5.0,
        target_price: float = 100.0,
        max_steps: int = 10,
    ) -> "Selection | SelectionInsufficient":
        # Last tick per token wins; order within the batch is preserved
        latest: dict[str, Tick] = {}
        for tick in ticks:
            latest[tick.token] = tick

        by_kind: dict[InstrumentKind, list[Tick]] = {self.main_kind: [], self.opposite_kind: []}
        for tick in latest.values():
            kind = InstrumentKind.from_symbol(tick.symbol)
            if kind in by_kind:
                by_kind[kind].append(tick)

        band = Band(max(floor, base), base + diff)
        if not latest:
            return SelectionInsufficient("empty batch", band)

        widenings = 0
        while True:
            main = [t for t in by_kind[self.main_kind] if band.contains(t.price)]
            opposite = [t for t in by_kind[self.opposite_kind] if band.contains(t.price)]
            if main and opposite:
                picked = Selection(
                    main=_closest(main, target_price),
                    opposite=_closest(opposite, target_price),
                    band=band,
                    widenings=widenings,
                )
                logger.info(
                    "[SELECT] %s=%s @ %.2f, %s=%s @ %.2f in %s after %d widenings",
                    self.main_kind.value, picked.main.symbol, picked.main.price,
                    self.opposite_kind.value, picked.opposite.symbol, picked.opposite.price,
                    band, widenings,
                )
                return picked

            if widenings >= max_steps or step <= 0:
                missing = [k.value for k, found in ((self.main_kind, main), (self.opposite_kind, opposite)) if not found]
                logger.info("[SELECT] Insufficient: no %s in %s", "/".join(missing), band)
                return SelectionInsufficient(f"no {'/'.join(missing)} within {band}", band, widenings)

            band = Band(max(floor, band.lower - step), band.upper + step)
            widenings += 1


def select_from_store(selector: TokenSelector, ticks: Iterable[Tick], store) -> "Selection | SelectionInsufficient":
    """Run the selector with the current strategy parameters."""
    return selector.select(
        ticks,
        base=store.get("strike_base"),
        diff=store.get("strike_diff"),
        floor=store.get("strike_lowest"),
        step=store.get("strike_step"),
        target_price=store.get("target_price"),
        max_steps=store.get("max_widen_steps"),
    )
