"""
Parameter store - typed, validated, live-updatable strategy settings.

Two namespaces:
- strategy: per-strategy knobs (selection band, re-entry behaviour, rule order)
- global:   cross-cutting trading thresholds (target, stoplosses, quantity, trading switch)

Updates are validated for type and bounds before anything is applied; a
rejected update leaves the store exactly as it was.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from core.logging_utils import get_logger

logger = get_logger(__name__)


class Scope(str, Enum):
    STRATEGY = "strategy"
    GLOBAL = "global"

    @classmethod
    def parse(cls, value: "Scope | str") -> "Scope":
        if isinstance(value, Scope):
            return value
        aliases = {
            "strategy": cls.STRATEGY,
            "perstrategy": cls.STRATEGY,
            "per_strategy": cls.STRATEGY,
            "universal": cls.STRATEGY,
            "global": cls.GLOBAL,
            "crosscutting": cls.GLOBAL,
            "cross_cutting": cls.GLOBAL,
        }
        key = str(value).strip().lower().replace("-", "_")
        if key not in aliases and key.replace("_", "") in aliases:
            key = key.replace("_", "")
        if key not in aliases:
            raise ParameterValidationError(f"Unknown scope: {value}")
        return aliases[key]


class ParamType(str, Enum):
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    STRING = "string"


class ParameterValidationError(ValueError):
    """Rejected parameter update."""


# Decision rules in default priority order: specific re-entry rules ahead of
# the generic target / stoploss exits.
RULE_NAMES = (
    "initial_buy",
    "rebuy",
    "rebuy_exit",
    "breakeven_exit",
    "buy_back",
    "stoploss_exit",
    "target_exit",
    "final_stoploss",
)
DEFAULT_RULE_ORDER = ",".join(RULE_NAMES)


def parse_rule_order(value: str) -> list[str]:
    names = [part.strip() for part in str(value).split(",") if part.strip()]
    unknown = [n for n in names if n not in RULE_NAMES]
    if unknown:
        raise ParameterValidationError(f"Unknown rules: {', '.join(unknown)}")
    if len(set(names)) != len(names):
        raise ParameterValidationError("Duplicate rule in order")
    if set(names) != set(RULE_NAMES):
        missing = sorted(set(RULE_NAMES) - set(names))
        raise ParameterValidationError(f"Rule order missing: {', '.join(missing)}")
    return names


@dataclass(frozen=True)
class ParameterSpec:
    """Declared parameter: type, default, optional bounds and a description."""
    name: str
    type: ParamType
    default: Any
    min: Optional[float] = None
    max: Optional[float] = None
    description: str = ""
    validator: Optional[Callable[[Any], Any]] = None

    def coerce(self, value: Any) -> Any:
        """Return the value in this parameter's type or raise."""
        if self.type is ParamType.BOOLEAN:
            if isinstance(value, bool):
                return value
            raise ParameterValidationError(f"{self.name} expects boolean, got {value!r}")

        if self.type is ParamType.STRING:
            if isinstance(value, str):
                return value
            raise ParameterValidationError(f"{self.name} expects string, got {value!r}")

        # bool is an int subclass; never let True/False through as numbers
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ParameterValidationError(f"{self.name} expects {self.type.value}, got {value!r}")
        if value != value or value in (float("inf"), float("-inf")):
            raise ParameterValidationError(f"{self.name} must be finite")

        if self.type is ParamType.INTEGER:
            if isinstance(value, float):
                if not value.is_integer():
                    raise ParameterValidationError(f"{self.name} expects integer, got {value!r}")
                value = int(value)
            return value
        return float(value) if isinstance(value, int) else value

    def validate(self, value: Any) -> Any:
        coerced = self.coerce(value)
        if self.min is not None and coerced < self.min:
            raise ParameterValidationError(f"{self.name}={coerced} below min {self.min}")
        if self.max is not None and coerced > self.max:
            raise ParameterValidationError(f"{self.name}={coerced} above max {self.max}")
        if self.validator is not None:
            self.validator(coerced)
        return coerced

    def to_catalog(self) -> dict:
        return {
            "name": self.name,
            "type": self.type.value,
            "default": self.default,
            "min": self.min,
            "max": self.max,
            "description": self.description,
        }


N, I, B, S = ParamType.NUMBER, ParamType.INTEGER, ParamType.BOOLEAN, ParamType.STRING

STRATEGY_PARAMS = [
    ParameterSpec("strike_base", N, 20.0, min=0, description="Lower edge of the selection price band"),
    ParameterSpec("strike_diff", N, 90.0, min=0, description="Width of the selection price band"),
    ParameterSpec("strike_lowest", N, 0.0, min=0, description="Floor the band may widen down to"),
    ParameterSpec("strike_step", N, 5.0, min=0.05, max=100, description="Band widening step"),
    ParameterSpec("max_widen_steps", I, 10, min=0, max=100, description="Widening attempts per batch"),
    ParameterSpec("target_price", N, 100.0, min=0, description="Tie-break: prefer prices closest to this"),
    ParameterSpec("buy_back_ceiling", N, 205.0, min=0, description="Re-entry buys the opposite leg nearest below this"),
    ParameterSpec("use_prebuy", B, True, description="Wait for a leg to fall by prebuy_stoploss before the first buy"),
    ParameterSpec("buy_same", B, False, description="Buy the falling leg instead of its opposite"),
    ParameterSpec("rule_order", S, DEFAULT_RULE_ORDER, description="Decision rule priority, comma separated",
                  validator=parse_rule_order),
]

GLOBAL_PARAMS = [
    ParameterSpec("target", N, 12.0, min=0.5, max=1000, description="Profit target in price points"),
    ParameterSpec("target_epsilon", N, 0.5, min=0, max=5, description="Target arms at target minus this"),
    ParameterSpec("stoploss", N, -50.0, min=-1000, max=0, description="Final stoploss; ends the cycle"),
    ParameterSpec("real_buy_stoploss", N, -10.0, min=-1000, max=0,
                  description="Stoploss that exits and buys back the opposite leg"),
    ParameterSpec("prebuy_stoploss", N, -15.0, min=-1000, max=0, description="Leg drop that triggers the first buy"),
    ParameterSpec("drop_threshold", N, 0.25, min=0, max=1, description="Fractional fall from first price that unlocks decisions"),
    ParameterSpec("rebuy_at", N, 7.0, min=0, max=1000, description="Gain from buy that triggers the averaging rebuy"),
    ParameterSpec("half_target_threshold", N, 5.0, min=0, max=1000,
                  description="Gain after which a fall back to buy price exits at breakeven"),
    ParameterSpec("quantity", I, 75, min=1, max=100000, description="Order quantity"),
    ParameterSpec("enable_trading", B, False, description="Send real orders; paper fills when off"),
    ParameterSpec("skip_after_cycles", I, 0, min=0, max=10000, description="Disable trading after this many cycles (0 = never)"),
    ParameterSpec("peak_fall_margin", N, 5.0, min=0, description="Retreat from peak that sets the peak-and-fall flag"),
    ParameterSpec("rise_margin", N, 3.0, min=0, description="Rise from first price that sets the plus3 flag"),
]

del N, I, B, S


class ParameterStore:
    """
    Holds the current values of both namespaces.

    Reads are synchronous and always reflect the last accepted update.
    """

    def __init__(
        self,
        strategy_params: Optional[list[ParameterSpec]] = None,
        global_params: Optional[list[ParameterSpec]] = None,
    ):
        self._specs: dict[Scope, dict[str, ParameterSpec]] = {
            Scope.STRATEGY: {p.name: p for p in (strategy_params or STRATEGY_PARAMS)},
            Scope.GLOBAL: {p.name: p for p in (global_params or GLOBAL_PARAMS)},
        }
        self._values: dict[Scope, dict[str, Any]] = {}
        self._callbacks: list[Callable[[Scope, str, Any, Any], None]] = []
        self.reset_to_defaults()

    def reset_to_defaults(self) -> None:
        self._values = {
            scope: {name: spec.default for name, spec in specs.items()}
            for scope, specs in self._specs.items()
        }

    def on_change(self, callback: Callable[[Scope, str, Any, Any], None]) -> None:
        self._callbacks.append(callback)

    def _resolve(self, name: str, scope: "Scope | str | None") -> tuple[Scope, ParameterSpec]:
        if scope is not None:
            resolved = Scope.parse(scope)
            spec = self._specs[resolved].get(name)
            if spec is None:
                raise ParameterValidationError(f"Unknown parameter: {resolved.value}.{name}")
            return resolved, spec
        for candidate in (Scope.STRATEGY, Scope.GLOBAL):
            if name in self._specs[candidate]:
                return candidate, self._specs[candidate][name]
        raise ParameterValidationError(f"Unknown parameter: {name}")

    def get(self, name: str, scope: "Scope | str | None" = None) -> Any:
        try:
            resolved, _ = self._resolve(name, scope)
        except ParameterValidationError as e:
            raise KeyError(name) from e
        return self._values[resolved][name]

    def update(self, name: str, value: Any, scope: "Scope | str | None" = None, source: str = "control") -> bool:
        """
        Validate and apply a single update.

        Returns True when applied, False (store untouched) otherwise.
        """
        try:
            resolved, spec = self._resolve(name, scope)
            coerced = spec.validate(value)
        except ParameterValidationError as e:
            logger.warning("[PARAMS] Rejected %s=%r: %s", name, value, e)
            return False

        old_value = self._values[resolved][name]
        self._values[resolved][name] = coerced
        logger.info("[PARAMS] Updated %s.%s: %s -> %s (by %s)", resolved.value, name, old_value, coerced, source)

        for cb in list(self._callbacks):
            try:
                cb(resolved, name, old_value, coerced)
            except Exception as e:
                logger.warning("[PARAMS] Callback error: %s", e)
        return True

    def catalog(self, scope: "Scope | str | None" = None) -> dict[str, list[dict]]:
        """Describe declared parameters per namespace for external tooling."""
        scopes = [Scope.parse(scope)] if scope is not None else list(self._specs)
        return {s.value: [spec.to_catalog() for spec in self._specs[s].values()] for s in scopes}

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {scope.value: dict(values) for scope, values in self._values.items()}

    def rule_order(self) -> list[str]:
        return parse_rule_order(self.get("rule_order", Scope.STRATEGY))
