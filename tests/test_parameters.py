"""Tests for the parameter store."""

import pytest

from core.parameters import (
    DEFAULT_RULE_ORDER,
    RULE_NAMES,
    ParameterStore,
    ParameterValidationError,
    Scope,
    parse_rule_order,
)


def test_defaults_match_catalog():
    store = ParameterStore()
    catalog = store.catalog()
    assert set(catalog) == {"strategy", "global"}
    for scope, entries in catalog.items():
        for entry in entries:
            assert set(entry) == {"name", "type", "default", "min", "max", "description"}
            assert store.get(entry["name"], scope) == entry["default"]


def test_catalog_single_scope():
    catalog = ParameterStore().catalog("crossCutting")
    assert list(catalog) == ["global"]
    names = [e["name"] for e in catalog["global"]]
    assert "target" in names and "strike_base" not in names


def test_update_applies_valid_value():
    store = ParameterStore()
    assert store.update("target", 15) is True
    assert store.get("target") == 15.0
    assert isinstance(store.get("target"), float)


@pytest.mark.parametrize("name,value", [
    ("target", "15"),          # strings are not coerced
    ("target", True),          # bool is not a number
    ("target", 0.1),           # below min
    ("stoploss", 5),           # above max 0
    ("quantity", 1.5),         # not integral
    ("quantity", 0),           # below min
    ("enable_trading", 1),     # not a bool
    ("rule_order", 3),         # not a string
    ("rule_order", "target_exit,initial_buy"),  # incomplete order
    ("drop_threshold", float("nan")),
    ("no_such_param", 1),
])
def test_update_rejects_and_leaves_store_unchanged(name, value):
    store = ParameterStore()
    before = store.snapshot()
    assert store.update(name, value) is False
    assert store.snapshot() == before


def test_integral_float_accepted_for_integer():
    store = ParameterStore()
    assert store.update("quantity", 150.0) is True
    assert store.get("quantity") == 150
    assert isinstance(store.get("quantity"), int)


def test_scoped_update_rejects_wrong_namespace():
    store = ParameterStore()
    assert store.update("target", 20, Scope.STRATEGY) is False
    assert store.update("target", 20, "global") is True
    assert store.update("buy_same", True, "perStrategy") is True
    assert store.get("buy_same") is True


def test_unknown_scope_is_rejected():
    store = ParameterStore()
    assert store.update("target", 20, "account") is False


def test_change_callback_receives_old_and_new():
    store = ParameterStore()
    seen = []
    store.on_change(lambda scope, name, old, new: seen.append((scope, name, old, new)))
    store.update("rebuy_at", 9)
    store.update("rebuy_at", -1)  # rejected, no callback
    assert seen == [(Scope.GLOBAL, "rebuy_at", 7.0, 9.0)]


def test_failing_callback_does_not_block_update():
    store = ParameterStore()

    def boom(*_):
        raise RuntimeError("listener down")

    store.on_change(boom)
    assert store.update("target", 20) is True
    assert store.get("target") == 20.0


def test_rule_order_roundtrip():
    reordered = ",".join(reversed(RULE_NAMES))
    store = ParameterStore()
    assert store.update("rule_order", reordered) is True
    assert store.rule_order() == list(reversed(RULE_NAMES))
    assert parse_rule_order(DEFAULT_RULE_ORDER) == list(RULE_NAMES)


def test_parse_rule_order_rejects_duplicates():
    with pytest.raises(ParameterValidationError):
        parse_rule_order(DEFAULT_RULE_ORDER + ",target_exit")


def test_get_unknown_raises_key_error():
    with pytest.raises(KeyError):
        ParameterStore().get("missing")
