"""Tests for the replay CLI."""

import json

import pytest

import run
from core.config import Settings


def _write_ticks(path, lines):
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n")
    return path


def _raw(token, symbol, price):
    return {"instrument_token": token, "symbol": symbol, "last_price": price}


def test_parse_overrides_reads_json_values():
    overrides = run.parse_overrides(["target=15", "use_prebuy=false", "rule_order=a,b"])
    assert overrides == {"target": 15, "use_prebuy": False, "rule_order": "a,b"}


def test_parse_overrides_requires_equals():
    with pytest.raises(ValueError):
        run.parse_overrides(["target"])


def test_catalog_prints_both_scopes(capsys):
    assert run.main(["--catalog"]) == 0
    catalog = json.loads(capsys.readouterr().out)
    assert set(catalog) == {"strategy", "global"}
    assert any(p["name"] == "target" for p in catalog["global"])


def test_replay_runs_full_cycle(tmp_path, capsys):
    ticks = _write_ticks(tmp_path / "ticks.jsonl", [
        [_raw(1, "NIFTY24000CE", 95.0), _raw(2, "NIFTY23500PE", 113.0)],
        {"control": {"scope": "global", "name": "target", "value": 10}},
        [_raw(1, "NIFTY24000CE", 70.0), _raw(2, "NIFTY23500PE", 113.0)],
        [_raw(1, "NIFTY24000CE", 70.0), _raw(2, "NIFTY23500PE", 123.5)],
    ])

    code = run.main([str(ticks), "--set", "use_prebuy=false", "--set", "rebuy_at=50"])

    assert code == 0
    status = json.loads(capsys.readouterr().out)
    assert status["completed_cycles"] == 1
    assert status["trades"] == 2
    assert status["total_pnl"] == pytest.approx(10.5 * 75)
    assert status["block"] == "INIT"


def test_invalid_override_exits_with_error(tmp_path, capsys):
    ticks = _write_ticks(tmp_path / "ticks.jsonl", [[_raw(1, "NIFTY24000CE", 95.0)]])
    assert run.main([str(ticks), "--set", "quantity=0"]) == 2
    assert "Invalid parameter" in capsys.readouterr().err


def test_live_mode_without_credentials_refuses_to_start(tmp_path, capsys, monkeypatch):
    monkeypatch.setattr(run, "settings", Settings(TRADING_MODE="paper", BROKER_API_KEY="", BROKER_ACCESS_TOKEN=""))
    ticks = _write_ticks(tmp_path / "ticks.jsonl", [[_raw(1, "NIFTY24000CE", 95.0)]])

    assert run.main([str(ticks), "--mode", "live"]) == 2
    assert "Configuration error" in capsys.readouterr().err


class RecordingBrokerClient:
    """Broker stand-in: every order completes at the price it was sent for."""

    instances = []

    def __init__(self):
        self.placed = []
        RecordingBrokerClient.instances.append(self)

    def place_order(self, variety, exchange, tradingsymbol, transaction_type, quantity, product, order_type, **kwargs):
        self.placed.append((tradingsymbol, transaction_type))
        return f"OID{len(self.placed)}"

    def order_history(self, order_id):
        # Empty history never reaches a terminal state; the gateway falls back to the reference price
        return []


def build_client(config):
    return RecordingBrokerClient()


def test_live_mode_with_credentials_routes_orders_to_broker(tmp_path, capsys, monkeypatch):
    RecordingBrokerClient.instances.clear()
    monkeypatch.setattr(run, "settings", Settings(
        TRADING_MODE="paper",
        BROKER_API_KEY="key",
        BROKER_ACCESS_TOKEN="token",
        BROKER_CLIENT_FACTORY=f"{__name__}:build_client",
        FILL_POLL_ATTEMPTS=1,
        FILL_POLL_BASE_DELAY=0.0,
    ))
    ticks = _write_ticks(tmp_path / "ticks.jsonl", [
        [_raw(1, "NIFTY24000CE", 95.0), _raw(2, "NIFTY23500PE", 113.0)],
        [_raw(1, "NIFTY24000CE", 70.0), _raw(2, "NIFTY23500PE", 113.0)],
        [_raw(1, "NIFTY24000CE", 70.0), _raw(2, "NIFTY23500PE", 123.5)],
    ])

    code = run.main([
        str(ticks), "--mode", "live",
        "--set", "enable_trading=true", "--set", "use_prebuy=false",
        "--set", "rebuy_at=50", "--set", "target=10",
    ])

    assert code == 0
    status = json.loads(capsys.readouterr().out)
    assert status["live"] is True
    assert status["trades"] == 2
    assert status["completed_cycles"] == 1
    [client] = RecordingBrokerClient.instances
    assert client.placed == [("NIFTY23500PE", "BUY"), ("NIFTY23500PE", "SELL")]
