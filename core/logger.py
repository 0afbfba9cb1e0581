"""JSON lines journal for trade and cycle records.

Records are grouped into a few families to keep the file count low:
- trades: trades, orders, fills
- cycles: cycle summaries
- engine: block transitions, batch errors, parameter changes

Critical records (trades, orders, cycles) use fsync so they survive a crash
immediately after the write. Journal failures are logged, never raised, so
they cannot break the tick path.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from core.config import settings
from core.logging_utils import get_logger

logger = get_logger(__name__)

LAYER_FAMILY_MAP = {
    "trades": "trades",
    "orders": "trades",
    "fills": "trades",
    "cycles": "cycles",
    "blocks": "engine",
    "errors": "engine",
    "params": "engine",
}

_logs_dir: Path | None = None


def get_logs_dir() -> Path:
    return _logs_dir if _logs_dir is not None else Path(settings.logs_dir)


def set_logs_dir(path: Path | str | None) -> None:
    """Redirect the journal (tests point this at a tmp dir)."""
    global _logs_dir
    _logs_dir = Path(path) if path is not None else None


def utc_date_str(ts: datetime = None) -> str:
    """Return YYYY-MM-DD in UTC."""
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.strftime("%Y-%m-%d")


def log_path(layer: str, ts: datetime = None) -> Path:
    """Return path for {logs}/{family}_{date}.jsonl."""
    family = LAYER_FAMILY_MAP.get(layer, layer)
    return get_logs_dir() / f"{family}_{utc_date_str(ts)}.jsonl"


def append_jsonl(path: Path, record: dict, critical: bool = False) -> bool:
    """
    Append a JSON record as a single line.

    Args:
        path: Target log file path
        record: Dictionary to log as JSON
        critical: If True, fsync after the write (slower but crash-safe)

    Returns:
        True if the record was written.
    """
    if not settings.journal_enabled:
        return False

    line = json.dumps(record, separators=(",", ":"), default=str) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if critical:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            try:
                os.write(fd, line.encode("utf-8"))
                os.fsync(fd)
            finally:
                os.close(fd)
        else:
            with open(path, "a") as f:
                f.write(line)
    except OSError as e:
        logger.warning("[JOURNAL] Failed to write %s: %s", path.name, e)
        return False
    return True


def log_trade(record: dict, ts: datetime = None) -> bool:
    """Log a trade action (critical - uses fsync)."""
    return append_jsonl(log_path("trades", ts), record, critical=True)


def log_order(record: dict, ts: datetime = None) -> bool:
    """Log order placement/response (critical - uses fsync)."""
    return append_jsonl(log_path("orders", ts), record, critical=True)


def log_fill(record: dict, ts: datetime = None) -> bool:
    """Log a resolved fill price."""
    return append_jsonl(log_path("fills", ts), record, critical=True)


def log_cycle(record: dict, ts: datetime = None) -> bool:
    """Log a completed cycle summary (critical - uses fsync)."""
    return append_jsonl(log_path("cycles", ts), record, critical=True)


def log_block(record: dict, ts: datetime = None) -> bool:
    """Log a block transition."""
    return append_jsonl(log_path("blocks", ts), record)


def log_batch_error(record: dict, ts: datetime = None) -> bool:
    """Log an abandoned batch."""
    return append_jsonl(log_path("errors", ts), record)


def log_param_change(record: dict, ts: datetime = None) -> bool:
    """Log an accepted or rejected parameter update."""
    return append_jsonl(log_path("params", ts), record)


def read_jsonl(path: Path) -> list[dict]:
    """Read back a journal file (used by the CLI summary and tests)."""
    if not path.exists():
        return []
    with open(path) as f:
        return [json.loads(line) for line in f if line.strip()]
