"""Market tick model."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # Epoch millis from the feed, seconds otherwise
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class Tick:
    """Single price observation for one instrument."""
    token: str
    symbol: str
    price: float
    timestamp: Optional[datetime] = None

    @classmethod
    def from_raw(cls, raw: "dict | Tick") -> "Tick":
        """Normalize a feed record (snake or camel case keys)."""
        if isinstance(raw, Tick):
            return raw
        token = raw.get("instrument_token", raw.get("instrumentToken", raw.get("token")))
        if token is None:
            raise ValueError(f"Tick without instrument token: {raw!r}")
        price = raw.get("last_price", raw.get("lastPrice", raw.get("price")))
        if price is None:
            raise ValueError(f"Tick without last price: {raw!r}")
        token = str(token)
        return cls(
            token=token,
            symbol=str(raw.get("symbol") or f"TOKEN_{token}"),
            price=float(price),
            timestamp=_parse_ts(raw.get("timestamp")),
        )
