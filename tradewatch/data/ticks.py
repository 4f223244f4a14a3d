from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class PriceTick:
    symbol: str
    price: float
    high: float
    low: float
    change: float
    change_percent: float
    timestamp: datetime
    is_delayed: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "high": self.high,
            "low": self.low,
            "change": self.change,
            "change_percent": self.change_percent,
            "timestamp": self.timestamp.isoformat(),
            "is_delayed": self.is_delayed,
        }
