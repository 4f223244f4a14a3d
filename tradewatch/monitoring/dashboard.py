from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tradewatch.data.ticks import PriceTick
from tradewatch.storage.models import BotConfig


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def build_dashboard_payload(
    *,
    bot: BotConfig,
    stats: dict[str, Any],
    analytics: dict[str, Any],
    last_pass: dict[str, Any] | None,
    prices: dict[str, PriceTick],
) -> dict[str, Any]:
    return {
        "bot": _jsonable(asdict(bot)),
        "signal_stats": stats,
        "post_trade_analytics": analytics,
        "last_pass": last_pass or {},
        "prices": {symbol: tick.as_dict() for symbol, tick in sorted(prices.items())},
    }


class DashboardWriter:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def write(self, payload: dict[str, Any]) -> None:
        snapshot = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, indent=2, ensure_ascii=True), encoding="utf-8")
        tmp_path.replace(self.path)
