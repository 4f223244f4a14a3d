from __future__ import annotations

import math
from collections.abc import Callable, Hashable, Sequence
from typing import Any

from tradewatch.storage.models import Outcome, Signal, SignalStatus, TradeState


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(converted) or math.isinf(converted):
        return default
    return converted


def _mean(values: Sequence[float]) -> float:
    return (sum(values) / len(values)) if values else 0.0


def _is_target(outcome: Outcome) -> bool:
    return outcome in {Outcome.TARGET_1_HIT, Outcome.TARGET_2_HIT, Outcome.TARGET_3_HIT}


def compute_signal_stats(signals: Sequence[Signal]) -> dict[str, Any]:
    counts = {status: 0 for status in SignalStatus}
    for signal in signals:
        counts[signal.signal_status] += 1
    won = counts[SignalStatus.WON]
    lost = counts[SignalStatus.LOST]
    breakeven = counts[SignalStatus.BREAKEVEN]
    decided = won + lost + breakeven
    return {
        "total": len(signals),
        "pending": counts[SignalStatus.PENDING],
        "active": counts[SignalStatus.ACTIVE],
        "won": won,
        "lost": lost,
        "breakeven": breakeven,
        "expired": counts[SignalStatus.EXPIRED],
        "win_rate": (won / decided * 100.0) if decided else 0.0,
        "profit_factor": (won / lost) if lost else float(won),
    }


def compute_post_trade_analytics(signals: Sequence[Signal]) -> dict[str, Any]:
    closed = [
        signal
        for signal in signals
        if signal.trade_state == TradeState.CLOSED and signal.final_r_multiple is not None
    ]
    r_values = [_as_float(signal.final_r_multiple) for signal in closed]
    winners = [r for r in r_values if r > 0]
    losers = [r for r in r_values if r < 0]
    win_ratio = (len(winners) / len(closed)) if closed else 0.0
    avg_win_r = _mean(winners)
    avg_loss_r = abs(_mean(losers))
    return {
        "total_trades": len(closed),
        "avg_mae": _mean([abs(_as_float(signal.max_adverse_excursion)) for signal in closed]),
        "avg_mfe": _mean([_as_float(signal.max_favorable_excursion) for signal in closed]),
        "avg_r_multiple": _mean(r_values),
        "avg_win_r": avg_win_r,
        "avg_loss_r": avg_loss_r,
        "win_rate": win_ratio * 100.0,
        "expectancy": (win_ratio * avg_win_r) - ((1.0 - win_ratio) * avg_loss_r),
        "total_r": sum(r_values),
    }


def _breakdown(signals: Sequence[Signal], key: Callable[[Signal], Hashable | None]) -> dict[str, dict[str, Any]]:
    buckets: dict[str, dict[str, Any]] = {}
    for signal in signals:
        bucket_key = key(signal)
        if bucket_key is None or signal.outcome == Outcome.PENDING:
            continue
        bucket = buckets.setdefault(str(bucket_key), {"wins": 0, "total": 0, "win_rate": 0.0})
        bucket["total"] += 1
        if _is_target(signal.outcome):
            bucket["wins"] += 1
    for bucket in buckets.values():
        bucket["win_rate"] = (bucket["wins"] / bucket["total"] * 100.0) if bucket["total"] else 0.0
    return dict(sorted(buckets.items()))


def win_rate_by_symbol(signals: Sequence[Signal]) -> dict[str, dict[str, Any]]:
    return _breakdown(signals, lambda signal: signal.symbol)


def win_rate_by_confluence(signals: Sequence[Signal]) -> dict[str, dict[str, Any]]:
    return _breakdown(signals, lambda signal: signal.confluence_score)


def win_rate_by_kill_zone(signals: Sequence[Signal]) -> dict[str, dict[str, Any]]:
    return _breakdown(signals, lambda signal: signal.metadata.get("kill_zone"))
