from __future__ import annotations

from tradewatch.storage.models import Direction, SignalLevels

PROGRESS_DECIMALS = 9
R_DECIMALS = 4


class InvalidSignalError(ValueError):
    """Signal levels are inconsistent with the signal direction."""


def validate_levels(direction: Direction, levels: SignalLevels) -> None:
    prices = [levels.entry_price, levels.stop_loss, levels.take_profit_1]
    prices.extend(p for p in (levels.take_profit_2, levels.take_profit_3) if p is not None)
    if any(price <= 0 for price in prices):
        raise InvalidSignalError("all price levels must be > 0")
    if levels.take_profit_2 is None and levels.take_profit_3 is not None:
        raise InvalidSignalError("take_profit_3 requires take_profit_2")

    ladder = [levels.stop_loss, levels.entry_price, levels.take_profit_1]
    if levels.take_profit_2 is not None:
        ladder.append(levels.take_profit_2)
    if levels.take_profit_3 is not None:
        ladder.append(levels.take_profit_3)
    if direction == Direction.SHORT:
        ladder = [-price for price in ladder]
    for lower, upper in zip(ladder, ladder[1:]):
        if not lower < upper:
            side = "stop < entry < TP1 < TP2 < TP3" if direction == Direction.LONG else "stop > entry > TP1 > TP2 > TP3"
            raise InvalidSignalError(f"{direction.value} signal levels must satisfy {side}")


def price_move(direction: Direction, entry_price: float, price: float) -> float:
    if direction == Direction.LONG:
        return price - entry_price
    return entry_price - price


def progress_to_target(direction: Direction, levels: SignalLevels, price: float) -> float:
    distance = levels.target_distance
    if distance <= 0:
        return 0.0
    return round(price_move(direction, levels.entry_price, price) / distance, PROGRESS_DECIMALS)


def r_multiple(direction: Direction, levels: SignalLevels, price: float) -> float:
    risk = levels.risk_distance
    if risk <= 0:
        return 0.0
    return round(price_move(direction, levels.entry_price, price) / risk, R_DECIMALS)


def entry_reached(direction: Direction, entry_price: float, price: float) -> bool:
    if direction == Direction.LONG:
        return price <= entry_price
    return price >= entry_price


def target_reached(direction: Direction, price: float, target: float) -> bool:
    if direction == Direction.LONG:
        return price >= target
    return price <= target


def stop_crossed(direction: Direction, price: float, stop: float) -> bool:
    if direction == Direction.LONG:
        return price <= stop
    return price >= stop


def is_tighter(direction: Direction, candidate: float, current: float | None) -> bool:
    if current is None:
        return True
    if direction == Direction.LONG:
        return candidate > current
    return candidate < current


def offset_toward_target(direction: Direction, price: float, distance: float) -> float:
    if direction == Direction.LONG:
        return price + distance
    return price - distance
