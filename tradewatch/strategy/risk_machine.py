from __future__ import annotations

import copy
from datetime import datetime

from tradewatch.clock import hours_between
from tradewatch.data.instruments import pip_size
from tradewatch.storage.models import Direction, Outcome, Signal, SignalEvent, SignalStatus, TradeState
from tradewatch.strategy.contracts import EventType, ManagementMode, ManagementPolicy, Transition
from tradewatch.strategy.levels import (
    R_DECIMALS,
    is_tighter,
    offset_toward_target,
    progress_to_target,
    r_multiple,
    stop_crossed,
    target_reached,
)
from tradewatch.strategy.outcome import advance_trade_state, close_signal, lifecycle_event

STOP_DECIMALS = 10


def _track_excursion(signal: Signal, price: float) -> None:
    excursion = signal.excursion
    excursion.current_price = price
    excursion.highest_price = max(excursion.highest_price, price)
    excursion.lowest_price = min(excursion.lowest_price, price)
    if signal.direction == Direction.LONG:
        adverse, favorable = excursion.lowest_price, excursion.highest_price
    else:
        adverse, favorable = excursion.highest_price, excursion.lowest_price
    excursion.max_adverse_excursion = min(0.0, r_multiple(signal.direction, signal.levels, adverse))
    excursion.max_favorable_excursion = max(0.0, r_multiple(signal.direction, signal.levels, favorable))


def _tighten_stop(signal: Signal, candidate: float) -> tuple[float | None, bool]:
    protection = signal.protection
    previous = protection.trailing_stop
    candidate = round(candidate, STOP_DECIMALS)
    if not is_tighter(signal.direction, candidate, previous):
        return previous, False
    protection.trailing_stop = candidate
    return previous, True


def _book_partial(signal: Signal, *, leg: int, level: float, pct: float) -> float:
    partials = signal.partials
    closed_pct = max(0.0, min(pct, partials.remaining_position_pct))
    pnl = round(closed_pct / 100.0 * r_multiple(signal.direction, signal.levels, level), R_DECIMALS)
    if leg == 1:
        partials.tp1_closed = True
        partials.tp1_pnl = pnl
    else:
        partials.tp2_closed = True
        partials.tp2_pnl = pnl
    partials.remaining_position_pct = round(partials.remaining_position_pct - closed_pct, 6)
    return pnl


def _scale_out_targets(
    signal: Signal,
    price: float,
    now: datetime,
    policy: ManagementPolicy,
    events: list[SignalEvent],
) -> None:
    levels = signal.levels
    partials = signal.partials
    direction = signal.direction

    if not partials.tp1_closed and target_reached(direction, price, levels.take_profit_1):
        pnl = _book_partial(signal, leg=1, level=levels.take_profit_1, pct=policy.tp1_close_pct)
        lock = offset_toward_target(direction, levels.entry_price, policy.profit_lock_pips * pip_size(signal.symbol))
        if target_reached(direction, lock, levels.take_profit_1):
            lock = levels.entry_price
        stop_before, _ = _tighten_stop(signal, lock)
        advance_trade_state(signal, TradeState.PHASE2)
        events.append(
            lifecycle_event(
                signal,
                EventType.TP1_PARTIAL,
                now,
                price=levels.take_profit_1,
                stop_before=stop_before,
                stop_after=signal.trailing_stop,
                r=pnl,
                close_pct=policy.tp1_close_pct,
                remaining_pct=partials.remaining_position_pct,
            )
        )

    tp2 = levels.take_profit_2
    if partials.tp1_closed and not partials.tp2_closed and tp2 is not None and target_reached(direction, price, tp2):
        pnl = _book_partial(signal, leg=2, level=tp2, pct=policy.tp2_close_pct)
        stop_before, _ = _tighten_stop(signal, levels.take_profit_1)
        advance_trade_state(signal, TradeState.PHASE3)
        events.append(
            lifecycle_event(
                signal,
                EventType.TP2_PARTIAL,
                now,
                price=tp2,
                stop_before=stop_before,
                stop_after=signal.trailing_stop,
                r=pnl,
                close_pct=policy.tp2_close_pct,
                remaining_pct=partials.remaining_position_pct,
            )
        )

    tp3 = levels.take_profit_3
    if partials.tp2_closed and tp3 is not None and target_reached(direction, price, tp3):
        events.append(
            close_signal(
                signal,
                now=now,
                status=SignalStatus.WON,
                outcome=Outcome.TARGET_3_HIT,
                exit_price=tp3,
                exit_reason="target_3",
            )
        )
        return

    if partials.tp1_closed and partials.remaining_position_pct <= 0:
        last_leg = Outcome.TARGET_2_HIT if partials.tp2_closed else Outcome.TARGET_1_HIT
        last_level = tp2 if partials.tp2_closed else levels.take_profit_1
        events.append(
            close_signal(
                signal,
                now=now,
                status=SignalStatus.WON,
                outcome=last_leg,
                exit_price=last_level,
                exit_reason="fully_scaled_out",
            )
        )


def _close_on_stop(signal: Signal, stop: float, now: datetime) -> SignalEvent:
    partials = signal.partials
    if partials.tp2_closed:
        status, outcome, reason = SignalStatus.WON, Outcome.TARGET_2_HIT, "runner_stop"
    elif partials.tp1_closed:
        status, outcome, reason = SignalStatus.WON, Outcome.TARGET_1_HIT, "runner_stop"
    elif signal.breakeven_triggered:
        reason = "trailing_stop" if stop != signal.levels.entry_price else "breakeven_stop"
        status, outcome = SignalStatus.BREAKEVEN, Outcome.BREAKEVEN
    else:
        status, outcome, reason = SignalStatus.LOST, Outcome.SL_HIT, "stop_loss"
    return close_signal(signal, now=now, status=status, outcome=outcome, exit_price=stop, exit_reason=reason)


def advance(signal: Signal, price: float, now: datetime, policy: ManagementPolicy) -> Transition:
    """
    Run one price sample through the protection rules of a triggered signal.

    Order per sample: extrema and excursion, breakeven arming, trailing
    tightening, targets, then the effective stop, then the holding-time limit.
    Targets are checked before the stop, so a sample satisfying both counts as
    a win. The input signal is never mutated; untriggered or closed signals
    come back unchanged.
    """
    if not signal.entry_triggered or signal.is_terminal:
        return Transition(signal=signal)

    updated = copy.deepcopy(signal)
    events: list[SignalEvent] = []
    levels = updated.levels
    direction = updated.direction
    protection = updated.protection

    _track_excursion(updated, price)
    progress = progress_to_target(direction, levels, price)
    current_r = r_multiple(direction, levels, price)
    breakeven_before = protection.breakeven_triggered

    if not breakeven_before and progress >= policy.breakeven_progress:
        protection.breakeven_triggered = True
        stop_before, _ = _tighten_stop(updated, levels.entry_price)
        advance_trade_state(updated, TradeState.PHASE1)
        events.append(
            lifecycle_event(
                updated,
                EventType.BREAKEVEN,
                now,
                price=price,
                stop_before=stop_before if stop_before is not None else levels.stop_loss,
                stop_after=protection.trailing_stop,
                r=current_r,
                progress=progress,
            )
        )

    if breakeven_before and progress >= policy.trailing_progress:
        candidate = offset_toward_target(direction, price, -policy.trailing_distance_ratio * levels.target_distance)
        stop_before, adopted = _tighten_stop(updated, candidate)
        if adopted:
            if policy.mode == ManagementMode.SINGLE_TARGET:
                advance_trade_state(updated, TradeState.PHASE2)
            events.append(
                lifecycle_event(
                    updated,
                    EventType.TRAILING_UPDATE,
                    now,
                    price=price,
                    stop_before=stop_before,
                    stop_after=protection.trailing_stop,
                    r=current_r,
                    progress=progress,
                )
            )

    if policy.mode == ManagementMode.SCALE_OUT:
        _scale_out_targets(updated, price, now, policy, events)
    elif target_reached(direction, price, levels.take_profit_1):
        events.append(
            close_signal(
                updated,
                now=now,
                status=SignalStatus.WON,
                outcome=Outcome.TARGET_1_HIT,
                exit_price=levels.take_profit_1,
                exit_reason="target_1",
            )
        )

    if not updated.is_terminal:
        stop = updated.effective_stop
        if stop_crossed(direction, price, stop):
            events.append(_close_on_stop(updated, stop, now))

    if (
        not updated.is_terminal
        and policy.max_hold_hours > 0
        and hours_between(updated.entry.triggered_at, now) >= policy.max_hold_hours
    ):
        events.append(
            close_signal(
                updated,
                now=now,
                status=SignalStatus.EXPIRED,
                outcome=Outcome.EXPIRED,
                exit_price=price,
                exit_reason="time_exit",
            )
        )

    return Transition(signal=updated, events=events, changed=True)
