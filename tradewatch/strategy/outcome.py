from __future__ import annotations

import copy
from datetime import datetime

from tradewatch.storage.models import (
    Closure,
    Outcome,
    Signal,
    SignalEvent,
    SignalStatus,
    TradeState,
)
from tradewatch.strategy.contracts import EventType, Transition
from tradewatch.strategy.levels import R_DECIMALS, r_multiple

_TARGET_OUTCOMES = {
    Outcome.TARGET_1_HIT: 1,
    Outcome.TARGET_2_HIT: 2,
    Outcome.TARGET_3_HIT: 3,
}


class InvalidOverrideError(ValueError):
    """Manual outcome override rejected; the signal is left unchanged."""


def lifecycle_event(
    signal: Signal,
    event_type: EventType,
    now: datetime,
    *,
    price: float | None = None,
    stop_before: float | None = None,
    stop_after: float | None = None,
    r: float | None = None,
    **details: object,
) -> SignalEvent:
    return SignalEvent(
        signal_id=signal.id,
        event_type=event_type.value,
        trade_state=signal.trade_state.value,
        created_at=now,
        price=price,
        stop_before=stop_before,
        stop_after=stop_after,
        r_multiple=r,
        details=dict(details),
    )


def advance_trade_state(signal: Signal, target: TradeState) -> None:
    if target.rank > signal.trade_state.rank:
        signal.trade_state = target


def realized_r(signal: Signal, exit_price: float | None) -> float:
    """R of the whole position when what is still open exits at ``exit_price``."""
    partials = signal.partials
    if exit_price is None:
        runner_r = 0.0
    else:
        runner_r = r_multiple(signal.direction, signal.levels, exit_price)
    if partials is None or not partials.tp1_closed:
        return round(runner_r, R_DECIMALS)
    runner_pnl = round(partials.remaining_position_pct / 100.0 * runner_r, R_DECIMALS)
    partials.runner_pnl = runner_pnl
    return round(partials.tp1_pnl + partials.tp2_pnl + runner_pnl, R_DECIMALS)


def close_signal(
    signal: Signal,
    *,
    now: datetime,
    status: SignalStatus,
    outcome: Outcome,
    exit_price: float | None,
    exit_reason: str,
) -> SignalEvent:
    """Book the terminal snapshot on ``signal`` in place and return the closing event."""
    final_r = realized_r(signal, exit_price)
    if signal.partials is not None:
        signal.partials.remaining_position_pct = 0.0
    signal.signal_status = status
    signal.outcome = outcome
    signal.trade_state = TradeState.CLOSED
    signal.closure = Closure(
        closed_at=now,
        exit_price=exit_price,
        exit_reason=exit_reason,
        final_r_multiple=final_r,
    )
    return lifecycle_event(
        signal,
        EventType.TRADE_CLOSED,
        now,
        price=exit_price,
        r=final_r,
        outcome=outcome.value,
        status=status.value,
        exit_reason=exit_reason,
    )


def status_for_r(final_r: float) -> SignalStatus:
    if final_r > 0:
        return SignalStatus.WON
    if final_r < 0:
        return SignalStatus.LOST
    return SignalStatus.BREAKEVEN


def apply_override(signal: Signal, outcome: Outcome | str, now: datetime) -> Transition:
    """
    Close ``signal`` with an operator-chosen outcome.

    target_N books a win at TPN, sl_hit a loss at the original stop, breakeven
    an exit at entry, manual_close an exit at the last seen price (status from
    the sign of the result) and expired an expiry at the last seen price.
    """
    if signal.is_terminal:
        raise InvalidOverrideError(
            f"Signal {signal.id} is already closed ({signal.signal_status.value}); it cannot be reopened"
        )
    try:
        requested = Outcome(str(getattr(outcome, "value", outcome)).strip().lower())
    except ValueError as exc:
        raise InvalidOverrideError(f"Unknown outcome '{outcome}'") from exc
    if requested == Outcome.PENDING:
        raise InvalidOverrideError("Outcome 'pending' cannot be set manually")

    updated = copy.deepcopy(signal)
    levels = updated.levels
    last_price = updated.current_price
    if requested in _TARGET_OUTCOMES:
        number = _TARGET_OUTCOMES[requested]
        target = levels.target(number)
        if target is None:
            raise InvalidOverrideError(f"Signal {signal.id} has no take profit {number}")
        event = close_signal(
            updated, now=now, status=SignalStatus.WON, outcome=requested,
            exit_price=target, exit_reason="manual_override",
        )
    elif requested == Outcome.SL_HIT:
        event = close_signal(
            updated, now=now, status=SignalStatus.LOST, outcome=requested,
            exit_price=levels.stop_loss, exit_reason="manual_override",
        )
    elif requested == Outcome.BREAKEVEN:
        event = close_signal(
            updated, now=now, status=SignalStatus.BREAKEVEN, outcome=requested,
            exit_price=levels.entry_price, exit_reason="manual_override",
        )
    elif requested == Outcome.MANUAL_CLOSE:
        exit_price = last_price if last_price is not None else levels.entry_price
        event = close_signal(
            updated, now=now, status=SignalStatus.BREAKEVEN, outcome=requested,
            exit_price=exit_price, exit_reason="manual_close",
        )
        updated.signal_status = status_for_r(updated.closure.final_r_multiple)
        event.details["status"] = updated.signal_status.value
    else:
        event = close_signal(
            updated, now=now, status=SignalStatus.EXPIRED, outcome=Outcome.EXPIRED,
            exit_price=last_price, exit_reason="manual_expire",
        )

    override = lifecycle_event(
        updated,
        EventType.MANUAL_OVERRIDE,
        now,
        price=event.price,
        r=event.r_multiple,
        outcome=requested.value,
        previous_status=signal.signal_status.value,
    )
    return Transition(signal=updated, events=[override, event], changed=True)
