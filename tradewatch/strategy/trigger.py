from __future__ import annotations

import copy
from datetime import datetime

from tradewatch.clock import hours_between
from tradewatch.storage.models import (
    EntryFill,
    Excursion,
    Outcome,
    PartialFills,
    Protection,
    Signal,
    SignalStatus,
    TradeState,
)
from tradewatch.strategy.contracts import EventType, Transition
from tradewatch.strategy.levels import entry_reached
from tradewatch.strategy.outcome import close_signal, lifecycle_event


def is_awaiting_entry(signal: Signal) -> bool:
    return not signal.entry_triggered and not signal.is_terminal


def is_pending_expired(signal: Signal, now: datetime, expiry_hours: float) -> bool:
    if expiry_hours <= 0 or not is_awaiting_entry(signal):
        return False
    return hours_between(signal.created_at, now) >= expiry_hours


def expire_pending(signal: Signal, now: datetime) -> Transition:
    updated = copy.deepcopy(signal)
    event = close_signal(
        updated,
        now=now,
        status=SignalStatus.EXPIRED,
        outcome=Outcome.EXPIRED,
        exit_price=None,
        exit_reason="entry_not_reached",
    )
    expired = lifecycle_event(updated, EventType.EXPIRED, now, reason="entry_not_reached")
    return Transition(signal=updated, events=[expired, event], changed=True)


def detect_entry(signal: Signal, price: float, now: datetime) -> Transition:
    """
    Latch the entry when ``price`` reaches the entry level.

    LONG fills at or below entry, SHORT at or above. Signals that already
    triggered or are closed come back unchanged.
    """
    if not is_awaiting_entry(signal):
        return Transition(signal=signal)
    if not entry_reached(signal.direction, signal.levels.entry_price, price):
        return Transition(signal=signal)

    updated = copy.deepcopy(signal)
    updated.entry = EntryFill(triggered_at=now, price=price)
    updated.protection = Protection()
    updated.excursion = Excursion(current_price=price, highest_price=price, lowest_price=price)
    updated.partials = PartialFills()
    updated.signal_status = SignalStatus.ACTIVE
    updated.trade_state = TradeState.ACTIVE
    event = lifecycle_event(
        updated,
        EventType.ENTRY_TRIGGERED,
        now,
        price=price,
        stop_after=updated.levels.stop_loss,
        r=0.0,
    )
    return Transition(signal=updated, events=[event], changed=True)
