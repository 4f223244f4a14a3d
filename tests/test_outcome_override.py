from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tradewatch.storage.models import Direction, Outcome, Signal, SignalLevels, SignalStatus, TradeState
from tradewatch.strategy.contracts import ManagementPolicy
from tradewatch.strategy.outcome import InvalidOverrideError, apply_override
from tradewatch.strategy.risk_machine import advance
from tradewatch.strategy.trigger import detect_entry

T0 = datetime(2026, 3, 12, 14, 0, tzinfo=timezone.utc)


def _signal() -> Signal:
    levels = SignalLevels(entry_price=1.2700, stop_loss=1.2650, take_profit_1=1.2800, take_profit_2=1.2850)
    return Signal(id="ovr-1", symbol="GBPUSD", direction=Direction.LONG, levels=levels, created_at=T0)


def _active(price: float = 1.2725) -> Signal:
    signal = detect_entry(_signal(), 1.2700, T0).signal
    return advance(signal, price, T0 + timedelta(minutes=5), ManagementPolicy()).signal


def test_target_override_books_win_at_that_target() -> None:
    transition = apply_override(_active(), "target_2_hit", T0 + timedelta(hours=1))

    closed = transition.signal
    assert closed.signal_status == SignalStatus.WON
    assert closed.outcome == Outcome.TARGET_2_HIT
    assert closed.trade_state == TradeState.CLOSED
    assert closed.closure.exit_price == pytest.approx(1.2850)
    assert closed.final_r_multiple == pytest.approx(3.0)
    assert [event.event_type for event in transition.events] == ["manual_override", "trade_closed"]


def test_sl_override_on_pending_signal() -> None:
    closed = apply_override(_signal(), Outcome.SL_HIT, T0).signal

    assert closed.signal_status == SignalStatus.LOST
    assert closed.final_r_multiple == pytest.approx(-1.0)


def test_manual_close_uses_last_price_for_status() -> None:
    winner = apply_override(_active(1.2725), "manual_close", T0).signal
    loser = apply_override(_active(1.2680), "manual_close", T0).signal

    assert winner.outcome == Outcome.MANUAL_CLOSE
    assert winner.signal_status == SignalStatus.WON
    assert winner.final_r_multiple == pytest.approx(0.5)
    assert loser.signal_status == SignalStatus.LOST
    assert loser.final_r_multiple == pytest.approx(-0.4)


def test_breakeven_override_exits_at_entry() -> None:
    closed = apply_override(_active(), "BREAKEVEN", T0).signal

    assert closed.signal_status == SignalStatus.BREAKEVEN
    assert closed.final_r_multiple == 0.0


def test_override_rejects_terminal_signal() -> None:
    closed = apply_override(_active(), "target_1_hit", T0).signal

    with pytest.raises(InvalidOverrideError, match="already closed"):
        apply_override(closed, "sl_hit", T0)


@pytest.mark.parametrize("outcome", ["moon", "pending", "target_3_hit"])
def test_override_rejects_unknown_or_inapplicable_outcome(outcome: str) -> None:
    signal = _active()

    with pytest.raises(InvalidOverrideError):
        apply_override(signal, outcome, T0)
    assert signal.signal_status == SignalStatus.ACTIVE
