from __future__ import annotations

from datetime import datetime, timezone

import requests

from tradewatch.monitoring.alerts import AlertConfig, AlertDispatcher, SignalNotifier, format_signal_event
from tradewatch.storage.models import Direction, Signal, SignalEvent, SignalLevels

T0 = datetime(2026, 3, 6, 9, 0, tzinfo=timezone.utc)


class _Response:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


def _signal() -> Signal:
    return Signal(
        id="a-1",
        symbol="EURUSD",
        direction=Direction.LONG,
        levels=SignalLevels(entry_price=1.0850, stop_loss=1.0820, take_profit_1=1.0900),
        created_at=T0,
        send_to_users=True,
    )


def _event(event_type: str, **details) -> SignalEvent:
    return SignalEvent(
        signal_id="a-1",
        event_type=event_type,
        trade_state="active",
        created_at=T0,
        price=1.0849,
        stop_after=1.0850,
        r_multiple=-1.0,
        details=details,
    )


def test_format_signal_event_messages() -> None:
    signal = _signal()

    event, level, message = format_signal_event(signal, _event("entry_triggered"))
    assert event == "ENTRY_TRIGGERED"
    assert "EURUSD LONG entry triggered @ 1.08490" in message

    event, level, _ = format_signal_event(signal, _event("trade_closed", outcome="sl_hit"))
    assert (event, level) == ("STOP_HIT", "warning")
    assert format_signal_event(signal, _event("trailing_update")) is None


def test_dispatcher_cooldown_and_disabled(monkeypatch) -> None:
    posts: list[tuple[str, dict]] = []
    monkeypatch.setattr(requests, "post", lambda url, json, timeout: posts.append((url, json)) or _Response())
    dispatcher = AlertDispatcher(AlertConfig(discord_webhook="https://discord.test/hook", cooldown_seconds=60))

    assert dispatcher.send(event="ENTRY_TRIGGERED", message="hello", dedupe_key="a-1:entry") is True
    assert dispatcher.send(event="ENTRY_TRIGGERED", message="hello", dedupe_key="a-1:entry") is False
    assert len(posts) == 1
    assert posts[0][1]["content"].startswith("[INFO] ENTRY_TRIGGERED: hello")

    muted = AlertDispatcher(AlertConfig(enabled=False, discord_webhook="https://discord.test/hook"))
    assert muted.send(event="X", message="y") is False
    assert len(posts) == 1


def test_channel_failure_is_logged_not_raised(monkeypatch) -> None:
    monkeypatch.setattr(requests, "post", lambda *_args, **_kwargs: _Response(500))
    dispatcher = AlertDispatcher(
        AlertConfig(telegram_bot_token="token", telegram_chat_id="42", cooldown_seconds=0)
    )

    assert dispatcher.send(event="STOP_HIT", message="boom") is True


def test_notifier_skips_signals_not_sent_to_users() -> None:
    class _Recorder:
        def __init__(self) -> None:
            self.calls = 0

        def send(self, **_kwargs) -> bool:
            self.calls += 1
            return True

    recorder = _Recorder()
    notifier = SignalNotifier(recorder)
    quiet = _signal()
    quiet.send_to_users = False

    assert notifier.notify(quiet, _event("entry_triggered")) is False
    assert notifier.notify(_signal(), _event("entry_triggered")) is True
    assert recorder.calls == 1


def test_cooldown_entries_expire(monkeypatch) -> None:
    clock = {"now": 1000.0}
    monkeypatch.setattr("tradewatch.monitoring.alerts.time.monotonic", lambda: clock["now"])
    monkeypatch.setattr(requests, "post", lambda *_args, **_kwargs: _Response())
    dispatcher = AlertDispatcher(AlertConfig(discord_webhook="https://discord.test/hook", cooldown_seconds=60))

    for index in range(5):
        dispatcher.send(event="ENTRY_TRIGGERED", message="hello", dedupe_key=f"s-{index}:entry_triggered")
    assert len(dispatcher._last_sent_ts) == 5

    clock["now"] += 61
    assert dispatcher.send(event="STOP_HIT", message="bye", dedupe_key="s-9:trade_closed") is True
    assert list(dispatcher._last_sent_ts) == ["s-9:trade_closed"]
    assert dispatcher.send(event="ENTRY_TRIGGERED", message="hello", dedupe_key="s-0:entry_triggered") is True
