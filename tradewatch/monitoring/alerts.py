from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import requests

from tradewatch.storage.models import Signal, SignalEvent

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 30


class AlertDispatcher:
    def __init__(self, config: AlertConfig):
        self.config = config
        self._last_sent_ts: dict[str, float] = {}

    def send(
        self,
        *,
        event: str,
        message: str,
        level: str = "info",
        context: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        if not self.config.enabled:
            return False
        key = dedupe_key or event
        now = time.monotonic()
        self._prune(now)
        prev = self._last_sent_ts.get(key)
        if prev is not None and (now - prev) < self.config.cooldown_seconds:
            return False
        self._last_sent_ts[key] = now

        details = f"[{level.upper()}] {event}: {message}"
        if context:
            context_suffix = " | " + " ".join(f"{k}={v}" for k, v in context.items())
            details += context_suffix

        self._send_discord(details)
        self._send_telegram(details)
        return True

    def _prune(self, now: float) -> None:
        expired = [key for key, sent in self._last_sent_ts.items() if now - sent >= self.config.cooldown_seconds]
        for key in expired:
            del self._last_sent_ts[key]

    def _send_discord(self, text: str) -> None:
        webhook = (self.config.discord_webhook or "").strip()
        if not webhook:
            return
        try:
            response = requests.post(webhook, json={"content": text}, timeout=10)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Discord alert failed: %s", exc)

    def _send_telegram(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text}
        try:
            response = requests.post(url, json=payload, timeout=10)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Telegram alert failed: %s", exc)


def _fmt(price: float | None) -> str:
    return "-" if price is None else f"{price:.5f}"


def format_signal_event(signal: Signal, event: SignalEvent) -> tuple[str, str, str] | None:
    """Return (alert event, level, message) for user-facing lifecycle events, None otherwise."""
    levels = signal.levels
    head = f"{signal.symbol} {signal.direction.value}"
    kind = event.event_type
    if kind == "entry_triggered":
        return (
            "ENTRY_TRIGGERED",
            "info",
            f"{head} entry triggered @ {_fmt(event.price)} | SL {_fmt(levels.stop_loss)} | TP1 {_fmt(levels.take_profit_1)}",
        )
    if kind == "breakeven":
        return ("BREAKEVEN", "info", f"{head} move stop loss to breakeven {_fmt(event.stop_after)}")
    if kind == "tp1_partial":
        remaining = event.details.get("remaining_pct")
        return (
            "TARGET_HIT",
            "info",
            f"{head} TP1 hit @ {_fmt(event.price)} | stop -> {_fmt(event.stop_after)} | {remaining}% running",
        )
    if kind == "tp2_partial":
        remaining = event.details.get("remaining_pct")
        return (
            "TARGET_HIT",
            "info",
            f"{head} TP2 hit @ {_fmt(event.price)} | trailing stop {_fmt(event.stop_after)} | {remaining}% running",
        )
    if kind == "trade_closed":
        outcome = str(event.details.get("outcome", ""))
        r_text = "-" if event.r_multiple is None else f"{event.r_multiple:+.2f}R"
        if outcome.startswith("target_"):
            return ("TARGET_HIT", "info", f"{head} closed in profit ({outcome}) @ {_fmt(event.price)} {r_text}")
        if outcome == "sl_hit":
            return ("STOP_HIT", "warning", f"{head} stop loss hit @ {_fmt(event.price)} {r_text}")
        if outcome == "breakeven":
            return ("STOP_HIT", "info", f"{head} stopped at breakeven/trailing stop @ {_fmt(event.price)} {r_text}")
        if outcome == "expired" and event.details.get("exit_reason") == "time_exit":
            return ("TIME_EXIT", "info", f"{head} closed after max hold time @ {_fmt(event.price)} {r_text}")
    return None


class SignalNotifier:
    """Forwards user-visible lifecycle events of broadcast signals to the alert channels."""

    def __init__(self, dispatcher: AlertDispatcher):
        self.dispatcher = dispatcher

    def notify(self, signal: Signal, event: SignalEvent) -> bool:
        if not signal.send_to_users:
            return False
        formatted = format_signal_event(signal, event)
        if formatted is None:
            return False
        alert_event, level, message = formatted
        try:
            return self.dispatcher.send(
                event=alert_event,
                level=level,
                message=message,
                context={"signal": signal.id},
                dedupe_key=f"{signal.id}:{event.event_type}",
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Notification for signal %s failed: %s", signal.id, exc)
            return False
