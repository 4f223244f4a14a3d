from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone

import pytest

from tradewatch.config import AppConfig, ConfigValidationError
from tradewatch.controller import BotController
from tradewatch.data.price_feed import PriceFeed
from tradewatch.data.ticks import PriceTick
from tradewatch.execution.trade_monitor import TradeMonitor
from tradewatch.monitoring.dashboard import DashboardWriter
from tradewatch.storage.db import get_connection, init_db
from tradewatch.storage.journal import Journal
from tradewatch.storage.models import BotConfig, SignalStatus
from tradewatch.strategy.contracts import ManagementPolicy
from tradewatch.strategy.generator import SignalGenerator
from tradewatch.strategy.outcome import InvalidOverrideError
from tradewatch.strategy.signal_source import SignalDraft

# Tuesday 13:30 New York (EDT) -> ny_open kill zone
NOW = datetime(2026, 6, 9, 13, 30, tzinfo=timezone.utc)


class _ListSource:
    def __init__(self, drafts: list[SignalDraft] | None = None):
        self.drafts = drafts or []

    def fetch_new_signals(self) -> list[SignalDraft]:
        drafts, self.drafts = self.drafts, []
        return drafts


class _BlockingSource:
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_new_signals(self) -> list[SignalDraft]:
        self.entered.set()
        self.release.wait(5.0)
        return []


class _NoQuotes:
    def get_quote(self, symbol: str) -> PriceTick:
        raise AssertionError("controller must not fetch quotes")


def _draft(signal_id: str, **overrides) -> SignalDraft:
    values = {
        "signal_id": signal_id,
        "symbol": "EURUSD",
        "direction": "LONG",
        "entry_price": 1.0850,
        "stop_loss": 1.0820,
        "take_profit_1": 1.0900,
        "confluence_score": 8,
        "source": "test",
    }
    values.update(overrides)
    return SignalDraft(**values)


def _controller(tmp_path, source=None, *, journal: Journal | None = None) -> BotController:
    if journal is None:
        conn = get_connection(tmp_path / "controller.db")
        init_db(conn)
        journal = Journal(conn)
    feed = PriceFeed(_NoQuotes())
    monitor = TradeMonitor(journal=journal, feed=feed, policy=ManagementPolicy(), clock=lambda: NOW)
    return BotController(
        journal=journal,
        config=AppConfig(),
        monitor=monitor,
        generator=SignalGenerator(source or _ListSource()),
        dashboard=DashboardWriter(tmp_path / "runtime" / "dashboard.json"),
        clock=lambda: NOW,
    )


def test_bot_config_created_with_defaults(tmp_path) -> None:
    controller = _controller(tmp_path)

    stored = controller.journal.load_bot_config("institutional_signal_bot")
    assert stored is not None
    assert stored.is_running is False
    assert "EURUSD" in stored.pairs and "BTCUSD" in stored.pairs and "NQ" in stored.pairs
    assert stored.strategy["min_confluence_score"] == 6
    assert controller.interval_seconds == 900.0


def test_invalid_stored_strategy_falls_back_to_defaults(tmp_path) -> None:
    conn = get_connection(tmp_path / "controller.db")
    init_db(conn)
    journal = Journal(conn)
    journal.save_bot_config(
        BotConfig(bot_type="institutional_signal_bot", pairs=["EURUSD"], strategy={"min_confluence_score": 99})
    )

    controller = _controller(tmp_path, journal=journal)

    assert controller.settings.min_confluence_score == 6
    assert controller.bot.pairs == ["EURUSD"]


def test_toggle_stamps_times_and_stops_scheduler(tmp_path) -> None:
    controller = _controller(tmp_path)

    started = controller.toggle_bot(True)
    assert started.success is True
    assert controller.bot.started_at == NOW
    assert controller.bot.stopped_at is None
    assert controller.scheduler_active is True

    stopped = controller.toggle_bot(False)
    controller.join(timeout=5.0)
    assert stopped.success is True
    assert controller.scheduler_active is False
    assert controller.bot.stopped_at == NOW

    stored = controller.journal.load_bot_config("institutional_signal_bot")
    assert stored.is_running is False
    assert stored.started_at == NOW


def test_invalid_config_update_keeps_previous_settings(tmp_path) -> None:
    controller = _controller(tmp_path)
    before = controller.settings

    with pytest.raises(ConfigValidationError):
        controller.update_bot_config({"min_confluence_score": 11})
    with pytest.raises(ConfigValidationError, match="Unknown strategy settings"):
        controller.update_bot_config({"min_confluence": 7})
    with pytest.raises(ConfigValidationError):
        controller.update_bot_config({"auto_broadcast": "yes"})
    with pytest.raises(ConfigValidationError):
        controller.update_bot_config({"kill_zones": ["lunch"]})

    assert controller.settings == before
    assert controller.journal.load_bot_config("institutional_signal_bot").strategy == before.model_dump()


def test_config_update_recomputes_pairs(tmp_path) -> None:
    controller = _controller(tmp_path)

    result = controller.update_bot_config({"min_confluence_score": 7, "enabled_crypto": False, "send_to_agents_enabled": True})

    assert result.success is True
    assert controller.settings.min_confluence_score == 7
    assert "BTCUSD" not in controller.bot.pairs
    stored = controller.journal.load_bot_config("institutional_signal_bot")
    assert stored.send_to_agents_enabled is True
    assert stored.strategy["enabled_crypto"] is False

    controller.update_bot_config({"pairs": ["eurusd", "XAUUSD", "EURUSD"]})
    assert controller.bot.pairs == ["EURUSD", "XAUUSD"]


def test_run_now_inserts_signals_and_writes_dashboard(tmp_path) -> None:
    source = _ListSource([_draft("c-1"), _draft("c-2", confluence_score=3)])
    controller = _controller(tmp_path, source)

    result = controller.run_bot_now()

    assert result.success is True
    assert result.data["signals_generated"] == 1
    assert controller.bot.last_signal_at == NOW
    assert controller.bot.signals_generated_last_run == 1
    assert controller.journal.signal_ids() == {"c-1"}
    assert result.data["monitor"]["no_price"] == 1

    dashboard = json.loads((tmp_path / "runtime" / "dashboard.json").read_text(encoding="utf-8"))
    assert dashboard["signal_stats"]["pending"] == 1
    assert dashboard["bot"]["bot_type"] == "institutional_signal_bot"


def test_manual_override_flow(tmp_path) -> None:
    controller = _controller(tmp_path, _ListSource([_draft("c-3")]))
    controller.run_bot_now()

    missing = controller.update_outcome("nope", "sl_hit")
    assert missing.success is False

    result = controller.update_outcome("c-3", "target_1_hit")
    assert result.success is True
    assert result.data["signal_status"] == SignalStatus.WON.value
    assert controller.signal_stats()["won"] == 1
    assert [event.event_type for event in controller.journal.list_events("c-3")] == ["manual_override", "trade_closed"]

    with pytest.raises(InvalidOverrideError):
        controller.update_outcome("c-3", "sl_hit")
    with pytest.raises(InvalidOverrideError):
        controller.update_outcome("c-3", "moon")


def test_import_delete_and_analytics(tmp_path) -> None:
    controller = _controller(tmp_path)

    imported = controller.import_signals([_draft("i-1", symbol="XAUUSD", entry_price=2330, stop_loss=2320, take_profit_1=2350), _draft("i-2", take_profit_1=1.0)])
    assert imported.data["created"] == ["i-1"]
    assert len(imported.data["errors"]) == 1

    controller.update_outcome("i-1", "sl_hit")
    analytics = controller.post_trade_analytics()
    assert analytics["total_trades"] == 1
    assert analytics["avg_loss_r"] == pytest.approx(1.0)
    assert analytics["by_symbol"]["XAUUSD"]["total"] == 1

    assert controller.delete_signal("i-1").success is True
    assert controller.delete_signal("i-1").success is False
    controller.import_signals([_draft("i-3"), _draft("i-4")])
    assert controller.delete_all_signals().data["deleted"] == 2
    assert controller.signal_stats()["total"] == 0


def test_manual_pass_waits_for_scheduled_cycle(tmp_path) -> None:
    source = _BlockingSource()
    controller = _controller(tmp_path, source)
    controller.toggle_bot(True)
    assert source.entered.wait(5.0)

    finished = threading.Event()

    def _manual() -> None:
        controller.run_trade_monitor()
        finished.set()

    worker = threading.Thread(target=_manual)
    worker.start()
    time.sleep(0.2)
    assert finished.is_set() is False
    assert controller.cycles_completed == 0

    source.release.set()
    worker.join(5.0)
    assert finished.is_set() is True
    assert controller.cycles_completed == 2

    controller.toggle_bot(False)
    controller.join(timeout=5.0)
    assert controller.scheduler_active is False


def test_changes_from_another_process_survive_a_cycle(tmp_path) -> None:
    daemon = _controller(tmp_path)
    daemon.toggle_bot(True, schedule=False)
    operator = _controller(tmp_path)

    operator.update_bot_config({"auto_run_interval_minutes": 30})
    operator.toggle_bot(False, schedule=False)
    daemon.run_bot_now()

    stored = operator.journal.load_bot_config("institutional_signal_bot")
    assert stored.is_running is False
    assert stored.strategy["auto_run_interval_minutes"] == 30
    assert stored.last_run_at == NOW
    assert stored.stopped_at == NOW
    assert daemon.bot.is_running is False
    assert daemon.interval_seconds == 1800.0


def test_scheduler_follows_stored_running_flag(tmp_path) -> None:
    source = _BlockingSource()
    source.release.set()
    daemon = _controller(tmp_path, source)
    operator = _controller(tmp_path)

    daemon._start_scheduler()
    daemon.join(timeout=5.0)
    assert daemon.scheduler_active is False
    assert source.entered.is_set() is False

    operator.toggle_bot(True, schedule=False)
    daemon.sync()
    assert source.entered.wait(5.0)
    assert daemon.scheduler_active is True

    operator.toggle_bot(False, schedule=False)
    daemon.sync()
    daemon.join(timeout=5.0)
    assert daemon.scheduler_active is False
    assert daemon.cycles_completed == 1


def test_toggle_without_scheduling_only_persists_flag(tmp_path) -> None:
    source = _BlockingSource()
    controller = _controller(tmp_path, source)

    result = controller.toggle_bot(True, schedule=False)

    assert result.success is True
    assert controller.scheduler_active is False
    assert source.entered.wait(0.2) is False
    stored = controller.journal.load_bot_config("institutional_signal_bot")
    assert stored.is_running is True
    assert stored.last_run_at is None
