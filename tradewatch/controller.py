from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from tradewatch.clock import utc_now
from tradewatch.config import AppConfig, ConfigValidationError, StrategySettings, merge_strategy_settings
from tradewatch.data.instruments import enabled_pairs, normalize_symbol
from tradewatch.execution.trade_monitor import MonitorReport, TradeMonitor
from tradewatch.monitoring.dashboard import DashboardWriter, build_dashboard_payload
from tradewatch.reporting.metrics import (
    compute_post_trade_analytics,
    compute_signal_stats,
    win_rate_by_confluence,
    win_rate_by_kill_zone,
    win_rate_by_symbol,
)
from tradewatch.storage.journal import Journal
from tradewatch.storage.models import BotConfig, Outcome
from tradewatch.strategy.generator import SignalGenerator, broadcast_decision, build_signal
from tradewatch.strategy.levels import InvalidSignalError
from tradewatch.strategy.outcome import InvalidOverrideError, apply_override
from tradewatch.strategy.signal_source import SignalDraft

LOGGER = logging.getLogger(__name__)

_BOT_FLAGS = ("auto_broadcast", "send_to_users_enabled", "send_to_agents_enabled")


@dataclass(slots=True)
class OperatorResult:
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)


class BotController:
    """
    Owns the persisted BotConfig and drives generation + monitoring.

    While running, a worker thread runs one cycle and then waits the
    configured interval from the end of that cycle. Stopping cancels the
    wait; a cycle already in progress completes. Cycles are serialized by a
    lock, so run_bot_now during a scheduled cycle waits for it.

    The store row is the source of truth: every cycle starts by re-reading
    it, and the scheduler exits when another process has cleared the
    running flag. Writes touch only the columns the command owns.
    """

    def __init__(
        self,
        *,
        journal: Journal,
        config: AppConfig,
        monitor: TradeMonitor,
        generator: SignalGenerator,
        dashboard: DashboardWriter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.journal = journal
        self.config = config
        self.monitor = monitor
        self.generator = generator
        self.dashboard = dashboard
        self.clock = clock
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._stop_event: threading.Event | None = None
        self._scheduler: threading.Thread | None = None
        self.last_report: MonitorReport | None = None
        self.cycles_completed = 0
        self.bot, self.settings = self._load_or_create()

    def _load_or_create(self) -> tuple[BotConfig, StrategySettings]:
        defaults = self.config.bot
        bot = self.journal.load_bot_config(defaults.bot_type)
        if bot is None:
            settings = defaults.strategy.model_copy(deep=True)
            bot = BotConfig(
                bot_type=defaults.bot_type,
                is_running=False,
                pairs=self._pairs_for(settings),
                auto_broadcast=defaults.auto_broadcast,
                send_to_users_enabled=defaults.send_to_users_enabled,
                send_to_agents_enabled=defaults.send_to_agents_enabled,
                strategy=settings.model_dump(),
            )
            self.journal.save_bot_config(bot)
            LOGGER.info("Created bot config for %s", bot.bot_type)
            return bot, settings
        return self._validated(bot)

    def _validated(self, bot: BotConfig) -> tuple[BotConfig, StrategySettings]:
        try:
            settings = StrategySettings.model_validate(bot.strategy)
        except ValidationError as exc:
            LOGGER.warning("Stored strategy settings for %s are invalid, using defaults: %s", bot.bot_type, exc)
            settings = self.config.bot.strategy.model_copy(deep=True)
            bot.strategy = settings.model_dump()
        if not bot.pairs:
            bot.pairs = self._pairs_for(settings)
        return bot, settings

    def reload(self) -> BotConfig:
        """Re-read the stored bot config so changes made by other processes take effect."""
        stored = self.journal.load_bot_config(self.bot.bot_type)
        with self._state_lock:
            if stored is not None:
                self.bot, self.settings = self._validated(stored)
            return self.bot

    @staticmethod
    def _pairs_for(settings: StrategySettings) -> list[str]:
        return enabled_pairs(
            forex=settings.enabled_forex,
            futures=settings.enabled_futures,
            crypto=settings.enabled_crypto,
        )

    @property
    def interval_seconds(self) -> float:
        return self.settings.auto_run_interval_minutes * 60.0

    @property
    def scheduler_active(self) -> bool:
        return self._scheduler is not None and self._scheduler.is_alive()

    def monitored_symbols(self) -> list[str]:
        symbols = {signal.symbol for signal in self.journal.list_open_signals()}
        return sorted(symbols)

    # Scheduling

    def resume(self) -> None:
        if self.bot.is_running:
            LOGGER.info("Resuming %s after restart", self.bot.bot_type)
            self._start_scheduler()

    def _start_scheduler(self) -> None:
        with self._state_lock:
            if self.scheduler_active and self._stop_event is not None and not self._stop_event.is_set():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._schedule_loop,
                args=(stop_event,),
                name=f"{self.bot.bot_type}-scheduler",
                daemon=True,
            )
            self._stop_event = stop_event
            self._scheduler = thread
            thread.start()

    def _stop_scheduler(self) -> None:
        with self._state_lock:
            if self._stop_event is not None:
                self._stop_event.set()

    def sync(self) -> None:
        """Start or stop this process's scheduler to follow the stored running flag."""
        bot = self.reload()
        if bot.is_running and not self.scheduler_active:
            LOGGER.info("Bot %s marked running in store, starting scheduler", bot.bot_type)
            self._start_scheduler()
        elif not bot.is_running and self.scheduler_active:
            LOGGER.info("Bot %s marked stopped in store, stopping scheduler", bot.bot_type)
            self._stop_scheduler()

    def _schedule_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                if not self.reload().is_running:
                    LOGGER.info("Bot %s marked stopped in store", self.bot.bot_type)
                    break
                self._run_cycle(generate=True)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Scheduled cycle failed: %s", exc)
            if stop_event.wait(self.interval_seconds):
                break
        LOGGER.info("Scheduler for %s stopped", self.bot.bot_type)

    def join(self, timeout: float | None = None) -> None:
        thread = self._scheduler
        if thread is not None:
            thread.join(timeout)

    def shutdown(self, timeout: float | None = 30.0) -> None:
        """Stop scheduling for this process without changing the persisted running flag."""
        self._stop_scheduler()
        self.join(timeout)

    # Cycles

    def _run_cycle(self, *, generate: bool) -> tuple[int, MonitorReport]:
        with self._cycle_lock:
            self.reload()
            now = self.clock()
            created = 0
            if generate:
                result = self.generator.generate(
                    self.bot,
                    self.settings,
                    now=now,
                    known_ids=self.journal.signal_ids(),
                )
                for signal in result.created:
                    if self.journal.insert_signal(signal):
                        created += 1
                        LOGGER.info(
                            "New signal %s %s %s entry=%s confluence=%s users=%s agents=%s",
                            signal.id,
                            signal.symbol,
                            signal.direction.value,
                            signal.levels.entry_price,
                            signal.confluence_score,
                            signal.send_to_users,
                            signal.sent_to_agents,
                        )
                if result.rejected:
                    LOGGER.info(
                        "Signal intake rejected: %s",
                        ",".join(f"{key}:{value}" for key, value in result.rejected.most_common()),
                    )
            report = self.monitor.run_pass(now)
            with self._state_lock:
                self.bot.last_run_at = now
                if generate:
                    self.bot.signals_generated_last_run = created
                    if created:
                        self.bot.last_signal_at = now
            self.journal.record_bot_run(
                self.bot.bot_type,
                last_run_at=now,
                signals_generated=created if generate else None,
                last_signal_at=now if created else None,
            )
            self.last_report = report
            self.cycles_completed += 1
            self._write_dashboard()
            return created, report

    def _write_dashboard(self) -> None:
        if self.dashboard is None:
            return
        try:
            signals = self.journal.list_signals()
            self.dashboard.write(
                build_dashboard_payload(
                    bot=self.bot,
                    stats=compute_signal_stats(signals),
                    analytics=compute_post_trade_analytics(signals),
                    last_pass=self.last_report.as_dict() if self.last_report else None,
                    prices=self.monitor.feed.snapshot(),
                )
            )
        except OSError as exc:
            LOGGER.warning("Dashboard write failed: %s", exc)

    # Operator commands

    def toggle_bot(self, running: bool, *, schedule: bool = True) -> OperatorResult:
        """
        Persist the running flag and start or stop this process's scheduler.

        With ``schedule=False`` only the flag is written; a daemon sharing the
        store picks it up on its next sync.
        """
        now = self.clock()
        running = bool(running)
        self.journal.set_bot_running(self.bot.bot_type, running, now)
        with self._state_lock:
            self.bot.is_running = running
            if running:
                self.bot.started_at = now
                self.bot.stopped_at = None
            else:
                self.bot.stopped_at = now
        if running and schedule:
            self._start_scheduler()
            LOGGER.info("Bot %s started, interval=%.1f min", self.bot.bot_type, self.settings.auto_run_interval_minutes)
            return OperatorResult(True, "Bot started", {"is_running": True})
        self._stop_scheduler()
        LOGGER.info("Bot %s stopped", self.bot.bot_type)
        return OperatorResult(True, "Bot stopped", {"is_running": False})

    def update_bot_config(self, partial: dict[str, Any]) -> OperatorResult:
        """
        Merge ``partial`` into the bot configuration.

        Accepts the bot broadcast flags, ``pairs`` and any StrategySettings
        field. Raises ConfigValidationError and keeps the current
        configuration when anything is invalid.
        """
        partial = dict(partial)
        flags: dict[str, bool] = {}
        for key in _BOT_FLAGS:
            if key in partial:
                value = partial.pop(key)
                if not isinstance(value, bool):
                    raise ConfigValidationError(f"{key} must be a boolean")
                flags[key] = value
        pairs: list[str] | None = None
        if "pairs" in partial:
            raw_pairs = partial.pop("pairs")
            if not isinstance(raw_pairs, list) or not raw_pairs:
                raise ConfigValidationError("pairs must be a non-empty list of symbols")
            pairs = []
            for item in raw_pairs:
                symbol = normalize_symbol(str(item))
                if symbol and symbol not in pairs:
                    pairs.append(symbol)
        nested = partial.pop("strategy", None)
        if nested is not None:
            if not isinstance(nested, dict):
                raise ConfigValidationError("strategy must be a mapping")
            partial = {**nested, **partial}

        with self._state_lock:
            self.reload()
            settings = merge_strategy_settings(self.settings, partial)
            classes_changed = (
                settings.enabled_forex != self.settings.enabled_forex
                or settings.enabled_futures != self.settings.enabled_futures
                or settings.enabled_crypto != self.settings.enabled_crypto
            )
            self.settings = settings
            self.bot.strategy = settings.model_dump()
            for key, value in flags.items():
                setattr(self.bot, key, value)
            if pairs is not None:
                self.bot.pairs = pairs
            elif classes_changed:
                self.bot.pairs = self._pairs_for(settings)
            self.journal.update_bot_settings(self.bot)
        LOGGER.info("Bot config updated: %s", ",".join(sorted([*partial, *flags, *(["pairs"] if pairs else [])])))
        return OperatorResult(True, "Configuration updated", {"strategy": self.bot.strategy, "pairs": self.bot.pairs})

    def run_bot_now(self) -> OperatorResult:
        try:
            created, report = self._run_cycle(generate=True)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Manual run failed: %s", exc)
            return OperatorResult(False, f"Run failed: {exc}")
        return OperatorResult(
            True,
            f"Generated {created} signals, checked {report.checked}",
            {"signals_generated": created, "monitor": report.as_dict()},
        )

    def run_trade_monitor(self) -> OperatorResult:
        try:
            _, report = self._run_cycle(generate=False)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Manual monitor pass failed: %s", exc)
            return OperatorResult(False, f"Monitor failed: {exc}")
        return OperatorResult(
            True,
            f"Checked {report.checked} signals, closed {report.closed}",
            {"monitor": report.as_dict()},
        )

    def update_outcome(self, signal_id: str, outcome: Outcome | str) -> OperatorResult:
        with self._cycle_lock:
            signal = self.journal.get_signal(signal_id)
            if signal is None:
                return OperatorResult(False, f"Signal {signal_id} not found")
            transition = apply_override(signal, outcome, self.clock())
            if not self.journal.update_signal(transition.signal):
                raise InvalidOverrideError(f"Signal {signal_id} changed concurrently; reload and retry")
            for event in transition.events:
                self.journal.log_event(event)
        updated = transition.signal
        LOGGER.info(
            "Manual override %s -> status=%s outcome=%s R=%.2f",
            signal_id,
            updated.signal_status.value,
            updated.outcome.value,
            updated.final_r_multiple or 0.0,
        )
        return OperatorResult(
            True,
            f"Signal {signal_id} closed as {updated.outcome.value}",
            {
                "signal_status": updated.signal_status.value,
                "outcome": updated.outcome.value,
                "final_r_multiple": updated.final_r_multiple,
            },
        )

    def delete_signal(self, signal_id: str) -> OperatorResult:
        with self._cycle_lock:
            deleted = self.journal.delete_signal(signal_id)
        if not deleted:
            return OperatorResult(False, f"Signal {signal_id} not found")
        LOGGER.info("Deleted signal %s", signal_id)
        return OperatorResult(True, f"Signal {signal_id} deleted")

    def delete_all_signals(self) -> OperatorResult:
        with self._cycle_lock:
            count = self.journal.delete_all_signals()
        LOGGER.warning("Deleted all signals count=%d", count)
        return OperatorResult(True, f"Deleted {count} signals", {"deleted": count})

    def import_signals(self, drafts: list[SignalDraft]) -> OperatorResult:
        now = self.clock()
        known = self.journal.signal_ids()
        created: list[str] = []
        errors: list[str] = []
        with self._cycle_lock:
            for draft in drafts:
                if draft.signal_id and draft.signal_id in known:
                    errors.append(f"{draft.signal_id}: duplicate")
                    continue
                try:
                    signal = build_signal(draft, now=now)
                except InvalidSignalError as exc:
                    errors.append(f"{draft.symbol}: {exc}")
                    continue
                decision = broadcast_decision(
                    signal.confluence_score,
                    auto_broadcast=self.bot.auto_broadcast,
                    send_to_users_enabled=self.bot.send_to_users_enabled,
                    send_to_agents_enabled=self.bot.send_to_agents_enabled,
                    high_confluence=self.config.bot.broadcast_min_confluence,
                )
                signal.send_to_users = decision.send_to_users
                signal.sent_to_agents = decision.sent_to_agents
                if self.journal.insert_signal(signal):
                    known.add(signal.id)
                    created.append(signal.id)
        return OperatorResult(
            not errors or bool(created),
            f"Imported {len(created)} signals, rejected {len(errors)}",
            {"created": created, "errors": errors},
        )

    # Analytics

    def signal_stats(self) -> dict[str, Any]:
        return compute_signal_stats(self.journal.list_signals())

    def post_trade_analytics(self) -> dict[str, Any]:
        signals = self.journal.list_signals()
        analytics = compute_post_trade_analytics(signals)
        analytics["by_symbol"] = win_rate_by_symbol(signals)
        analytics["by_confluence"] = win_rate_by_confluence(signals)
        analytics["by_kill_zone"] = win_rate_by_kill_zone(signals)
        return analytics

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            return {
                "bot_type": self.bot.bot_type,
                "is_running": self.bot.is_running,
                "scheduler_active": self.scheduler_active,
                "interval_minutes": self.settings.auto_run_interval_minutes,
                "pairs": len(self.bot.pairs),
                "started_at": self.bot.started_at.isoformat() if self.bot.started_at else None,
                "stopped_at": self.bot.stopped_at.isoformat() if self.bot.stopped_at else None,
                "last_run_at": self.bot.last_run_at.isoformat() if self.bot.last_run_at else None,
                "cycles_completed": self.cycles_completed,
            }
