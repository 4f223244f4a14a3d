from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from tradewatch.config import AppConfig, ConfigValidationError, load_config
from tradewatch.controller import BotController, OperatorResult
from tradewatch.data.price_feed import PriceFeed, PricePoller, build_quote_provider
from tradewatch.execution.trade_monitor import TradeMonitor
from tradewatch.monitoring.alerts import AlertConfig, AlertDispatcher, SignalNotifier
from tradewatch.monitoring.dashboard import DashboardWriter
from tradewatch.storage.db import get_connection, init_db
from tradewatch.storage.journal import Journal
from tradewatch.strategy.contracts import ManagementPolicy
from tradewatch.strategy.generator import SignalGenerator
from tradewatch.strategy.outcome import InvalidOverrideError
from tradewatch.strategy.signal_source import JsonFileSignalSource, SignalDraft, build_signal_source

LOGGER = logging.getLogger(__name__)

SYNC_SECONDS = 5.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Signal risk lifecycle monitor")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")

    command = parser.add_mutually_exclusive_group()
    command.add_argument("--daemon", action="store_true", help="Run price poller + scheduler until interrupted (default).")
    command.add_argument("--run-now", action="store_true", help="Generate signals, run one monitor pass and exit.")
    command.add_argument("--monitor-once", action="store_true", help="Run one monitor pass over open signals and exit.")
    command.add_argument("--stats", action="store_true", help="Print signal stats and post-trade analytics.")
    command.add_argument("--toggle", choices=["on", "off"], default=None)
    command.add_argument("--set", dest="settings", action="append", metavar="KEY=VALUE", help="Update bot config (repeatable).")
    command.add_argument("--override", nargs=2, metavar=("SIGNAL_ID", "OUTCOME"))
    command.add_argument("--delete", metavar="SIGNAL_ID")
    command.add_argument("--delete-all", action="store_true")
    command.add_argument("--import-signals", metavar="FILE", help="Import signals from a JSON file.")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def resolve_path(root: Path, raw: str | Path) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = root / path
    return path


def resolve_db_path(root: Path, config: AppConfig) -> str:
    raw_path = os.getenv("TRADEWATCH_DB_PATH", "").strip() or config.storage.sqlite_path
    if raw_path == ":memory:":
        return raw_path
    return str(resolve_path(root, raw_path))


def build_alert_dispatcher(config: AppConfig) -> AlertDispatcher:
    return AlertDispatcher(
        AlertConfig(
            enabled=config.monitoring.alerts_enabled,
            discord_webhook=os.getenv("ALERT_DISCORD_WEBHOOK"),
            telegram_bot_token=os.getenv("ALERT_TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("ALERT_TELEGRAM_CHAT_ID"),
            cooldown_seconds=int(os.getenv("ALERT_COOLDOWN_SECONDS", str(config.monitoring.alert_cooldown_seconds))),
        )
    )


def parse_set_values(items: list[str]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are read as YAML scalars/lists."""
    partial: dict[str, Any] = {}
    for item in items:
        key, sep, raw_value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigValidationError(f"Expected KEY=VALUE, got {item!r}")
        partial[key] = yaml.safe_load(raw_value) if raw_value.strip() else None
    return partial


def load_signal_file(path: Path) -> list[SignalDraft]:
    return JsonFileSignalSource(path, consume=False).fetch_new_signals()


@dataclass(slots=True)
class Runtime:
    config: AppConfig
    journal: Journal
    feed: PriceFeed
    controller: BotController


def build_runtime(config: AppConfig, root: Path) -> Runtime:
    db_path = resolve_db_path(root, config)
    conn = get_connection(db_path)
    init_db(conn)
    journal = Journal(conn)
    LOGGER.info("SQLite state path: %s", db_path)

    feed = PriceFeed(build_quote_provider(config.price_feed, root))
    source = build_signal_source(
        provider_name=os.getenv("SIGNAL_SOURCE_PROVIDER", config.signal_source.provider),
        inbox_file=resolve_path(root, config.signal_source.inbox_file),
        http_url=os.getenv("SIGNAL_SOURCE_URL", config.signal_source.http_url or ""),
        http_token=os.getenv("SIGNAL_SOURCE_TOKEN"),
        timeout_seconds=config.signal_source.http_timeout_seconds,
    )
    monitor = TradeMonitor(
        journal=journal,
        feed=feed,
        policy=ManagementPolicy.from_config(config.risk),
        notifier=SignalNotifier(build_alert_dispatcher(config)),
    )
    controller = BotController(
        journal=journal,
        config=config,
        monitor=monitor,
        generator=SignalGenerator(source, high_confluence=config.bot.broadcast_min_confluence),
        dashboard=DashboardWriter(resolve_path(root, os.getenv("DASHBOARD_PATH", config.monitoring.dashboard_path))),
    )
    return Runtime(config=config, journal=journal, feed=feed, controller=controller)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


def _report(result: OperatorResult) -> int:
    log = LOGGER.info if result.success else LOGGER.error
    log("%s", result.message)
    if result.data:
        _print_json(asdict(result))
    return 0 if result.success else 1


def run_daemon(runtime: Runtime) -> None:
    config = runtime.config
    controller = runtime.controller
    poller = PricePoller(
        runtime.feed,
        controller.monitored_symbols,
        interval_seconds=config.price_feed.poll_seconds,
    )
    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    poller.start()
    if config.bot.auto_start and not controller.bot.is_running:
        controller.toggle_bot(True)
    else:
        controller.resume()
    LOGGER.info(
        "Daemon started | bot=%s | running=%s | poll=%ss | timezone=%s",
        controller.bot.bot_type,
        controller.bot.is_running,
        config.price_feed.poll_seconds,
        config.timezone,
    )

    last_heartbeat = time.monotonic()
    last_sync = last_heartbeat
    while not stop_event.is_set():
        mono = time.monotonic()
        if mono - last_sync >= SYNC_SECONDS:
            try:
                controller.sync()
            except sqlite3.Error as exc:
                LOGGER.warning("Bot config sync failed: %s", exc)
            last_sync = mono
        if mono - last_heartbeat >= config.monitoring.heartbeat_seconds:
            status = controller.status()
            LOGGER.info(
                "Heartbeat | running=%s scheduler=%s cycles=%d open=%d prices=%d last_run=%s",
                status["is_running"],
                status["scheduler_active"],
                status["cycles_completed"],
                len(controller.monitored_symbols()),
                len(runtime.feed.snapshot()),
                status["last_run_at"],
            )
            last_heartbeat = mono
        stop_event.wait(1.0)

    controller.shutdown()
    poller.stop()
    LOGGER.info("Daemon stopped.")


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config = load_config(resolve_path(root, args.config))
    runtime = build_runtime(config, root)
    controller = runtime.controller

    try:
        if args.run_now or args.monitor_once:
            runtime.feed.refresh(controller.monitored_symbols())
            result = controller.run_bot_now() if args.run_now else controller.run_trade_monitor()
            return _report(result)
        if args.stats:
            _print_json(
                {
                    "bot": controller.status(),
                    "signal_stats": controller.signal_stats(),
                    "post_trade_analytics": controller.post_trade_analytics(),
                }
            )
            return 0
        if args.toggle:
            return _report(controller.toggle_bot(args.toggle == "on", schedule=False))
        if args.settings:
            return _report(controller.update_bot_config(parse_set_values(args.settings)))
        if args.override:
            signal_id, outcome = args.override
            return _report(controller.update_outcome(signal_id, outcome))
        if args.delete:
            return _report(controller.delete_signal(args.delete))
        if args.delete_all:
            return _report(controller.delete_all_signals())
        if args.import_signals:
            drafts = load_signal_file(resolve_path(Path.cwd(), args.import_signals))
            return _report(controller.import_signals(drafts))
    except ConfigValidationError as exc:
        LOGGER.error("Configuration rejected: %s", exc)
        return 2
    except InvalidOverrideError as exc:
        LOGGER.error("Override rejected: %s", exc)
        return 2

    run_daemon(runtime)
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
