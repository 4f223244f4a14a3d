from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime

from tradewatch.clock import utc_now
from tradewatch.data.price_feed import PriceFeed
from tradewatch.data.ticks import PriceTick
from tradewatch.monitoring.alerts import SignalNotifier
from tradewatch.storage.journal import Journal, StoreWriteError
from tradewatch.storage.models import Signal
from tradewatch.strategy.contracts import EventType, ManagementPolicy, Transition
from tradewatch.strategy.risk_machine import advance
from tradewatch.strategy.trigger import detect_entry, expire_pending, is_pending_expired

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MonitorReport:
    started_at: datetime
    checked: int = 0
    triggered: int = 0
    updated: int = 0
    closed: int = 0
    expired: int = 0
    no_price: int = 0
    stale_writes: int = 0
    write_errors: int = 0
    closed_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        return payload


class TradeMonitor:
    """
    One pass over all open signals against the cached price snapshot.

    Per signal: pending expiry, then the entry latch, then the risk rules.
    The sample that triggers an entry is not run through the risk rules.
    Each signal is committed with a single conditional update; a refused
    write (row changed or closed meanwhile) is retried on the next pass.
    """

    def __init__(
        self,
        *,
        journal: Journal,
        feed: PriceFeed,
        policy: ManagementPolicy,
        notifier: SignalNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.journal = journal
        self.feed = feed
        self.policy = policy
        self.notifier = notifier
        self.clock = clock

    def run_pass(self, now: datetime | None = None) -> MonitorReport:
        now = now or self.clock()
        report = MonitorReport(started_at=now)
        snapshot = self.feed.snapshot()
        for signal in self.journal.list_open_signals():
            report.checked += 1
            try:
                self._process(signal, snapshot, now, report)
            except StoreWriteError as exc:
                report.write_errors += 1
                LOGGER.warning("Signal %s not persisted, retrying next pass: %s", signal.id, exc)
        LOGGER.info(
            "Monitor pass checked=%d triggered=%d updated=%d closed=%d expired=%d no_price=%d stale=%d errors=%d",
            report.checked,
            report.triggered,
            report.updated,
            report.closed,
            report.expired,
            report.no_price,
            report.stale_writes,
            report.write_errors,
        )
        return report

    def _process(self, signal: Signal, snapshot: dict[str, PriceTick], now: datetime, report: MonitorReport) -> None:
        if is_pending_expired(signal, now, self.policy.pending_expiry_hours):
            if self._commit(expire_pending(signal, now), report):
                report.expired += 1
            return

        tick = snapshot.get(signal.symbol)
        if tick is None:
            report.no_price += 1
            return

        if not signal.entry_triggered:
            transition = detect_entry(signal, tick.price, now)
            if self._commit(transition, report, require_untriggered=True):
                report.triggered += 1
            return

        transition = advance(signal, tick.price, now, self.policy)
        if self._commit(transition, report):
            report.updated += 1
            if transition.closed:
                report.closed += 1
                report.closed_ids.append(signal.id)

    def _commit(self, transition: Transition, report: MonitorReport, *, require_untriggered: bool = False) -> bool:
        if not transition.changed:
            return False
        updated = transition.signal
        if not self.journal.update_signal(updated, require_untriggered=require_untriggered):
            report.stale_writes += 1
            LOGGER.info("Signal %s changed or closed concurrently; retrying next pass", updated.id)
            return False

        for event in transition.events:
            try:
                self.journal.log_event(event)
            except StoreWriteError as exc:
                LOGGER.warning("Lifecycle event lost for signal %s: %s", updated.id, exc)
            if event.event_type == EventType.TRADE_CLOSED.value:
                LOGGER.info(
                    "Signal %s %s closed status=%s outcome=%s R=%.2f",
                    updated.id,
                    updated.symbol,
                    updated.signal_status.value,
                    updated.outcome.value,
                    updated.final_r_multiple or 0.0,
                )
            if self.notifier is not None:
                try:
                    self.notifier.notify(updated, event)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning("Notification for signal %s failed: %s", updated.id, exc)
        return True
