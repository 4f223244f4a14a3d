from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from tradewatch.storage.models import (
    TERMINAL_STATUSES,
    BotConfig,
    Closure,
    Direction,
    EntryFill,
    Excursion,
    Outcome,
    PartialFills,
    Protection,
    Signal,
    SignalEvent,
    SignalLevels,
    SignalStatus,
    TradeState,
)

LOGGER = logging.getLogger(__name__)

_TERMINAL_SQL = ", ".join(f"'{status.value}'" for status in sorted(TERMINAL_STATUSES, key=lambda s: s.value))


class StoreWriteError(RuntimeError):
    """Persistence failure on a single signal write."""


@dataclass(slots=True)
class ChangeEvent:
    action: str
    signal_id: str
    signal: Signal | None = None


ChangeListener = Callable[[ChangeEvent], None]


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _signal_columns(signal: Signal) -> dict[str, Any]:
    levels = signal.levels
    entry = signal.entry
    protection = signal.protection
    excursion = signal.excursion
    partials = signal.partials
    closure = signal.closure
    return {
        "symbol": signal.symbol,
        "direction": signal.direction.value,
        "entry_price": levels.entry_price,
        "stop_loss": levels.stop_loss,
        "take_profit_1": levels.take_profit_1,
        "take_profit_2": levels.take_profit_2,
        "take_profit_3": levels.take_profit_3,
        "risk_reward_ratio": levels.risk_reward_ratio,
        "confluence_score": signal.confluence_score,
        "created_at": _to_iso(signal.created_at),
        "send_to_users": int(signal.send_to_users),
        "sent_to_agents": int(signal.sent_to_agents),
        "signal_status": signal.signal_status.value,
        "outcome": signal.outcome.value,
        "trade_state": signal.trade_state.value,
        "entry_triggered": int(entry is not None),
        "entry_triggered_at": _to_iso(entry.triggered_at) if entry else None,
        "entry_fill_price": entry.price if entry else None,
        "breakeven_triggered": int(bool(protection and protection.breakeven_triggered)),
        "trailing_stop": protection.trailing_stop if protection else None,
        "current_price": excursion.current_price if excursion else None,
        "highest_price": excursion.highest_price if excursion else None,
        "lowest_price": excursion.lowest_price if excursion else None,
        "max_adverse_excursion": excursion.max_adverse_excursion if excursion else None,
        "max_favorable_excursion": excursion.max_favorable_excursion if excursion else None,
        "tp1_closed": int(bool(partials and partials.tp1_closed)),
        "tp2_closed": int(bool(partials and partials.tp2_closed)),
        "tp1_pnl": partials.tp1_pnl if partials else 0.0,
        "tp2_pnl": partials.tp2_pnl if partials else 0.0,
        "runner_pnl": partials.runner_pnl if partials else 0.0,
        "remaining_position_pct": partials.remaining_position_pct if partials else 100.0,
        "final_r_multiple": closure.final_r_multiple if closure else None,
        "exit_price": closure.exit_price if closure else None,
        "exit_reason": closure.exit_reason if closure else None,
        "closed_at": _to_iso(closure.closed_at) if closure else None,
        "metadata": json.dumps(signal.metadata),
    }


def _signal_from_row(row: sqlite3.Row) -> Signal:
    entry: EntryFill | None = None
    protection: Protection | None = None
    excursion: Excursion | None = None
    partials: PartialFills | None = None
    if bool(row["entry_triggered"]):
        triggered_at = _from_iso(row["entry_triggered_at"]) or _from_iso(row["created_at"])
        fill_price = row["entry_fill_price"]
        if fill_price is None:
            fill_price = row["current_price"] if row["current_price"] is not None else row["entry_price"]
        entry = EntryFill(triggered_at=triggered_at, price=float(fill_price))
        protection = Protection(
            breakeven_triggered=bool(row["breakeven_triggered"]),
            trailing_stop=row["trailing_stop"],
        )
        current = row["current_price"] if row["current_price"] is not None else entry.price
        excursion = Excursion(
            current_price=float(current),
            highest_price=float(row["highest_price"] if row["highest_price"] is not None else current),
            lowest_price=float(row["lowest_price"] if row["lowest_price"] is not None else current),
            max_adverse_excursion=float(row["max_adverse_excursion"] or 0.0),
            max_favorable_excursion=float(row["max_favorable_excursion"] or 0.0),
        )
        partials = PartialFills(
            tp1_closed=bool(row["tp1_closed"]),
            tp2_closed=bool(row["tp2_closed"]),
            tp1_pnl=float(row["tp1_pnl"]),
            tp2_pnl=float(row["tp2_pnl"]),
            runner_pnl=float(row["runner_pnl"]),
            remaining_position_pct=float(row["remaining_position_pct"]),
        )
    closure: Closure | None = None
    if row["closed_at"] is not None:
        closure = Closure(
            closed_at=_from_iso(row["closed_at"]),
            exit_price=row["exit_price"],
            exit_reason=str(row["exit_reason"] or ""),
            final_r_multiple=float(row["final_r_multiple"] or 0.0),
        )
    return Signal(
        id=str(row["id"]),
        symbol=str(row["symbol"]),
        direction=Direction(str(row["direction"])),
        levels=SignalLevels(
            entry_price=float(row["entry_price"]),
            stop_loss=float(row["stop_loss"]),
            take_profit_1=float(row["take_profit_1"]),
            take_profit_2=row["take_profit_2"],
            take_profit_3=row["take_profit_3"],
        ),
        created_at=_from_iso(row["created_at"]),
        confluence_score=row["confluence_score"],
        send_to_users=bool(row["send_to_users"]),
        sent_to_agents=bool(row["sent_to_agents"]),
        signal_status=SignalStatus(str(row["signal_status"])),
        outcome=Outcome(str(row["outcome"])),
        trade_state=TradeState(str(row["trade_state"])),
        entry=entry,
        protection=protection,
        excursion=excursion,
        partials=partials,
        closure=closure,
        version=int(row["version"]),
        metadata=json.loads(row["metadata"] or "{}"),
    )


class Journal:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Change listener failed action=%s signal=%s: %s", event.action, event.signal_id, exc)

    def insert_signal(self, signal: Signal) -> bool:
        columns = _signal_columns(signal)
        columns["id"] = signal.id
        columns["version"] = signal.version
        columns["updated_at"] = _to_iso(datetime.now(timezone.utc))
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        with self.lock:
            cursor = self.conn.execute(
                f"INSERT OR IGNORE INTO signals ({names}) VALUES ({placeholders})",
                tuple(columns.values()),
            )
            self.conn.commit()
            inserted = cursor.rowcount > 0
        if inserted:
            self._publish(ChangeEvent(action="insert", signal_id=signal.id, signal=signal))
        return inserted

    def update_signal(self, signal: Signal, *, require_untriggered: bool = False) -> bool:
        """
        Write every field of ``signal`` in one statement.

        The row is only written when its stored version still equals
        ``signal.version`` and its status is not terminal. Returns False when
        the row changed, closed or vanished meanwhile; ``signal.version`` is
        bumped on success.
        """
        columns = _signal_columns(signal)
        columns["updated_at"] = _to_iso(datetime.now(timezone.utc))
        assignments = ", ".join(f"{name} = ?" for name in columns)
        where = f"id = ? AND version = ? AND signal_status NOT IN ({_TERMINAL_SQL})"
        if require_untriggered:
            where += " AND entry_triggered = 0"
        try:
            with self.lock:
                cursor = self.conn.execute(
                    f"UPDATE signals SET {assignments}, version = version + 1 WHERE {where}",
                    (*columns.values(), signal.id, signal.version),
                )
                self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreWriteError(f"Could not update signal {signal.id}: {exc}") from exc
        if cursor.rowcount == 0:
            return False
        signal.version += 1
        self._publish(ChangeEvent(action="update", signal_id=signal.id, signal=signal))
        return True

    def get_signal(self, signal_id: str) -> Signal | None:
        with self.lock:
            row = self.conn.execute("SELECT * FROM signals WHERE id = ?", (signal_id,)).fetchone()
        return _signal_from_row(row) if row else None

    def list_signals(
        self,
        *,
        statuses: Iterable[SignalStatus] | None = None,
        trade_states: Iterable[TradeState] | None = None,
        outcomes: Iterable[Outcome] | None = None,
        symbol: str | None = None,
    ) -> list[Signal]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, values in (
            ("signal_status", statuses),
            ("trade_state", trade_states),
            ("outcome", outcomes),
        ):
            if values is None:
                continue
            items = [item.value for item in values]
            if not items:
                return []
            clauses.append(f"{column} IN ({', '.join('?' for _ in items)})")
            params.extend(items)
        if symbol:
            clauses.append("symbol = ?")
            params.append(symbol.strip().upper())
        query = "SELECT * FROM signals"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, id ASC"
        with self.lock:
            rows = self.conn.execute(query, tuple(params)).fetchall()
        return [_signal_from_row(row) for row in rows]

    def list_open_signals(self) -> list[Signal]:
        return self.list_signals(statuses=[SignalStatus.PENDING, SignalStatus.ACTIVE])

    def signal_ids(self) -> set[str]:
        with self.lock:
            rows = self.conn.execute("SELECT id FROM signals").fetchall()
        return {str(row[0]) for row in rows}

    def delete_signal(self, signal_id: str) -> bool:
        with self.lock:
            cursor = self.conn.execute("DELETE FROM signals WHERE id = ?", (signal_id,))
            self.conn.execute("DELETE FROM signal_events WHERE signal_id = ?", (signal_id,))
            self.conn.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            self._publish(ChangeEvent(action="delete", signal_id=signal_id))
        return deleted

    def delete_all_signals(self) -> int:
        with self.lock:
            ids = [str(row[0]) for row in self.conn.execute("SELECT id FROM signals").fetchall()]
            self.conn.execute("DELETE FROM signals")
            self.conn.execute("DELETE FROM signal_events")
            self.conn.commit()
        for signal_id in ids:
            self._publish(ChangeEvent(action="delete", signal_id=signal_id))
        return len(ids)

    def log_event(self, event: SignalEvent) -> None:
        try:
            with self.lock:
                self.conn.execute(
                    """
                    INSERT INTO signal_events (
                        signal_id, event_type, trade_state, price, stop_before, stop_after,
                        r_multiple, details, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.signal_id,
                        event.event_type,
                        event.trade_state,
                        event.price,
                        event.stop_before,
                        event.stop_after,
                        event.r_multiple,
                        json.dumps(event.details),
                        _to_iso(event.created_at),
                    ),
                )
                self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreWriteError(f"Could not log {event.event_type} for signal {event.signal_id}: {exc}") from exc

    def list_events(self, signal_id: str | None = None) -> list[SignalEvent]:
        query = "SELECT * FROM signal_events"
        params: tuple[Any, ...] = ()
        if signal_id is not None:
            query += " WHERE signal_id = ?"
            params = (signal_id,)
        query += " ORDER BY id ASC"
        with self.lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            SignalEvent(
                signal_id=str(row["signal_id"]),
                event_type=str(row["event_type"]),
                trade_state=str(row["trade_state"]),
                created_at=_from_iso(row["created_at"]),
                price=row["price"],
                stop_before=row["stop_before"],
                stop_after=row["stop_after"],
                r_multiple=row["r_multiple"],
                details=json.loads(row["details"] or "{}"),
            )
            for row in rows
        ]

    def load_bot_config(self, bot_type: str) -> BotConfig | None:
        with self.lock:
            row = self.conn.execute("SELECT * FROM bot_status WHERE bot_type = ?", (bot_type,)).fetchone()
        if row is None:
            return None
        return BotConfig(
            bot_type=str(row["bot_type"]),
            is_running=bool(row["is_running"]),
            pairs=list(json.loads(row["pairs"] or "[]")),
            auto_broadcast=bool(row["auto_broadcast"]),
            send_to_users_enabled=bool(row["send_to_users_enabled"]),
            send_to_agents_enabled=bool(row["send_to_agents_enabled"]),
            strategy=dict(json.loads(row["strategy"] or "{}")),
            started_at=_from_iso(row["started_at"]),
            stopped_at=_from_iso(row["stopped_at"]),
            last_run_at=_from_iso(row["last_run_at"]),
            last_signal_at=_from_iso(row["last_signal_at"]),
            signals_generated_last_run=int(row["signals_generated_last_run"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def save_bot_config(self, config: BotConfig) -> None:
        config.updated_at = datetime.now(timezone.utc)
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO bot_status (
                    bot_type, is_running, pairs, auto_broadcast, send_to_users_enabled,
                    send_to_agents_enabled, strategy, started_at, stopped_at, last_run_at,
                    last_signal_at, signals_generated_last_run, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(bot_type) DO UPDATE SET
                    is_running=excluded.is_running,
                    pairs=excluded.pairs,
                    auto_broadcast=excluded.auto_broadcast,
                    send_to_users_enabled=excluded.send_to_users_enabled,
                    send_to_agents_enabled=excluded.send_to_agents_enabled,
                    strategy=excluded.strategy,
                    started_at=excluded.started_at,
                    stopped_at=excluded.stopped_at,
                    last_run_at=excluded.last_run_at,
                    last_signal_at=excluded.last_signal_at,
                    signals_generated_last_run=excluded.signals_generated_last_run,
                    updated_at=excluded.updated_at
                """,
                (
                    config.bot_type,
                    int(config.is_running),
                    json.dumps(config.pairs),
                    int(config.auto_broadcast),
                    int(config.send_to_users_enabled),
                    int(config.send_to_agents_enabled),
                    json.dumps(config.strategy),
                    _to_iso(config.started_at),
                    _to_iso(config.stopped_at),
                    _to_iso(config.last_run_at),
                    _to_iso(config.last_signal_at),
                    int(config.signals_generated_last_run),
                    _to_iso(config.updated_at),
                ),
            )
            self.conn.commit()

    def set_bot_running(self, bot_type: str, running: bool, at: datetime) -> None:
        stamp = "started_at = ?, stopped_at = NULL" if running else "stopped_at = ?"
        with self.lock:
            self.conn.execute(
                f"UPDATE bot_status SET is_running = ?, {stamp}, updated_at = ? WHERE bot_type = ?",
                (int(running), _to_iso(at), _to_iso(datetime.now(timezone.utc)), bot_type),
            )
            self.conn.commit()

    def update_bot_settings(self, config: BotConfig) -> None:
        """Write pairs, broadcast flags and strategy only; run state columns stay untouched."""
        config.updated_at = datetime.now(timezone.utc)
        with self.lock:
            self.conn.execute(
                """
                UPDATE bot_status SET
                    pairs = ?, auto_broadcast = ?, send_to_users_enabled = ?,
                    send_to_agents_enabled = ?, strategy = ?, updated_at = ?
                WHERE bot_type = ?
                """,
                (
                    json.dumps(config.pairs),
                    int(config.auto_broadcast),
                    int(config.send_to_users_enabled),
                    int(config.send_to_agents_enabled),
                    json.dumps(config.strategy),
                    _to_iso(config.updated_at),
                    config.bot_type,
                ),
            )
            self.conn.commit()

    def record_bot_run(
        self,
        bot_type: str,
        *,
        last_run_at: datetime,
        signals_generated: int | None = None,
        last_signal_at: datetime | None = None,
    ) -> None:
        assignments = ["last_run_at = ?"]
        params: list[Any] = [_to_iso(last_run_at)]
        if signals_generated is not None:
            assignments.append("signals_generated_last_run = ?")
            params.append(int(signals_generated))
        if last_signal_at is not None:
            assignments.append("last_signal_at = ?")
            params.append(_to_iso(last_signal_at))
        assignments.append("updated_at = ?")
        params.extend([_to_iso(datetime.now(timezone.utc)), bot_type])
        with self.lock:
            self.conn.execute(f"UPDATE bot_status SET {', '.join(assignments)} WHERE bot_type = ?", params)
            self.conn.commit()
