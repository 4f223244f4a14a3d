from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def parse(cls, value: str) -> "Direction":
        key = str(value).strip().upper()
        if key in {"LONG", "BUY"}:
            return cls.LONG
        if key in {"SHORT", "SELL"}:
            return cls.SHORT
        raise ValueError(f"Unsupported direction '{value}'")


class TradeState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    PHASE3 = "phase3"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        return _TRADE_STATE_ORDER.index(self)


_TRADE_STATE_ORDER = [
    TradeState.PENDING,
    TradeState.ACTIVE,
    TradeState.PHASE1,
    TradeState.PHASE2,
    TradeState.PHASE3,
    TradeState.CLOSED,
]


class SignalStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    BREAKEVEN = "breakeven"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SignalStatus.WON, SignalStatus.LOST, SignalStatus.BREAKEVEN, SignalStatus.EXPIRED}
)


class Outcome(str, Enum):
    PENDING = "pending"
    TARGET_1_HIT = "target_1_hit"
    TARGET_2_HIT = "target_2_hit"
    TARGET_3_HIT = "target_3_hit"
    SL_HIT = "sl_hit"
    BREAKEVEN = "breakeven"
    MANUAL_CLOSE = "manual_close"
    EXPIRED = "expired"


@dataclass(slots=True)
class SignalLevels:
    entry_price: float
    stop_loss: float
    take_profit_1: float
    take_profit_2: float | None = None
    take_profit_3: float | None = None

    @property
    def risk_distance(self) -> float:
        return abs(self.entry_price - self.stop_loss)

    @property
    def target_distance(self) -> float:
        return abs(self.take_profit_1 - self.entry_price)

    @property
    def risk_reward_ratio(self) -> float:
        if self.risk_distance <= 0:
            return 0.0
        return round(self.target_distance / self.risk_distance, 2)

    def target(self, number: int) -> float | None:
        return {1: self.take_profit_1, 2: self.take_profit_2, 3: self.take_profit_3}.get(number)


@dataclass(slots=True)
class EntryFill:
    triggered_at: datetime
    price: float


@dataclass(slots=True)
class Protection:
    breakeven_triggered: bool = False
    trailing_stop: float | None = None


@dataclass(slots=True)
class Excursion:
    current_price: float
    highest_price: float
    lowest_price: float
    max_adverse_excursion: float = 0.0
    max_favorable_excursion: float = 0.0


@dataclass(slots=True)
class PartialFills:
    tp1_closed: bool = False
    tp2_closed: bool = False
    tp1_pnl: float = 0.0
    tp2_pnl: float = 0.0
    runner_pnl: float = 0.0
    remaining_position_pct: float = 100.0


@dataclass(slots=True)
class Closure:
    closed_at: datetime
    exit_price: float | None
    exit_reason: str
    final_r_multiple: float


@dataclass(slots=True)
class Signal:
    """
    One trading signal and its risk lifecycle.

    Phase payloads (entry, protection, excursion, partials) exist only after the
    entry has triggered; closure exists only once the signal is terminal.
    """

    id: str
    symbol: str
    direction: Direction
    levels: SignalLevels
    created_at: datetime
    confluence_score: int | None = None
    send_to_users: bool = False
    sent_to_agents: bool = False
    signal_status: SignalStatus = SignalStatus.PENDING
    outcome: Outcome = Outcome.PENDING
    trade_state: TradeState = TradeState.PENDING
    entry: EntryFill | None = None
    protection: Protection | None = None
    excursion: Excursion | None = None
    partials: PartialFills | None = None
    closure: Closure | None = None
    version: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.signal_status.is_terminal

    @property
    def entry_triggered(self) -> bool:
        return self.entry is not None

    @property
    def entry_triggered_at(self) -> datetime | None:
        return self.entry.triggered_at if self.entry else None

    @property
    def breakeven_triggered(self) -> bool:
        return bool(self.protection and self.protection.breakeven_triggered)

    @property
    def trailing_stop(self) -> float | None:
        return self.protection.trailing_stop if self.protection else None

    @property
    def effective_stop(self) -> float:
        trailing = self.trailing_stop
        return trailing if trailing is not None else self.levels.stop_loss

    @property
    def current_price(self) -> float | None:
        return self.excursion.current_price if self.excursion else None

    @property
    def highest_price(self) -> float | None:
        return self.excursion.highest_price if self.excursion else None

    @property
    def lowest_price(self) -> float | None:
        return self.excursion.lowest_price if self.excursion else None

    @property
    def max_adverse_excursion(self) -> float | None:
        return self.excursion.max_adverse_excursion if self.excursion else None

    @property
    def max_favorable_excursion(self) -> float | None:
        return self.excursion.max_favorable_excursion if self.excursion else None

    @property
    def tp1_closed(self) -> bool:
        return bool(self.partials and self.partials.tp1_closed)

    @property
    def tp2_closed(self) -> bool:
        return bool(self.partials and self.partials.tp2_closed)

    @property
    def final_r_multiple(self) -> float | None:
        return self.closure.final_r_multiple if self.closure else None

    @property
    def closed_at(self) -> datetime | None:
        return self.closure.closed_at if self.closure else None


@dataclass(slots=True)
class SignalEvent:
    signal_id: str
    event_type: str
    trade_state: str
    created_at: datetime
    price: float | None = None
    stop_before: float | None = None
    stop_after: float | None = None
    r_multiple: float | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BotConfig:
    bot_type: str
    is_running: bool = False
    pairs: list[str] = field(default_factory=list)
    auto_broadcast: bool = True
    send_to_users_enabled: bool = True
    send_to_agents_enabled: bool = False
    strategy: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_run_at: datetime | None = None
    last_signal_at: datetime | None = None
    signals_generated_last_run: int = 0
    updated_at: datetime | None = None
