from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from tradewatch.config import RiskPolicyConfig
from tradewatch.storage.models import Signal, SignalEvent


class ManagementMode(str, Enum):
    SINGLE_TARGET = "single_target"
    SCALE_OUT = "scale_out"


class EventType(str, Enum):
    ENTRY_TRIGGERED = "entry_triggered"
    BREAKEVEN = "breakeven"
    TRAILING_UPDATE = "trailing_update"
    TP1_PARTIAL = "tp1_partial"
    TP2_PARTIAL = "tp2_partial"
    TRADE_CLOSED = "trade_closed"
    EXPIRED = "expired"
    MANUAL_OVERRIDE = "manual_override"


@dataclass(slots=True)
class ManagementPolicy:
    mode: ManagementMode = ManagementMode.SINGLE_TARGET
    breakeven_progress: float = 0.5
    trailing_progress: float = 0.75
    trailing_distance_ratio: float = 0.25
    tp1_close_pct: float = 33.0
    tp2_close_pct: float = 33.0
    profit_lock_pips: float = 5.0
    pending_expiry_hours: float = 4.0
    max_hold_hours: float = 48.0

    @classmethod
    def from_config(cls, config: RiskPolicyConfig) -> "ManagementPolicy":
        return cls(
            mode=ManagementMode(config.management_mode),
            breakeven_progress=config.breakeven_progress,
            trailing_progress=config.trailing_progress,
            trailing_distance_ratio=config.trailing_distance_ratio,
            tp1_close_pct=config.tp1_close_pct,
            tp2_close_pct=config.tp2_close_pct,
            profit_lock_pips=config.profit_lock_pips,
            pending_expiry_hours=config.pending_expiry_hours,
            max_hold_hours=config.max_hold_hours,
        )


@dataclass(slots=True)
class Transition:
    """New value for one signal plus the lifecycle events that produced it."""

    signal: Signal
    events: list[SignalEvent] = field(default_factory=list)
    changed: bool = False

    @property
    def closed(self) -> bool:
        return self.signal.is_terminal

    def has_event(self, event_type: EventType) -> bool:
        return any(event.event_type == event_type.value for event in self.events)
