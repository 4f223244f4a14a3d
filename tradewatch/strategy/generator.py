from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

import requests

from tradewatch.clock import active_kill_zone, in_kill_zone
from tradewatch.config import StrategySettings
from tradewatch.data.instruments import normalize_symbol
from tradewatch.storage.models import BotConfig, Direction, Signal, SignalLevels
from tradewatch.strategy.levels import InvalidSignalError, validate_levels
from tradewatch.strategy.signal_source import SignalDraft, SignalSource

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BroadcastDecision:
    send_to_users: bool
    sent_to_agents: bool


@dataclass(slots=True)
class GenerationResult:
    created: list[Signal] = field(default_factory=list)
    rejected: Counter[str] = field(default_factory=Counter)


def broadcast_decision(
    confluence_score: int | None,
    *,
    auto_broadcast: bool,
    send_to_users_enabled: bool,
    send_to_agents_enabled: bool,
    high_confluence: int = 8,
) -> BroadcastDecision:
    if not auto_broadcast:
        return BroadcastDecision(send_to_users=False, sent_to_agents=False)
    if confluence_score is not None and confluence_score >= high_confluence:
        return BroadcastDecision(send_to_users=True, sent_to_agents=True)
    if send_to_agents_enabled:
        return BroadcastDecision(send_to_users=False, sent_to_agents=True)
    if send_to_users_enabled:
        return BroadcastDecision(send_to_users=True, sent_to_agents=False)
    return BroadcastDecision(send_to_users=False, sent_to_agents=False)


def build_signal(draft: SignalDraft, *, now: datetime) -> Signal:
    try:
        direction = Direction.parse(draft.direction)
    except ValueError as exc:
        raise InvalidSignalError(str(exc)) from exc
    levels = SignalLevels(
        entry_price=draft.entry_price,
        stop_loss=draft.stop_loss,
        take_profit_1=draft.take_profit_1,
        take_profit_2=draft.take_profit_2,
        take_profit_3=draft.take_profit_3,
    )
    validate_levels(direction, levels)
    metadata = dict(draft.metadata)
    metadata["source"] = draft.source
    return Signal(
        id=draft.signal_id or uuid.uuid4().hex,
        symbol=normalize_symbol(draft.symbol),
        direction=direction,
        levels=levels,
        created_at=draft.created_at or now,
        confluence_score=draft.confluence_score,
        metadata=metadata,
    )


class SignalGenerator:
    """Turns drafts from a SignalSource into new signals that pass the bot's filters."""

    def __init__(self, source: SignalSource, *, high_confluence: int = 8):
        self.source = source
        self.high_confluence = high_confluence

    def generate(
        self,
        bot: BotConfig,
        settings: StrategySettings,
        *,
        now: datetime,
        known_ids: set[str],
    ) -> GenerationResult:
        result = GenerationResult()
        pairs = {normalize_symbol(pair) for pair in bot.pairs}
        if settings.kill_zone_only and not in_kill_zone(now, settings.kill_zones):
            LOGGER.info("Outside kill zones %s; skipping signal intake", ",".join(settings.kill_zones))
            result.rejected["outside_kill_zone"] += 1
            return result

        try:
            drafts = self.source.fetch_new_signals()
        except (requests.RequestException, OSError) as exc:
            LOGGER.warning("Signal source failed: %s", exc)
            result.rejected["source_error"] += 1
            return result

        for draft in drafts:
            symbol = normalize_symbol(draft.symbol)
            if pairs and symbol not in pairs:
                result.rejected["pair_disabled"] += 1
                continue
            if draft.confluence_score is not None and draft.confluence_score < settings.min_confluence_score:
                result.rejected["low_confluence"] += 1
                continue
            if draft.signal_id and draft.signal_id in known_ids:
                result.rejected["duplicate"] += 1
                continue
            try:
                signal = build_signal(draft, now=now)
            except InvalidSignalError as exc:
                LOGGER.warning("Rejected signal %s %s: %s", symbol, draft.direction, exc)
                result.rejected["invalid_levels"] += 1
                continue
            decision = broadcast_decision(
                signal.confluence_score,
                auto_broadcast=bot.auto_broadcast,
                send_to_users_enabled=bot.send_to_users_enabled,
                send_to_agents_enabled=bot.send_to_agents_enabled,
                high_confluence=self.high_confluence,
            )
            signal.send_to_users = decision.send_to_users
            signal.sent_to_agents = decision.sent_to_agents
            signal.metadata.setdefault("kill_zone", active_kill_zone(now, settings.kill_zones) or "off_hours")
            known_ids.add(signal.id)
            result.created.append(signal)
        return result
