from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
import requests

from tradewatch.config import StrategySettings
from tradewatch.storage.models import BotConfig, Direction
from tradewatch.strategy.generator import SignalGenerator, broadcast_decision, build_signal
from tradewatch.strategy.levels import InvalidSignalError
from tradewatch.strategy.signal_source import JsonFileSignalSource, SignalDraft, draft_from_item

# Tuesday 08:30 London (BST) -> london_open kill zone
IN_ZONE = datetime(2026, 6, 9, 7, 30, tzinfo=timezone.utc)
# Tuesday 02:00 UTC -> no kill zone
OFF_HOURS = datetime(2026, 6, 9, 2, 0, tzinfo=timezone.utc)


def _draft(**overrides) -> SignalDraft:
    values = {
        "symbol": "EURUSD",
        "direction": "BUY",
        "entry_price": 1.0850,
        "stop_loss": 1.0820,
        "take_profit_1": 1.0900,
        "confluence_score": 7,
        "source": "test",
    }
    values.update(overrides)
    return SignalDraft(**values)


class _ListSource:
    def __init__(self, drafts: list[SignalDraft]):
        self.drafts = drafts

    def fetch_new_signals(self) -> list[SignalDraft]:
        return list(self.drafts)


def _bot(**overrides) -> BotConfig:
    values = {"bot_type": "institutional_signal_bot", "pairs": ["EURUSD", "XAUUSD"]}
    values.update(overrides)
    return BotConfig(**values)


def test_broadcast_policy() -> None:
    high = broadcast_decision(8, auto_broadcast=True, send_to_users_enabled=False, send_to_agents_enabled=False)
    assert (high.send_to_users, high.sent_to_agents) == (True, True)

    agents = broadcast_decision(7, auto_broadcast=True, send_to_users_enabled=True, send_to_agents_enabled=True)
    assert (agents.send_to_users, agents.sent_to_agents) == (False, True)

    users = broadcast_decision(None, auto_broadcast=True, send_to_users_enabled=True, send_to_agents_enabled=False)
    assert (users.send_to_users, users.sent_to_agents) == (True, False)

    muted = broadcast_decision(10, auto_broadcast=False, send_to_users_enabled=True, send_to_agents_enabled=True)
    assert (muted.send_to_users, muted.sent_to_agents) == (False, False)


def test_build_signal_validates_levels() -> None:
    signal = build_signal(_draft(), now=IN_ZONE)
    assert signal.direction == Direction.LONG
    assert signal.levels.risk_reward_ratio == pytest.approx(1.67)
    assert signal.metadata["source"] == "test"

    with pytest.raises(InvalidSignalError):
        build_signal(_draft(stop_loss=1.0860), now=IN_ZONE)
    with pytest.raises(InvalidSignalError):
        build_signal(_draft(direction="SELL"), now=IN_ZONE)
    with pytest.raises(InvalidSignalError):
        build_signal(_draft(direction="SIDEWAYS"), now=IN_ZONE)


def test_generator_filters_drafts() -> None:
    drafts = [
        _draft(signal_id="keep", confluence_score=9),
        _draft(signal_id="low", confluence_score=4),
        _draft(signal_id="pair", symbol="GBPUSD"),
        _draft(signal_id="dup"),
        _draft(signal_id="bad", take_profit_1=1.0840),
        _draft(signal_id="no-score", confluence_score=None),
    ]
    generator = SignalGenerator(_ListSource(drafts))

    result = generator.generate(_bot(), StrategySettings(), now=IN_ZONE, known_ids={"dup"})

    assert [signal.id for signal in result.created] == ["keep", "no-score"]
    assert result.rejected == {"low_confluence": 1, "pair_disabled": 1, "duplicate": 1, "invalid_levels": 1}
    keep = result.created[0]
    assert keep.send_to_users is True and keep.sent_to_agents is True
    assert keep.metadata["kill_zone"] == "london_open"


def test_generator_waits_for_kill_zone() -> None:
    source = _ListSource([_draft()])
    generator = SignalGenerator(source)

    gated = generator.generate(_bot(), StrategySettings(), now=OFF_HOURS, known_ids=set())
    assert gated.created == []
    assert gated.rejected["outside_kill_zone"] == 1

    anytime = generator.generate(_bot(), StrategySettings(kill_zone_only=False), now=OFF_HOURS, known_ids=set())
    assert len(anytime.created) == 1
    assert anytime.created[0].metadata["kill_zone"] == "off_hours"


def test_generator_survives_source_failure() -> None:
    class _Down:
        def fetch_new_signals(self) -> list[SignalDraft]:
            raise requests.ConnectionError("feed down")

    result = SignalGenerator(_Down()).generate(_bot(), StrategySettings(), now=IN_ZONE, known_ids=set())

    assert result.created == []
    assert result.rejected["source_error"] == 1


def test_draft_from_item_accepts_short_keys() -> None:
    draft = draft_from_item(
        {"pair": "XAUUSD", "side": "SELL", "entry": 2335, "sl": 2345, "tp1": 2315, "confluence": "6", "setup": "OB"},
        source="file",
    )

    assert draft.symbol == "XAUUSD"
    assert draft.entry_price == 2335.0
    assert draft.confluence_score == 6
    assert draft.metadata == {"setup": "OB"}


def test_file_source_consumes_inbox(tmp_path) -> None:
    inbox = tmp_path / "signals_inbox.json"
    inbox.write_text(
        json.dumps({"signals": [{"symbol": "EURUSD", "direction": "LONG", "entry_price": 1.085, "stop_loss": 1.082, "take_profit_1": 1.09}, {"symbol": "EURUSD"}]}),
        encoding="utf-8",
    )
    source = JsonFileSignalSource(inbox)

    drafts = source.fetch_new_signals()

    assert len(drafts) == 1
    assert not inbox.exists()
    assert (tmp_path / "signals_inbox.processed.json").exists()
    assert source.fetch_new_signals() == []
