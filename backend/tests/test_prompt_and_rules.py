from __future__ import annotations

import pytest

from app.domain import PerformanceSummary
from pipelines.trading.prompt import (
    DEFAULT_SYSTEM_INSTRUCTION,
    GEMINI_SYSTEM_INSTRUCTION,
    build_prompt,
    calibration_note,
    market_line,
    system_instruction,
)
from pipelines.trading.rules import DEFAULT_RULES_PATH, load_rules, load_rules_file, parse_rules
from pipelines.trading_cycle import HeldPositionView


def test_market_line_shows_prices_liquidity_and_expiry(make_contract, now):
    contract = make_contract("501", yes_price=0.40, volume=80_000.0, liquidity=60_000.0, hours_left=48)

    line = market_line(3, contract, now)

    assert line.startswith('[3] "Will the Senate confirm')
    assert "YES=40¢ NO=60¢" in line
    assert "Vol=$80.0K" in line
    assert "Spread=~1.0%" in line
    assert "Expires: 48.0h (2880min)" in line
    assert line.endswith("ID:501")


def test_build_prompt_lists_blacklist_history_and_schema(make_contract, now):
    held = [HeldPositionView("777", "Will the governor veto the transit package?", "No", 0.35)]
    performance = PerformanceSummary(wins=3, losses=1, total_pnl=42.5)

    prompt = build_prompt(
        [make_contract("501")],
        open_positions=held,
        bankroll=875.25,
        performance=performance,
        now=now,
        max_edge=0.40,
    )

    assert "UTC: 2026-03-02 12:00 | BANKROLL: $875.25" in prompt
    assert "HISTORY: 4 trades, 3W/1L, win rate 75.0%, pnl $+42.50 (calibration OK)" in prompt
    assert '- [ID:777] "Will the governor veto the transit package?" -> No @ 35¢' in prompt
    assert "MARKETS (1):" in prompt
    assert "above 0.40" in prompt
    assert '"recommendedSide": "YES|NO|SKIP"' in prompt


def test_build_prompt_without_positions_marks_blacklist_empty(make_contract, now):
    prompt = build_prompt(
        [make_contract("501")],
        open_positions=[],
        bankroll=1_000.0,
        performance=PerformanceSummary(),
        now=now,
    )

    assert "(none)" in prompt
    assert "no settled trades yet" in prompt


@pytest.mark.parametrize(
    ("wins", "losses", "expected"),
    [
        (6, 4, "calibration OK"),
        (1, 1, "calibration marginal"),
        (1, 4, "calibration poor"),
    ],
)
def test_calibration_note_tracks_win_rate(wins, losses, expected):
    assert calibration_note(PerformanceSummary(wins=wins, losses=losses)).startswith(expected)


def test_system_instruction_per_provider():
    assert system_instruction("Gemini") == GEMINI_SYSTEM_INSTRUCTION
    assert system_instruction("openai") == DEFAULT_SYSTEM_INSTRUCTION


def test_bundled_rules_classify_questions():
    rules = load_rules(DEFAULT_RULES_PATH)

    assert rules.is_junk("Will Elon Musk tweet 200-219 times this week?")
    assert rules.is_junk("Will Biden say 'malarkey' during the speech?")
    assert not rules.is_junk("Will the Senate confirm the new Labor Secretary by Friday?")
    assert rules.is_weather("Will it rain in Seattle on Tuesday?")
    assert not rules.is_weather("Will Ukraine and Russia sign a ceasefire?")
    assert rules.is_narrow_bin("Will NYC hit 42°F-43°F on March 3?")
    assert rules.is_crypto("Will Bitcoin reach $100k?")
    assert rules.is_crypto("Will DOT trade above $10 by June?")
    assert not rules.is_crypto("Will the soldiers return home by Easter?")
    assert rules.is_stock("Will NVDA close above $150 on Friday?")
    assert rules.is_stock("Will the S&P 500 close higher this week?")
    assert rules.cap_for("weather") == 8
    assert rules.cap_for("unknown") == rules.default_category_cap
    assert rules.category_priority[0] == "politics"


def test_rules_file_can_replace_bundled_tables(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "junk:\n"
        "  substrings: [\"coin flip\"]\n"
        "weather:\n"
        "  regex: 'blizzard'\n"
        "  narrow_bin_regex: '\\d+°C-\\d+°C'\n"
        "default_category_cap: 4\n",
        encoding="utf-8",
    )

    rules = load_rules_file(path)

    assert rules.is_junk("Will the coin flip land heads?")
    assert rules.is_weather("Will a blizzard hit Denver?")
    assert rules.cap_for("politics") == 4
    assert rules.crypto_substrings == ()
    assert rules.crypto_regexes == ()


def test_invalid_rules_are_rejected(tmp_path):
    with pytest.raises(ValueError):
        parse_rules({"weather": {"regex": "", "narrow_bin_regex": "x"}})
    with pytest.raises(TypeError):
        parse_rules({"junk": ["not", "a", "mapping"], "weather": {"regex": "a", "narrow_bin_regex": "b"}})
    with pytest.raises(TypeError):
        parse_rules(
            {"crypto": {"regexes": "eth"}, "weather": {"regex": "a", "narrow_bin_regex": "b"}}
        )
    with pytest.raises(FileNotFoundError):
        load_rules_file(tmp_path / "missing.yaml")
