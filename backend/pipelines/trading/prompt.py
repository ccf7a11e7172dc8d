"""Batch prompt construction for the forecasting oracle."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

from app.domain import Contract, PerformanceSummary

from .market_filter import estimate_spread

GEMINI_SYSTEM_INSTRUCTION = (
    "You are a skeptical prediction-market analyst. You MUST use Google Search to "
    "verify current facts before estimating any probability. Never rely on memory "
    "for events that may have changed. Reply with the JSON object only."
)
DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a skeptical prediction-market analyst. Search the web for current, "
    "verifiable evidence before estimating any probability. Reply with the JSON object only."
)

OUTPUT_SCHEMA = """{
  "summary": "one paragraph on the batch",
  "skipped": [{"marketId": "id", "question": "text", "reason": "why"}],
  "recommendations": [
    {
      "marketId": "id",
      "question": "text",
      "category": "politics|geopolitics|entertainment|finance|crypto|weather|other",
      "clusterId": "shared id for mutually exclusive variants or null",
      "pMarket": 0.00,
      "pReal": 0.00,
      "pLow": 0.00,
      "pHigh": 0.00,
      "edge": 0.00,
      "confidence": 0,
      "recommendedSide": "YES|NO|SKIP",
      "reasoning": "evidence-based explanation",
      "sources": ["url"],
      "risks": "what could make this wrong",
      "resolutionCriteria": "how the market resolves"
    }
  ]
}"""


class HeldPosition(Protocol):
    market_id: str
    question: str
    outcome: str
    price: float


def calibration_note(performance: PerformanceSummary) -> str:
    if not performance.total_trades:
        return "no settled trades yet; be conservative"
    if performance.win_rate >= 55:
        return "calibration OK"
    if performance.win_rate >= 45:
        return "calibration marginal; tighten your estimates"
    return "calibration poor; be more conservative, require confidence >= 70 and edge >= 0.12"


def _compact_usd(value: float) -> str:
    return f"${value / 1000:.1f}K"


def _hours_left(contract: Contract, now: datetime) -> str:
    seconds = contract.seconds_left(now)
    if seconds is None:
        return "unknown"
    minutes = max(seconds, 0.0) / 60.0
    return f"{minutes / 60.0:.1f}h ({minutes:.0f}min)"


def market_line(index: int, contract: Contract, now: datetime) -> str:
    return (
        f'[{index}] "{contract.question}" | YES={contract.yes_price * 100:.0f}¢ '
        f"NO={contract.no_price * 100:.0f}¢ | Vol={_compact_usd(contract.volume)} | "
        f"Liq={_compact_usd(contract.liquidity)} | "
        f"Spread=~{estimate_spread(contract.liquidity) * 100:.1f}% | "
        f"Expires: {_hours_left(contract, now)} | ID:{contract.market_id}"
    )


def blacklist_lines(positions: Sequence[HeldPosition]) -> list[str]:
    if not positions:
        return ["(none)"]
    return [
        f'- [ID:{position.market_id}] "{position.question[:100]}" -> '
        f"{position.outcome} @ {float(position.price) * 100:.0f}¢"
        for position in positions
    ]


def build_prompt(
    batch: Sequence[Contract],
    *,
    open_positions: Sequence[HeldPosition],
    bankroll: float,
    performance: PerformanceSummary,
    now: datetime,
    max_edge: float = 0.40,
) -> str:
    """Render the user prompt for one batch of contracts."""

    history = (
        f"HISTORY: {performance.total_trades} trades, {performance.wins}W/{performance.losses}L, "
        f"win rate {performance.win_rate:.1f}%, pnl ${performance.total_pnl:+.2f} "
        f"({calibration_note(performance)})"
    )
    lines = [
        f"UTC: {now.strftime('%Y-%m-%d %H:%M')} | BANKROLL: ${bankroll:.2f}",
        history,
        "",
        "BLACKLIST (positions already held; do not recommend these or their variants):",
        *blacklist_lines(open_positions),
        "",
        f"MARKETS ({len(batch)}):",
        *(market_line(index, contract, now) for index, contract in enumerate(batch, start=1)),
        "",
        "RULES:",
        "1. pReal is ALWAYS the probability that YES occurs, even when you recommend NO.",
        "2. Self-check: recommend YES only if pReal > YES price; NO only if pReal < YES price.",
        f"3. edge = |pReal - pMarket|. An edge above {max_edge:.2f} almost always means you "
        "are missing information; re-check or SKIP.",
        "4. CLUSTER: mutually exclusive variants of one event (brackets, thresholds, dates) "
        "share a clusterId; recommend at most one per cluster.",
        "5. Only recommend contracts priced between 5¢ and 95¢.",
        "6. Cite sources for every recommendation. Without evidence, SKIP.",
        "",
        "OUTPUT (JSON only, no prose outside the object):",
        OUTPUT_SCHEMA,
    ]
    return "\n".join(lines)


def system_instruction(provider: str) -> str:
    if provider.lower() == "gemini":
        return GEMINI_SYSTEM_INSTRUCTION
    return DEFAULT_SYSTEM_INSTRUCTION


__all__ = ["build_prompt", "calibration_note", "market_line", "system_instruction"]
