"""Fractional-Kelly position sizing with safety caps.

:func:`size_position` is pure: it only reads its arguments and returns a
:class:`SizingDecision`. A rejected assessment comes back with ``amount == 0``
and a human-readable ``rejection_reason``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, fields, replace
from typing import Mapping

from app.core.config import Settings
from app.domain import Assessment, Side, SizingDecision

from .rules import load_rules

DEFAULT_NARROW_BIN_RE = re.compile(
    r"\d+(\.\d+)?\s*°[CF]\s*(to|and|[-–])\s*\d+(\.\d+)?\s*°[CF]", re.IGNORECASE
)


@dataclass(slots=True, frozen=True)
class SizingPolicy:
    kelly_fraction: float = 0.25
    max_bet_fraction: float = 0.10
    min_bet_usd: float = 1.0
    min_confidence: float = 60.0
    min_edge_after_costs: float = 0.06
    min_market_price: float = 0.02
    max_market_price: float = 0.98
    min_return_pct: float = 0.03
    lottery_price_threshold: float = 0.20
    lottery_min_confidence: float = 70.0
    lottery_max_bet_fraction: float = 0.03
    narrow_bin_min_confidence: float = 75.0
    narrow_bin_min_edge: float = 0.12
    narrow_bin: re.Pattern[str] = DEFAULT_NARROW_BIN_RE

    def with_overrides(self, overrides: Mapping[str, float] | None) -> "SizingPolicy":
        if not overrides:
            return self
        known = {item.name for item in fields(self)} - {"narrow_bin"}
        values = {key: float(value) for key, value in overrides.items() if key in known}
        return replace(self, **values)

    @classmethod
    def from_settings(cls, settings: Settings, provider: str | None = None) -> "SizingPolicy":
        policy = cls(
            kelly_fraction=settings.kelly_fraction,
            max_bet_fraction=settings.max_bet_fraction,
            min_bet_usd=settings.min_bet_usd,
            min_confidence=settings.min_confidence,
            min_edge_after_costs=settings.min_edge_after_costs,
            min_market_price=settings.min_market_price,
            max_market_price=settings.max_market_price,
            min_return_pct=settings.min_return_pct,
            lottery_price_threshold=settings.lottery_price_threshold,
            lottery_min_confidence=settings.lottery_min_confidence,
            lottery_max_bet_fraction=settings.lottery_max_bet_fraction,
            narrow_bin_min_confidence=settings.narrow_bin_min_confidence,
            narrow_bin_min_edge=settings.narrow_bin_min_edge,
            narrow_bin=load_rules().narrow_bin,
        )
        if provider:
            policy = policy.with_overrides(settings.provider_sizing_overrides.get(provider.lower()))
        return policy


def raw_kelly(side_probability: float, price: float) -> float:
    """Full-Kelly fraction for a binary share bought at ``price`` paying 1."""

    if price <= 0 or price >= 1:
        return 0.0
    odds = (1.0 - price) / price
    loss_probability = 1.0 - side_probability
    return max(0.0, (side_probability * odds - loss_probability) / odds)


def expected_value(side_probability: float, amount: float, price: float, cost: float) -> float:
    win = amount * (1.0 - price) / price
    return side_probability * win - (1.0 - side_probability) * amount - cost


def _floor_cents(amount: float) -> float:
    return math.floor(amount * 100 + 1e-9) / 100


def size_position(
    assessment: Assessment,
    live_price: float,
    available_cash: float,
    amortized_cost: float,
    policy: SizingPolicy,
) -> SizingDecision:
    side = assessment.side
    outcome_index = side.outcome_index

    def reject(reason: str, *, edge: float = 0.0, kelly: float = 0.0, net_edge: float | None = None) -> SizingDecision:
        return SizingDecision(
            outcome_index=outcome_index,
            price=live_price,
            kelly_raw=kelly,
            kelly_capped=0.0,
            amount=0.0,
            expected_value=0.0,
            edge=edge,
            net_edge=net_edge,
            cost_per_bet=amortized_cost,
            rejection_reason=reason,
        )

    if side not in (Side.YES, Side.NO):
        return reject(f"side {side.value} is not tradeable")
    if available_cash < policy.min_bet_usd:
        return reject(f"cash {available_cash:.2f} below minimum order {policy.min_bet_usd:.2f}")
    if assessment.confidence < policy.min_confidence:
        return reject(
            f"confidence {assessment.confidence:.0f} below minimum {policy.min_confidence:.0f}"
        )
    if live_price < policy.min_market_price or live_price > policy.max_market_price:
        return reject(
            f"price {live_price:.3f} outside executable band "
            f"[{policy.min_market_price:.2f}, {policy.max_market_price:.2f}]"
        )

    is_lottery = live_price < policy.lottery_price_threshold
    if is_lottery and assessment.confidence < policy.lottery_min_confidence:
        return reject(
            f"lottery price {live_price:.3f} needs confidence >= "
            f"{policy.lottery_min_confidence:.0f}, got {assessment.confidence:.0f}"
        )

    side_probability = assessment.side_probability
    gross_edge = side_probability - live_price
    min_edge = policy.min_edge_after_costs
    if policy.narrow_bin.search(assessment.question or ""):
        if assessment.confidence < policy.narrow_bin_min_confidence:
            return reject(
                f"narrow bin needs confidence >= {policy.narrow_bin_min_confidence:.0f}, "
                f"got {assessment.confidence:.0f}",
                edge=gross_edge,
            )
        if gross_edge < policy.narrow_bin_min_edge:
            return reject(
                f"narrow bin edge {gross_edge:.3f} below {policy.narrow_bin_min_edge:.2f}",
                edge=gross_edge,
            )
        min_edge = max(min_edge, policy.narrow_bin_min_edge)

    kelly = raw_kelly(side_probability, live_price)
    if kelly <= 0:
        return reject("no positive Kelly fraction", edge=gross_edge)

    cap = policy.max_bet_fraction
    capped = min(kelly * policy.kelly_fraction, cap)
    amount = available_cash * capped
    if is_lottery:
        amount = min(amount, available_cash * policy.lottery_max_bet_fraction)

    if amount < policy.min_bet_usd:
        return reject(
            f"bet {amount:.2f} below minimum {policy.min_bet_usd:.2f}", edge=gross_edge, kelly=kelly
        )

    net_edge = gross_edge - amortized_cost / amount
    if net_edge < min_edge:
        return reject(
            f"net edge {net_edge:.3f} below {min_edge:.2f}",
            edge=gross_edge,
            kelly=kelly,
            net_edge=net_edge,
        )

    expected_return = (1.0 - live_price) / live_price
    if expected_return < policy.min_return_pct:
        return reject(
            f"return {expected_return:.3f} below {policy.min_return_pct:.2f}",
            edge=gross_edge,
            kelly=kelly,
            net_edge=net_edge,
        )

    amount = _floor_cents(min(amount, available_cash * cap))
    return SizingDecision(
        outcome_index=outcome_index,
        price=live_price,
        kelly_raw=kelly,
        kelly_capped=capped,
        amount=amount,
        expected_value=expected_value(side_probability, amount, live_price, amortized_cost),
        edge=gross_edge,
        net_edge=net_edge,
        cost_per_bet=amortized_cost,
    )


__all__ = ["SizingPolicy", "expected_value", "raw_kelly", "size_position"]
