"""Reduce the raw contract universe to a liquid, tradeable candidate pool."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import AbstractSet, Any, Sequence

from loguru import logger

from app.core.config import Settings
from app.domain import Contract

from .rules import RuleBook, load_rules

FILTER_LEVEL_LABELS = ("Strict", "+Crypto", "+Crypto+Stocks")

# (minimum liquidity, estimated spread), checked top-down.
_SPREAD_STEPS: tuple[tuple[float, float], ...] = (
    (50_000.0, 0.01),
    (10_000.0, 0.025),
    (2_000.0, 0.045),
    (1_000.0, 0.06),
)
_THIN_BOOK_SPREAD = 0.08


@dataclass(slots=True, frozen=True)
class FilterPolicy:
    max_expiry: timedelta = timedelta(hours=120)
    too_soon: timedelta = timedelta(minutes=10)
    liquidity_floor: float = 1_500.0
    liquidity_ceiling: float = 10_000.0
    liquidity_multiplier: float = 50.0
    typical_bet_fraction: float = 0.025
    min_volume: float = 300.0
    weather_min_liquidity: float = 500.0
    weather_min_volume: float = 300.0
    weather_min_remaining: timedelta = timedelta(hours=12)
    max_spread: float = 0.08
    price_floor: float = 0.05
    price_ceiling: float = 0.95
    min_pool_target: int = 15

    @classmethod
    def from_settings(cls, settings: Settings) -> "FilterPolicy":
        return cls(
            max_expiry=timedelta(hours=settings.filter_max_expiry_hours),
            too_soon=timedelta(minutes=settings.filter_min_minutes_to_expiry),
            liquidity_floor=settings.filter_liquidity_floor,
            liquidity_ceiling=settings.filter_liquidity_ceiling,
            liquidity_multiplier=settings.filter_liquidity_multiplier,
            typical_bet_fraction=settings.filter_typical_bet_fraction,
            min_volume=settings.filter_min_volume,
            weather_min_liquidity=settings.filter_weather_min_liquidity,
            weather_min_volume=settings.filter_weather_min_volume,
            weather_min_remaining=timedelta(hours=settings.filter_weather_min_hours),
            max_spread=settings.filter_max_spread,
            price_floor=settings.filter_price_floor,
            price_ceiling=settings.filter_price_ceiling,
            min_pool_target=settings.cycle_min_pool_target,
        )


@dataclass(slots=True)
class PoolBreakdown:
    total: int = 0
    no_end_date: int = 0
    expired: int = 0
    resolved: int = 0
    too_far_out: int = 0
    low_liquidity: int = 0
    wide_spread: int = 0
    price_extreme: int = 0
    junk: int = 0
    duplicate_open: int = 0
    sports: int = 0
    crypto: int = 0
    stocks: int = 0
    passed: int = 0
    filter_level: int = 0
    filter_label: str = FILTER_LEVEL_LABELS[0]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class FilterResult:
    pool: list[Contract] = field(default_factory=list)
    breakdown: PoolBreakdown = field(default_factory=PoolBreakdown)
    min_liquidity: float = 0.0


def compute_min_liquidity(capital: float, policy: FilterPolicy) -> float:
    """Liquidity floor scaled to the typical bet size, bounded by floor and ceiling."""

    typical_bet = max(capital, 0.0) * policy.typical_bet_fraction
    scaled = policy.liquidity_multiplier * typical_bet
    return min(policy.liquidity_ceiling, max(policy.liquidity_floor, scaled))


def estimate_spread(liquidity: float) -> float:
    for threshold, spread in _SPREAD_STEPS:
        if liquidity >= threshold:
            return spread
    return _THIN_BOOK_SPREAD


def filter_markets(
    contracts: Sequence[Contract],
    *,
    open_market_ids: AbstractSet[str],
    now: datetime,
    capital: float,
    policy: FilterPolicy | None = None,
    rules: RuleBook | None = None,
) -> FilterResult:
    """Apply the per-contract checks in order and relax content buckets if the pool is thin."""

    policy = policy or FilterPolicy()
    rules = rules or load_rules()
    breakdown = PoolBreakdown(total=len(contracts))
    min_liquidity = compute_min_liquidity(capital, policy)

    clean: list[Contract] = []
    crypto_bucket: list[Contract] = []
    stocks_bucket: list[Contract] = []

    for contract in contracts:
        if contract.end_time is None:
            breakdown.no_end_date += 1
            continue
        remaining = contract.end_time - now
        if remaining <= timedelta(0):
            breakdown.expired += 1
            continue
        if contract.resolved or not contract.active:
            breakdown.resolved += 1
            continue
        if remaining > policy.max_expiry:
            breakdown.too_far_out += 1
            continue
        if remaining <= policy.too_soon:
            breakdown.expired += 1
            continue

        question = contract.question
        is_weather = rules.is_weather(question) and remaining > policy.weather_min_remaining
        floor_liquidity = policy.weather_min_liquidity if is_weather else min_liquidity
        floor_volume = policy.weather_min_volume if is_weather else policy.min_volume
        if contract.liquidity < floor_liquidity or contract.volume < floor_volume:
            breakdown.low_liquidity += 1
            continue
        if not is_weather and estimate_spread(contract.liquidity) > policy.max_spread:
            breakdown.wide_spread += 1
            continue

        yes_price = contract.yes_price
        if yes_price <= policy.price_floor or yes_price >= policy.price_ceiling:
            breakdown.price_extreme += 1
            continue
        if rules.is_junk(question):
            breakdown.junk += 1
            continue
        if contract.market_id in open_market_ids:
            breakdown.duplicate_open += 1
            continue

        if contract.category == "sports":
            breakdown.sports += 1
        elif rules.is_crypto(question):
            crypto_bucket.append(contract)
        elif rules.is_stock(question):
            stocks_bucket.append(contract)
        else:
            clean.append(contract)

    breakdown.crypto = len(crypto_bucket)
    breakdown.stocks = len(stocks_bucket)

    pool = list(clean)
    level = 0
    if len(pool) < policy.min_pool_target and crypto_bucket:
        pool.extend(crypto_bucket)
        breakdown.crypto = 0
        level = 1
        logger.info("Pool below target; folding in {} crypto contracts", len(crypto_bucket))
    if len(pool) < policy.min_pool_target and stocks_bucket:
        pool.extend(stocks_bucket)
        breakdown.stocks = 0
        level = 2
        logger.info("Pool still below target; folding in {} stock contracts", len(stocks_bucket))

    pool.sort(key=lambda contract: contract.volume, reverse=True)
    breakdown.filter_level = level
    breakdown.filter_label = FILTER_LEVEL_LABELS[level]
    breakdown.passed = len(pool)

    logger.info(
        "Market filter kept {} of {} contracts [{}] min_liquidity={:.0f} breakdown={}",
        breakdown.passed,
        breakdown.total,
        breakdown.filter_label,
        min_liquidity,
        breakdown.to_dict(),
    )
    return FilterResult(pool=pool, breakdown=breakdown, min_liquidity=min_liquidity)


__all__ = [
    "FILTER_LEVEL_LABELS",
    "FilterPolicy",
    "FilterResult",
    "PoolBreakdown",
    "compute_min_liquidity",
    "estimate_spread",
    "filter_markets",
]
