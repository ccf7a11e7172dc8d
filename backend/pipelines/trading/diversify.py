"""Round-robin category diversification and batch splitting."""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from app.domain import Contract

from .rules import RuleBook, load_rules


def classify_category(contract: Contract, rules: RuleBook | None = None) -> str:
    rules = rules or load_rules()
    if contract.category == "sports":
        return "sports"
    question = contract.question
    if rules.is_crypto(question):
        return "crypto"
    if rules.is_stock(question):
        return "finance"
    if rules.is_weather(question):
        return "weather"
    lowered = question.lower()
    for name, pattern in rules.category_patterns:
        if pattern.search(lowered):
            return name
    return "other"


def diversify(
    contracts: Sequence[Contract],
    *,
    max_size: int,
    rules: RuleBook | None = None,
) -> list[Contract]:
    """Interleave categories in priority order, best volume first, honouring per-category caps."""

    rules = rules or load_rules()
    buckets: dict[str, list[Contract]] = {}
    for contract in contracts:
        buckets.setdefault(classify_category(contract, rules), []).append(contract)

    for category, bucket in buckets.items():
        bucket.sort(key=lambda contract: contract.volume, reverse=True)
        cap = rules.cap_for(category)
        if len(bucket) > cap:
            logger.debug("Category {!r} capped {} -> {}", category, len(bucket), cap)
            del bucket[cap:]

    order = [category for category in rules.category_priority if category in buckets]
    order.extend(sorted(category for category in buckets if category not in order))

    selected: list[Contract] = []
    round_index = 0
    while len(selected) < max_size:
        added = False
        for category in order:
            bucket = buckets[category]
            if round_index < len(bucket):
                selected.append(bucket[round_index])
                added = True
                if len(selected) >= max_size:
                    break
        if not added:
            break
        round_index += 1
    return selected


def make_batches(
    contracts: Sequence[Contract],
    *,
    batch_size: int,
    max_batches: int,
) -> list[list[Contract]]:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    batches = [
        list(contracts[index : index + batch_size])
        for index in range(0, len(contracts), batch_size)
    ]
    return batches[:max_batches]


__all__ = ["classify_category", "diversify", "make_batches"]
