"""Collapse mutually exclusive market variants to one representative per cluster."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable, Sequence

from loguru import logger

from app.domain import Contract

if TYPE_CHECKING:
    from .interpreter import PricedAssessment

_NUMBER_RE = re.compile(r"[-+]?\d[\d,]*\.?\d*")
_DEGREE_RE = re.compile(r"°[fc]")
_THRESHOLD_RE = re.compile(
    r"\b(between|or below|or above|less than|more than|greater than|at least|at most|exactly|be\b)"
)
_STOPWORD_RE = re.compile(r"\b(will|the|be|on|in|this|a|an|of|for|to|and|or)\b")
_WHITESPACE_RE = re.compile(r"\s+")

NARROW_KEY_MIN_LENGTH = 15
BROAD_KEY_MIN_LENGTH = 10
EDGE_TIE_TOLERANCE = 0.005


def cluster_key(question: str) -> str:
    """Question with numeric tokens replaced by ``#``; empty when too short to be meaningful."""

    key = _NUMBER_RE.sub("#", question.lower().strip())
    key = _WHITESPACE_RE.sub(" ", key)
    if len(key) < NARROW_KEY_MIN_LENGTH:
        return ""
    return key


def broad_cluster_key(question: str) -> str:
    """Looser key that also strips thresholds and stopwords.

    "NYC 41°F or below" and "NYC between 42-43°F" share a broad key, so they
    are never both held.
    """

    key = question.lower().strip()
    key = _NUMBER_RE.sub("", key)
    key = _DEGREE_RE.sub("", key)
    key = _THRESHOLD_RE.sub("", key)
    key = _STOPWORD_RE.sub("", key)
    key = key.replace("?", "")
    key = _WHITESPACE_RE.sub(" ", key).strip()
    if len(key) < BROAD_KEY_MIN_LENGTH:
        return ""
    return key


def dedupe_by_cluster(contracts: Sequence[Contract]) -> tuple[list[Contract], int]:
    """Keep the highest-volume contract per narrow cluster; returns (kept, collapsed)."""

    groups: dict[str, list[Contract]] = {}
    for contract in contracts:
        key = cluster_key(contract.question) or f"__unique_{contract.market_id}"
        groups.setdefault(key, []).append(contract)

    kept: list[Contract] = []
    collapsed = 0
    for key, group in groups.items():
        best = max(group, key=lambda contract: contract.volume)
        kept.append(best)
        if len(group) > 1:
            collapsed += len(group) - 1
            logger.debug(
                "Cluster {!r}: {} variants collapsed, kept {} (volume {:.0f})",
                key[:50],
                len(group),
                best.market_id,
                best.volume,
            )
    return kept, collapsed


def drop_open_conflicts(
    contracts: Sequence[Contract],
    open_questions: Iterable[str],
) -> tuple[list[Contract], list[Contract]]:
    """Remove contracts whose broad key matches a question already held open."""

    held = {key for key in (broad_cluster_key(question) for question in open_questions) if key}
    if not held:
        return list(contracts), []
    kept: list[Contract] = []
    dropped: list[Contract] = []
    for contract in contracts:
        key = broad_cluster_key(contract.question)
        if key and key in held:
            dropped.append(contract)
        else:
            kept.append(contract)
    if dropped:
        logger.info("Dropped {} contracts conflicting with open positions", len(dropped))
    return kept, dropped


def _assessment_key(item: "PricedAssessment") -> str:
    assessment = item.assessment
    key = (assessment.cluster_id or "").strip()
    if not key:
        key = broad_cluster_key(assessment.question)
    if not key:
        key = cluster_key(assessment.question)
    return key or f"__unique_{assessment.market_id}"


def dedupe_assessments(items: Sequence["PricedAssessment"]) -> list["PricedAssessment"]:
    """Keep one assessment per cluster: largest |edge|, near ties broken by confidence."""

    groups: dict[str, list["PricedAssessment"]] = {}
    for item in items:
        groups.setdefault(_assessment_key(item), []).append(item)

    result: list["PricedAssessment"] = []
    for key, group in groups.items():
        best = group[0]
        for candidate in group[1:]:
            edge_diff = abs(candidate.edge) - abs(best.edge)
            if edge_diff > EDGE_TIE_TOLERANCE:
                best = candidate
            elif abs(edge_diff) <= EDGE_TIE_TOLERANCE and (
                candidate.assessment.confidence > best.assessment.confidence
            ):
                best = candidate
        if len(group) > 1:
            logger.info(
                "Cluster {!r}: {} assessments, kept {} (edge {:.3f})",
                key[:50],
                len(group),
                best.assessment.market_id,
                best.edge,
            )
        result.append(best)
    return result


__all__ = [
    "broad_cluster_key",
    "cluster_key",
    "dedupe_assessments",
    "dedupe_by_cluster",
    "drop_open_conflicts",
]
