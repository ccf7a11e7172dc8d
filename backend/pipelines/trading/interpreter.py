"""Decode oracle replies into assessments and check them against live prices."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.domain import Assessment, Contract, Side

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?\s*```")
_REPLY_KEYS = ("recommendations", "summary")
QUESTION_PREFIX_CHARS = 40
DEFAULT_MAX_EDGE = 0.40


class RecommendationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    market_id: str = Field(default="", alias="marketId")
    question: str = ""
    category: str | None = None
    cluster_id: str | None = Field(default=None, alias="clusterId")
    p_market: float | None = Field(default=None, alias="pMarket")
    p_real: float = Field(alias="pReal", ge=0.0, le=1.0)
    p_low: float | None = Field(default=None, alias="pLow", ge=0.0, le=1.0)
    p_high: float | None = Field(default=None, alias="pHigh", ge=0.0, le=1.0)
    edge: float | None = None
    confidence: float = Field(ge=0.0, le=100.0)
    recommended_side: Side = Field(alias="recommendedSide")
    reasoning: str = ""
    sources: list[str] = Field(default_factory=list)
    risks: str | None = None
    resolution_criteria: str | None = Field(default=None, alias="resolutionCriteria")

    @field_validator("market_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("recommended_side", mode="before")
    @classmethod
    def _upper_side(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("cluster_id", "category", "risks", "resolution_criteria", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        if not text or text.lower() in {"null", "none"}:
            return None
        return text

    @field_validator("sources", mode="before")
    @classmethod
    def _coerce_sources(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            sources: list[str] = []
            for item in value:
                if isinstance(item, dict):
                    item = item.get("url") or item.get("title") or json.dumps(item, sort_keys=True)
                if item:
                    sources.append(str(item))
            return sources
        return [str(value)]


class ReplyPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str = ""
    skipped: list[dict[str, Any]] = Field(default_factory=list)
    recommendations: list[Any] = Field(default_factory=list)

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("skipped", mode="before")
    @classmethod
    def _coerce_skipped(cls, value: Any) -> list[dict[str, Any]]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]


@dataclass(slots=True, frozen=True)
class ParseOk:
    assessments: tuple[Assessment, ...]
    skipped: tuple[dict[str, Any], ...] = ()
    summary: str = ""
    dropped: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ParseError:
    reason: str


ParseResult = ParseOk | ParseError


@dataclass(slots=True, frozen=True)
class PricedAssessment:
    """Assessment matched to its live contract, with the edge recomputed from live prices."""

    assessment: Assessment
    contract: Contract
    price: float
    edge: float

    @property
    def side(self) -> Side:
        return self.assessment.side


@dataclass(slots=True)
class EnrichmentResult:
    priced: list[PricedAssessment] = field(default_factory=list)
    rejections: list[dict[str, Any]] = field(default_factory=list)


def _balanced_object_at(text: str, start: int) -> str | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        decoded = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Find the reply object in free-form model output.

    Tries, in order: the whole text when it starts with ``{``, the first fenced
    ``json`` block, then a brace-balanced scan from each ``{`` for an object
    carrying ``recommendations`` or ``summary``.
    """

    if not text:
        return None
    trimmed = text.strip()
    if trimmed.startswith("{"):
        decoded = _loads_object(trimmed)
        if decoded is not None:
            return decoded

    fence = _FENCE_RE.search(text)
    if fence:
        decoded = _loads_object(fence.group(1).strip())
        if decoded is not None:
            return decoded

    start = text.find("{")
    while start >= 0:
        candidate = _balanced_object_at(text, start)
        if candidate is not None:
            decoded = _loads_object(candidate)
            if decoded is not None and any(key in decoded for key in _REPLY_KEYS):
                return decoded
        start = text.find("{", start + 1)
    return None


def apply_probability_fix(
    side: Side,
    probability: float,
    p_low: float | None,
    p_high: float | None,
) -> tuple[float, float | None, float | None]:
    """Undo the common mistake of reporting P(my side wins) for a NO recommendation."""

    if side is Side.NO and probability > 0.5:
        fixed_low = None if p_high is None else 1.0 - p_high
        fixed_high = None if p_low is None else 1.0 - p_low
        return 1.0 - probability, fixed_low, fixed_high
    return probability, p_low, p_high


def _to_assessment(payload: RecommendationPayload) -> Assessment:
    probability, p_low, p_high = apply_probability_fix(
        payload.recommended_side, payload.p_real, payload.p_low, payload.p_high
    )
    if probability != payload.p_real:
        logger.info(
            "Auto-fixed NO probability for {}: {:.3f} -> {:.3f}",
            payload.market_id,
            payload.p_real,
            probability,
        )
    return Assessment(
        market_id=payload.market_id,
        question=payload.question,
        side=payload.recommended_side,
        probability=probability,
        confidence=payload.confidence,
        p_low=p_low,
        p_high=p_high,
        cluster_id=payload.cluster_id,
        category=payload.category,
        reasoning=payload.reasoning,
        sources=tuple(payload.sources),
        risks=payload.risks,
        resolution_criteria=payload.resolution_criteria,
        reported_price=payload.p_market,
        reported_edge=payload.edge,
    )


def interpret_reply(text: str) -> ParseResult:
    decoded = extract_json_object(text)
    if decoded is None:
        return ParseError("no JSON object found in oracle reply")
    try:
        reply = ReplyPayload.model_validate(decoded)
    except ValidationError as exc:
        return ParseError(f"reply failed validation: {exc.error_count()} errors")

    assessments: list[Assessment] = []
    dropped: list[str] = []
    for index, entry in enumerate(reply.recommendations):
        if not isinstance(entry, dict):
            dropped.append(f"recommendation[{index}]: not an object")
            continue
        try:
            payload = RecommendationPayload.model_validate(entry)
        except ValidationError as exc:
            fields = ",".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
            dropped.append(f"recommendation[{index}]: invalid {fields}")
            continue
        if not payload.market_id and not payload.question:
            dropped.append(f"recommendation[{index}]: no marketId or question")
            continue
        if payload.recommended_side is Side.SKIP:
            continue
        assessments.append(_to_assessment(payload))

    if dropped:
        logger.warning("Dropped {} malformed recommendations: {}", len(dropped), dropped)
    return ParseOk(
        assessments=tuple(assessments),
        skipped=tuple(reply.skipped),
        summary=reply.summary,
        dropped=tuple(dropped),
    )


def find_contract(assessment: Assessment, pool: Sequence[Contract]) -> Contract | None:
    by_id = {contract.market_id: contract for contract in pool}
    contract = by_id.get(assessment.market_id)
    if contract is not None or not assessment.question:
        return contract

    wanted = assessment.question.lower().strip()
    for candidate in pool:
        if candidate.question.lower().strip() == wanted:
            return candidate
    wanted_prefix = wanted[:QUESTION_PREFIX_CHARS]
    for candidate in pool:
        question = candidate.question.lower().strip()
        if wanted_prefix in question or question[:QUESTION_PREFIX_CHARS] in wanted:
            return candidate
    return None


def live_edge(assessment: Assessment, contract: Contract) -> tuple[float, float]:
    """Return ``(entry_price, edge)`` for the recommended side at live prices."""

    price = contract.price_for(assessment.side)
    if assessment.side is Side.NO:
        return price, (1.0 - assessment.probability) - price
    return price, assessment.probability - price


def enrich_assessments(
    assessments: Sequence[Assessment],
    pool: Sequence[Contract],
    *,
    max_edge: float = DEFAULT_MAX_EDGE,
) -> EnrichmentResult:
    result = EnrichmentResult()
    for assessment in assessments:
        contract = find_contract(assessment, pool)
        if contract is None:
            result.rejections.append(
                {"market_id": assessment.market_id, "reason": "market not found in pool"}
            )
            continue
        price, edge = live_edge(assessment, contract)
        if edge <= 0:
            result.rejections.append(
                {
                    "market_id": contract.market_id,
                    "reason": f"non-positive edge {edge:.3f} at live price {price:.3f}",
                }
            )
            continue
        if edge > max_edge:
            result.rejections.append(
                {
                    "market_id": contract.market_id,
                    "reason": f"edge {edge:.3f} above ceiling {max_edge:.2f}",
                }
            )
            continue
        assessment = replace(assessment, market_id=contract.market_id, question=contract.question)
        result.priced.append(
            PricedAssessment(assessment=assessment, contract=contract, price=price, edge=edge)
        )
    for rejection in result.rejections:
        logger.info("Assessment discarded market={} reason={}", rejection["market_id"], rejection["reason"])
    return result


__all__ = [
    "EnrichmentResult",
    "ParseError",
    "ParseOk",
    "ParseResult",
    "PricedAssessment",
    "RecommendationPayload",
    "ReplyPayload",
    "apply_probability_fix",
    "enrich_assessments",
    "extract_json_object",
    "find_contract",
    "interpret_reply",
    "live_edge",
]
