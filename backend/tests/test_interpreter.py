from __future__ import annotations

import json

import pytest

from app.domain import Assessment, Side
from pipelines.trading.interpreter import (
    ParseError,
    ParseOk,
    apply_probability_fix,
    enrich_assessments,
    extract_json_object,
    find_contract,
    interpret_reply,
)


def _recommendation(**overrides):
    payload = {
        "marketId": "100",
        "question": "Will the Senate confirm the new Labor Secretary by Friday?",
        "pMarket": 0.40,
        "pReal": 0.55,
        "pLow": 0.48,
        "pHigh": 0.62,
        "edge": 0.15,
        "confidence": 72,
        "recommendedSide": "YES",
        "reasoning": "Whip counts show a comfortable majority.",
        "sources": [{"url": "https://example.com/whip-count"}],
    }
    payload.update(overrides)
    return payload


def _reply(*recommendations, summary="One clear edge."):
    return json.dumps({"summary": summary, "skipped": [], "recommendations": list(recommendations)})


def test_extract_json_object_reads_plain_json():
    assert extract_json_object('{"summary": "ok"}') == {"summary": "ok"}


def test_extract_json_object_reads_fenced_block():
    text = "Here is my analysis.\n```json\n{\"summary\": \"fenced\", \"recommendations\": []}\n```\nDone."

    assert extract_json_object(text) == {"summary": "fenced", "recommendations": []}


def test_extract_json_object_scans_for_reply_shape():
    text = (
        'Context {"note": "not it"} then the answer: '
        '{"summary": "braces } inside strings", "recommendations": []} trailing'
    )

    decoded = extract_json_object(text)

    assert decoded == {"summary": "braces } inside strings", "recommendations": []}


def test_extract_json_object_returns_none_without_json():
    assert extract_json_object("") is None
    assert extract_json_object("no structured output here") is None


def test_interpret_reply_builds_assessments():
    result = interpret_reply(_reply(_recommendation()))

    assert isinstance(result, ParseOk)
    assert result.summary == "One clear edge."
    (assessment,) = result.assessments
    assert assessment.market_id == "100"
    assert assessment.side is Side.YES
    assert assessment.probability == pytest.approx(0.55)
    assert assessment.confidence == 72
    assert assessment.sources == ("https://example.com/whip-count",)
    assert assessment.reported_price == pytest.approx(0.40)


def test_interpret_reply_drops_skips_and_malformed_entries():
    reply = _reply(
        _recommendation(marketId=101, recommendedSide="skip"),
        _recommendation(marketId="102", pReal=1.4),
        "not an object",
        _recommendation(marketId="", question=""),
        _recommendation(marketId="103", recommendedSide="no", pReal=0.20),
    )

    result = interpret_reply(reply)

    assert isinstance(result, ParseOk)
    assert [assessment.market_id for assessment in result.assessments] == ["103"]
    assert len(result.dropped) == 3


def test_interpret_reply_auto_fixes_no_probability():
    reply = _reply(_recommendation(recommendedSide="NO", pReal=0.80, pLow=0.70, pHigh=0.85))

    result = interpret_reply(reply)

    assert isinstance(result, ParseOk)
    (assessment,) = result.assessments
    assert assessment.probability == pytest.approx(0.20)
    assert assessment.p_low == pytest.approx(0.15)
    assert assessment.p_high == pytest.approx(0.30)


def test_apply_probability_fix_leaves_yes_untouched():
    assert apply_probability_fix(Side.YES, 0.8, 0.7, 0.9) == (0.8, 0.7, 0.9)
    assert apply_probability_fix(Side.NO, 0.3, None, None) == (0.3, None, None)


def test_interpret_reply_reports_missing_json():
    result = interpret_reply("I could not find any edges today.")

    assert isinstance(result, ParseError)
    assert "no JSON" in result.reason


def _assessment(market_id="100", question="", *, side=Side.YES, probability=0.55):
    return Assessment(
        market_id=market_id,
        question=question,
        side=side,
        probability=probability,
        confidence=70.0,
    )


def test_find_contract_matches_by_id_then_question(make_contract):
    pool = [
        make_contract("100", "Will the Senate confirm the new Labor Secretary by Friday?"),
        make_contract("200", "Will the Ohio governor sign the school funding bill this month?"),
    ]

    assert find_contract(_assessment("100"), pool).market_id == "100"
    by_question = _assessment("999", "will the ohio governor sign the school funding bill this month?")
    assert find_contract(by_question, pool).market_id == "200"
    by_prefix = _assessment("999", "Will the Ohio governor sign the school funding bill before April?")
    assert find_contract(by_prefix, pool).market_id == "200"
    assert find_contract(_assessment("999", "Unrelated question"), pool) is None


def test_enrich_assessments_recomputes_edge_at_live_price(make_contract):
    pool = [make_contract("100", yes_price=0.40)]

    result = enrich_assessments([_assessment("100", probability=0.55)], pool)

    (priced,) = result.priced
    assert priced.price == pytest.approx(0.40)
    assert priced.edge == pytest.approx(0.15)
    assert priced.assessment.question == pool[0].question
    assert result.rejections == []


def test_enrich_assessments_prices_no_side_from_no_price(make_contract):
    pool = [make_contract("100", yes_price=0.70)]

    result = enrich_assessments([_assessment("100", side=Side.NO, probability=0.50)], pool)

    (priced,) = result.priced
    assert priced.price == pytest.approx(0.30)
    assert priced.edge == pytest.approx(0.20)


def test_enrich_assessments_discards_bad_edges(make_contract):
    pool = [make_contract("100", yes_price=0.40), make_contract("200", "Will the bridge reopen by Monday?", yes_price=0.10)]
    assessments = [
        _assessment("100", probability=0.35),
        _assessment("200", probability=0.65),
        _assessment("300"),
    ]

    result = enrich_assessments(assessments, pool, max_edge=0.40)

    assert result.priced == []
    reasons = {rejection["market_id"]: rejection["reason"] for rejection in result.rejections}
    assert reasons["100"].startswith("non-positive edge")
    assert reasons["200"].startswith("edge 0.550 above ceiling")
    assert reasons["300"] == "market not found in pool"
