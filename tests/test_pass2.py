"""Parsing and re-validation of model answers."""

from __future__ import annotations

import pytest
from ledger_categorizer.calibration import AgreementFlags, calibrate
from ledger_categorizer.errors import ModelResponseError
from ledger_categorizer.guardrails import GuardrailConfig
from ledger_categorizer.models import Pass1Result
from ledger_categorizer.pass2 import FALLBACK_CONFIDENCE, categorize_pass2, parse_model_response

from tests.helpers.factories import make_tx
from tests.helpers.model_stub import model_json


def _pass1(category_id: str | None, confidence: float | None) -> Pass1Result:
    return Pass1Result(
        category_id=category_id, confidence=confidence, rationale=(), signals=(), guardrails_applied=()
    )


# ---- Parsing -----------------------------------------------------------------


def test_parse_plain_and_fenced_json() -> None:
    body = model_json("Meals", 0.8, "coffee")
    assert parse_model_response(body).category_slug == "meals"
    fenced = f"```json\n{body}\n```"
    parsed = parse_model_response(fenced)
    assert parsed.confidence == pytest.approx(0.8)
    assert parsed.rationale == "coffee"


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        "[1, 2, 3]",
        '{"category_slug": "meals"}',
        '{"category_slug": "meals", "confidence": 1.5}',
        '{"category_slug": "meals", "confidence": "0.9"}',
        '{"category_slug": "  ", "confidence": 0.9}',
    ],
)
def test_parse_rejects_bad_payloads(text: str) -> None:
    with pytest.raises(ModelResponseError):
        parse_model_response(text)


def test_null_attributes_become_empty() -> None:
    parsed = parse_model_response('{"category_slug": "meals", "confidence": 0.7, "attributes": null}')
    assert parsed.attributes == {}


# ---- Fallbacks -----------------------------------------------------------------


LENIENT = GuardrailConfig(min_confidence_threshold=0.2)


def test_unparseable_answer_falls_back() -> None:
    res = categorize_pass2(make_tx(), "I think it is lunch", config=LENIENT)
    assert res.category_id == "miscellaneous"
    assert res.confidence == FALLBACK_CONFIDENCE
    assert res.parse_failed
    assert res.interventions == ()


def test_unknown_category_falls_back() -> None:
    res = categorize_pass2(make_tx(), model_json("coffee_runs", 0.9), config=LENIENT)
    assert res.category_id == "miscellaneous"
    assert res.confidence == FALLBACK_CONFIDENCE
    assert not res.parse_failed
    assert "unknown category 'coffee_runs'" in res.rationale[0]


def test_fallback_below_min_confidence_is_voided() -> None:
    res = categorize_pass2(make_tx(), "I think it is lunch")

    assert res.category_id is None
    assert res.confidence is None
    assert res.parse_failed
    (iv,) = res.interventions
    assert (iv.original_category, iv.final_category) == ("miscellaneous", None)
    assert any("confidence_too_low" in line for line in res.rationale)


def test_fallback_on_transfer_is_rejected_even_when_lenient() -> None:
    tx = make_tx(description="Bank transfer payment", amount_cents=-25_000)
    res = categorize_pass2(tx, "not json at all", config=LENIENT)

    assert res.category_id is None
    assert any("suspicious_pattern" in line for line in res.rationale)


# ---- Calibration, redirects, guardrails ---------------------------------------------


def test_payout_answer_is_redirected_and_attributes_cleaned() -> None:
    tx = make_tx(merchant_name="Stripe", description="Payout transfer", amount_cents=500)
    res = categorize_pass2(tx, model_json("dtc_sales", 0.9, "sale", processor="Stripe", color="blue"))

    assert res.category_id == "payouts_clearing"
    assert res.confidence == pytest.approx(0.6583, abs=1e-3)
    (iv,) = res.interventions
    assert iv.stage == "redirect"
    assert (iv.original_category, iv.final_category) == ("dtc_sales", "payouts_clearing")
    assert dict(res.attributes) == {"processor": "stripe"}
    assert "LLM: sale" in res.rationale


def test_guardrail_rejection_is_recorded() -> None:
    tx = make_tx(mcc="7230", description="Salon visit")
    res = categorize_pass2(tx, model_json("meals", 0.95))
    assert res.category_id is None
    assert res.confidence is None
    (iv,) = res.interventions
    assert iv.stage == "guardrails"
    assert "incompatible" in iv.reason
    assert res.attributes == {}


def test_agreement_with_strong_pass1_boosts_confidence() -> None:
    tx = make_tx(description="Team lunch")
    alone = categorize_pass2(tx, model_json("meals", 0.9))
    agreed = categorize_pass2(tx, model_json("meals", 0.9), pass1=_pass1("meals", 0.85))
    assert alone.confidence == pytest.approx(calibrate(0.9, flags=AgreementFlags(source="model")))
    assert agreed.confidence == pytest.approx(alone.confidence + 0.08)


def test_flagged_answer_records_penalty_intervention() -> None:
    tx = make_tx(description="Demo account lunch")
    res = categorize_pass2(tx, model_json("meals", 0.9, attendees=3))
    assert res.category_id == "meals"
    expected = calibrate(0.9, flags=AgreementFlags(source="model")) * 0.8
    assert res.confidence == pytest.approx(expected)
    assert [iv.stage for iv in res.interventions] == ["guardrails"]
    assert dict(res.attributes) == {"attendees": "3"}
