"""Pass-1 end to end: extract, score, guard, calibrate."""

from __future__ import annotations

from typing import Any

import pytest
from ledger_categorizer.pass1 import categorize_pass1, extract_signals

from tests.helpers.factories import make_tx


def _recorder() -> tuple[list[tuple[str, dict[str, Any]]], Any]:
    events: list[tuple[str, dict[str, Any]]] = []

    def observe(event: str, payload: Any) -> None:
        events.append((event, dict(payload)))

    return events, observe


def test_coffee_shop_is_confident() -> None:
    tx = make_tx(merchant_name="Starbucks", mcc="5814", description="STARBUCKS #1234", amount_cents=-550)
    events, observe = _recorder()

    res = categorize_pass1(tx, observer=observe)

    assert res.category_id == "meals"
    assert res.confidence == pytest.approx(0.98)
    assert {s.type for s in res.signals} == {"mcc", "vendor"}
    assert not res.rejected
    assert any(line.startswith("dominant: MCC:5814") for line in res.rationale)
    assert events == [
        (
            "pass1_categorized",
            {"tx_id": tx.id, "category_id": "meals", "confidence": res.confidence, "violations": []},
        )
    ]


def test_exact_mcc_and_keyword_agree() -> None:
    tx = make_tx(merchant_name="Great Clips", mcc="7230", description="GREAT CLIPS HAIRCUT", amount_cents=-3_500)
    res = categorize_pass1(tx)
    assert res.category_id == "hair_services"
    assert res.confidence == pytest.approx(0.98)


def test_bank_transfer_is_rejected() -> None:
    tx = make_tx(description="BANK TRANSFER TO SAVINGS", amount_cents=-100_000)
    events, observe = _recorder()

    res = categorize_pass1(tx, observer=observe)

    assert res.category_id is None
    assert res.confidence is None
    assert res.rejected
    assert "suspicious_pattern" in {v.type for v in res.violations}
    assert any(line.startswith("guardrails_rejected:") for line in res.rationale)
    assert events[0][0] == "pass1_rejected"


def test_no_signals() -> None:
    tx = make_tx(description="XQZ 00912")
    events, observe = _recorder()

    res = categorize_pass1(tx, observer=observe)

    assert res.category_id is None
    assert res.signals == ()
    assert res.rationale == ("No categorization signals found",)
    assert events == [("pass1_no_candidate", {"tx_id": tx.id, "signal_count": 0})]


def test_failing_observer_does_not_break_categorization() -> None:
    def explode(event: str, payload: Any) -> None:
        raise RuntimeError("observer down")

    tx = make_tx(merchant_name="Starbucks", mcc="5814", description="STARBUCKS #1234", amount_cents=-550)
    assert categorize_pass1(tx, observer=explode).category_id == "meals"


def test_flagged_candidate_is_penalized() -> None:
    # Keyword-only payout with a refund word: flagged, then scaled by 0.8.
    plain = categorize_pass1(make_tx(description="Shopify payout", amount_cents=250_000))
    flagged = categorize_pass1(make_tx(description="Shopify payout credit", amount_cents=250_000))
    assert plain.category_id == flagged.category_id == "payouts_clearing"
    assert flagged.confidence is not None and plain.confidence is not None
    assert flagged.confidence < plain.confidence
    assert any("confidence penalty" in line for line in flagged.rationale)


def test_extract_signals_skips_missing_inputs() -> None:
    assert extract_signals(make_tx(description="", merchant_name=None, mcc=None)) == []
