"""Prompt building and the Responses API adapter (no network)."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from ledger_categorizer.openai_client import OpenAIModelClient, extract_response_text
from ledger_categorizer.pass1 import categorize_pass1
from ledger_categorizer.prompting import build_prompt, build_response_format, build_user_content
from ledger_categorizer.taxonomy import prompt_categories

from tests.helpers.factories import make_tx


class FakeResponses:
    def __init__(self, result: Any) -> None:
        self.result = result
        self.kwargs: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.kwargs.append(kwargs)
        return self.result


def _fake_sdk(result: Any) -> tuple[Any, FakeResponses]:
    responses = FakeResponses(result)
    return SimpleNamespace(responses=responses), responses


# ---- Prompt ----------------------------------------------------------------------


def test_response_format_is_strict_over_prompt_categories() -> None:
    fmt = build_response_format()
    schema = fmt["schema"]
    assert fmt["strict"] is True
    assert schema["properties"]["category_slug"]["enum"] == [c.slug for c in prompt_categories()]
    attrs = schema["properties"]["attributes"]
    assert attrs["required"] == sorted(attrs["properties"])
    assert "processor" in attrs["properties"]
    with pytest.raises(ValueError):
        build_response_format([])


def test_user_content_lists_facts_and_rule_context() -> None:
    tx = make_tx(merchant_name="Starbucks", mcc="5814", description="STARBUCKS #1234", amount_cents=-550)
    content = build_user_content(tx, pass1=categorize_pass1(tx))

    assert "RULE ENGINE CONTEXT (may be wrong):" in content
    assert "Rule proposal: Meals (0.98)" in content
    assert "Amount: -$5.50 (money out)" in content
    assert "MCC: 5814" in content
    assert "- meals: Meals" in content


def test_prompt_without_signals_has_no_rule_context() -> None:
    tx = make_tx(description="", amount_cents=12_000)
    prompt = build_prompt(tx, pass1=categorize_pass1(tx))
    assert prompt.startswith("You are a bookkeeping assistant")
    assert "RULE ENGINE CONTEXT" not in prompt
    assert "Description: (none)" in prompt
    assert "Merchant: Unknown" in prompt
    assert "(money in)" in prompt


# ---- Response parsing -------------------------------------------------------------


def test_extract_response_text_shapes() -> None:
    assert extract_response_text(SimpleNamespace(output_text='{"a": 1}')) == '{"a": 1}'
    nested = SimpleNamespace(
        output_text="", output=[SimpleNamespace(content=[SimpleNamespace(text=SimpleNamespace(value="v"))])]
    )
    assert extract_response_text(nested) == "v"
    with pytest.raises(ValueError):
        extract_response_text(SimpleNamespace(output_text=None, output=[]))


def test_client_sends_strict_format_and_timeout() -> None:
    sdk, responses = _fake_sdk(SimpleNamespace(output_text='{"category_slug": "meals"}'))
    client = OpenAIModelClient("gpt-test", timeout_sec=12.5, client=sdk)

    assert client.generate("hello", temperature=0.1) == '{"category_slug": "meals"}'

    (kwargs,) = responses.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["input"] == "hello"
    assert kwargs["temperature"] == 0.1
    assert kwargs["timeout"] == 12.5
    assert kwargs["text"]["format"]["name"] == "transaction_category"
