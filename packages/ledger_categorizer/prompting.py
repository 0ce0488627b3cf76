"""Prompt construction for the Pass-2 model fallback.

This module builds:
- The system instructions for single-transaction categorization.
- The user prompt: transaction facts, optional Pass-1 context, the category
  list with extractable attributes, and a few worked examples.
- The strict ``response_format`` (JSON Schema) object for the OpenAI
  Responses API.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)

from .models import Pass1Result, Transaction
from .taxonomy import Category, category_name, prompt_categories

# Pass-1 signals shown to the model, strongest first.
_MAX_CONTEXT_SIGNALS = 3

_FEW_SHOT: tuple[tuple[str, str, str, str], ...] = (
    (
        "STRIPE PAYMENT PROCESSING FEE",
        "Stripe",
        "payment_processing_fees",
        "Processor fee; the processor is an attribute, not a category",
    ),
    (
        "FACEBOOK ADS MANAGER CHARGE",
        "Meta",
        "marketing_ads",
        "Digital advertising with Meta as the platform attribute",
    ),
    (
        "ADOBE CREATIVE CLOUD SUBSCRIPTION",
        "Adobe",
        "software_subscriptions",
        "Software subscription; vendor goes in attributes",
    ),
    (
        "CUSTOMER REFUND - ORDER #12345",
        "Unknown",
        "refunds_contra",
        "Customer refund reduces revenue (contra-revenue account)",
    ),
    (
        "SHOPIFY PAYOUT 1234",
        "Shopify",
        "payouts_clearing",
        "Processor settlement to the bank; not revenue, not a fee",
    ),
)


def build_system_instructions() -> str:
    """Return concise system instructions for single-category classification."""

    return (
        "You are a bookkeeping assistant that categorizes one business bank transaction. "
        "Choose exactly one category slug from the provided list based on the purpose of the "
        "transaction. Vendor names are attributes, never categories. Never invent categories. "
        "Output JSON only that conforms to the specified schema."
    )


def _format_category(cat: Category) -> str:
    line = f"- {cat.slug}: {cat.name}"
    if cat.attributes:
        line += f" (attributes: {', '.join(cat.attributes)})"
    return line


def _format_amount(amount_cents: int) -> str:
    sign = "-" if amount_cents < 0 else ""
    return f"{sign}${abs(amount_cents) / 100:.2f}"


def _pass1_section(pass1: Pass1Result | None) -> str:
    if pass1 is None or not pass1.signals:
        return ""
    lines = ["RULE ENGINE CONTEXT (may be wrong):"]
    if pass1.category_id is not None and pass1.confidence is not None:
        lines.append(f"Rule proposal: {category_name(pass1.category_id)} ({pass1.confidence:.2f})")
    ranked = sorted(pass1.signals, key=lambda s: -s.confidence)[:_MAX_CONTEXT_SIGNALS]
    for s in ranked:
        lines.append(f"- {s.type}:{s.evidence} -> {s.category_id} (confidence: {s.confidence:.2f})")
    return "\n".join(lines) + "\n\n"


def build_user_content(
    tx: Transaction,
    *,
    pass1: Pass1Result | None = None,
    categories: Sequence[Category] | None = None,
) -> str:
    """Build the user prompt for ``tx``.

    ``pass1`` adds the rule engine's signals as auxiliary context.
    ``categories`` defaults to :func:`taxonomy.prompt_categories`.
    """

    cats = list(categories) if categories is not None else prompt_categories()
    examples = "\n".join(
        f'Description: "{d}" | Merchant: {m} -> {slug} ({why})' for d, m, slug, why in _FEW_SHOT
    )
    direction = "money in" if tx.amount_cents > 0 else "money out"
    return (
        "Categorize this business transaction into ONE category and extract attributes.\n\n"
        f"{_pass1_section(pass1)}"
        "TRANSACTION:\n"
        f"Merchant: {tx.merchant_name or 'Unknown'}\n"
        f"Description: {tx.description or '(none)'}\n"
        f"Amount: {_format_amount(tx.amount_cents)} ({direction})\n"
        f"MCC: {tx.mcc or 'Not provided'}\n"
        f"Date: {tx.date.isoformat()}\n\n"
        "CATEGORIES:\n" + "\n".join(_format_category(c) for c in cats) + "\n\n"
        "RULES:\n"
        "- Processor payouts and settlements -> payouts_clearing\n"
        "- Processor fees -> payment_processing_fees with the processor attribute\n"
        "- Refunds to customers -> refunds_contra, never a revenue category\n"
        "- Sales tax remittances -> sales_tax_payable\n"
        "- If truly unclear, use miscellaneous with a low confidence\n\n"
        f"EXAMPLES:\n{examples}\n\n"
        "Respond with JSON: category_slug, confidence (0-1), rationale, attributes."
    )


def build_prompt(tx: Transaction, *, pass1: Pass1Result | None = None) -> str:
    """System instructions and user content joined into one text prompt."""

    return build_system_instructions() + "\n\n" + build_user_content(tx, pass1=pass1)


def build_response_format(
    categories: Sequence[Category] | None = None,
) -> ResponseFormatTextJSONSchemaConfigParam:
    """Return the strict JSON Schema response_format object.

    Strict mode requires every property to be listed as required, so each
    attribute known to any prompt category appears as a nullable string.
    """

    cats = list(categories) if categories is not None else prompt_categories()
    slugs = [c.slug for c in cats]
    if not slugs:
        raise ValueError("categories must not be empty")
    attr_names = sorted({name for c in cats for name in c.attributes})
    attr_props: dict[str, Any] = {name: {"type": ["string", "null"]} for name in attr_names}

    result: ResponseFormatTextJSONSchemaConfigParam = {
        "type": "json_schema",
        "name": "transaction_category",
        "schema": {
            "type": "object",
            "properties": {
                "category_slug": {"type": "string", "enum": slugs},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "rationale": {"type": "string"},
                "attributes": {
                    "type": "object",
                    "properties": attr_props,
                    "required": attr_names,
                    "additionalProperties": False,
                },
            },
            "required": ["category_slug", "confidence", "rationale", "attributes"],
            "additionalProperties": False,
        },
        "strict": True,
    }
    return result


__all__ = [
    "build_prompt",
    "build_response_format",
    "build_system_instructions",
    "build_user_content",
]
