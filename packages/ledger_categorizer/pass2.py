"""Pass-2: turn a generative-model answer into a validated proposal.

The network call itself happens in :mod:`hybrid`; this module only parses,
coerces, calibrates and re-validates the returned text:

1. Parse JSON (fenced code blocks tolerated) into :class:`LlmCategorization`.
   Unparseable output becomes ``miscellaneous`` at a fixed low confidence.
2. Unknown category slugs are coerced to ``miscellaneous`` the same way.
   Both fallbacks still pass through the guardrail checks of step 4, so
   under the default minimum confidence they end with no category.
3. Calibrate the self-reported confidence (model curve, Pass-1 agreement).
4. Apply the accounting redirect rules, then re-run the guardrail checks.
   Every change is recorded as a :class:`GuardrailIntervention` and logged.
5. Keep only the attributes valid for the final category.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping

from pydantic import ValidationError

from .calibration import AgreementFlags, calibrate
from .errors import ModelResponseError
from .guardrails import DEFAULT_GUARDRAIL_CONFIG, GuardrailConfig, apply_redirect_rules, check_proposal
from .logging_setup import get_logger
from .models import GuardrailIntervention, LlmCategorization, Pass1Result, Pass2Result, Transaction
from .rules.mcc import MCC_MAPPINGS, MccMapping
from .taxonomy import FALLBACK_CATEGORY, is_valid_leaf, validate_attributes

FALLBACK_CONFIDENCE = 0.3
# Pass-1 confidence at which the model earns an agreement boost.
_STRONG_PASS1 = 0.80

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)

_logger = get_logger(__name__)


def parse_model_response(text: str) -> LlmCategorization:
    """Parse and validate a model payload.

    Raises
    ------
    ModelResponseError
        When the text is not a JSON object or fails validation.
    """

    raw = (text or "").strip()
    m = _FENCE_RE.match(raw)
    if m:
        raw = m.group(1)
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ModelResponseError("Model output was not valid JSON") from e
    if not isinstance(decoded, Mapping):
        raise ModelResponseError("Model output must be a JSON object")
    try:
        return LlmCategorization.model_validate(dict(decoded))
    except ValidationError as e:
        raise ModelResponseError(f"Model output failed validation: {e.error_count()} error(s)") from e


def _recheck(
    tx: Transaction,
    category_id: str,
    confidence: float,
    config: GuardrailConfig,
    mcc_table: Mapping[str, MccMapping],
) -> tuple[str | None, float | None, GuardrailIntervention | None, list[str]]:
    gr = check_proposal(tx, category_id, confidence, config, mcc_table=mcc_table)
    iv = None
    if not gr.allowed or gr.final_confidence != confidence:
        iv = GuardrailIntervention(
            stage="guardrails",
            original_category=category_id,
            original_confidence=confidence,
            final_category=gr.final_category,
            final_confidence=gr.final_confidence,
            reason="; ".join(v.reason for v in gr.violations),
        )
        _log_intervention(tx, iv)
    notes = [f"guardrail {v.action}: {v.type} ({v.reason})" for v in gr.violations]
    return gr.final_category, gr.final_confidence, iv, notes


def _fallback(
    tx: Transaction,
    reason: str,
    *,
    parse_failed: bool,
    config: GuardrailConfig,
    mcc_table: Mapping[str, MccMapping],
) -> Pass2Result:
    # The fallback is a model proposal like any other; a guardrail reject voids it.
    category, confidence, iv, notes = _recheck(tx, FALLBACK_CATEGORY, FALLBACK_CONFIDENCE, config, mcc_table)
    return Pass2Result(
        category_id=category,
        confidence=confidence,
        rationale=(reason, f"fallback: {FALLBACK_CATEGORY} ({FALLBACK_CONFIDENCE:.2f})", *notes),
        interventions=() if iv is None else (iv,),
        parse_failed=parse_failed,
    )


def _log_intervention(tx: Transaction, iv: GuardrailIntervention) -> None:
    _logger.info(
        "pass2:guardrail_intervention tx_id=%s stage=%s original=%s/%s final=%s/%s reason=%s",
        tx.id,
        iv.stage,
        iv.original_category,
        None if iv.original_confidence is None else f"{iv.original_confidence:.3f}",
        iv.final_category,
        None if iv.final_confidence is None else f"{iv.final_confidence:.3f}",
        iv.reason,
    )


def categorize_pass2(
    tx: Transaction,
    response_text: str,
    *,
    pass1: Pass1Result | None = None,
    config: GuardrailConfig = DEFAULT_GUARDRAIL_CONFIG,
    mcc_table: Mapping[str, MccMapping] = MCC_MAPPINGS,
) -> Pass2Result:
    """Validate the model's ``response_text`` for ``tx``.

    Never raises for bad model output; see the module docstring for the
    fallback rules.
    """

    try:
        parsed = parse_model_response(response_text)
    except ModelResponseError as e:
        _logger.warning("pass2:parse_failed tx_id=%s error=%s", tx.id, e)
        return _fallback(
            tx, f"model response unparseable: {e}", parse_failed=True, config=config, mcc_table=mcc_table
        )

    if not is_valid_leaf(parsed.category_slug):
        _logger.warning("pass2:unknown_category tx_id=%s slug=%s", tx.id, parsed.category_slug)
        return _fallback(
            tx,
            f"model proposed unknown category '{parsed.category_slug}'",
            parse_failed=False,
            config=config,
            mcc_table=mcc_table,
        )

    rationale: list[str] = []
    if parsed.rationale:
        rationale.append(f"LLM: {parsed.rationale}")

    flags = AgreementFlags(
        source="model",
        pass1_strong=bool(pass1 and pass1.confidence is not None and pass1.confidence >= _STRONG_PASS1),
        pass1_agrees=bool(pass1 and pass1.category_id == parsed.category_slug),
    )
    confidence = calibrate(parsed.confidence, flags=flags)
    rationale.append(f"confidence: raw={parsed.confidence:.3f}, calibrated={confidence:.3f}")

    interventions: list[GuardrailIntervention] = []
    redirect = apply_redirect_rules(tx, parsed.category_slug, confidence)
    if redirect.redirected:
        iv = GuardrailIntervention(
            stage="redirect",
            original_category=parsed.category_slug,
            original_confidence=confidence,
            final_category=redirect.category_id,
            final_confidence=redirect.confidence,
            reason="; ".join(redirect.reasons),
        )
        interventions.append(iv)
        _log_intervention(tx, iv)
        rationale.append(f"redirect: {', '.join(redirect.applied)}")

    final_category, final_confidence, iv, notes = _recheck(
        tx, redirect.category_id, redirect.confidence, config, mcc_table
    )
    if iv is not None:
        interventions.append(iv)
    rationale.extend(notes)

    attributes: dict[str, str] = {}
    if final_category is not None:
        attributes, errors = validate_attributes(final_category, parsed.attributes)
        for err in errors:
            _logger.debug("pass2:attribute_dropped tx_id=%s detail=%s", tx.id, err)

    return Pass2Result(
        category_id=final_category,
        confidence=final_confidence,
        rationale=tuple(rationale),
        attributes=attributes,
        interventions=tuple(interventions),
    )


__all__ = ["FALLBACK_CONFIDENCE", "categorize_pass2", "parse_model_response"]
