"""Hybrid orchestrator: Pass-1 first, the model only when Pass-1 is unsure.

Per transaction:

1. Run Pass-1. Accept it when its confidence clears the dynamic threshold.
2. With the model disabled (or no client), keep Pass-1 and mark for review.
3. Call the model with bounded retries and exponential backoff. On
   exhaustion, keep Pass-1 and mark for review.
4-5. Validate the answer through :func:`pass2.categorize_pass2` (slug
   coercion, attribute cleaning, redirects, guardrails).
6. Keep whichever of Pass-1 / Pass-2 is more confident; anything without a
   category or below the dynamic threshold needs review.

``categorize_transaction`` never raises for model or parse failures.
"""

from __future__ import annotations

import dataclasses
import random
import re
import time
from collections.abc import Callable, Iterable, Sequence

import openai

from .config import HybridConfig, RetryPolicy
from .errors import ModelCallError
from .guardrails import DEFAULT_GUARDRAIL_CONFIG, GuardrailConfig, is_processor_merchant
from .logging_setup import get_logger, job_context
from .models import CategorizationOutcome, Pass1Result, Pass2Result, RuleVersion, Transaction
from .openai_client import ModelClient
from .pass1 import Observer, categorize_pass1
from .pass2 import categorize_pass2
from .pmap import p_map
from .prompting import build_prompt
from .rules.ruleset import DEFAULT_RULESET, RuleSet
from .store import Store, utcnow
from .taxonomy import category_type

# ---- Tunables ---------------------------------------------------------------

HIGH_RISK_THRESHOLD: float = 0.99
INVOICE_THRESHOLD: float = 0.90
_INVOICE_RE = re.compile(r"\b(invoice|inv\s?#|po\s?#|purchase order|net\s?(15|30|60))\b", re.IGNORECASE)

_logger = get_logger(__name__)


def compute_dynamic_threshold(
    tx: Transaction, category_id: str | None, base_threshold: float = 0.95
) -> float:
    """Acceptance bar for ``category_id`` on ``tx``.

    Notes
    -----
    - Money coming in but proposed as an expense (opex/cogs): 0.99.
    - Payment-processor merchant proposed as revenue: 0.99.
    - Invoice/PO language on incoming money proposed as revenue, without a
      processor merchant: 0.90.
    - Otherwise ``base_threshold``.
    """

    ctype = category_type(category_id)
    if ctype is None:
        return base_threshold
    processor = is_processor_merchant(tx)
    if tx.amount_cents > 0 and ctype in ("opex", "cogs"):
        return max(base_threshold, HIGH_RISK_THRESHOLD)
    if processor and ctype == "revenue":
        return max(base_threshold, HIGH_RISK_THRESHOLD)
    text = f"{tx.description} {tx.merchant_name or ''}"
    if ctype == "revenue" and tx.amount_cents > 0 and not processor and _INVOICE_RE.search(text):
        return min(base_threshold, INVOICE_THRESHOLD)
    return base_threshold


# ---- Model call with retries ------------------------------------------------


def is_retryable(exc: BaseException) -> bool:
    """Transient failures: HTTP 429/5xx, timeouts and connection errors."""

    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, TimeoutError, ConnectionError)):
        return True
    sc = getattr(exc, "status_code", None)
    return isinstance(sc, int) and (sc == 429 or 500 <= sc < 600)


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    base = policy.delay_for(attempt)
    jitter = base * policy.jitter_pct
    return max(0.0, base + random.uniform(-jitter, jitter))


def call_with_retry(
    client: ModelClient,
    prompt: str,
    *,
    temperature: float,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    tx_id: str = "",
) -> tuple[str, int]:
    """Call ``client.generate`` under ``policy``; return ``(text, attempts)``.

    Raises
    ------
    ModelCallError
        On a terminal error or after ``policy.max_attempts`` transient ones.
    """

    attempt = 1
    while True:
        t0 = time.perf_counter()
        try:
            return client.generate(prompt, temperature=temperature), attempt
        except Exception as e:  # noqa: BLE001
            dt_ms = (time.perf_counter() - t0) * 1000.0
            if attempt >= policy.max_attempts or not is_retryable(e):
                _logger.error(
                    "hybrid:model_failed_terminal tx_id=%s attempt=%d latency_ms=%.2f error=%s",
                    tx_id,
                    attempt,
                    dt_ms,
                    e.__class__.__name__,
                )
                raise ModelCallError(f"model call failed: {e}", attempts=attempt) from e
            _logger.warning(
                "hybrid:model_retry tx_id=%s attempt=%d latency_ms=%.2f error=%s",
                tx_id,
                attempt,
                dt_ms,
                e.__class__.__name__,
            )
            sleep(backoff_delay(policy, attempt))
            attempt += 1


# ---- Orchestration ----------------------------------------------------------


def _from_pass1(
    tx: Transaction,
    p1: Pass1Result,
    base_threshold: float,
    *,
    force_review: bool,
    note: str | None = None,
    p2: Pass2Result | None = None,
    attempts: int = 0,
) -> CategorizationOutcome:
    threshold = compute_dynamic_threshold(tx, p1.category_id, base_threshold)
    below = p1.confidence is None or p1.confidence < threshold
    rationale = list(p1.rationale)
    if note:
        rationale.append(note)
    return CategorizationOutcome(
        tx_id=tx.id,
        category_id=p1.category_id,
        confidence=p1.confidence,
        source="pass1" if p1.category_id is not None else None,
        needs_review=force_review or below or p1.category_id is None,
        threshold=threshold,
        rationale=tuple(rationale),
        pass1=p1,
        pass2=p2,
        llm_attempts=attempts,
    )


def categorize_transaction(
    tx: Transaction,
    *,
    model_client: ModelClient | None = None,
    config: HybridConfig | None = None,
    ruleset: RuleSet = DEFAULT_RULESET,
    guardrails: GuardrailConfig = DEFAULT_GUARDRAIL_CONFIG,
    sleep: Callable[[float], None] = time.sleep,
    observer: Observer | None = None,
) -> CategorizationOutcome:
    """Categorize one transaction through the hybrid flow."""

    cfg = config or HybridConfig()
    p1 = categorize_pass1(tx, ruleset=ruleset, config=guardrails, observer=observer)
    threshold = compute_dynamic_threshold(tx, p1.category_id, cfg.hybrid_threshold)

    if p1.confidence is not None and p1.confidence >= threshold:
        _logger.debug("hybrid:pass1_accepted tx_id=%s category=%s", tx.id, p1.category_id)
        return _from_pass1(tx, p1, cfg.hybrid_threshold, force_review=False)

    if not cfg.enable_llm or model_client is None:
        return _from_pass1(
            tx, p1, cfg.hybrid_threshold, force_review=True, note="llm: disabled; manual review required"
        )

    prompt = build_prompt(tx, pass1=p1)
    try:
        text, attempts = call_with_retry(
            model_client,
            prompt,
            temperature=cfg.temperature,
            policy=cfg.retry,
            sleep=sleep,
            tx_id=tx.id,
        )
    except ModelCallError as e:
        return _from_pass1(
            tx,
            p1,
            cfg.hybrid_threshold,
            force_review=True,
            note=f"llm: unavailable after {e.attempts} attempt(s); using rules result",
            attempts=e.attempts,
        )

    p2 = categorize_pass2(tx, text, pass1=p1, config=guardrails, mcc_table=ruleset.mcc)
    p1_conf = p1.confidence if p1.category_id is not None and p1.confidence is not None else -1.0
    p2_conf = p2.confidence if p2.category_id is not None and p2.confidence is not None else -1.0

    if p1_conf >= p2_conf:
        return _from_pass1(
            tx,
            p1,
            cfg.hybrid_threshold,
            force_review=False,
            note="hybrid: rules result kept (model not more confident)",
            p2=p2,
            attempts=attempts,
        )

    final_threshold = compute_dynamic_threshold(tx, p2.category_id, cfg.hybrid_threshold)
    needs_review = p2.category_id is None or p2_conf < final_threshold
    rationale = [*p1.rationale, *p2.rationale, "hybrid: model result accepted"]
    _logger.info(
        "hybrid:pass2_accepted tx_id=%s category=%s confidence=%.3f needs_review=%s attempts=%d",
        tx.id,
        p2.category_id,
        p2_conf,
        needs_review,
        attempts,
    )
    return CategorizationOutcome(
        tx_id=tx.id,
        category_id=p2.category_id,
        confidence=p2.confidence,
        source="llm",
        needs_review=needs_review,
        threshold=final_threshold,
        rationale=tuple(rationale),
        pass1=p1,
        pass2=p2,
        attributes=p2.attributes,
        llm_attempts=attempts,
    )


def categorize_batch(
    transactions: Iterable[Transaction],
    *,
    model_client: ModelClient | None = None,
    config: HybridConfig | None = None,
    ruleset: RuleSet = DEFAULT_RULESET,
    guardrails: GuardrailConfig = DEFAULT_GUARDRAIL_CONFIG,
    sleep: Callable[[float], None] = time.sleep,
) -> list[CategorizationOutcome]:
    """Categorize ``transactions`` concurrently; output follows input order."""

    cfg = config or HybridConfig()

    def _one(tx: Transaction) -> CategorizationOutcome:
        return categorize_transaction(
            tx, model_client=model_client, config=cfg, ruleset=ruleset, guardrails=guardrails, sleep=sleep
        )

    return p_map(transactions, _one, concurrency=cfg.concurrency)


def apply_outcome(tx: Transaction, outcome: CategorizationOutcome) -> Transaction:
    """Return ``tx`` with the outcome's categorization fields applied."""

    return dataclasses.replace(
        tx,
        category_id=outcome.category_id,
        confidence=outcome.confidence,
        needs_review=outcome.needs_review,
        decision_source=outcome.source,
    )


def load_org_ruleset(store: Store, org_id: str, base: RuleSet = DEFAULT_RULESET) -> RuleSet:
    rows = store.query("rule_versions", {"org_id": org_id, "is_active": True})
    return base.with_rule_versions(RuleVersion.from_record(r) for r in rows)


def categorize_pending(
    store: Store,
    org_id: str,
    *,
    model_client: ModelClient | None = None,
    config: HybridConfig | None = None,
    limit: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Sequence[CategorizationOutcome]:
    """Categorize an organization's uncategorized, unreviewed transactions.

    Uses the organization's active rule versions and writes each outcome
    back to the store.
    """

    rows = store.query(
        "transactions",
        {"org_id": org_id, "category_id": None, "reviewed": False},
        order_by="date",
        limit=limit,
    )
    txs = [Transaction.from_record(r) for r in rows]
    if not txs:
        return []
    with job_context("categorize_pending", org_id=org_id):
        ruleset = load_org_ruleset(store, org_id)
        outcomes = categorize_batch(txs, model_client=model_client, config=config, ruleset=ruleset, sleep=sleep)
        for tx, outcome in zip(txs, outcomes, strict=True):
            store.update(
                "transactions",
                tx.id,
                {
                    "category_id": outcome.category_id,
                    "confidence": outcome.confidence,
                    "needs_review": outcome.needs_review,
                    "decision_source": outcome.source,
                    "updated_at": utcnow(),
                },
            )
        _logger.info(
            "hybrid:batch_done org_id=%s transactions=%d needs_review=%d",
            org_id,
            len(outcomes),
            sum(1 for o in outcomes if o.needs_review),
        )
    return outcomes


__all__ = [
    "apply_outcome",
    "backoff_delay",
    "call_with_retry",
    "categorize_batch",
    "categorize_pending",
    "categorize_transaction",
    "compute_dynamic_threshold",
    "is_retryable",
    "load_org_ruleset",
]
