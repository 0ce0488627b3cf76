"""Exception types raised by ``ledger_categorizer``.

"No signal" and "guardrail rejected" are ordinary outcomes, not errors, and
never surface as exceptions. What remains:

- :class:`PreconditionError` for operations called in a state that forbids
  them (promoting an untested rule, resolving a closed oscillation). These are
  raised synchronously to the caller.
- :class:`ModelCallError` / :class:`ModelResponseError` for the generative
  model path. The hybrid orchestrator converts both into degraded results, so
  callers of ``categorize_transaction`` never see them.

Storage exceptions are not wrapped; they propagate as raised by the store.
"""

from __future__ import annotations


class CategorizerError(Exception):
    """Base class for all package-specific errors."""


class PreconditionError(CategorizerError):
    """An operation's precondition does not hold."""


class RecordNotFoundError(PreconditionError):
    """A referenced record does not exist in the store."""

    def __init__(self, table: str, record_id: str) -> None:
        super().__init__(f"{table} record not found: {record_id}")
        self.table = table
        self.record_id = record_id


class ModelCallError(CategorizerError):
    """The model call failed and retries (if any) are exhausted."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class ModelResponseError(CategorizerError, ValueError):
    """The model answered, but the payload could not be parsed or validated."""


__all__ = [
    "CategorizerError",
    "ModelCallError",
    "ModelResponseError",
    "PreconditionError",
    "RecordNotFoundError",
]
