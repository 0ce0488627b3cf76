"""Scripted stand-in for ``openai_client.ModelClient``.

Each call to ``generate`` consumes the next scripted step: a string is
returned as the model text, an exception instance is raised. When the script
runs out the last step repeats. Calls are recorded for assertions.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any


def model_json(category_slug: str, confidence: float, rationale: str = "", **attributes: Any) -> str:
    """Serialize a model answer the way the Responses API would return it."""

    return json.dumps(
        {
            "category_slug": category_slug,
            "confidence": confidence,
            "rationale": rationale,
            "attributes": attributes,
        }
    )


class ScriptedModelClient:
    """Minimal ``ModelClient`` returning (or raising) scripted steps in order.

    Parameters
    ----------
    steps:
        Strings or exception instances, consumed one per call.
    """

    def __init__(self, steps: Sequence[str | BaseException]) -> None:
        if not steps:
            raise ValueError("at least one scripted step is required")
        self._steps = list(steps)
        self.calls: list[dict[str, Any]] = []

    def generate(self, prompt: str, *, temperature: float) -> str:
        idx = min(len(self.calls), len(self._steps) - 1)
        self.calls.append({"prompt": prompt, "temperature": temperature})
        step = self._steps[idx]
        if isinstance(step, BaseException):
            raise step
        return step


class StatusError(Exception):
    """Exception carrying an HTTP ``status_code`` like the SDK's API errors."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
