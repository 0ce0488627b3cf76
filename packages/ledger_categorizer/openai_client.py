"""``ModelClient`` adapter over the OpenAI Responses API.

No side effects occur at import time; the SDK client is created lazily on the
first call (``OPENAI_API_KEY`` is read by the SDK itself).
"""

from __future__ import annotations

from typing import Any, Protocol

from openai import OpenAI
from openai.types.responses import ResponseTextConfigParam

from .config import DEFAULT_MODEL
from .logging_setup import get_logger
from .prompting import build_response_format

_logger = get_logger(__name__)


class ModelClient(Protocol):
    """Text in, text out. Implementations may raise on transport failures."""

    def generate(self, prompt: str, *, temperature: float) -> str: ...


def extract_response_text(resp: Any) -> str:
    """Locate the text payload of a Responses SDK result.

    Prefers ``resp.output_text``; falls back to
    ``resp.output[0].content[0].text`` (or its ``.value``). Raises
    ``ValueError`` when no text can be found.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        try:
            first = resp.output[0] if getattr(resp, "output", None) else None
            content = getattr(first, "content", None)
            if content and len(content) > 0:
                txt_obj = getattr(content[0], "text", None)
                if isinstance(txt_obj, str):
                    text = txt_obj
                else:
                    maybe_val = getattr(txt_obj, "value", None)
                    if isinstance(maybe_val, str):
                        text = maybe_val
        except Exception:  # noqa: BLE001 - tolerate SDK shape differences
            text = None
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")
    return text


class OpenAIModelClient:
    """Send prompts to the Responses API with a strict JSON-schema text format.

    Parameters
    ----------
    model:
        Responses API model name.
    timeout_sec:
        Per-request timeout passed to the SDK; a timeout surfaces as
        ``openai.APITimeoutError`` which the orchestrator retries.
    client:
        Optional pre-built ``OpenAI`` instance (tests, custom base URLs).
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        timeout_sec: float = 30.0,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model
        self.timeout_sec = timeout_sec
        self._client = client
        self._text_cfg = ResponseTextConfigParam(format=build_response_format())

    def _get_client(self) -> OpenAI:
        if self._client is None:
            # The SDK's own retries are disabled; the orchestrator owns backoff.
            self._client = OpenAI(max_retries=0)
        return self._client

    def generate(self, prompt: str, *, temperature: float) -> str:
        resp = self._get_client().responses.create(
            model=self.model,
            input=prompt,
            text=self._text_cfg,
            temperature=temperature,
            timeout=self.timeout_sec,
        )
        text = extract_response_text(resp)
        _logger.debug("openai_client:response model=%s chars=%d", self.model, len(text))
        return text


__all__ = ["ModelClient", "OpenAIModelClient", "extract_response_text"]
