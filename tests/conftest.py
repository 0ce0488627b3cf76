"""Pytest configuration for test isolation.

The engine reads ``LEDGER_CATEGORIZER_*`` settings, ``DATABASE_URL`` and
``OPENAI_API_KEY`` from the environment, and ``db.client`` keeps one shared
engine per process. Both would leak state between tests (a developer's shell
or a previous test's SQLite file), so every test starts from a clean
environment and a disposed engine.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
from db.client import reset_engine


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop engine-related variables and reset the shared DB engine."""

    for name in list(os.environ):
        if name.startswith("LEDGER_CATEGORIZER_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    reset_engine()
    yield
    reset_engine()
