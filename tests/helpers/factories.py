"""Record factories shared by the test modules."""

from __future__ import annotations

import itertools
from datetime import date
from typing import Any

from ledger_categorizer.models import Transaction
from ledger_categorizer.store import Store

_SEQ = itertools.count(1)

ORG = "org-1"


def make_tx(**overrides: Any) -> Transaction:
    """Return a small outgoing card transaction; any field can be overridden."""

    fields: dict[str, Any] = {
        "id": f"tx-{next(_SEQ)}",
        "org_id": ORG,
        "date": date(2024, 3, 4),
        "amount_cents": -1_250,
        "description": "",
    }
    fields.update(overrides)
    return Transaction(**fields)


def insert_tx(store: Store, **overrides: Any) -> Transaction:
    """Create a transaction with :func:`make_tx` and store it."""

    tx = make_tx(**overrides)
    return Transaction.from_record(store.insert("transactions", tx.to_record()))
