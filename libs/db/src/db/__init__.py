"""db: shared database library (SQLAlchemy).

Public exports
--------------
- ``Base`` and ``metadata`` for schema creation
- ORM models in ``db.models.categorizer`` (re-exported for convenience)
- Engine/session helpers in ``db.client``
"""

from __future__ import annotations

from .models.categorizer import STORE_TABLES, Base, LcRuleVersion, LcTransaction

metadata = Base.metadata

__all__ = [
    "Base",
    "LcRuleVersion",
    "LcTransaction",
    "STORE_TABLES",
    "metadata",
]
