"""Merchant category code (MCC) table and signal extractor.

``exact`` entries identify the category on their own and always carry a base
confidence of at least 0.85; ``family`` entries only narrow the transaction to
a business type and are emitted as ``strong`` signals.

Unknown codes produce no signal and impose no constraint.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal

from ..calibration import signal_confidence
from ..models import CategorizationSignal, Transaction
from ..taxonomy import category_name, same_family


@dataclass(frozen=True, slots=True)
class MccMapping:
    category_id: str
    strength: Literal["exact", "family"]
    base_confidence: float


def _m(category_id: str, strength: Literal["exact", "family"], conf: float) -> MccMapping:
    return MccMapping(category_id, strength, conf)


MCC_MAPPINGS: Mapping[str, MccMapping] = MappingProxyType(
    {
        # Personal services
        "7230": _m("hair_services", "exact", 0.95),
        "7297": _m("nail_services", "exact", 0.95),
        "7298": _m("skin_care_services", "exact", 0.95),
        # Retail and supplies
        "5912": _m("supplies_inventory", "family", 0.85),
        "5977": _m("supplies_inventory", "family", 0.80),
        "5310": _m("supplies_inventory", "family", 0.75),
        # Utilities and telecom
        "4900": _m("rent_utilities", "exact", 0.90),
        "4814": _m("software_subscriptions", "exact", 0.90),
        "4815": _m("software_subscriptions", "exact", 0.90),
        # Food and dining
        "5812": _m("meals", "family", 0.70),
        "5814": _m("meals", "family", 0.75),
        # Fuel
        "5541": _m("vehicle_travel", "exact", 0.90),
        "5542": _m("vehicle_travel", "exact", 0.90),
        # Professional services
        "8931": _m("professional_services", "family", 0.75),
        "8999": _m("professional_services", "family", 0.70),
        "7311": _m("marketing_ads", "exact", 0.85),
        # Insurance, government
        "6300": _m("insurance", "exact", 0.90),
        "9399": _m("licenses_permits", "exact", 0.85),
        "9311": _m("sales_tax_payable", "family", 0.75),
        # Equipment and office
        "5200": _m("equipment_hardware", "family", 0.75),
        "5211": _m("equipment_hardware", "family", 0.80),
        "5943": _m("office_admin", "family", 0.75),
        # Software
        "7372": _m("software_subscriptions", "exact", 0.90),
        "7379": _m("software_subscriptions", "exact", 0.85),
        # Transportation and delivery
        "4111": _m("vehicle_travel", "family", 0.75),
        "4121": _m("vehicle_travel", "family", 0.75),
        "4215": _m("shipping_postage", "exact", 0.90),
        # Banking
        "6010": _m("bank_fees", "exact", 0.90),
        "6011": _m("bank_fees", "exact", 0.90),
    }
)


def get_mcc_mapping(
    mcc: str | None, table: Mapping[str, MccMapping] = MCC_MAPPINGS
) -> MccMapping | None:
    if not mcc:
        return None
    return table.get(mcc.strip())


def mccs_for_category(category_id: str, table: Mapping[str, MccMapping] = MCC_MAPPINGS) -> list[str]:
    return sorted(code for code, m in table.items() if m.category_id == category_id)


def is_mcc_compatible(
    mcc: str | None, category_id: str, table: Mapping[str, MccMapping] = MCC_MAPPINGS
) -> bool:
    """True when ``category_id`` is plausible for ``mcc``.

    Unknown or missing codes are compatible with every category.
    """

    mapping = get_mcc_mapping(mcc, table)
    if mapping is None:
        return True
    return same_family(mapping.category_id, category_id)


def extract_mcc_signal(
    tx: Transaction, table: Mapping[str, MccMapping] = MCC_MAPPINGS
) -> CategorizationSignal | None:
    mapping = get_mcc_mapping(tx.mcc, table)
    if mapping is None:
        return None
    name = category_name(mapping.category_id)
    strength = "exact" if mapping.strength == "exact" else "strong"
    return CategorizationSignal(
        type="mcc",
        category_id=mapping.category_id,
        category_name=name,
        strength=strength,
        confidence=signal_confidence(mapping.base_confidence, strength),
        evidence=f"MCC:{tx.mcc}",
        rationale=f"{tx.mcc} maps to {name} ({mapping.strength})",
    )


__all__ = [
    "MCC_MAPPINGS",
    "MccMapping",
    "extract_mcc_signal",
    "get_mcc_mapping",
    "is_mcc_compatible",
    "mccs_for_category",
]
