"""Category taxonomy for small-business bookkeeping.

Two levels: a handful of top-level groups (revenue, cost of goods, operating
expenses, liabilities, clearing) and the leaf categories transactions are
actually assigned to. Every leaf carries its accounting ``type`` which the
guardrails and the dynamic review threshold depend on.

Leaves may declare an attribute schema. Pass-2 uses it to keep only the
attributes that make sense for the chosen category.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

type CategoryType = Literal["revenue", "cogs", "opex", "liability", "clearing"]


@dataclass(frozen=True, slots=True)
class AttributeSpec:
    """Allowed values for one extracted attribute.

    ``kind`` is ``"string"``, ``"number"`` or ``"enum"``; enum specs list their
    accepted values in ``choices`` (compared case-insensitively).
    """

    kind: Literal["string", "number", "enum"] = "string"
    choices: tuple[str, ...] = ()
    max_length: int = 80


@dataclass(frozen=True, slots=True)
class Category:
    slug: str
    name: str
    type: CategoryType
    parent: str | None
    include_in_prompt: bool = True
    attributes: Mapping[str, AttributeSpec] = field(default_factory=dict)


_PROCESSOR_ENUM = AttributeSpec(
    "enum", ("stripe", "paypal", "shopify_payments", "square", "amazon", "other")
)

_GROUPS: tuple[Category, ...] = (
    Category("revenue", "Revenue", "revenue", None, include_in_prompt=False),
    Category("cogs", "Cost of Goods Sold", "cogs", None, include_in_prompt=False),
    Category("operating_expenses", "Operating Expenses", "opex", None, include_in_prompt=False),
    Category("taxes_liabilities", "Taxes & Liabilities", "liability", None, include_in_prompt=False),
    Category("clearing", "Clearing", "clearing", None, include_in_prompt=False),
)

_LEAVES: tuple[Category, ...] = (
    # Revenue
    Category("dtc_sales", "DTC Sales", "revenue", "revenue"),
    Category("service_revenue", "Service Revenue", "revenue", "revenue"),
    Category("shipping_income", "Shipping Income", "revenue", "revenue"),
    Category("refunds_contra", "Refunds & Allowances", "revenue", "revenue"),
    # Cost of goods sold
    Category(
        "supplies_inventory",
        "Supplies & Inventory",
        "cogs",
        "cogs",
        attributes={"supplier": AttributeSpec()},
    ),
    Category("packaging", "Packaging", "cogs", "cogs"),
    Category(
        "shipping_postage",
        "Shipping & Postage",
        "cogs",
        "cogs",
        attributes={"carrier": AttributeSpec("enum", ("usps", "ups", "fedex", "dhl", "other"))},
    ),
    # Operating expenses
    Category("hair_services", "Hair Services", "opex", "operating_expenses"),
    Category("nail_services", "Nail Services", "opex", "operating_expenses"),
    Category("skin_care_services", "Skin Care Services", "opex", "operating_expenses"),
    Category(
        "meals",
        "Meals",
        "opex",
        "operating_expenses",
        attributes={"attendees": AttributeSpec("number")},
    ),
    Category("rent_utilities", "Rent & Utilities", "opex", "operating_expenses"),
    Category(
        "software_subscriptions",
        "Software & Technology",
        "opex",
        "operating_expenses",
        attributes={
            "vendor": AttributeSpec(),
            "billing_cycle": AttributeSpec("enum", ("monthly", "annual", "usage")),
        },
    ),
    Category("equipment_hardware", "Equipment & Hardware", "opex", "operating_expenses"),
    Category("office_admin", "Office & Admin", "opex", "operating_expenses"),
    Category("vehicle_travel", "Vehicle & Travel", "opex", "operating_expenses"),
    Category("professional_services", "Professional Services", "opex", "operating_expenses"),
    Category(
        "marketing_ads",
        "Marketing & Advertising",
        "opex",
        "operating_expenses",
        attributes={
            "platform": AttributeSpec("enum", ("meta", "google", "tiktok", "other")),
            "campaign": AttributeSpec(),
        },
    ),
    Category("insurance", "Insurance", "opex", "operating_expenses"),
    Category("licenses_permits", "Licenses & Permits", "opex", "operating_expenses"),
    Category("payroll_contractors", "Payroll & Contractors", "opex", "operating_expenses"),
    Category("bank_fees", "Banking & Fees", "opex", "operating_expenses"),
    Category(
        "payment_processing_fees",
        "Payment Processing Fees",
        "opex",
        "operating_expenses",
        attributes={"processor": _PROCESSOR_ENUM},
    ),
    Category("miscellaneous", "Miscellaneous", "opex", "operating_expenses"),
    # Liabilities
    Category(
        "sales_tax_payable",
        "Sales Tax Payable",
        "liability",
        "taxes_liabilities",
        attributes={"jurisdiction": AttributeSpec()},
    ),
    # Clearing
    Category(
        "payouts_clearing",
        "Payouts Clearing",
        "clearing",
        "clearing",
        attributes={"processor": _PROCESSOR_ENUM},
    ),
)

CATEGORIES: Mapping[str, Category] = {c.slug: c for c in (*_GROUPS, *_LEAVES)}
"""Every category (groups and leaves) keyed by slug."""

LEAF_SLUGS: tuple[str, ...] = tuple(c.slug for c in _LEAVES)

FALLBACK_CATEGORY = "miscellaneous"

# Categories that share an MCC family; an MCC pointing to one member is
# compatible with every other member.
CATEGORY_FAMILIES: tuple[frozenset[str], ...] = (
    frozenset({"office_admin", "rent_utilities", "software_subscriptions"}),
    frozenset({"hair_services", "nail_services", "skin_care_services"}),
    frozenset({"supplies_inventory", "equipment_hardware", "packaging"}),
    frozenset({"marketing_ads", "professional_services"}),
    frozenset({"bank_fees", "payment_processing_fees"}),
)


def get_category(slug: str | None) -> Category | None:
    if slug is None:
        return None
    return CATEGORIES.get(slug)


def category_name(slug: str | None) -> str:
    cat = get_category(slug)
    return cat.name if cat else (slug or "Uncategorized")


def category_type(slug: str | None) -> CategoryType | None:
    cat = get_category(slug)
    return cat.type if cat else None


def is_valid_leaf(slug: str | None) -> bool:
    return slug is not None and slug in LEAF_SLUGS


def same_family(a: str, b: str) -> bool:
    return a == b or any(a in fam and b in fam for fam in CATEGORY_FAMILIES)


def prompt_categories(extra: Iterable[str] = ()) -> list[Category]:
    """Leaves shown to the model, in taxonomy order, plus any ``extra`` slugs."""

    wanted = set(extra)
    return [c for c in _LEAVES if c.include_in_prompt or c.slug in wanted]


def validate_attributes(slug: str, attributes: Mapping[str, Any]) -> tuple[dict[str, str], list[str]]:
    """Split ``attributes`` into the cleaned, schema-valid subset and errors.

    Returns ``(cleaned, errors)``. Values are normalized to strings; unknown
    keys, empty values, and values violating their AttributeSpec are dropped and reported
    in ``errors``. Categories without a schema accept no attributes.
    """

    schema = CATEGORIES[slug].attributes if slug in CATEGORIES else {}
    cleaned: dict[str, str] = {}
    errors: list[str] = []
    for key, value in attributes.items():
        spec = schema.get(key)
        if spec is None:
            errors.append(f"unknown attribute '{key}' for {slug}")
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        if spec.kind == "number":
            if isinstance(value, bool):
                errors.append(f"attribute '{key}' must be a number")
                continue
            try:
                num = float(value)
            except (TypeError, ValueError):
                errors.append(f"attribute '{key}' must be a number")
                continue
            cleaned[key] = str(int(num)) if num.is_integer() else str(num)
            continue
        text = str(value).strip()
        if spec.kind == "enum":
            lowered = text.lower()
            if lowered not in spec.choices:
                errors.append(f"attribute '{key}' has invalid value '{text}'")
                continue
            text = lowered
        if len(text) > spec.max_length:
            errors.append(f"attribute '{key}' exceeds {spec.max_length} characters")
            continue
        cleaned[key] = text
    return cleaned, errors


__all__ = [
    "AttributeSpec",
    "CATEGORIES",
    "CATEGORY_FAMILIES",
    "Category",
    "CategoryType",
    "FALLBACK_CATEGORY",
    "LEAF_SLUGS",
    "category_name",
    "category_type",
    "get_category",
    "is_valid_leaf",
    "prompt_categories",
    "same_family",
    "validate_attributes",
]
