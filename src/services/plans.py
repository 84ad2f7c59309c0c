"""
Plan resolution - map a provider's plan identifier to a local plan type and
duration.

Plan names come from product configuration on the provider side and are free
text ("Plano Anual", "premium_365", "Assinatura Mensal"), so besides the exact
table we match a list of aliases as whole words. Admin-managed product
mappings (product_mappings table) take precedence over all of it.
"""
import logging
import re
from typing import Any, Mapping, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_DURATION_DAYS = 30

PLAN_TABLE: dict[str, Optional[int]] = {
    "premium_30": 30,
    "premium_90": 90,
    "premium_180": 180,
    "premium_365": 365,
    "premium_lifetime": None,
}

# Checked in order: "semiannual" contains "annual", so it must come first
PLAN_ALIASES: list[tuple[tuple[str, ...], str]] = [
    (("vitalicio", "vitalício", "lifetime"), "premium_lifetime"),
    (("semestral", "semiannual", "semi-annual", "semiannually"), "premium_180"),
    (("trimestral", "quarterly"), "premium_90"),
    (("anual", "annual", "yearly"), "premium_365"),
    (("mensal", "monthly"), "premium_30"),
]

# Aliases match whole words only ("anual" must not match "manual").
# Underscore counts as a separator, so "premium_anual" still matches.
_ALIAS_PATTERNS: list[tuple[list[re.Pattern], str]] = [
    ([re.compile(rf"(?<![^\W_]){re.escape(alias)}(?![^\W_])") for alias in aliases], plan_type)
    for aliases, plan_type in PLAN_ALIASES
]

# Doppus recurrence.periodicy values
PERIODICITY_TABLE: dict[str, str] = {
    "monthly": "premium_30",
    "quarterly": "premium_90",
    "semiannual": "premium_180",
    "semiannually": "premium_180",
    "yearly": "premium_365",
    "annual": "premium_365",
    "annually": "premium_365",
    "lifetime": "premium_lifetime",
}


class PlanResolution(BaseModel):
    plan_type: str
    duration_days: Optional[int]
    is_lifetime: bool = False
    matched: bool = True  # False when the default was applied


def _from_plan_type(plan_type: str) -> PlanResolution:
    duration = PLAN_TABLE[plan_type]
    return PlanResolution(
        plan_type=plan_type,
        duration_days=duration,
        is_lifetime=duration is None,
    )


def match_identifier(identifier: Optional[str]) -> Optional[str]:
    """Local plan type for a free-text plan identifier, or None."""
    if not identifier:
        return None
    normalized = str(identifier).strip().lower()
    if normalized in PLAN_TABLE:
        return normalized
    for patterns, plan_type in _ALIAS_PATTERNS:
        if any(pattern.search(normalized) for pattern in patterns):
            return plan_type
    return None


def _coerce_days(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        days = int(value)
    except (TypeError, ValueError):
        return None
    return days if days > 0 else None


def resolve_plan(
    identifier: Optional[str] = None,
    periodicity: Optional[str] = None,
    duration_days: Any = None,
    context: Optional[str] = None,
    product_keys: tuple[Optional[str], ...] = (),
    mappings: Optional[Mapping[str, PlanResolution]] = None,
) -> PlanResolution:
    """
    Resolve plan type and duration.

    Order: product mapping (first of product_keys with a mapping), plan
    identifier (table, then aliases), provider periodicity, explicit duration
    field, then the 30 day default with a warning.
    """
    for key in product_keys if mappings else ():
        if key and str(key) in mappings:
            return mappings[str(key)]

    plan_type = match_identifier(identifier)
    if plan_type:
        return _from_plan_type(plan_type)

    if periodicity:
        plan_type = PERIODICITY_TABLE.get(str(periodicity).strip().lower())
        if plan_type:
            return _from_plan_type(plan_type)

    explicit = _coerce_days(duration_days)
    if explicit:
        return PlanResolution(plan_type="premium", duration_days=explicit)

    logger.warning(
        "Unrecognized plan identifier %r (periodicity=%r) - defaulting to %d days",
        identifier,
        periodicity,
        DEFAULT_DURATION_DAYS,
        extra={"provider": context} if context else None,
    )
    return PlanResolution(
        plan_type="premium_30",
        duration_days=DEFAULT_DURATION_DAYS,
        matched=False,
    )
