"""
Reward claim rules for SubShare Platform.

A reward (calendar prize, referral perk, voucher) names a scope such as
"Netflix 4K". Each scope resolves, through one lookup table, to exactly one
rule:

- ``Claim``: issue a personal coupon from a fixed spec
- ``ChooseCategory``: the user picks one of several categories first
- ``Unavailable``: the reward exists but cannot be claimed now
- ``Removed``: the reward was withdrawn

The table is business configuration. Defaults live here; the
``COUPON_CLAIM_RULES`` setting overrides or adds scopes using the same format.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from django.conf import settings

from apps.billing.pricing import clamp_percent

logger = logging.getLogger(__name__)

DEFAULT_VALID_DAYS = 30


# ===============================================================================
# RULE VARIANTS
# ===============================================================================


@dataclass(frozen=True)
class CouponSpec:
    """Shape of the personal coupon a claim issues."""

    percent_off: Decimal
    scope: str = "global"
    category: str = ""
    product_slug: str = ""
    term_months: int | None = None
    valid_days: int = DEFAULT_VALID_DAYS


@dataclass(frozen=True)
class Claim:
    spec: CouponSpec


@dataclass(frozen=True)
class ChooseCategory:
    options: tuple[str, ...]
    percent_off: Decimal
    term_months: int | None = None
    valid_days: int = DEFAULT_VALID_DAYS

    def spec_for(self, category: str) -> CouponSpec | None:
        """Coupon spec for the chosen category, or None if it is not an option."""
        choice = normalize_scope(category)
        if choice not in self.options:
            return None
        return CouponSpec(
            percent_off=self.percent_off,
            scope="category",
            category=choice,
            term_months=self.term_months,
            valid_days=self.valid_days,
        )


@dataclass(frozen=True)
class Unavailable:
    reason: str = ""


@dataclass(frozen=True)
class Removed:
    pass


ClaimRule = Claim | ChooseCategory | Unavailable | Removed


# ===============================================================================
# DEFAULT TABLE
# ===============================================================================

DEFAULT_CLAIM_RULES: dict[str, dict[str, Any]] = {
    "welcome": {"type": "claim", "scope": "global", "percent_off": "5"},
    "netflix 4k": {"type": "claim", "scope": "category", "category": "streaming", "percent_off": "15"},
    "amazon prime video": {
        "type": "claim",
        "scope": "category",
        "category": "streaming",
        "percent_off": "10",
        "term_months": 12,
    },
    "chatgpt plus": {"type": "claim", "scope": "category", "category": "ai", "percent_off": "10"},
    "entertainment lane": {
        "type": "choose_category",
        "options": ["streaming", "music", "gaming"],
        "percent_off": "10",
    },
    "duolingo super": {"type": "unavailable", "reason": "Out of stock"},
    "christmas calendar": {"type": "removed"},
}


def normalize_scope(value: str | None) -> str:
    """Lower-case with collapsed whitespace: '  Netflix   4K ' → 'netflix 4k'."""
    return " ".join((value or "").lower().split())


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    return max(1, int(value))


def _parse_claim(config: dict[str, Any]) -> ClaimRule:
    return Claim(
        CouponSpec(
            percent_off=clamp_percent(config.get("percent_off", 0)),
            scope=config.get("scope", "global"),
            category=normalize_scope(config.get("category")),
            product_slug=(config.get("product_slug") or "").strip(),
            term_months=_optional_int(config.get("term_months")),
            valid_days=int(config.get("valid_days", DEFAULT_VALID_DAYS)),
        )
    )


def _parse_choose_category(config: dict[str, Any]) -> ClaimRule:
    return ChooseCategory(
        options=tuple(normalize_scope(option) for option in config.get("options", ())),
        percent_off=clamp_percent(config.get("percent_off", 0)),
        term_months=_optional_int(config.get("term_months")),
        valid_days=int(config.get("valid_days", DEFAULT_VALID_DAYS)),
    )


_RULE_PARSERS: dict[str, Callable[[dict[str, Any]], ClaimRule]] = {
    "claim": _parse_claim,
    "choose_category": _parse_choose_category,
    "unavailable": lambda config: Unavailable(reason=config.get("reason", "")),
    "removed": lambda config: Removed(),
}


def parse_rule(config: dict[str, Any]) -> ClaimRule:
    """Build a rule from its configuration dict; bad entries become Unavailable."""
    parser = _RULE_PARSERS.get(config.get("type", ""))
    if parser is None:
        logger.warning(f"⚠️ [Coupons] Unknown claim rule type: {config.get('type')!r}")
        return Unavailable(reason="misconfigured")
    try:
        return parser(config)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ [Coupons] Invalid claim rule configuration: {config!r}")
        return Unavailable(reason="misconfigured")


def get_claim_rules() -> dict[str, ClaimRule]:
    """Default table merged with the ``COUPON_CLAIM_RULES`` overrides."""
    configs = dict(DEFAULT_CLAIM_RULES)
    for scope, config in (getattr(settings, "COUPON_CLAIM_RULES", None) or {}).items():
        configs[normalize_scope(scope)] = config
    return {normalize_scope(scope): parse_rule(config) for scope, config in configs.items()}


def resolve_claim_rule(scope: str | None) -> ClaimRule:
    """Rule for a reward scope; unknown scopes are unavailable."""
    return get_claim_rules().get(normalize_scope(scope), Unavailable(reason="unknown_scope"))
