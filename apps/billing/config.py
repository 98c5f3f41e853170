"""
Centralized billing configuration for SubShare Platform.

Credit ledger limits and renewal timing are read through these getters so a
bad value in settings falls back to the default instead of breaking billing.
Getters are called at use time so tests can override settings.
"""

import logging

from django.conf import settings

logger = logging.getLogger(__name__)

# ===============================================================================
# HELPER: SAFE VALUE PARSING
# ===============================================================================


def _get_positive_int(setting_name: str, default: int) -> int:
    """Get a positive integer from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ [Billing] Invalid {setting_name}={value!r}, using {default}")
        result = default
    return max(1, result)  # Ensure at least 1


def _get_non_negative_int(setting_name: str, default: int) -> int:
    """Get a zero-or-positive integer from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ [Billing] Invalid {setting_name}={value!r}, using {default}")
        result = default
    return max(0, result)


# ===============================================================================
# CREDIT LEDGER
# ===============================================================================


def get_credits_currency() -> str:
    """Currency all credit balances are denominated in."""
    return (getattr(settings, "CREDITS_CURRENCY", "USD") or "USD").strip().upper()


def get_max_balance_cents() -> int:
    return _get_positive_int("CREDITS_MAX_BALANCE_CENTS", 10_000_000)


def get_max_transaction_cents() -> int:
    return _get_positive_int("CREDITS_MAX_TRANSACTION_CENTS", 1_000_000)


# ===============================================================================
# SUBSCRIPTION RENEWALS
# ===============================================================================


def get_renewal_lead_days() -> int:
    """Days before term end at which the renewal date falls."""
    return _get_non_negative_int("SUBSCRIPTION_RENEWAL_LEAD_DAYS", 7)


def get_renewal_lookahead_minutes() -> int:
    return _get_non_negative_int("SUBSCRIPTION_RENEWAL_LOOKAHEAD_MINUTES", 60)


def get_renewal_retry_minutes() -> int:
    return _get_positive_int("SUBSCRIPTION_RENEWAL_RETRY_MINUTES", 360)


def get_renewal_batch_size() -> int:
    return _get_positive_int("SUBSCRIPTION_RENEWAL_BATCH_SIZE", 100)


def get_manual_renewal_window_days() -> int:
    return _get_non_negative_int("SUBSCRIPTION_MANUAL_RENEWAL_WINDOW_DAYS", 7)


def get_fulfillment_due_hours() -> int:
    return _get_positive_int("SUBSCRIPTION_FULFILLMENT_DUE_HOURS", 72)
