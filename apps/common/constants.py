"""
SubShare Platform Constants

Centralized error codes and status reasons shared by the credit ledger, the
coupon engine, the purchase saga and the renewal worker. These strings are
persisted (order.status_reason, subscription.status_reason) and returned to
API callers, so they must stay stable.
"""

from typing import Final

# ===============================================================================
# PURCHASE FAILURE CODES 🛒
# ===============================================================================

INSUFFICIENT_CREDITS: Final[str] = "insufficient_credits"
COUPON_INVALID: Final[str] = "coupon_invalid"
MAX_REDEMPTIONS: Final[str] = "max_redemptions"
TERM_UNAVAILABLE: Final[str] = "term_unavailable"
PURCHASE_NOT_ALLOWED: Final[str] = "purchase_not_allowed"
SUBSCRIPTION_CREATE_FAILED: Final[str] = "subscription_create_failed"
INTERNAL_ERROR: Final[str] = "internal_error"

PURCHASE_FAILURE_CODES: Final[frozenset[str]] = frozenset(
    {
        INSUFFICIENT_CREDITS,
        COUPON_INVALID,
        MAX_REDEMPTIONS,
        TERM_UNAVAILABLE,
        PURCHASE_NOT_ALLOWED,
        SUBSCRIPTION_CREATE_FAILED,
        INTERNAL_ERROR,
    }
)

# ===============================================================================
# COUPON REASONS 🎟️
# ===============================================================================

SCOPE_MISMATCH: Final[str] = "scope_mismatch"
TERM_MISMATCH: Final[str] = "term_mismatch"
ALREADY_REDEEMED: Final[str] = "already_redeemed"
FIRST_ORDER_ONLY: Final[str] = "first_order_only"
ZERO_TOTAL: Final[str] = "zero_total"
CLAIM_UNAVAILABLE: Final[str] = "claim_unavailable"
CLAIM_REMOVED: Final[str] = "claim_removed"
CLAIM_CATEGORY_REQUIRED: Final[str] = "claim_category_required"

# ===============================================================================
# CATALOG PRICING CODES 🏷️
# ===============================================================================

INVALID_CURRENCY: Final[str] = "invalid_currency"
VARIANT_NOT_FOUND: Final[str] = "variant_not_found"
VARIANT_INACTIVE: Final[str] = "inactive"
PRICE_UNAVAILABLE: Final[str] = "price_unavailable"

# ===============================================================================
# LEDGER CODES 💳
# ===============================================================================

INVALID_AMOUNT: Final[str] = "invalid_amount"
MAX_TRANSACTION_EXCEEDED: Final[str] = "max_transaction_exceeded"
MAX_BALANCE_EXCEEDED: Final[str] = "max_balance_exceeded"
ORIGINAL_TRANSACTION_NOT_FOUND: Final[str] = "original_transaction_not_found"

# ===============================================================================
# STATUS REASONS 📋
# ===============================================================================

REASON_PURCHASE_STARTED: Final[str] = "purchase_started"
REASON_PAID_WITH_CREDITS: Final[str] = "paid_with_credits"
REASON_AUTO_RENEWED_CREDITS: Final[str] = "auto_renewed_credits"
REASON_AUTO_RENEW_CREDIT_FAILED: Final[str] = "auto_renew_credit_failed"
REASON_MANUAL_RENEWED_CREDITS: Final[str] = "manual_renewed_credits"
REASON_TERM_EXPIRED: Final[str] = "term_expired"

# Order statuses that count as a completed (paid) purchase
PAID_ORDER_STATUSES: Final[tuple[str, ...]] = ("in_process", "delivered")

PAYMENT_PROVIDER_CREDITS: Final[str] = "credits"
