"""
Django settings for SubShare Platform - Base Configuration
Credit ledger, coupon engine and purchase orchestration for shared subscriptions.
"""

import os
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
DJANGO_APPS: list[str] = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
]

THIRD_PARTY_APPS: list[str] = [
    "django_q",
]

LOCAL_APPS: list[str] = [
    "apps.common",
    "apps.products",
    "apps.billing",      # 💳 Credit ledger, subscriptions & renewals
    "apps.promotions",   # 🎟️ Coupons & redemption slots
    "apps.orders",       # 🛒 Orders & purchase saga
]

INSTALLED_APPS: list[str] = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE: list[str] = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "config.urls"

ASGI_APPLICATION = "config.asgi.application"

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "subshare"),
        "USER": os.environ.get("DB_USER", "subshare"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "development_password"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": 60,  # Database connection pooling
        "OPTIONS": {
            "application_name": "subshare_platform",
        },
    }
}

# ===============================================================================
# AUTHENTICATION
# ===============================================================================

# Use Argon2 for password hashing
PASSWORD_HASHERS = [
    "django.contrib.auth.hashers.Argon2PasswordHasher",
    "django.contrib.auth.hashers.PBKDF2PasswordHasher",
]

# ===============================================================================
# INTERNATIONALIZATION
# ===============================================================================

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# ===============================================================================
# CREDIT LEDGER CONFIGURATION 💳
# ===============================================================================

# Credits are denominated in a single currency; amounts are integer cents
CREDITS_CURRENCY = os.environ.get("CREDITS_CURRENCY", "USD")
CREDITS_MAX_BALANCE_CENTS = int(os.environ.get("CREDITS_MAX_BALANCE_CENTS", "10000000"))
CREDITS_MAX_TRANSACTION_CENTS = int(os.environ.get("CREDITS_MAX_TRANSACTION_CENTS", "1000000"))

SUPPORTED_CURRENCIES = ["USD", "EUR"]

# ===============================================================================
# COUPON CONFIGURATION 🎟️
# ===============================================================================

# Reserved redemption slots are released after this many minutes
COUPON_RESERVATION_MINUTES = int(os.environ.get("COUPON_RESERVATION_MINUTES", "30"))

# Reward scope → claim rule overrides (merged on top of the defaults in
# apps.promotions.claim_rules.DEFAULT_CLAIM_RULES)
COUPON_CLAIM_RULES: dict[str, dict[str, Any]] = {}

# ===============================================================================
# SUBSCRIPTION RENEWAL CONFIGURATION 🔄
# ===============================================================================

SUBSCRIPTION_RENEWAL_LEAD_DAYS = int(os.environ.get("SUBSCRIPTION_RENEWAL_LEAD_DAYS", "7"))
SUBSCRIPTION_RENEWAL_LOOKAHEAD_MINUTES = int(os.environ.get("SUBSCRIPTION_RENEWAL_LOOKAHEAD_MINUTES", "60"))
SUBSCRIPTION_RENEWAL_RETRY_MINUTES = int(os.environ.get("SUBSCRIPTION_RENEWAL_RETRY_MINUTES", "360"))
SUBSCRIPTION_RENEWAL_BATCH_SIZE = int(os.environ.get("SUBSCRIPTION_RENEWAL_BATCH_SIZE", "100"))
SUBSCRIPTION_MANUAL_RENEWAL_WINDOW_DAYS = int(os.environ.get("SUBSCRIPTION_MANUAL_RENEWAL_WINDOW_DAYS", "7"))
SUBSCRIPTION_FULFILLMENT_DUE_HOURS = int(os.environ.get("SUBSCRIPTION_FULFILLMENT_DUE_HOURS", "72"))

# ===============================================================================
# DJANGO-Q2 TASK QUEUE ⚙️
# ===============================================================================

Q_CLUSTER_BASE = {
    "name": "subshare-cluster",
    "timeout": 300,  # 5 minutes
    "retry": 600,  # 10 minutes retry delay
    "save_limit": 1000,  # Keep last 1000 task results
    "catch_up": False,  # Don't run missed scheduled tasks
    "orm": "default",  # Use the database as broker
    "bulk": 10,
    "queue_limit": 100,
}

Q_CLUSTER = {
    **Q_CLUSTER_BASE,
    "workers": 2,
    "recycle": 500,  # Restart workers after 500 tasks
    "sync": False,
}

# ===============================================================================
# DEFAULT AUTO FIELD
# ===============================================================================

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ===============================================================================
# SECURITY SETTINGS (Base - override in prod.py)
# ===============================================================================

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY")
if not SECRET_KEY:
    # Development fallback - never use this in production
    import warnings

    warnings.warn(
        "🚨 SECURITY WARNING: Using default SECRET_KEY. "
        "Set DJANGO_SECRET_KEY environment variable for production!",
        UserWarning,
        stacklevel=2,
    )
    SECRET_KEY = "django-insecure-dev-key-only-change-in-production-or-tests"  # noqa: S105


def validate_production_secret_key() -> None:
    """Validate SECRET_KEY meets production security requirements"""
    if SECRET_KEY and SECRET_KEY.startswith("django-insecure-"):
        raise ValueError("🔥 CRITICAL SECURITY ERROR: Cannot use insecure SECRET_KEY in production!")
