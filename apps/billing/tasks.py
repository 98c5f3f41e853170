"""Billing background tasks.

Django-Q2 tasks for credit-funded subscription renewals, term expiry and the
ledger audit.
"""

from __future__ import annotations

import logging
from typing import Any

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django_q.models import Schedule
from django_q.tasks import async_task, schedule

from apps.billing.credit_models import CreditBalance
from apps.billing.credit_service import CreditService
from apps.billing.renewal_service import RenewalService

logger = logging.getLogger(__name__)

# Task configuration
TASK_SOFT_TIME_LIMIT = 300  # 5 minutes
TASK_TIME_LIMIT = 600  # 10 minutes

RENEWAL_SWEEP_INTERVAL_MINUTES = 15
EXPIRY_SWEEP_INTERVAL_MINUTES = 60


def process_subscription_renewals(limit: int | None = None) -> dict[str, Any]:
    """
    Renew all due auto-renewing subscriptions with credits.

    Returns:
        Dictionary with sweep statistics
    """
    logger.info("🔄 [Renewal] Starting renewal sweep")
    try:
        result = RenewalService().process_due_renewals(limit=limit)
    except DatabaseError as e:
        logger.exception("🔥 [Renewal] Renewal sweep aborted")
        return {"success": False, "error": str(e)}
    return {"success": True, **result}


def expire_subscriptions() -> dict[str, Any]:
    """Expire active subscriptions whose term has ended."""
    try:
        count = RenewalService().expire_lapsed_subscriptions()
    except DatabaseError as e:
        logger.exception("🔥 [Renewal] Expiry sweep aborted")
        return {"success": False, "error": str(e)}
    return {"success": True, "expired_count": count}


def audit_credit_ledgers() -> dict[str, Any]:
    """Re-derive every user's balance from the ledger and report mismatches."""
    service = CreditService()
    user_model = get_user_model()
    inconsistent: list[str] = []

    user_ids = CreditBalance.objects.values_list("user_id", flat=True)
    for user in user_model.objects.filter(pk__in=user_ids).iterator():
        audit = service.audit_user_ledger(user)
        if not audit.is_consistent:
            inconsistent.append(str(user.pk))

    if inconsistent:
        logger.error(f"🔥 [Credits] Ledger audit found {len(inconsistent)} inconsistent users")
    else:
        logger.info("✅ [Credits] Ledger audit passed")
    return {"success": not inconsistent, "inconsistent_users": inconsistent}


# ===============================================================================
# ASYNC WRAPPER FUNCTIONS
# ===============================================================================


def process_subscription_renewals_async(limit: int | None = None) -> str:
    """Queue a renewal sweep."""
    return async_task("apps.billing.tasks.process_subscription_renewals", limit, timeout=TASK_TIME_LIMIT)


def expire_subscriptions_async() -> str:
    """Queue an expiry sweep."""
    return async_task("apps.billing.tasks.expire_subscriptions", timeout=TASK_SOFT_TIME_LIMIT)


# ===============================================================================
# SCHEDULED TASKS SETUP
# ===============================================================================


def setup_renewal_scheduled_tasks() -> dict[str, str]:
    """Set up the recurring renewal and expiry sweeps."""
    tasks_created = {}

    existing_tasks = list(
        Schedule.objects.filter(
            name__in=["billing-renew-subscriptions", "billing-expire-subscriptions", "billing-audit-ledger"]
        ).values_list("name", flat=True)
    )

    if "billing-renew-subscriptions" not in existing_tasks:
        schedule(
            "apps.billing.tasks.process_subscription_renewals",
            schedule_type=Schedule.MINUTES,
            minutes=RENEWAL_SWEEP_INTERVAL_MINUTES,
            name="billing-renew-subscriptions",
            cluster="subshare-cluster",
        )
        tasks_created["renew_subscriptions"] = "created"
    else:
        tasks_created["renew_subscriptions"] = "already_exists"

    if "billing-expire-subscriptions" not in existing_tasks:
        schedule(
            "apps.billing.tasks.expire_subscriptions",
            schedule_type=Schedule.MINUTES,
            minutes=EXPIRY_SWEEP_INTERVAL_MINUTES,
            name="billing-expire-subscriptions",
            cluster="subshare-cluster",
        )
        tasks_created["expire_subscriptions"] = "created"
    else:
        tasks_created["expire_subscriptions"] = "already_exists"

    # Ledger audit daily at 3 AM
    if "billing-audit-ledger" not in existing_tasks:
        schedule(
            "apps.billing.tasks.audit_credit_ledgers",
            schedule_type=Schedule.CRON,
            cron="0 3 * * *",
            name="billing-audit-ledger",
            cluster="subshare-cluster",
        )
        tasks_created["audit_ledger"] = "created"
    else:
        tasks_created["audit_ledger"] = "already_exists"

    logger.info(f"⚙️ [Billing] Scheduled tasks: {tasks_created}")
    return tasks_created
