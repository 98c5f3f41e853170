"""Promotions background tasks.

Django-Q2 task releasing coupon redemption slots whose reservation expired.
"""

from __future__ import annotations

import logging
from typing import Any

from django.db import DatabaseError
from django_q.models import Schedule
from django_q.tasks import async_task, schedule

from apps.promotions.services import CouponService

logger = logging.getLogger(__name__)

TASK_SOFT_TIME_LIMIT = 300  # 5 minutes

RESERVATION_SWEEP_INTERVAL_MINUTES = 5


def expire_coupon_reservations() -> dict[str, Any]:
    """Mark reserved redemptions past their TTL as expired."""
    try:
        count = CouponService().expire_stale_reservations()
    except DatabaseError as e:
        logger.exception("🔥 [Coupons] Reservation sweep aborted")
        return {"success": False, "error": str(e)}
    return {"success": True, "expired_count": count}


def expire_coupon_reservations_async() -> str:
    """Queue a reservation sweep."""
    return async_task("apps.promotions.tasks.expire_coupon_reservations", timeout=TASK_SOFT_TIME_LIMIT)


def setup_coupon_scheduled_tasks() -> dict[str, str]:
    """Set up the recurring reservation sweep."""
    tasks_created = {}

    if not Schedule.objects.filter(name="promotions-expire-reservations").exists():
        schedule(
            "apps.promotions.tasks.expire_coupon_reservations",
            schedule_type=Schedule.MINUTES,
            minutes=RESERVATION_SWEEP_INTERVAL_MINUTES,
            name="promotions-expire-reservations",
            cluster="subshare-cluster",
        )
        tasks_created["expire_reservations"] = "created"
    else:
        tasks_created["expire_reservations"] = "already_exists"

    return tasks_created
