"""
Register the recurring Django-Q2 schedules for billing and promotions.

Usage:
    python manage.py setup_scheduled_tasks
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand

from apps.billing.tasks import setup_renewal_scheduled_tasks
from apps.promotions.tasks import setup_coupon_scheduled_tasks


class Command(BaseCommand):
    help = "Create the renewal, expiry, ledger audit and coupon reservation schedules"

    def handle(self, *args: Any, **options: Any) -> None:
        results = {**setup_renewal_scheduled_tasks(), **setup_coupon_scheduled_tasks()}
        for name, status in results.items():
            style = self.style.SUCCESS if status == "created" else self.style.WARNING
            self.stdout.write(style(f"{name}: {status}"))
