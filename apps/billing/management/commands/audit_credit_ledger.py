"""
Management command for auditing the credit ledger.

Re-derives every balance from its transactions and reports users whose cached
balance, balance chain or non-negativity invariant is broken. Also lists
purchase debits that are tied to neither an order nor a subscription.

Usage:
    python manage.py audit_credit_ledger
    python manage.py audit_credit_ledger --user 42 --verbose
"""

from __future__ import annotations

import logging
from typing import Any

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError, CommandParser

from apps.billing.credit_models import CreditBalance, CreditTransaction
from apps.billing.credit_service import CreditService

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Management command for credit ledger verification."""

    help = "Verify credit balances against the transaction ledger"

    def add_arguments(self, parser: CommandParser) -> None:
        """Add command arguments."""
        parser.add_argument(
            "--user",
            type=str,
            help="Audit a single user (primary key)",
        )
        parser.add_argument(
            "--database",
            type=str,
            default="default",
            help="Database alias to audit (default: default)",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Show every issue found",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        """Execute the command."""
        using = options["database"]
        service = CreditService(using=using)
        user_model = get_user_model()

        if options["user"]:
            users = user_model.objects.using(using).filter(pk=options["user"])
            if not users.exists():
                raise CommandError(f"User {options['user']} not found")
        else:
            user_ids = CreditBalance.objects.using(using).values_list("user_id", flat=True)
            users = user_model.objects.using(using).filter(pk__in=user_ids)

        self.stdout.write(self.style.HTTP_INFO(f"\n{'=' * 60}\nSubShare Credit Ledger Audit\n{'=' * 60}\n"))

        checked = 0
        failing = 0
        for user in users.iterator():
            checked += 1
            audit = service.audit_user_ledger(user)
            if audit.is_consistent:
                continue
            failing += 1
            self.stdout.write(
                self.style.ERROR(
                    f"User {user.pk}: cached {audit.cached_total_cents} vs ledger {audit.ledger_total_cents} "
                    f"({len(audit.issues)} issues)"
                )
            )
            if options["verbose"]:
                for issue in audit.issues:
                    self.stdout.write(f"  - {issue}")

        unexplained = CreditTransaction.objects.using(using).filter(
            transaction_type="purchase", order__isnull=True, subscription__isnull=True
        )
        if options["user"]:
            unexplained = unexplained.filter(user_id=options["user"])
        unexplained_count = unexplained.count()

        self.stdout.write(f"\nUsers checked: {checked}")
        if unexplained_count:
            self.stdout.write(
                self.style.WARNING(f"Purchase debits without an order or subscription: {unexplained_count}")
            )
            if options["verbose"]:
                for tx in unexplained.order_by("created_at")[:50]:
                    self.stdout.write(f"  - {tx.id} user={tx.user_id} amount={tx.amount_cents}")

        if failing:
            self.stdout.write(self.style.ERROR(f"\nCRITICAL: {failing} ledgers are inconsistent."))
        else:
            self.stdout.write(self.style.SUCCESS("\nAll ledgers are consistent."))
