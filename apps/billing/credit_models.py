"""
Credit ledger models for SubShare Platform
Prepaid credit balances and the append-only transaction ledger behind them.

- CreditBalance: one row per user, the row-lock target for every mutation
- CreditTransaction: immutable ledger entry with before/after balance snapshot
"""

from __future__ import annotations

import uuid
from typing import Any, ClassVar

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils.translation import gettext_lazy as _


class LedgerImmutableError(Exception):
    """Raised when code tries to rewrite or delete a ledger entry"""


# ===============================================================================
# CREDIT BALANCE
# ===============================================================================


class CreditBalance(models.Model):
    """
    Cached balance of a user's credits.

    ``total_balance_cents`` always equals the sum of the user's ledger amounts.
    ``pending_balance_cents`` holds credits not yet spendable, so
    ``available = total - pending``.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        primary_key=True,
        related_name="credit_balance",
    )
    currency = models.CharField(max_length=3, default="USD")

    total_balance_cents = models.BigIntegerField(default=0, help_text=_("Sum of all ledger amounts"))
    available_balance_cents = models.BigIntegerField(default=0, help_text=_("Spendable credits"))
    pending_balance_cents = models.BigIntegerField(default=0, help_text=_("Credits awaiting settlement"))

    created_at = models.DateTimeField(auto_now_add=True)
    last_updated = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "credit_balances"
        verbose_name = _("Credit Balance")
        verbose_name_plural = _("Credit Balances")
        constraints: ClassVar[tuple[models.CheckConstraint, ...]] = (
            models.CheckConstraint(
                condition=Q(available_balance_cents__gte=0),
                name="credit_available_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(available_balance_cents__lte=models.F("total_balance_cents")),
                name="credit_available_lte_total",
            ),
        )

    def __str__(self) -> str:
        return f"{self.user_id}: {self.available_balance_cents / 100:.2f} {self.currency}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "currency": self.currency,
            "total_balance_cents": self.total_balance_cents,
            "available_balance_cents": self.available_balance_cents,
            "pending_balance_cents": self.pending_balance_cents,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


# ===============================================================================
# CREDIT TRANSACTION (APPEND-ONLY LEDGER)
# ===============================================================================


class CreditTransaction(models.Model):
    """
    One movement of credits. Positive amounts credit the user, negative debit.

    Rows are never updated or deleted; corrections are new rows (refund,
    refund_reversal).
    """

    TRANSACTION_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("deposit", _("Deposit")),
        ("purchase", _("Purchase")),
        ("refund", _("Refund")),
        ("bonus", _("Bonus")),
        ("withdrawal", _("Withdrawal")),
        ("refund_reversal", _("Refund Reversal")),
    )

    CREDIT_TYPES: ClassVar[frozenset[str]] = frozenset({"deposit", "refund", "bonus"})
    DEBIT_TYPES: ClassVar[frozenset[str]] = frozenset({"purchase", "withdrawal", "refund_reversal"})

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="credit_transactions",
    )
    transaction_type = models.CharField(max_length=20, choices=TRANSACTION_TYPE_CHOICES)
    currency = models.CharField(max_length=3, default="USD")

    # Amount (positive = credit, negative = debit)
    amount_cents = models.BigIntegerField(help_text=_("Signed transaction amount in cents"))
    balance_before_cents = models.BigIntegerField(help_text=_("Total balance before this transaction"))
    balance_after_cents = models.BigIntegerField(help_text=_("Total balance after this transaction"))

    description = models.CharField(max_length=500, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    # Related objects
    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="credit_transactions",
    )
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="credit_transactions",
    )
    original_transaction = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="linked_transactions",
        help_text=_("Transaction this refund or reversal corrects"),
    )

    # Audit
    created_at = models.DateTimeField(auto_now_add=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    class Meta:
        db_table = "credit_transactions"
        verbose_name = _("Credit Transaction")
        verbose_name_plural = _("Credit Transactions")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["user", "-created_at"]),
            models.Index(fields=["user", "transaction_type"]),
            models.Index(fields=["order"]),
        )
        constraints: ClassVar[tuple[models.CheckConstraint, ...]] = (
            models.CheckConstraint(condition=~Q(amount_cents=0), name="credit_transaction_non_zero"),
            models.CheckConstraint(
                condition=Q(balance_after_cents=models.F("balance_before_cents") + models.F("amount_cents")),
                name="credit_transaction_balance_chain",
            ),
        )

    def __str__(self) -> str:
        return f"{self.transaction_type}: {self.amount_cents / 100:+.2f} {self.currency} ({self.user_id})"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise LedgerImmutableError(f"Credit transaction {self.pk} is immutable")
        super().save(*args, **kwargs)

    def delete(self, *args: Any, **kwargs: Any) -> tuple[int, dict[str, int]]:
        raise LedgerImmutableError(f"Credit transaction {self.pk} cannot be deleted")

    @property
    def is_credit(self) -> bool:
        return self.amount_cents > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "description": self.description,
            "metadata": self.metadata,
            "order_id": str(self.order_id) if self.order_id else None,
            "subscription_id": str(self.subscription_id) if self.subscription_id else None,
            "original_transaction_id": str(self.original_transaction_id) if self.original_transaction_id else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
