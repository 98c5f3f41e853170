"""
Credit ledger service for SubShare Platform.

Every mutation runs in one ``transaction.atomic()`` block that locks the user's
CreditBalance row (``SELECT ... FOR UPDATE``), writes exactly one immutable
CreditTransaction and updates the cached balance. Different users never
contend; the same user is serialized on the balance row.

Public methods never raise business errors: they return ``Ok(CreditMutation)``
or ``Err(BusinessError)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from django.db import DatabaseError, connections, transaction
from django.db.models import Sum

from apps.common.constants import (
    MAX_BALANCE_EXCEEDED,
    MAX_TRANSACTION_EXCEEDED,
    ORIGINAL_TRANSACTION_NOT_FOUND,
)
from apps.common.types import (
    BusinessError,
    Err,
    InfrastructureError,
    InsufficientFundsError,
    Ok,
    Result,
    ValidationError,
)
from apps.common.validators import log_security_event, validate_amount_cents

from .config import get_credits_currency, get_max_balance_cents, get_max_transaction_cents
from .credit_models import CreditBalance, CreditTransaction

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500


@dataclass(frozen=True)
class CreditMutation:
    """Outcome of a successful ledger write"""

    transaction: CreditTransaction
    balance: CreditBalance


@dataclass
class LedgerAudit:
    """Result of re-deriving a user's balance from the ledger"""

    user_id: Any
    ledger_total_cents: int
    cached_total_cents: int
    transaction_count: int
    issues: list[str] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.issues


class CreditService:
    """
    Sole writer of credit balances.

    Constructed with the database alias it should operate on; the purchase
    orchestrator and the renewal worker pass theirs in.
    """

    def __init__(self, using: str = "default"):
        self.using = using

    # ===============================================================================
    # MUTATIONS
    # ===============================================================================

    def spend(
        self,
        user: Any,
        amount_cents: int,
        description: str,
        metadata: dict[str, Any] | None = None,
        *,
        order: Any = None,
        subscription: Any = None,
    ) -> Result[CreditMutation, BusinessError]:
        """
        Debit credits for a purchase or renewal.

        Returns ``Err(InsufficientFundsError)`` without writing anything when the
        available balance does not cover the amount.
        """
        return self._mutate(
            user,
            amount_cents,
            direction=-1,
            transaction_type="purchase",
            description=description,
            metadata=metadata,
            order=order,
            subscription=subscription,
        )

    def deposit(
        self,
        user: Any,
        amount_cents: int,
        transaction_type: str = "deposit",
        description: str = "",
        metadata: dict[str, Any] | None = None,
        *,
        created_by: Any = None,
    ) -> Result[CreditMutation, BusinessError]:
        """Credit a top-up (``deposit``) or a promotional grant (``bonus``)."""
        if transaction_type not in ("deposit", "bonus"):
            return Err(ValidationError("invalid_transaction_type", f"Cannot deposit as {transaction_type!r}"))
        return self._mutate(
            user,
            amount_cents,
            direction=1,
            transaction_type=transaction_type,
            description=description or transaction_type.title(),
            metadata=metadata,
            created_by=created_by,
            enforce_max_balance=True,
        )

    def refund(
        self,
        user: Any,
        amount_cents: int,
        description: str,
        original_transaction_id: Any = None,
        metadata: dict[str, Any] | None = None,
        *,
        order: Any = None,
        subscription: Any = None,
    ) -> Result[CreditMutation, BusinessError]:
        """
        Credit back a previous debit.

        Not idempotent: a caller compensating a failed purchase must call this
        once per debit. Refunds skip the max-balance limit so compensation can
        never be blocked by it.
        """
        return self._mutate(
            user,
            amount_cents,
            direction=1,
            transaction_type="refund",
            description=description,
            metadata=metadata,
            order=order,
            subscription=subscription,
            original_transaction_id=original_transaction_id,
        )

    def reverse(
        self,
        user: Any,
        amount_cents: int,
        description: str,
        original_transaction_id: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> Result[CreditMutation, BusinessError]:
        """Claw back a refund that should not have been issued."""
        return self._mutate(
            user,
            amount_cents,
            direction=-1,
            transaction_type="refund_reversal",
            description=description,
            metadata=metadata,
            original_transaction_id=original_transaction_id,
        )

    def withdraw(
        self,
        user: Any,
        amount_cents: int,
        description: str,
        metadata: dict[str, Any] | None = None,
        *,
        created_by: Any = None,
    ) -> Result[CreditMutation, BusinessError]:
        """Remove credits paid out to the user outside the platform."""
        return self._mutate(
            user,
            amount_cents,
            direction=-1,
            transaction_type="withdrawal",
            description=description,
            metadata=metadata,
            created_by=created_by,
        )

    def _mutate(  # noqa: PLR0913
        self,
        user: Any,
        amount_cents: int,
        *,
        direction: int,
        transaction_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
        order: Any = None,
        subscription: Any = None,
        original_transaction_id: Any = None,
        created_by: Any = None,
        enforce_max_balance: bool = False,
    ) -> Result[CreditMutation, BusinessError]:
        amount_result = validate_amount_cents(amount_cents)
        if amount_result.is_err():
            return amount_result

        max_transaction = get_max_transaction_cents()
        if amount_cents > max_transaction:
            return Err(
                ValidationError(
                    MAX_TRANSACTION_EXCEEDED,
                    f"Amount exceeds the per-transaction limit of {max_transaction} cents",
                )
            )

        try:
            with transaction.atomic(using=self.using):
                balance = self._lock_balance(user)

                original = None
                if original_transaction_id is not None:
                    original = (
                        CreditTransaction.objects.using(self.using)
                        .filter(pk=original_transaction_id, user=user)
                        .first()
                    )
                    if original is None:
                        raise ValidationError(ORIGINAL_TRANSACTION_NOT_FOUND, "Original transaction not found")

                signed_amount = direction * amount_cents
                if direction < 0 and balance.available_balance_cents < amount_cents:
                    raise InsufficientFundsError(
                        message="Insufficient credits",
                        available_cents=balance.available_balance_cents,
                        requested_cents=amount_cents,
                    )

                balance_before = balance.total_balance_cents
                balance_after = balance_before + signed_amount
                if enforce_max_balance and balance_after > get_max_balance_cents():
                    raise ValidationError(
                        MAX_BALANCE_EXCEEDED,
                        f"Transaction would exceed the maximum balance of {get_max_balance_cents()} cents",
                    )

                ledger_row = CreditTransaction.objects.using(self.using).create(
                    user=user,
                    transaction_type=transaction_type,
                    currency=balance.currency,
                    amount_cents=signed_amount,
                    balance_before_cents=balance_before,
                    balance_after_cents=balance_after,
                    description=description[:500],
                    metadata=dict(metadata or {}),
                    order=order,
                    subscription=subscription,
                    original_transaction=original,
                    created_by=created_by,
                )

                balance.total_balance_cents = balance_after
                balance.available_balance_cents += signed_amount
                balance.save(
                    using=self.using,
                    update_fields=["total_balance_cents", "available_balance_cents", "last_updated"],
                )
        except InsufficientFundsError as e:
            log_security_event(
                "insufficient_credits",
                {
                    "user_id": getattr(user, "pk", user),
                    "transaction_type": transaction_type,
                    "requested_cents": amount_cents,
                    "available_cents": e.context.get("available_cents"),
                },
            )
            return Err(e)
        except BusinessError as e:
            logger.warning(f"⚠️ [Credits] {transaction_type} rejected for user {getattr(user, 'pk', user)}: {e.code}")
            return Err(e)
        except DatabaseError:
            logger.exception(f"🔥 [Credits] {transaction_type} failed for user {getattr(user, 'pk', user)}")
            return Err(InfrastructureError())

        logger.info(
            f"💳 [Credits] {transaction_type} {signed_amount:+d} cents for user {user.pk} "
            f"(balance {balance_before} → {balance_after})",
            extra={"transaction_id": str(ledger_row.id), "user_id": user.pk},
        )
        return Ok(CreditMutation(transaction=ledger_row, balance=balance))

    def _lock_balance(self, user: Any) -> CreditBalance:
        """Create the balance row on first use, then lock it for this transaction."""
        CreditBalance.objects.using(self.using).get_or_create(
            user=user, defaults={"currency": get_credits_currency()}
        )
        return CreditBalance.objects.using(self.using).select_for_update().get(user=user)

    # ===============================================================================
    # READS
    # ===============================================================================

    def get_balance(self, user: Any) -> Result[CreditBalance, BusinessError]:
        """Current cached balance; users without activity get an unsaved zero row."""
        try:
            balance = CreditBalance.objects.using(self.using).filter(user=user).first()
        except DatabaseError:
            logger.exception(f"🔥 [Credits] Failed to read balance for user {getattr(user, 'pk', user)}")
            return Err(InfrastructureError())
        if balance is None:
            balance = CreditBalance(user=user, currency=get_credits_currency())
        return Ok(balance)

    def get_balance_summary(self, user: Any, recent_limit: int = 10) -> Result[dict[str, Any], BusinessError]:
        """Balance plus lifetime totals per transaction type and the latest entries."""
        balance_result = self.get_balance(user)
        if balance_result.is_err():
            return balance_result
        balance = balance_result.unwrap()

        try:
            totals = {
                row["transaction_type"]: row["total"]
                for row in CreditTransaction.objects.using(self.using)
                .filter(user=user)
                .values("transaction_type")
                .annotate(total=Sum("amount_cents"))
                .order_by()
            }
            recent = list(
                CreditTransaction.objects.using(self.using).filter(user=user).order_by("-created_at")[
                    : max(0, recent_limit)
                ]
            )
        except DatabaseError:
            logger.exception(f"🔥 [Credits] Failed to build balance summary for user {user.pk}")
            return Err(InfrastructureError())

        return Ok(
            {
                "balance": balance.as_dict(),
                "totals_by_type": totals,
                "recent_transactions": [tx.as_dict() for tx in recent],
            }
        )

    def get_transaction(self, user: Any, transaction_id: Any) -> Result[CreditTransaction | None, BusinessError]:
        """A single ledger entry, only if it belongs to ``user``."""
        try:
            return Ok(CreditTransaction.objects.using(self.using).filter(pk=transaction_id, user=user).first())
        except (DatabaseError, ValueError):
            logger.exception(f"🔥 [Credits] Failed to load transaction {transaction_id}")
            return Err(InfrastructureError())

    def _history_queryset(
        self,
        user: Any,
        transaction_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Any:
        qs = CreditTransaction.objects.using(self.using).filter(user=user)
        if transaction_type:
            qs = qs.filter(transaction_type=transaction_type)
        if start:
            qs = qs.filter(created_at__gte=start)
        if end:
            qs = qs.filter(created_at__lte=end)
        return qs

    def get_transaction_history(  # noqa: PLR0913
        self,
        user: Any,
        transaction_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
    ) -> Result[list[CreditTransaction], BusinessError]:
        limit = min(max(1, limit), MAX_HISTORY_LIMIT)
        offset = max(0, offset)
        try:
            qs = self._history_queryset(user, transaction_type, start, end).order_by("-created_at")
            return Ok(list(qs[offset : offset + limit]))
        except DatabaseError:
            logger.exception(f"🔥 [Credits] Failed to load history for user {user.pk}")
            return Err(InfrastructureError())

    def get_transaction_count(
        self,
        user: Any,
        transaction_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Result[int, BusinessError]:
        try:
            return Ok(self._history_queryset(user, transaction_type, start, end).count())
        except DatabaseError:
            logger.exception(f"🔥 [Credits] Failed to count history for user {user.pk}")
            return Err(InfrastructureError())

    def list_balances(self, limit: int = 50, offset: int = 0) -> Result[list[CreditBalance], BusinessError]:
        """Admin listing, largest balances first."""
        limit = min(max(1, limit), MAX_HISTORY_LIMIT)
        offset = max(0, offset)
        try:
            qs = (
                CreditBalance.objects.using(self.using)
                .select_related("user")
                .order_by("-total_balance_cents", "user_id")
            )
            return Ok(list(qs[offset : offset + limit]))
        except DatabaseError:
            logger.exception("🔥 [Credits] Failed to list balances")
            return Err(InfrastructureError())

    # ===============================================================================
    # INTEGRITY
    # ===============================================================================

    def audit_user_ledger(self, user: Any) -> LedgerAudit:
        """
        Re-derive the user's balance from the ledger and check the invariants:
        cached total equals the ledger sum, every row chains from the previous
        one and no balance ever went negative.
        """
        balance = CreditBalance.objects.using(self.using).filter(user=user).first()
        rows = list(
            CreditTransaction.objects.using(self.using)
            .filter(user=user)
            .order_by("created_at", "balance_before_cents")
            .values_list("id", "amount_cents", "balance_before_cents", "balance_after_cents")
        )

        audit = LedgerAudit(
            user_id=getattr(user, "pk", user),
            ledger_total_cents=sum(row[1] for row in rows),
            cached_total_cents=balance.total_balance_cents if balance else 0,
            transaction_count=len(rows),
        )

        running = 0
        for tx_id, amount, before, after in rows:
            if before != running:
                audit.issues.append(f"Transaction {tx_id} starts at {before}, expected {running}")
            if after != before + amount:
                audit.issues.append(f"Transaction {tx_id} does not add up: {before} {amount:+d} != {after}")
            if after < 0:
                audit.issues.append(f"Transaction {tx_id} leaves a negative balance ({after})")
            running = after

        if audit.ledger_total_cents != audit.cached_total_cents:
            audit.issues.append(
                f"Cached total {audit.cached_total_cents} != ledger sum {audit.ledger_total_cents}"
            )
        if balance and balance.available_balance_cents < 0:
            audit.issues.append(f"Available balance is negative ({balance.available_balance_cents})")
        if balance and balance.available_balance_cents > balance.total_balance_cents:
            audit.issues.append("Available balance exceeds total balance")

        if not audit.is_consistent:
            logger.error(f"🔥 [Credits] Ledger audit failed for user {audit.user_id}: {audit.issues}")
        return audit

    def health_check(self) -> bool:
        """Database behind this service answers a trivial query."""
        try:
            with connections[self.using].cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
        except DatabaseError:
            logger.exception("🔥 [Credits] Health check failed")
            return False
        return True
