"""
Promotion services for SubShare Platform.
Coupon validation, redemption slot reservation and admin coupon management.

A coupon with ``max_redemptions`` has that many slots. A slot is held by a
``reserved`` redemption until the purchase finalizes it (``redeemed``) or gives
it back (``voided``/``expired``). Reservation locks the coupon row so two
purchases can never both take the last slot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypedDict

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Count, Q
from django.utils import timezone

from apps.common.constants import (
    ALREADY_REDEEMED,
    CLAIM_CATEGORY_REQUIRED,
    CLAIM_REMOVED,
    CLAIM_UNAVAILABLE,
    COUPON_INVALID,
    FIRST_ORDER_ONLY,
    MAX_REDEMPTIONS,
    PAID_ORDER_STATUSES,
    SCOPE_MISMATCH,
    TERM_MISMATCH,
    ZERO_TOTAL,
)
from apps.common.types import (
    BusinessError,
    EligibilityError,
    Err,
    InfrastructureError,
    Ok,
    Result,
    ValidationError,
)
from apps.common.validators import log_security_event
from apps.orders.models import Order
from apps.products.models import Product

from .allocation import AllocationItem, allocate_coupon_discount
from .claim_rules import ChooseCategory, Claim, CouponSpec, Removed, Unavailable, normalize_scope, resolve_claim_rule
from .models import Coupon, CouponRedemption, normalize_code

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_MINUTES = 30
REWARD_CODE_PREFIX = "RWD"

# Fields admins may set through create_coupon / update_coupon
EDITABLE_COUPON_FIELDS = (
    "code",
    "name",
    "percent_off",
    "scope",
    "apply_scope",
    "category",
    "product_id",
    "term_months",
    "status",
    "starts_at",
    "ends_at",
    "max_redemptions",
    "bound_user_id",
    "first_order_only",
    "metadata",
)


# ===============================================================================
# Data Classes for Results
# ===============================================================================


@dataclass(frozen=True)
class CouponQuote:
    """A coupon that applies to the order, with the discount it grants."""

    coupon: Coupon
    subtotal_cents: int
    discount_cents: int
    item_discounts: tuple[int, ...] = ()

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents - self.discount_cents


class CouponData(TypedDict, total=False):
    """Admin payload for creating or updating a coupon."""

    code: str
    name: str
    percent_off: Any
    scope: str
    apply_scope: str
    category: str
    product_id: Any
    term_months: int | None
    status: str
    starts_at: datetime | None
    ends_at: datetime | None
    max_redemptions: int | None
    bound_user_id: Any
    first_order_only: bool
    metadata: dict[str, Any]


def get_reservation_minutes() -> int:
    value = getattr(settings, "COUPON_RESERVATION_MINUTES", DEFAULT_RESERVATION_MINUTES)
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return DEFAULT_RESERVATION_MINUTES


# ===============================================================================
# Coupon Service
# ===============================================================================


class CouponService:
    """
    Sole enforcer of coupon redemption counts.

    Constructed with the database alias to use, like the other ledger services.
    """

    def __init__(self, using: str = "default"):
        self.using = using

    @staticmethod
    def normalize_code(raw: str | None) -> str:
        """Upper-case, characters outside A-Z0-9 removed."""
        return normalize_code(raw)

    def get_coupon_by_code(self, code: str | None) -> Coupon | None:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return Coupon.objects.using(self.using).filter(code=normalized).first()

    # ===============================================================================
    # VALIDATION
    # ===============================================================================

    def validate_coupon_for_order(  # noqa: PLR0913
        self,
        code: str | None,
        user: Any,
        product: Product,
        subtotal_cents: int,
        term_months: int,
        now: datetime | None = None,
    ) -> Result[CouponQuote, EligibilityError]:
        """
        Check that a coupon applies to a purchase and quote its discount.

        Failure codes, first failing check wins: ``coupon_invalid``,
        ``scope_mismatch``, ``term_mismatch``, ``first_order_only``,
        ``already_redeemed``, ``max_redemptions``, ``zero_total``.
        """
        now = now or timezone.now()
        coupon = self.get_coupon_by_code(code)
        return self._check_coupon(coupon, user, product, subtotal_cents, term_months, now)

    def _check_coupon(  # noqa: PLR0911, PLR0913
        self,
        coupon: Coupon | None,
        user: Any,
        product: Product,
        subtotal_cents: int,
        term_months: int,
        now: datetime,
    ) -> Result[CouponQuote, EligibilityError]:
        if coupon is None or not coupon.is_live(now):
            return Err(EligibilityError(COUPON_INVALID, "This coupon is not valid"))
        if coupon.bound_user_id is not None and coupon.bound_user_id != user.pk:
            return Err(EligibilityError(COUPON_INVALID, "This coupon is not valid"))

        if not self._scope_matches(coupon, product):
            return Err(EligibilityError(SCOPE_MISMATCH, "This coupon does not apply to this product"))
        if coupon.term_months is not None and coupon.term_months != term_months:
            return Err(
                EligibilityError(TERM_MISMATCH, f"This coupon is only valid for {coupon.term_months}-month terms")
            )
        if coupon.first_order_only and self._has_paid_order(user):
            return Err(EligibilityError(FIRST_ORDER_ONLY, "This coupon is only valid on your first order"))

        self.expire_stale_reservations(coupon_id=coupon.pk, now=now)
        live = CouponRedemption.objects.using(self.using).filter(CouponRedemption.live_filter(now), coupon=coupon)

        if coupon.bound_user_id is None and live.filter(user=user).exists():
            return Err(EligibilityError(ALREADY_REDEEMED, "You have already used this coupon"))
        if coupon.max_redemptions is not None and live.count() >= coupon.max_redemptions:
            return Err(EligibilityError(MAX_REDEMPTIONS, "This coupon has reached its redemption limit"))

        subtotal = max(0, int(subtotal_cents))
        allocation = allocate_coupon_discount([AllocationItem(subtotal)], coupon.percent_off, coupon.apply_scope)
        discount = allocation.total_discount_cents
        if subtotal - discount <= 0:
            return Err(EligibilityError(ZERO_TOTAL, "This coupon cannot bring the total to zero"))

        return Ok(
            CouponQuote(
                coupon=coupon,
                subtotal_cents=subtotal,
                discount_cents=discount,
                item_discounts=tuple(allocation.item_discounts),
            )
        )

    @staticmethod
    def _scope_matches(coupon: Coupon, product: Product) -> bool:
        if coupon.scope == "global":
            return True
        if coupon.scope == "category":
            return bool(coupon.category) and coupon.category.strip().lower() == product.normalized_category
        if coupon.scope == "product":
            return coupon.product_id is not None and coupon.product_id == product.pk
        return False

    def _has_paid_order(self, user: Any) -> bool:
        return Order.objects.using(self.using).filter(user=user, status__in=PAID_ORDER_STATUSES).exists()

    # ===============================================================================
    # REDEMPTION SLOTS
    # ===============================================================================

    def reserve_coupon_redemption(  # noqa: PLR0913
        self,
        coupon_id: Any,
        user: Any,
        order: Order,
        product: Product,
        subtotal_cents: int,
        term_months: int,
        currency: str,
        now: datetime | None = None,
    ) -> Result[CouponRedemption, EligibilityError]:
        """
        Take a redemption slot for ``order``.

        Meant to run inside the caller's transaction so the slot commits or
        rolls back together with the order. The coupon row stays locked until
        that transaction ends.
        """
        now = now or timezone.now()
        with transaction.atomic(using=self.using):
            coupon = Coupon.objects.using(self.using).select_for_update().filter(pk=coupon_id).first()

            check = self._check_coupon(coupon, user, product, subtotal_cents, term_months, now)
            if check.is_err():
                error = check.unwrap_err()
                if error.code == MAX_REDEMPTIONS:
                    log_security_event(
                        "coupon_over_redemption_attempt",
                        {"coupon_id": str(coupon_id), "user_id": user.pk, "order_id": str(order.pk)},
                    )
                return check

            quote = check.unwrap()
            redemption = CouponRedemption.objects.using(self.using).create(
                coupon=coupon,
                order=order,
                user=user,
                status="reserved",
                subtotal_cents=quote.subtotal_cents,
                discount_cents=quote.discount_cents,
                currency=currency,
                expires_at=now + timedelta(minutes=get_reservation_minutes()),
            )

        logger.info(f"🎟️ [Coupons] Reserved {coupon.code} for order {order.pk} (-{quote.discount_cents} cents)")
        return Ok(redemption)

    def finalize_redemption_for_order(self, order_id: Any) -> int:
        """Turn the order's reserved slot into a redemption; returns rows changed."""
        with transaction.atomic(using=self.using):
            reserved = list(
                CouponRedemption.objects.using(self.using)
                .select_for_update()
                .filter(order_id=order_id, status="reserved")
            )
            for redemption in reserved:
                redemption.mark_redeemed(using=self.using)

        if reserved:
            logger.info(f"🎟️ [Coupons] Finalized {len(reserved)} redemption(s) for order {order_id}")
        return len(reserved)

    def void_redemption_for_order(self, order_id: Any, reason: str = "") -> int:
        """Release the order's reserved slot; returns rows changed."""
        count = (
            CouponRedemption.objects.using(self.using)
            .filter(order_id=order_id, status="reserved")
            .update(status="voided", voided_at=timezone.now(), void_reason=reason[:100])
        )
        if count:
            logger.info(f"🎟️ [Coupons] Voided {count} reservation(s) for order {order_id} ({reason})")
        return count

    def expire_stale_reservations(self, coupon_id: Any = None, now: datetime | None = None) -> int:
        """Release reservations whose TTL passed without the purchase finishing."""
        now = now or timezone.now()
        stale = CouponRedemption.objects.using(self.using).filter(status="reserved", expires_at__lte=now)
        if coupon_id is not None:
            stale = stale.filter(coupon_id=coupon_id)
        count = stale.update(status="expired", void_reason="reservation_expired")
        if count:
            logger.info(f"⌛ [Coupons] Expired {count} stale reservation(s)")
        return count

    # ===============================================================================
    # ADMIN OPERATIONS
    # ===============================================================================

    def list_coupons(
        self,
        status: str | None = None,
        scope: str | None = None,
        code: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Coupon]:
        """Coupons with ``redeemed_count`` and ``reserved_count`` annotations."""
        qs = Coupon.objects.using(self.using).annotate(
            redeemed_count=Count("redemptions", filter=Q(redemptions__status="redeemed")),
            reserved_count=Count("redemptions", filter=Q(redemptions__status="reserved")),
        )
        if status:
            qs = qs.filter(status=status)
        if scope:
            qs = qs.filter(scope=scope)
        if code:
            qs = qs.filter(code__icontains=normalize_code(code))
        limit = min(max(1, limit), 500)
        offset = max(0, offset)
        return list(qs.order_by("-created_at")[offset : offset + limit])

    def create_coupon(self, data: CouponData, created_by: Any = None) -> Result[Coupon, BusinessError]:
        """Create a coupon after validating its scope target and window."""
        fields = {key: value for key, value in data.items() if key in EDITABLE_COUPON_FIELDS}
        fields["code"] = normalize_code(fields.get("code")) or Coupon.generate_code()
        coupon = Coupon(**fields, created_by=created_by)
        result = self._save_coupon(coupon)
        if result.is_ok():
            logger.info(f"🎟️ [Coupons] Created coupon {coupon.code}")
        return result

    def update_coupon(self, coupon_id: Any, data: CouponData) -> Result[Coupon, BusinessError]:
        coupon = Coupon.objects.using(self.using).filter(pk=coupon_id).first()
        if coupon is None:
            return Err(ValidationError("coupon_not_found", "Coupon not found"))
        for key, value in data.items():
            if key in EDITABLE_COUPON_FIELDS:
                setattr(coupon, key, normalize_code(value) if key == "code" else value)
        return self._save_coupon(coupon)

    def delete_coupon(self, coupon_id: Any) -> Result[str, BusinessError]:
        """Delete an unused coupon; coupons with redemptions are archived instead."""
        coupon = Coupon.objects.using(self.using).filter(pk=coupon_id).first()
        if coupon is None:
            return Err(ValidationError("coupon_not_found", "Coupon not found"))

        if coupon.redemptions.exists():
            coupon.status = "archived"
            coupon.save(using=self.using, update_fields=["status", "updated_at"])
            logger.info(f"🎟️ [Coupons] Archived coupon {coupon.code} (has redemptions)")
            return Ok("archived")

        coupon.delete(using=self.using)
        logger.info(f"🎟️ [Coupons] Deleted coupon {coupon.code}")
        return Ok("deleted")

    def _save_coupon(self, coupon: Coupon) -> Result[Coupon, BusinessError]:
        if coupon.category:
            coupon.category = coupon.category.strip().lower()
        try:
            coupon.full_clean(exclude=["created_by"], validate_unique=False)
        except DjangoValidationError as e:
            return Err(ValidationError("invalid_coupon", "; ".join(e.messages)))

        try:
            with transaction.atomic(using=self.using):
                coupon.save(using=self.using)
        except IntegrityError:
            return Err(ValidationError("duplicate_code", f"Coupon code {coupon.code} already exists"))
        except DatabaseError:
            logger.exception(f"🔥 [Coupons] Failed to save coupon {coupon.code}")
            return Err(InfrastructureError())
        return Ok(coupon)

    def generate_code(self, prefix: str = "", length: int | None = None) -> str:
        if length is None:
            return Coupon.generate_code(prefix=prefix)
        return Coupon.generate_code(length=length, prefix=prefix)

    # ===============================================================================
    # REWARD CLAIMS
    # ===============================================================================

    def claim_reward(
        self, user: Any, scope: str, category: str | None = None, now: datetime | None = None
    ) -> Result[Coupon, BusinessError]:
        """
        Issue the personal coupon a reward scope grants.

        Claiming the same scope twice returns the coupon issued the first time.
        """
        now = now or timezone.now()
        reward_scope = normalize_scope(scope)

        match resolve_claim_rule(reward_scope):
            case Claim(spec):
                coupon_spec = spec
            case ChooseCategory() as rule:
                if not category:
                    return Err(
                        EligibilityError(
                            CLAIM_CATEGORY_REQUIRED,
                            f"Choose one of: {', '.join(rule.options)}",
                            options=list(rule.options),
                        )
                    )
                coupon_spec = rule.spec_for(category)
                if coupon_spec is None:
                    return Err(EligibilityError(CLAIM_CATEGORY_REQUIRED, f"{category!r} is not one of the options"))
            case Removed():
                return Err(EligibilityError(CLAIM_REMOVED, "This reward has been removed"))
            case Unavailable(reason):
                return Err(EligibilityError(CLAIM_UNAVAILABLE, reason or "This reward cannot be claimed"))

        try:
            with transaction.atomic(using=self.using):
                # Serializes the existence check and the insert per user
                get_user_model().objects.using(self.using).select_for_update().filter(pk=user.pk).first()
                existing = (
                    Coupon.objects.using(self.using)
                    .filter(bound_user=user, metadata__reward_scope=reward_scope)
                    .first()
                )
                if existing is not None:
                    return Ok(existing)
                return self._issue_reward_coupon(user, reward_scope, coupon_spec, now)
        except DatabaseError:
            logger.exception(f"🔥 [Coupons] Reward claim {reward_scope!r} failed for user {user.pk}")
            return Err(InfrastructureError())

    def _issue_reward_coupon(
        self, user: Any, reward_scope: str, spec: CouponSpec, now: datetime
    ) -> Result[Coupon, BusinessError]:
        product = None
        if spec.scope == "product":
            product = Product.objects.using(self.using).filter(slug=spec.product_slug).first()
            if product is None:
                logger.warning(f"⚠️ [Coupons] Reward {reward_scope!r} points at unknown product {spec.product_slug!r}")
                return Err(EligibilityError(CLAIM_UNAVAILABLE, "This reward cannot be claimed"))

        result = self.create_coupon(
            CouponData(
                code=Coupon.generate_code(prefix=REWARD_CODE_PREFIX),
                name=f"Reward: {reward_scope}",
                percent_off=spec.percent_off,
                scope=spec.scope,
                category=spec.category if spec.scope == "category" else "",
                product_id=product.pk if product else None,
                term_months=spec.term_months,
                status="active",
                starts_at=now,
                ends_at=now + timedelta(days=spec.valid_days),
                max_redemptions=1,
                bound_user_id=user.pk,
                metadata={"reward_scope": reward_scope},
            )
        )
        if result.is_ok():
            logger.info(f"🎁 [Coupons] Issued reward coupon {result.unwrap().code} to user {user.pk}")
        return result
