"""
Order signals for SubShare Platform.

``purchase_completed`` fires once per successful credit purchase, after the
order is paid and the subscription exists. Receivers are best-effort: the
orchestrator sends with ``send_robust`` so a failing receiver never affects
the purchase.
"""

import logging
from typing import Any

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# Sent with: order, subscription, transaction (CreditTransaction or None)
purchase_completed = Signal()


@receiver(purchase_completed)
def log_purchase_analytics(sender: Any, order: Any, subscription: Any, transaction: Any = None, **kwargs: Any) -> None:
    """Emit a structured analytics record for the completed purchase."""
    logger.info(
        f"📈 [Analytics] Purchase {order.order_number} completed",
        extra={
            "analytics_event": "purchase_completed",
            "order_id": str(order.id),
            "user_id": order.user_id,
            "subscription_id": str(subscription.id),
            "product_id": str(subscription.product_id),
            "term_months": order.term_months,
            "total_cents": order.total_cents,
            "coupon_code": order.coupon_code or None,
            "currency": order.currency,
            "transaction_id": str(transaction.id) if transaction is not None else None,
        },
    )
