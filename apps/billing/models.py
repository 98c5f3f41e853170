"""
Billing models for SubShare Platform
Credit ledger, subscriptions, renewal cycle locks and fulfillment tasks.

This file serves as a re-export hub; models live in feature modules.
"""

from __future__ import annotations

from .credit_models import CreditBalance, CreditTransaction, LedgerImmutableError
from .subscription_models import FulfillmentTask, Subscription, SubscriptionRenewal

__all__ = [
    "CreditBalance",
    "CreditTransaction",
    "FulfillmentTask",
    "LedgerImmutableError",
    "Subscription",
    "SubscriptionRenewal",
]
