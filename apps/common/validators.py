"""
Shared validators and security event logging for SubShare Platform.
"""

from __future__ import annotations

import logging
from typing import Any

from django.conf import settings

from apps.common.constants import INVALID_AMOUNT, INVALID_CURRENCY
from apps.common.types import Err, Ok, Result, ValidationError

logger = logging.getLogger(__name__)

CURRENCY_CODE_LENGTH = 3


def normalize_currency(currency: str | None) -> Result[str, ValidationError]:
    """Upper-case and check a currency code against SUPPORTED_CURRENCIES."""
    code = (currency or "").strip().upper()
    if len(code) != CURRENCY_CODE_LENGTH or not code.isalpha():
        return Err(ValidationError(INVALID_CURRENCY, f"Invalid currency code: {currency!r}"))

    supported = getattr(settings, "SUPPORTED_CURRENCIES", None)
    if supported and code not in supported:
        return Err(ValidationError(INVALID_CURRENCY, f"Unsupported currency: {code}"))
    return Ok(code)


def validate_amount_cents(amount_cents: Any) -> Result[int, ValidationError]:
    """Money crosses boundaries as positive integer minor units only."""
    # bool is an int subclass
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        return Err(ValidationError(INVALID_AMOUNT, "Amount must be an integer number of cents"))
    if amount_cents <= 0:
        return Err(ValidationError(INVALID_AMOUNT, "Amount must be positive"))
    return Ok(amount_cents)


def log_security_event(event_type: str, details: dict[str, Any], request_ip: str | None = None) -> None:
    """
    Log security events for monitoring and forensics
    """
    logger.warning(
        f"🚨 [Security] {event_type}: {details} from IP: {request_ip}",
        extra={"security_event": event_type, **{f"event_{k}": v for k, v in details.items()}},
    )
