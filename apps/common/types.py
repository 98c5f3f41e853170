"""
Type system for SubShare Platform
Rust-inspired Result pattern, money aliases and the business error taxonomy.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

# Type variables for generic Result
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type

# ===============================================================================
# RESULT TYPES
# ===============================================================================


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Success result containing a value"""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the success value"""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Get the success value (ignores default)"""
        return self.value

    def map(self, func: Callable[[T], Any]) -> Result[Any, Any]:
        """Transform the success value"""
        return Ok(func(self.value))

    def and_then(self, func: Callable[[T], Result[Any, Any]]) -> Result[Any, Any]:
        """Chain operations that can fail"""
        return func(self.value)

    def unwrap_err(self) -> Any:
        """Raises an exception since this is success, not error - provides consistent API"""
        raise ValueError(f"Called unwrap_err on Ok: {self.value}")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Error result containing an error value"""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raises an exception - use unwrap_or() for safe access"""
        raise ValueError(f"Called unwrap on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Get the default value since this is an error"""
        return default

    def map(self, func: Callable[[Any], Any]) -> Result[Any, E]:
        """No-op for error results"""
        return self

    def and_then(self, func: Callable[[Any], Result[Any, Any]]) -> Result[Any, E]:
        """No-op for error results - return self"""
        return self

    def unwrap_err(self) -> E:
        """Get the error value"""
        return self.error


# Result type alias
Result = Ok[T] | Err[E]

# ===============================================================================
# BUSINESS TYPES
# ===============================================================================

Cents = int  # Integer minor units, never float
CurrencyCode = str  # ISO 4217 upper-case: "USD"
CouponCode = str  # Normalized coupon code: "SPRING25"
OrderNumber = str  # Order reference: "ORD-20260101-000001"
StatusReason = str  # Machine-readable reason: "paid_with_credits"

# ===============================================================================
# BUSINESS ERROR TAXONOMY
# ===============================================================================


class BusinessError(Exception):
    """
    Base exception for business logic errors.

    Carries a stable machine-readable ``code`` and a human ``message``. Services
    raise these inside ``transaction.atomic()`` blocks to force a rollback and
    hand them back wrapped in ``Err`` at their public boundary.
    """

    default_code = "business_error"

    def __init__(self, code: str | None = None, message: str = "", **context: Any):
        self.code = code or self.default_code
        self.message = message or self.code
        self.context = context
        super().__init__(f"{self.code}: {self.message}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BusinessError):
            return NotImplemented
        return type(self) is type(other) and self.code == other.code and self.message == other.message

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.code, self.message))


class ValidationError(BusinessError):
    """Bad input: non-positive amounts, unknown currency, malformed codes"""

    default_code = "validation_error"


class EligibilityError(BusinessError):
    """Caller may not perform the action: purchase_not_allowed, max_redemptions, scope_mismatch"""

    default_code = "not_eligible"


class InsufficientFundsError(BusinessError):
    """Credit balance does not cover the requested debit"""

    default_code = "insufficient_credits"


class InfrastructureError(BusinessError):
    """Database or connection failure; message is always generic"""

    default_code = "internal_error"

    def __init__(self, code: str | None = None, message: str = "", **context: Any):
        super().__init__(code, message or "An internal error occurred. Please try again later.", **context)


class CompensationError(BusinessError):
    """A rollback step of a saga failed after the original failure"""

    default_code = "compensation_failed"
