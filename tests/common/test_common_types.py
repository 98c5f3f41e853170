# ===============================================================================
# COMMON TYPES, VALIDATORS AND LOGGING TESTS
# ===============================================================================

import logging

from django.test import SimpleTestCase, override_settings

from apps.common.logging import (
    RequestIDFilter,
    clear_request_context,
    get_logger,
    set_request_context,
)
from apps.common.types import (
    BusinessError,
    CompensationError,
    EligibilityError,
    Err,
    InfrastructureError,
    InsufficientFundsError,
    Ok,
    ValidationError,
)
from apps.common.validators import normalize_currency, validate_amount_cents


class ResultTypeTests(SimpleTestCase):
    """Ok/Err behave like the Rust-style Result they model"""

    def test_ok_unwraps_value(self):
        result = Ok(42)
        self.assertTrue(result.is_ok())
        self.assertFalse(result.is_err())
        self.assertEqual(result.unwrap(), 42)
        self.assertEqual(result.unwrap_or(0), 42)

    def test_err_unwrap_raises(self):
        result = Err(ValidationError("invalid_amount", "bad"))
        self.assertTrue(result.is_err())
        with self.assertRaises(ValueError):
            result.unwrap()
        self.assertEqual(result.unwrap_or(7), 7)
        self.assertEqual(result.unwrap_err().code, "invalid_amount")

    def test_map_and_and_then(self):
        self.assertEqual(Ok(2).map(lambda v: v * 3).unwrap(), 6)
        self.assertEqual(Ok(2).and_then(lambda v: Ok(v + 1)).unwrap(), 3)
        error = Err("boom")
        self.assertIs(error.map(lambda v: v * 3), error)
        self.assertIs(error.and_then(lambda v: Ok(v)), error)


class BusinessErrorTests(SimpleTestCase):
    def test_default_codes(self):
        self.assertEqual(ValidationError().code, "validation_error")
        self.assertEqual(EligibilityError().code, "not_eligible")
        self.assertEqual(InsufficientFundsError().code, "insufficient_credits")
        self.assertEqual(CompensationError().code, "compensation_failed")

    def test_infrastructure_error_message_is_generic(self):
        error = InfrastructureError()
        self.assertEqual(error.code, "internal_error")
        self.assertIn("internal error", error.message)

    def test_context_is_kept(self):
        error = InsufficientFundsError(message="Insufficient credits", available_cents=5, requested_cents=10)
        self.assertEqual(error.context, {"available_cents": 5, "requested_cents": 10})
        self.assertIsInstance(error, BusinessError)

    def test_equality_by_type_code_and_message(self):
        self.assertEqual(ValidationError("a", "b"), ValidationError("a", "b"))
        self.assertNotEqual(ValidationError("a", "b"), EligibilityError("a", "b"))


class ValidatorTests(SimpleTestCase):
    def test_validate_amount_accepts_positive_int(self):
        self.assertEqual(validate_amount_cents(100).unwrap(), 100)

    def test_validate_amount_rejects_non_integers(self):
        for value in (0, -5, 1.5, "100", True, None):
            with self.subTest(value=value):
                result = validate_amount_cents(value)
                self.assertTrue(result.is_err())
                self.assertEqual(result.unwrap_err().code, "invalid_amount")

    @override_settings(SUPPORTED_CURRENCIES=["USD", "EUR"])
    def test_normalize_currency(self):
        self.assertEqual(normalize_currency(" usd ").unwrap(), "USD")
        self.assertEqual(normalize_currency("GBP").unwrap_err().code, "invalid_currency")
        self.assertEqual(normalize_currency("US").unwrap_err().code, "invalid_currency")
        self.assertEqual(normalize_currency(None).unwrap_err().code, "invalid_currency")


class StructuredLoggingTests(SimpleTestCase):
    def tearDown(self):
        clear_request_context()

    def test_get_logger_binds_context_and_kwargs(self):
        adapter = get_logger("tests.logging", purchase_id="abc")
        msg, kwargs = adapter.process("hello", {"order_id": "o-1"})
        self.assertEqual(msg, "hello")
        self.assertEqual(kwargs["extra"], {"purchase_id": "abc", "order_id": "o-1"})

    def test_request_id_filter_injects_context(self):
        set_request_context(request_id="req-1", user_id=7)
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        self.assertTrue(RequestIDFilter().filter(record))
        self.assertEqual(record.request_id, "req-1")
        self.assertEqual(record.user_id, 7)
        self.assertIsNone(record.purchase_id)

    def test_clear_request_context(self):
        set_request_context(request_id="req-2")
        clear_request_context()
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        RequestIDFilter().filter(record)
        self.assertEqual(record.request_id, "-")
