# ===============================================================================
# REWARD CLAIM RULE TESTS
# ===============================================================================

from decimal import Decimal

from django.test import SimpleTestCase, override_settings

from apps.promotions.claim_rules import (
    ChooseCategory,
    Claim,
    Removed,
    Unavailable,
    get_claim_rules,
    normalize_scope,
    parse_rule,
    resolve_claim_rule,
)


class ClaimRuleParsingTests(SimpleTestCase):
    def test_normalize_scope(self):
        self.assertEqual(normalize_scope("  Netflix   4K "), "netflix 4k")
        self.assertEqual(normalize_scope(None), "")

    def test_parse_claim(self):
        rule = parse_rule({"type": "claim", "scope": "category", "category": "AI", "percent_off": "12.5"})

        self.assertIsInstance(rule, Claim)
        self.assertEqual(rule.spec.category, "ai")
        self.assertEqual(rule.spec.percent_off, Decimal("12.5"))
        self.assertIsNone(rule.spec.term_months)

    def test_parse_choose_category(self):
        rule = parse_rule({"type": "choose_category", "options": ["Music", "Gaming"], "percent_off": 10})

        self.assertIsInstance(rule, ChooseCategory)
        self.assertEqual(rule.options, ("music", "gaming"))
        self.assertEqual(rule.spec_for("GAMING").category, "gaming")
        self.assertIsNone(rule.spec_for("books"))

    def test_unavailable_and_removed(self):
        self.assertEqual(parse_rule({"type": "unavailable", "reason": "Sold out"}), Unavailable("Sold out"))
        self.assertEqual(parse_rule({"type": "removed"}), Removed())

    def test_misconfigured_rules_become_unavailable(self):
        self.assertEqual(parse_rule({"type": "lottery"}), Unavailable("misconfigured"))
        self.assertEqual(
            parse_rule({"type": "claim", "percent_off": "5", "valid_days": "soon"}), Unavailable("misconfigured")
        )


class ClaimRuleTableTests(SimpleTestCase):
    def test_defaults_resolve(self):
        self.assertIsInstance(resolve_claim_rule("Welcome"), Claim)
        self.assertIsInstance(resolve_claim_rule("entertainment lane"), ChooseCategory)
        self.assertIsInstance(resolve_claim_rule("christmas calendar"), Removed)

    def test_unknown_scope(self):
        self.assertEqual(resolve_claim_rule("nothing here"), Unavailable("unknown_scope"))

    @override_settings(COUPON_CLAIM_RULES={"Welcome": {"type": "removed"}, "Spring Drop": {"type": "claim"}})
    def test_settings_override_and_extend_defaults(self):
        rules = get_claim_rules()

        self.assertEqual(rules["welcome"], Removed())
        self.assertIsInstance(rules["spring drop"], Claim)
        self.assertIsInstance(rules["netflix 4k"], Claim)
