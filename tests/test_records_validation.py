import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.records_validation import (
    decode_record_data,
    merge_record_data,
    validate_and_normalize,
    validation_issues,
)
from schema_fixtures import deal_object


def _reasons(result) -> dict:
    return {err["field"]: err["reason"] for err in result.errors}


class TestCreateValidation(unittest.TestCase):
    def setUp(self) -> None:
        self.deal = deal_object()

    def test_missing_required_fields(self) -> None:
        result = validate_and_normalize(self.deal, {"amount": 100})
        self.assertFalse(result.ok)
        self.assertEqual(_reasons(result), {"dealName": "required", "stage": "required"})

    def test_valid_deal_is_normalized(self) -> None:
        result = validate_and_normalize(self.deal, {"dealName": "Acme", "stage": "Prospecting", "amount": "1500.456"})
        self.assertTrue(result.ok, result.errors)
        self.assertEqual(result.data["stage"], '["Prospecting"]')
        self.assertEqual(result.data["amount"], 1500.46)
        self.assertEqual(result.data["source"], "Web")
        self.assertNotIn("weighted", result.data)

    def test_unknown_field_rejected(self) -> None:
        result = validate_and_normalize(self.deal, {"dealName": "Acme", "stage": "Prospecting", "colour": "red"})
        self.assertEqual(_reasons(result), {"colour": "unknown_field"})

    def test_legacy_prefixed_keys_are_accepted(self) -> None:
        result = validate_and_normalize(self.deal, {"Deal__dealName": "Acme", "stage": "Prospecting"})
        self.assertTrue(result.ok, result.errors)
        self.assertEqual(result.data["dealName"], "Acme")

    def test_type_errors_are_not_also_required(self) -> None:
        result = validate_and_normalize(self.deal, {"dealName": 42, "stage": "Lost"})
        self.assertEqual(_reasons(result), {"dealName": "type", "stage": "invalid_option"})

    def test_huge_amount_is_a_validation_error(self) -> None:
        result = validate_and_normalize(self.deal, {"dealName": "A", "stage": "Prospecting", "amount": "1e30"})
        self.assertFalse(result.ok)
        self.assertEqual(_reasons(result), {"amount": "type"})

    def test_empty_values_normalize(self) -> None:
        result = validate_and_normalize(self.deal, {"dealName": "Acme", "stage": "Prospecting", "lossReason": "", "amount": "", "tags": []})
        self.assertTrue(result.ok, result.errors)
        self.assertEqual(result.data["lossReason"], "")
        self.assertIsNone(result.data["amount"])
        self.assertEqual(result.data["tags"], "[]")

    def test_validation_rule_flags_record(self) -> None:
        result = validate_and_normalize(self.deal, {"dealName": "Acme", "stage": "Prospecting", "amount": 2000000})
        self.assertEqual(result.errors, [{"field": "amount", "reason": "validation_rule", "message": "Amount too large"}])

    def test_unique_precheck_against_peers(self) -> None:
        peers = [{"dealCode": "D-1"}]
        result = validate_and_normalize(self.deal, {"dealName": "Acme", "stage": "Prospecting", "dealCode": "D-1"}, peers=peers)
        self.assertEqual(_reasons(result), {"dealCode": "unique"})

    def test_non_mapping_payload(self) -> None:
        result = validate_and_normalize(self.deal, ["not", "a", "record"])
        self.assertEqual(result.errors[0]["reason"], "type")
        with self.assertRaises(ValueError):
            validate_and_normalize(self.deal, {}, mode="upsert")


class TestUpdateValidation(unittest.TestCase):
    def setUp(self) -> None:
        self.deal = deal_object()
        created = validate_and_normalize(self.deal, {"dealName": "Acme", "stage": "Prospecting", "amount": 100})
        self.existing = created.data

    def test_partial_update_keeps_other_fields(self) -> None:
        result = validate_and_normalize(self.deal, {"amount": 250}, "update", existing=self.existing)
        self.assertTrue(result.ok, result.errors)
        self.assertEqual(result.data, {"amount": 250})
        merged = merge_record_data(self.existing, result.data)
        self.assertEqual(merged["dealName"], "Acme")
        self.assertEqual(merged["amount"], 250)

    def test_required_only_checked_when_included(self) -> None:
        result = validate_and_normalize(self.deal, {"dealName": ""}, "update", existing=self.existing)
        self.assertEqual(_reasons(result), {"dealName": "required"})
        result = validate_and_normalize(self.deal, {"contactEmail": "ada@example.com"}, "update", existing={})
        self.assertTrue(result.ok, result.errors)

    def test_read_only_fields(self) -> None:
        unchanged = validate_and_normalize(self.deal, {"source": "Web"}, "update", existing=self.existing)
        self.assertTrue(unchanged.ok)
        self.assertEqual(unchanged.data, {})
        changed = validate_and_normalize(self.deal, {"source": "Partner"}, "update", existing=self.existing)
        self.assertEqual(_reasons(changed), {"source": "read_only"})

    def test_rules_see_merged_record(self) -> None:
        result = validate_and_normalize(self.deal, {"dealName": "Big"}, "update", existing={**self.existing, "amount": 5000000})
        self.assertEqual(_reasons(result), {"amount": "validation_rule"})


class TestHelpers(unittest.TestCase):
    def test_decode_record_data(self) -> None:
        deal = deal_object()
        decoded = decode_record_data(deal, {"stage": '["Closed Won"]', "tags": "vip;partner", "dealName": "Acme"})
        self.assertEqual(decoded, {"stage": ["Closed Won"], "tags": ["vip", "partner"], "dealName": "Acme"})

    def test_validation_issues_shape(self) -> None:
        issues = validation_issues([{"field": "stage", "reason": "required", "message": "Stage is required"}])
        self.assertEqual(
            issues,
            [{"code": "VALIDATION_ERROR", "message": "Stage is required", "path": "stage", "detail": {"field": "stage", "reason": "required"}}],
        )


if __name__ == "__main__":
    unittest.main()
