import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from condition_eval import (
    ConditionSchemaError,
    UnknownOpError,
    build_condition,
    conditions_to_expression,
    eval_conditions,
    evaluate_visibility,
    format_condition,
    validate_conditions,
)
from expression_eval import ExpressionEvaluateError


WON = {"left": "stage", "op": "==", "right": "Closed Won"}


class TestConditionEval(unittest.TestCase):
    def test_empty_conditions_are_true(self) -> None:
        self.assertTrue(eval_conditions([], {}))
        self.assertTrue(eval_conditions(None, {}))

    def test_clauses_are_and_combined(self) -> None:
        conditions = [WON, {"left": "amount", "op": ">", "right": 100}]
        self.assertTrue(eval_conditions(conditions, {"stage": "Closed Won", "amount": 500}))
        self.assertFalse(eval_conditions(conditions, {"stage": "Closed Won", "amount": 50}))

    def test_expression_rendering(self) -> None:
        conditions = [WON, {"left": "amount", "op": ">=", "right": 1.5}, {"left": "stage", "op": "IN", "right": ["A", "B"]}]
        self.assertEqual(
            conditions_to_expression(conditions),
            'stage == "Closed Won" && amount >= 1.5 && stage IN ["A", "B"]',
        )

    def test_string_escaping(self) -> None:
        clause = {"left": "name", "op": "==", "right": 'say "hi"'}
        self.assertTrue(eval_conditions([clause], {"name": 'say "hi"'}))

    def test_malformed_clauses(self) -> None:
        with self.assertRaises(ConditionSchemaError):
            eval_conditions([{"op": "=="}], {})
        with self.assertRaises(ConditionSchemaError):
            eval_conditions([{"left": "a.b", "op": "==", "right": 1}], {})
        with self.assertRaises(UnknownOpError):
            eval_conditions([{"left": "a", "op": "LIKE", "right": 1}], {})
        with self.assertRaises(ConditionSchemaError):
            eval_conditions({"left": "a"}, {})

    def test_evaluation_errors_propagate(self) -> None:
        with self.assertRaises(ExpressionEvaluateError):
            eval_conditions([{"left": "tags", "op": ">", "right": "a"}], {"tags": ["a"]})


class TestVisibility(unittest.TestCase):
    def test_visible_when_condition_matches(self) -> None:
        self.assertTrue(evaluate_visibility([WON], {"stage": "Closed Won"}, field="lossReason"))

    def test_hidden_when_condition_fails(self) -> None:
        self.assertFalse(evaluate_visibility([WON], {"stage": "Prospecting"}, field="lossReason"))

    def test_no_conditions_is_visible(self) -> None:
        self.assertTrue(evaluate_visibility([], {"stage": "Prospecting"}))

    def test_errors_fail_open(self) -> None:
        with self.assertLogs("crm.conditions", level="WARNING") as logs:
            self.assertTrue(evaluate_visibility([{"left": "tags", "op": ">", "right": "a"}], {"tags": ["a"]}, field="f"))
        self.assertIn("visibility_eval_failed field=f", logs.output[0])
        self.assertTrue(evaluate_visibility([{"op": "=="}], {}))

    def test_reserved_word_fields_fail_open(self) -> None:
        clause = {"left": "null", "op": "==", "right": "x"}
        with self.assertRaises(ConditionSchemaError):
            conditions_to_expression([clause])
        with self.assertLogs("crm.conditions", level="WARNING"):
            self.assertTrue(evaluate_visibility([clause], {"null": "y"}, field="f"))
        self.assertEqual(validate_conditions([{"left": "IN", "op": "==", "right": 1}])[0]["code"], "CONDITION_SCHEMA_ERROR")


class TestConditionHelpers(unittest.TestCase):
    def test_build_and_format(self) -> None:
        clause = build_condition("stage", "==", "Closed Won")
        self.assertEqual(clause, WON)
        self.assertEqual(format_condition(clause, "Stage"), "Stage equals Closed Won")
        self.assertEqual(format_condition(build_condition("stage", "IN", ["A", "B"]), "Stage"), "Stage is in A, B")
        with self.assertRaises(UnknownOpError):
            build_condition("stage", "~", "x")

    def test_validate_conditions(self) -> None:
        self.assertEqual(validate_conditions([WON], ["stage"]), [])
        self.assertEqual(validate_conditions(None), [])
        self.assertEqual(validate_conditions("stage")[0]["code"], "CONDITION_INVALID")
        unknown = validate_conditions([WON], ["amount"])
        self.assertEqual([i["code"] for i in unknown], ["CONDITION_UNKNOWN_FIELD"])
        self.assertEqual(unknown[0]["path"], "visibleIf[0].left")
        bad_op = validate_conditions([{"left": "stage", "op": "LIKE", "right": 1}])
        self.assertEqual(bad_op[0]["code"], "CONDITION_UNKNOWN_OP")


if __name__ == "__main__":
    unittest.main()
