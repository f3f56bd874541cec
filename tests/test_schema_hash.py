import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from crmkit.schema_hash import schema_hash


class TestSchemaHash(unittest.TestCase):
    def test_hash_deterministic_with_key_order(self) -> None:
        self.assertEqual(schema_hash({"b": 1, "a": 2}), schema_hash({"a": 2, "b": 1}))

    def test_hash_differs_for_different_content(self) -> None:
        self.assertNotEqual(schema_hash({"a": 1}), schema_hash({"a": 2}))

    def test_hash_format(self) -> None:
        h = schema_hash({"a": 1})
        self.assertTrue(h.startswith("sha256:"))
        self.assertEqual(len(h), len("sha256:") + 64)


if __name__ == "__main__":
    unittest.main()
