import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.field_values import FieldValueError, coerce_value, decode_picklist, encode_picklist, is_empty, unique_key
from app.schema import CustomField


def _field(ftype: str, **extra) -> CustomField:
    return CustomField.from_dict({"id": "f", "apiName": "f", "label": "F", "type": ftype, **extra}, object_id="o")


class TestPicklistCodec(unittest.TestCase):
    def test_round_trip(self) -> None:
        for values in (["Prospecting"], ["vip", "partner"], []):
            self.assertEqual(decode_picklist(encode_picklist(values)), values)

    def test_legacy_values(self) -> None:
        self.assertEqual(decode_picklist("Prospecting"), ["Prospecting"])
        self.assertEqual(decode_picklist("vip; partner"), ["vip", "partner"])
        self.assertIsNone(decode_picklist(None))

    def test_picklist_takes_one_value(self) -> None:
        stage = _field("Picklist", picklistValues=["Open", "Won"])
        self.assertEqual(coerce_value(stage, "Open"), '["Open"]')
        self.assertEqual(coerce_value(stage, ["Won"]), '["Won"]')
        with self.assertRaises(FieldValueError) as ctx:
            coerce_value(stage, ["Open", "Won"])
        self.assertEqual(ctx.exception.reason, "type")
        with self.assertRaises(FieldValueError) as ctx:
            coerce_value(stage, "Lost")
        self.assertEqual(ctx.exception.reason, "invalid_option")

    def test_multi_picklist(self) -> None:
        tags = _field("MultiPicklist", picklistValues=["vip", "partner"])
        self.assertEqual(coerce_value(tags, ["partner", "vip"]), '["partner","vip"]')
        self.assertEqual(coerce_value(tags, '["vip"]'), '["vip"]')
        with self.assertRaises(FieldValueError):
            coerce_value(tags, [1])


class TestScalarCoercion(unittest.TestCase):
    def test_text_lengths(self) -> None:
        name = _field("Text", minLength=2, maxLength=5)
        self.assertEqual(coerce_value(name, "Acme"), "Acme")
        for bad, reason in (("A", "min_length"), ("Acme Ltd", "max_length"), (5, "type")):
            with self.assertRaises(FieldValueError) as ctx:
                coerce_value(name, bad)
            self.assertEqual(ctx.exception.reason, reason)

    def test_numbers(self) -> None:
        amount = _field("Currency", scale=2, min=0, max=1000)
        self.assertEqual(coerce_value(amount, "10.005"), 10.01)
        self.assertEqual(coerce_value(amount, 10), 10)
        self.assertEqual(coerce_value(_field("Number"), "42"), 42)
        for bad, reason in ((-1, "min"), (1000.5, "max"), (True, "type"), ("abc", "type"), (float("nan"), "type")):
            with self.assertRaises(FieldValueError) as ctx:
                coerce_value(amount, bad)
            self.assertEqual(ctx.exception.reason, reason)

    def test_oversized_numbers_are_errors(self) -> None:
        amount = _field("Currency", scale=2)
        with self.assertRaises(FieldValueError) as ctx:
            coerce_value(amount, "1e30")
        self.assertEqual(ctx.exception.reason, "type")

    def test_precision_limits_integer_digits(self) -> None:
        amount = _field("Currency", precision=6, scale=2)
        self.assertEqual(coerce_value(amount, "9999.994"), 9999.99)
        self.assertEqual(coerce_value(amount, "-9999.99"), -9999.99)
        self.assertEqual(coerce_value(amount, "0.5"), 0.5)
        for bad in ("10000", "9999.995", "-12345"):
            with self.assertRaises(FieldValueError) as ctx:
                coerce_value(amount, bad)
            self.assertEqual(ctx.exception.reason, "max")
        self.assertEqual(coerce_value(_field("Number", precision=3), 999), 999)

    def test_checkbox(self) -> None:
        flag = _field("Checkbox")
        self.assertIs(coerce_value(flag, "yes"), True)
        self.assertIs(coerce_value(flag, 0), False)
        with self.assertRaises(FieldValueError):
            coerce_value(flag, "maybe")

    def test_dates(self) -> None:
        self.assertEqual(coerce_value(_field("Date"), "2024-03-05"), "2024-03-05")
        self.assertEqual(coerce_value(_field("DateTime"), "2024-03-05T10:00:00Z"), "2024-03-05T10:00:00Z")
        self.assertEqual(coerce_value(_field("Time"), "10:30"), "10:30")
        with self.assertRaises(FieldValueError) as ctx:
            coerce_value(_field("Date"), "05/03/2024")
        self.assertEqual(ctx.exception.reason, "invalid_date")

    def test_contact_formats(self) -> None:
        self.assertEqual(coerce_value(_field("Email"), " ada@example.com "), "ada@example.com")
        self.assertEqual(coerce_value(_field("Phone"), "+44 (0)20 7946-0958"), "+44 (0)20 7946-0958")
        self.assertEqual(coerce_value(_field("URL"), "https://acme.test"), "https://acme.test")
        for ftype, bad, reason in (("Email", "ada@", "invalid_email"), ("Phone", "call me", "invalid_phone"), ("URL", "acme", "invalid_url")):
            with self.assertRaises(FieldValueError) as ctx:
                coerce_value(_field(ftype), bad)
            self.assertEqual(ctx.exception.reason, reason)

    def test_lookup_accepts_id_or_reference(self) -> None:
        lookup = _field("Lookup", lookupObject="Account")
        self.assertEqual(coerce_value(lookup, "acc-1"), "acc-1")
        self.assertEqual(coerce_value(lookup, {"id": "acc-2", "name": "Acme"}), "acc-2")
        with self.assertRaises(FieldValueError):
            coerce_value(lookup, 12)

    def test_address_and_geolocation(self) -> None:
        self.assertEqual(coerce_value(_field("Address"), {"city": "Leeds", "country": "UK"}), {"city": "Leeds", "country": "UK"})
        with self.assertRaises(FieldValueError):
            coerce_value(_field("Address"), {"planet": "Mars"})
        geo = _field("Geolocation")
        self.assertEqual(coerce_value(geo, {"lat": "51.5", "lng": -0.12}), {"latitude": 51.5, "longitude": -0.12})
        with self.assertRaises(FieldValueError):
            coerce_value(geo, {"latitude": 91, "longitude": 0})
        with self.assertRaises(FieldValueError):
            coerce_value(geo, {"latitude": 10})


class TestHelpers(unittest.TestCase):
    def test_is_empty(self) -> None:
        for value in (None, "", "  ", [], {}):
            self.assertTrue(is_empty(value))
        for value in (0, False, "x", ["a"]):
            self.assertFalse(is_empty(value))

    def test_unique_key_normalizes(self) -> None:
        self.assertEqual(unique_key(_field("Number"), 10), unique_key(_field("Number"), 10.0))
        stage = _field("Picklist")
        self.assertEqual(unique_key(stage, '["Open"]'), unique_key(stage, "Open"))
        self.assertNotEqual(unique_key(_field("Text"), "ACME"), unique_key(_field("Text"), "acme"))


if __name__ == "__main__":
    unittest.main()
