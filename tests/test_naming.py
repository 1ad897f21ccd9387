import os
import sys
import unittest
from datetime import date, datetime


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from flexcrm.naming import is_valid_entity_name, parse_options, singular_label, slugify_name
from flexcrm.values import Boolean, DateValue, Number, OptionRef, Text, decode_record, decode_value, encode_value


class TestNaming(unittest.TestCase):
    def test_slugify_lowercases_and_collapses_whitespace(self) -> None:
        self.assertEqual(slugify_name("Phone Number"), "phone_number")
        self.assertEqual(slugify_name("Due   Date\tUTC"), "due_date_utc")
        self.assertEqual(slugify_name(" Lead"), "_lead")

    def test_entity_name_pattern(self) -> None:
        self.assertTrue(is_valid_entity_name("deals"))
        self.assertTrue(is_valid_entity_name("deal_stage_2"))
        for bad in ("Deals", "deal-stage", "deal stage", "", "drop table;"):
            self.assertFalse(is_valid_entity_name(bad), bad)

    def test_parse_options_trims_labels_and_slugs_values(self) -> None:
        self.assertEqual(
            parse_options("Red, green , Blue"),
            [
                {"label": "Red", "value": "red"},
                {"label": "green", "value": "green"},
                {"label": "Blue", "value": "blue"},
            ],
        )

    def test_parse_options_keeps_empty_tokens(self) -> None:
        options = parse_options("Hot,,Cold Lead")
        self.assertEqual(options[1], {"label": "", "value": ""})
        self.assertEqual(options[2]["value"], "cold_lead")

    def test_singular_label(self) -> None:
        self.assertEqual(singular_label("Deals"), "Deal")
        self.assertEqual(singular_label("Staff"), "Staff")


class TestValues(unittest.TestCase):
    def test_decode_by_field_type(self) -> None:
        self.assertEqual(decode_value({"type": "number"}, "12.5"), Number(12.5))
        self.assertEqual(decode_value({"type": "number"}, 500), Number(500))
        self.assertEqual(decode_value({"type": "checkbox"}, "on"), Boolean(True))
        self.assertEqual(decode_value({"type": "date"}, "2024-03-01"), DateValue(date(2024, 3, 1)))
        self.assertEqual(decode_value({"type": "text"}, "hi"), Text("hi"))
        stage = {"type": "select", "options": [{"label": "Won", "value": "won"}]}
        self.assertEqual(decode_value(stage, "won"), OptionRef("won", "Won"))

    def test_missing_values_decode_to_none(self) -> None:
        self.assertIsNone(decode_value({"type": "number"}, None))
        self.assertIsNone(decode_value({"type": "number"}, ""))

    def test_bad_values_raise(self) -> None:
        with self.assertRaises(ValueError):
            decode_value({"type": "number"}, "lots")
        with self.assertRaises(ValueError):
            decode_value({"type": "checkbox"}, "maybe")
        with self.assertRaises(ValueError):
            decode_value({"type": "date"}, "03/01/2024")

    def test_datetime_has_time(self) -> None:
        value = decode_value({"type": "datetime"}, "2024-03-01T09:30:00Z")
        self.assertTrue(value.has_time)
        self.assertEqual(encode_value(value), "2024-03-01T09:30:00+00:00")

    def test_decode_record_keeps_system_columns_and_tolerates_bad_rows(self) -> None:
        fields = [{"name": "amount", "type": "number"}]
        row = {"id": "r1", "created_at": "2024-01-01T00:00:00+00:00", "amount": "oops", "stray": 1}
        typed = decode_record(fields, row)
        self.assertEqual(typed["id"], Text("r1"))
        self.assertIsInstance(typed["created_at"], DateValue)
        self.assertEqual(typed["amount"], Text("oops"))
        self.assertNotIn("stray", typed)
        self.assertEqual(encode_value(decode_value({"type": "number"}, "7")), 7)
        self.assertIsInstance(datetime.fromisoformat(encode_value(typed["created_at"])), datetime)


if __name__ == "__main__":
    unittest.main()
