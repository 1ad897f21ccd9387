import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from form_renderer import build_form, coerce_form_data, reconcile_definition, validate_form, widget_for


FIELDS = [
    {"id": "f2", "name": "email", "label": "Email", "type": "email", "display_order": 1},
    {"id": "f1", "name": "name", "label": "Name", "type": "text", "is_required": True, "display_order": 0},
    {"id": "f3", "name": "notes", "label": "Notes", "type": "textarea", "display_order": 2},
    {"id": "f4", "name": "active", "label": "Active", "type": "checkbox", "display_order": 3, "default_value": "true"},
    {"id": "f5", "name": "created_by", "label": "Owner", "type": "text", "display_order": 4},
]


def _layout(field_ids, visible=None, is_default=True):
    visible = visible or {}
    return {
        "id": "l1",
        "name": "Main",
        "is_default": is_default,
        "definition": {
            "sections": [
                {
                    "title": "Contact",
                    "columns": 1,
                    "fields": [{"id": fid, "label": "stale", "is_visible": visible.get(fid, True)} for fid in field_ids],
                }
            ]
        },
    }


class TestFormRenderer(unittest.TestCase):
    def test_without_layout_single_section_of_form_fields(self) -> None:
        form = build_form(FIELDS)
        self.assertIsNone(form["layout_id"])
        self.assertEqual(len(form["sections"]), 1)
        section = form["sections"][0]
        self.assertEqual(section["columns"], 2)
        self.assertEqual([w["name"] for w in section["fields"]], ["name", "email", "notes", "active"])
        self.assertEqual(form["values"]["active"], "true")

    def test_widgets_by_type(self) -> None:
        self.assertEqual(widget_for(FIELDS[0])["input_type"], "email")
        self.assertIsNotNone(widget_for(FIELDS[0])["pattern"])
        self.assertEqual(widget_for(FIELDS[2])["widget"], "textarea")
        radio = widget_for({"name": "tier", "type": "radio", "options": [{"label": "Gold", "value": "gold"}]})
        self.assertEqual(radio["options"], [{"label": "Gold", "value": "gold"}])
        self.assertEqual(widget_for({"name": "when", "type": "datetime"})["input_type"], "datetime-local")

    def test_stale_layout_reference_is_skipped(self) -> None:
        form = build_form(FIELDS, [_layout(["f1", "deleted", "f2"])])
        names = [w["name"] for w in form["sections"][0]["fields"]]
        self.assertEqual(names, ["name", "email"])
        self.assertEqual(form["sections"][0]["fields"][0]["label"], "Name")

    def test_hidden_fields_not_rendered(self) -> None:
        form = build_form(FIELDS, [_layout(["f1", "f2"], visible={"f2": False})])
        self.assertEqual([w["name"] for w in form["sections"][0]["fields"]], ["name"])

    def test_existing_record_values(self) -> None:
        form = build_form(FIELDS, record={"id": "r1", "name": "Ada", "active": False})
        self.assertEqual(form["record_id"], "r1")
        self.assertEqual(form["values"]["name"], "Ada")
        self.assertIs(form["values"]["active"], False)
        self.assertIsNone(form["values"]["email"])

    def test_reconcile_refreshes_and_reports_dropped(self) -> None:
        definition, dropped = reconcile_definition(_layout(["f1", "gone"], visible={"f1": False})["definition"], FIELDS)
        self.assertEqual(dropped, ["gone"])
        ref = definition["sections"][0]["fields"][0]
        self.assertEqual(ref["label"], "Name")
        self.assertTrue(ref["is_required"])
        self.assertFalse(ref["is_visible"])

    def test_unchecked_checkbox_is_false(self) -> None:
        data = coerce_form_data(FIELDS, {"name": "Ada", "created_by": "x"})
        self.assertEqual(data, {"name": "Ada", "active": False})

    def test_validate_form_maps_errors_by_field(self) -> None:
        by_field, errors, _ = validate_form(FIELDS, {"email": "bad"}, for_create=True)
        self.assertEqual(by_field, {"name": "Name is required", "email": "Invalid email address"})
        self.assertEqual(len(errors), 2)

    def test_validate_form_accepts_system_values(self) -> None:
        by_field, errors, clean = validate_form(
            FIELDS, {"name": "Ada", "active": "on"}, for_create=True, system_values={"created_by": "u1"}
        )
        self.assertEqual(errors, [])
        self.assertEqual(clean["created_by"], "u1")
        self.assertIs(clean["active"], True)


if __name__ == "__main__":
    unittest.main()
