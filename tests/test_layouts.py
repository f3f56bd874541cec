import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.layouts import fields_for_layout, layout_field_grid, layout_for_type, resolve_layout
from app.schema import LayoutField, LayoutSection, Record
from schema_fixtures import account_definition, deal_store


def _layout_def(name: str, fields: list, layout_type: str = "edit", is_default: bool = False) -> dict:
    return {
        "name": name,
        "layoutType": layout_type,
        "isDefault": is_default,
        "tabs": [{"label": "Main", "sections": [{"label": "S", "columns": 1, "fields": fields}]}],
    }


class TestResolveLayout(unittest.TestCase):
    def setUp(self) -> None:
        self.store = deal_store()
        self.compact = self.store.add_layout("Deal", _layout_def("Compact", ["dealName"]))
        self.create = self.store.add_layout("Deal", _layout_def("Quick Create", ["dealName", "stage"], "create", True))
        self.deal = self.store.snapshot().get_object("Deal")
        self.default_layout = self.deal.page_layouts[0]

    def test_record_layout_wins(self) -> None:
        record = Record(id="r1", object_id=self.deal.id, page_layout_id=self.compact["id"])
        self.assertEqual(resolve_layout(record, self.deal).name, "Compact")

    def test_mapping_records_are_accepted(self) -> None:
        self.assertEqual(resolve_layout({"pageLayoutId": self.compact["id"]}, self.deal).name, "Compact")

    def test_record_type_layout(self) -> None:
        self.store.add_record_type("Deal", {"name": "Small", "pageLayoutId": self.compact["id"]})
        deal = self.store.snapshot().get_object("Deal")
        small = deal.record_types[-1]
        record = Record(id="r1", object_id=deal.id, record_type_id=small.id)
        self.assertEqual(resolve_layout(record, deal).name, "Compact")

    def test_falls_back_to_default_record_type(self) -> None:
        self.assertEqual(resolve_layout(None, self.deal).name, "Deal Layout")
        self.assertEqual(resolve_layout(Record(id="r1", object_id=self.deal.id, page_layout_id="gone"), self.deal).name, "Deal Layout")

    def test_inactive_record_layout_is_skipped(self) -> None:
        self.store.delete_layout("Deal", self.compact["id"])
        deal = self.store.snapshot().get_object("Deal")
        record = Record(id="r1", object_id=deal.id, page_layout_id=self.compact["id"])
        self.assertEqual(resolve_layout(record, deal).name, "Deal Layout")

    def test_first_active_layout_without_record_types(self) -> None:
        self.store.delete_layout("Deal", self.default_layout.id)
        deal = self.store.snapshot().get_object("Deal")
        self.assertEqual(resolve_layout(None, deal).name, "Compact")

    def test_no_layouts(self) -> None:
        for layout in self.deal.page_layouts:
            self.store.delete_layout("Deal", layout.id)
        self.assertIsNone(resolve_layout(None, self.store.snapshot().get_object("Deal")))

    def test_resolution_is_idempotent(self) -> None:
        record = {"recordTypeId": self.deal.record_types[0].id}
        self.assertIs(resolve_layout(record, self.deal), resolve_layout(record, self.deal))

    def test_layout_for_type(self) -> None:
        self.assertEqual(layout_for_type(self.deal, "create").name, "Quick Create")
        self.assertEqual(layout_for_type(self.deal, "edit").name, "Deal Layout")


class TestLayoutFields(unittest.TestCase):
    def test_fields_stay_within_object(self) -> None:
        store = deal_store()
        store.create_object(account_definition())
        snapshot = store.snapshot()
        deal, account = snapshot.get_object("Deal"), snapshot.get_object("Account")
        deal_layout = deal.page_layouts[0]
        self.assertEqual([f.api_name for f in fields_for_layout(deal_layout, deal)][:2], ["dealName", "amount"])
        self.assertTrue(all(f.object_id == deal.id for f in fields_for_layout(deal_layout, deal)))
        self.assertEqual(fields_for_layout(deal_layout, account), [])
        self.assertEqual(fields_for_layout(None, deal), [])

    def test_inactive_fields_drop_out(self) -> None:
        store = deal_store()
        store.delete_field("Deal", "amount")
        deal = store.snapshot().get_object("Deal")
        self.assertNotIn("amount", [f.api_name for f in fields_for_layout(deal.page_layouts[0], deal)])


class TestGrid(unittest.TestCase):
    def test_rows_and_collisions(self) -> None:
        section = LayoutSection(
            id="s",
            label="S",
            columns=2,
            fields=(
                LayoutField("a", "a", column=0, order=0),
                LayoutField("b", "b", column=1, order=1),
                LayoutField("c", "c", column=5, order=2),
                LayoutField("d", "d", column=0, order=3),
            ),
        )
        grid = layout_field_grid(section)
        self.assertEqual([[ref.api_name if ref else None for ref in row] for row in grid], [["a", "b"], ["c", None], ["d", None]])

    def test_empty_section(self) -> None:
        self.assertEqual(layout_field_grid(LayoutSection(id="s", label="S")), [])


if __name__ == "__main__":
    unittest.main()
