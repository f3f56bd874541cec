import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.records_validation import validate_and_normalize
from app.render import (
    PLACEHOLDER,
    LookupResolver,
    display_name,
    format_field_value,
    hidden_fields,
    record_link,
    render_detail,
    render_form,
    validate_form,
)
from app.schema import NotFoundError, Record
from schema_fixtures import account_definition, deal_store


def _record(obj, payload: dict, **extra) -> Record:
    result = validate_and_normalize(obj, payload)
    assert result.ok, result.errors
    return Record(id="r1", object_id=obj.id, data=result.data, **extra)


def _by_name(view) -> dict:
    return {f.api_name: f for f in view.fields}


class TestRenderDetail(unittest.TestCase):
    def setUp(self) -> None:
        self.store = deal_store()
        self.deal = self.store.snapshot().get_object("Deal")

    def test_detail_view(self) -> None:
        record = _record(self.deal, {"dealName": "Acme", "stage": "Prospecting", "amount": 1500, "contactEmail": "ada@example.com"})
        view = render_detail(self.deal, record)
        self.assertTrue(view.configured)
        self.assertEqual(view.mode, "detail")
        self.assertEqual(view.layout_name, "Deal Layout")
        fields = _by_name(view)
        self.assertEqual(fields["stage"].display, "Prospecting")
        self.assertEqual(fields["amount"].display, "1500.00")
        self.assertEqual(fields["weighted"].display, "3000")
        self.assertTrue(fields["weighted"].read_only)
        self.assertEqual(fields["contactEmail"].link, "mailto:ada@example.com")
        self.assertEqual(fields["dealCode"].display, PLACEHOLDER)
        self.assertEqual(fields["stage"].options, ["Prospecting", "Negotiation", "Closed Won", "Closed Lost"])

    def test_visibility_follows_record_values(self) -> None:
        open_deal = _record(self.deal, {"dealName": "Acme", "stage": "Prospecting"})
        view = render_detail(self.deal, open_deal)
        self.assertIn("lossReason", view.hidden_fields)
        self.assertNotIn("lossReason", _by_name(view))
        row = view.tabs[0].sections[0].rows[1]
        self.assertEqual(row[0].api_name, "stage")
        self.assertIsNone(row[1])

        lost_deal = _record(self.deal, {"dealName": "Acme", "stage": "Closed Lost", "lossReason": "Budget"})
        view = render_detail(self.deal, lost_deal)
        self.assertEqual(view.hidden_fields, [])
        self.assertEqual(_by_name(view)["lossReason"].display, "Budget")

    def test_section_visibility_hides_section(self) -> None:
        layout = self.store.add_layout(
            "Deal",
            {
                "name": "Won Details",
                "tabs": [
                    {
                        "label": "Main",
                        "sections": [
                            {"label": "Basics", "columns": 1, "fields": ["dealName"]},
                            {
                                "label": "Won",
                                "columns": 1,
                                "fields": ["amount"],
                                "visibleIf": [{"left": "stage", "op": "==", "right": "Closed Won"}],
                            },
                        ],
                    }
                ],
            },
        )
        deal = self.store.snapshot().get_object("Deal")
        record = _record(deal, {"dealName": "Acme", "stage": "Prospecting", "amount": 5}, page_layout_id=layout["id"])
        view = render_detail(deal, record)
        self.assertEqual([s.label for s in view.tabs[0].sections], ["Basics"])
        self.assertEqual(view.hidden_fields, ["amount"])

    def test_unconfigured_object_renders_flat(self) -> None:
        for layout in self.deal.page_layouts:
            self.store.delete_layout("Deal", layout.id)
        deal = self.store.snapshot().get_object("Deal")
        record = _record(deal, {"dealName": "Acme", "stage": "Prospecting"})
        with self.assertLogs("crm.render", level="INFO"):
            view = render_detail(deal, record)
        self.assertFalse(view.configured)
        self.assertEqual(view.tabs, [])
        self.assertIn("dealName", _by_name(view))
        self.assertEqual(view.to_dict()["configured"], False)

    def test_lookup_labels_and_links(self) -> None:
        self.store.create_object(account_definition())
        self.store.add_field("Deal", {"apiName": "account", "label": "Account", "type": "Lookup", "lookupObject": "Account"})
        deal = self.store.snapshot().get_object("Deal")
        calls = []

        def fetch(object_api_name, record_id):
            calls.append((object_api_name, record_id))
            if record_id == "acc-1":
                return {"accountName": "Acme Ltd"}
            raise NotFoundError("record", record_id)

        resolver = LookupResolver(fetch)
        view = render_detail(deal, _record(deal, {"dealName": "A", "stage": "Prospecting", "account": "acc-1"}), lookup=resolver)
        account = _by_name(view)["account"]
        self.assertEqual((account.display, account.link), ("Acme Ltd", "/accounts/acc-1"))
        render_detail(deal, _record(deal, {"dealName": "B", "stage": "Prospecting", "account": "acc-1"}), lookup=resolver)
        self.assertEqual(calls, [("Account", "acc-1")])
        self.assertEqual(resolver.resolve("Account", "acc-9"), ("acc-9", "/accounts/acc-9"))
        self.assertEqual(resolver.resolve("Account", None), (PLACEHOLDER, None))


class TestRenderForm(unittest.TestCase):
    def setUp(self) -> None:
        self.store = deal_store()

    def test_form_uses_layout_for_type(self) -> None:
        deal = self.store.snapshot().get_object("Deal")
        self.assertEqual(render_form(deal).layout_name, "Deal Layout")
        self.store.add_layout(
            "Deal",
            {"name": "Quick Create", "layoutType": "create", "tabs": [{"label": "Main", "sections": [{"label": "S", "columns": 1, "fields": ["dealName", "stage"]}]}]},
        )
        deal = self.store.snapshot().get_object("Deal")
        view = render_form(deal, {"stage": "Negotiation"})
        self.assertEqual(view.mode, "form")
        self.assertEqual(view.layout_name, "Quick Create")
        self.assertEqual([f.api_name for f in view.fields], ["dealName", "stage"])
        self.assertEqual(_by_name(view)["stage"].display, "Negotiation")
        self.assertTrue(_by_name(view)["dealName"].required)

    def test_validate_form(self) -> None:
        deal = self.store.snapshot().get_object("Deal")
        layout = deal.page_layouts[0]
        errors = validate_form(deal, layout, {"stage": "Prospecting", "contactEmail": "bad"})
        self.assertEqual(
            errors,
            {"dealName": "Deal Name is required", "contactEmail": "Contact Email must be a valid email address"},
        )
        self.assertEqual(validate_form(deal, layout, {"dealName": "Acme", "stage": "Prospecting"}), {})

    def test_hidden_fields_without_layout(self) -> None:
        deal = self.store.snapshot().get_object("Deal")
        self.assertEqual(hidden_fields(deal, None, {"stage": '["Prospecting"]'}), ["lossReason"])
        self.assertEqual(hidden_fields(deal, None, {"stage": ["Closed Lost"]}), [])


class TestFormatting(unittest.TestCase):
    def test_format_field_value(self) -> None:
        self.assertEqual(format_field_value(None), PLACEHOLDER)
        self.assertEqual(format_field_value(""), PLACEHOLDER)
        self.assertEqual(format_field_value(True), "true")
        self.assertEqual(format_field_value(False), "false")
        self.assertEqual(format_field_value(2.0), "2")
        self.assertEqual(format_field_value(["vip", "partner"]), "vip, partner")
        self.assertEqual(format_field_value({"latitude": 51.5, "longitude": -0.12}), "51.5, -0.12")
        self.assertEqual(format_field_value({"latitude": 51.5, "longitude": None}), PLACEHOLDER)
        self.assertEqual(format_field_value({"street": "1 High St", "city": "Leeds", "state": ""}), "1 High St, Leeds")
        self.assertEqual(format_field_value({"firstName": "Ada", "lastName": "Lovelace"}), "Ada Lovelace")
        self.assertEqual(format_field_value({"other": 1}), '{"other": 1}')

    def test_display_name(self) -> None:
        self.assertEqual(display_name("Contact", {"name": {"salutation": "Dr", "firstName": "Ada", "lastName": "Lovelace"}}), "Dr Ada Lovelace")
        self.assertEqual(display_name("Contact", {"firstName": "Ada"}), "Ada")
        self.assertEqual(display_name("Contact", {"email": "ada@example.com"}), "ada@example.com")
        self.assertEqual(display_name("Account", {"accountNumber": "A-7"}), "A-7")
        self.assertEqual(display_name("Widget", {"title": "Sprocket"}), "Sprocket")
        self.assertIsNone(display_name("Widget", {"colour": "red"}))
        self.assertIsNone(display_name("Widget", None))

    def test_record_link(self) -> None:
        self.assertEqual(record_link("Deal", "d1"), "/deals/d1")
        self.assertEqual(record_link("Widget", "w1"), "/objects/widget/w1")
        self.assertIsNone(record_link("Deal", None))


if __name__ == "__main__":
    unittest.main()
