"""Shared object definitions for the schema, record and render tests."""

import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from schema_store import SchemaStore


STAGES = ["Prospecting", "Negotiation", "Closed Won", "Closed Lost"]


def account_definition(api_name: str = "Account") -> dict:
    return {
        "apiName": api_name,
        "label": "Account",
        "pluralLabel": "Accounts",
        "fields": [
            {"apiName": "accountName", "label": "Account Name", "type": "Text", "required": True},
            {"apiName": "website", "label": "Website", "type": "URL"},
        ],
    }


def deal_definition(api_name: str = "Deal") -> dict:
    return {
        "apiName": api_name,
        "label": "Deal",
        "pluralLabel": "Deals",
        "fields": [
            {"apiName": "dealName", "label": "Deal Name", "type": "Text", "required": True, "maxLength": 80},
            {"apiName": "amount", "label": "Amount", "type": "Currency", "scale": 2, "min": 0},
            {"apiName": "stage", "label": "Stage", "type": "Picklist", "required": True, "picklistValues": list(STAGES)},
            {
                "apiName": "lossReason",
                "label": "Loss Reason",
                "type": "Text",
                "visibleIf": [{"left": "stage", "op": "==", "right": "Closed Lost"}],
            },
            {"apiName": "dealCode", "label": "Deal Code", "type": "Text", "unique": True},
            {"apiName": "tags", "label": "Tags", "type": "MultiPicklist", "picklistValues": ["vip", "partner", "renewal"]},
            {"apiName": "contactEmail", "label": "Contact Email", "type": "Email"},
            {"apiName": "source", "label": "Source", "type": "Text", "readOnly": True, "defaultValue": "Web"},
            {"apiName": "weighted", "label": "Weighted", "type": "Formula", "formulaExpr": "amount * 2"},
        ],
        "validationRules": [
            {
                "name": "AmountCap",
                "condition": "amount > 1000000",
                "errorMessage": "Amount too large",
                "errorField": "amount",
            }
        ],
    }


def deal_store() -> SchemaStore:
    store = SchemaStore()
    store.create_object(deal_definition(), actor={"id": "admin"})
    return store


def deal_object():
    return deal_store().snapshot().get_object("Deal")
