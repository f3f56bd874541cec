import os
import sys
import unittest
import uuid

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

USE_DB = os.getenv("USE_DB", "0") == "1"
DB_URL = os.getenv("DATABASE_URL")

if USE_DB and DB_URL:
    from app.db import get_db_stats
    from app.schema import NotFoundError
    from app.stores import ConflictError
    from app.stores_db import DbSchemaRepository, db_record_store
    from schema_fixtures import deal_definition
    from schema_store import SchemaStore


@unittest.skipUnless(USE_DB and DB_URL, "DB store tests require USE_DB=1 and DATABASE_URL")
class TestDbRecordStore(unittest.TestCase):
    def setUp(self) -> None:
        self.schema = SchemaStore()
        self.schema.create_object(deal_definition(f"Deal{uuid.uuid4().hex[:8]}"))
        self.records = db_record_store(self.schema.snapshot)
        self.deal = self.schema.snapshot().objects[0]

    def test_create_update_delete(self) -> None:
        before = get_db_stats()["queries"]
        record = self.records.create_record(self.deal, {"dealName": "Acme", "amount": 10}, actor={"id": "u1"})
        self.assertGreater(get_db_stats()["queries"], before)
        self.assertEqual(self.records.get_record(self.deal, record.id).data, {"dealName": "Acme", "amount": 10})
        updated = self.records.update_record_merge(self.deal, record.id, {"amount": 20}, expected_version=1)
        self.assertEqual((updated.data["dealName"], updated.data["amount"], updated.version), ("Acme", 20, 2))
        with self.assertRaises(ConflictError):
            self.records.update_record_merge(self.deal, record.id, {"amount": 30}, expected_version=1)
        self.records.delete_record(self.deal, record.id)
        with self.assertRaises(NotFoundError):
            self.records.get_record(self.deal, record.id)

    def test_unique_index(self) -> None:
        self.records.create_record(self.deal, {"dealName": "A", "dealCode": "D-1"})
        with self.assertRaises(ConflictError) as ctx:
            self.records.create_record(self.deal, {"dealName": "B", "dealCode": "D-1"})
        self.assertEqual(ctx.exception.code, "RECORD_UNIQUE_VIOLATION")

    def test_schema_versions_round_trip(self) -> None:
        repo = DbSchemaRepository()
        version, _ = repo.load_latest()
        repo.save(version + 1, [o for o in self.schema.list_objects()])
        loaded_version, objects = repo.load_latest()
        self.assertEqual(loaded_version, version + 1)
        self.assertEqual([o["apiName"] for o in objects], [self.deal.api_name])


if __name__ == "__main__":
    unittest.main()
