import base64
import json
import unittest
from unittest import mock

from sqlalchemy.dialects import mssql, postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.schema import CreateIndex

from api_harness import OWNER_SUBJECT, ApiTestCase

from services.datastore_service import (
    DuplicateKeyError,
    EntityMissingError,
    MAX_ENTITY_ID,
    InvalidCursorError,
    StaleEntityError,
    create_entity,
    decode_cursor,
    delete_entity,
    encode_cursor,
    get_entity,
    list_filtered_entities,
    page_entities,
    replace_entity,
)
from models.datastore_models import Entity
from services.errors import StorageError, VersionConflictError
from services.google_identity_service import IdentityClaims
from services.relationship_service import RelationshipContext, attach_gear, update_rental
from services.repository import create_gear, get_gear, get_rental


class CursorTests(unittest.TestCase):
    def test_cursor_is_opaque_and_reversible(self):
        cursor = encode_cursor(42)
        self.assertNotIn("=", cursor)
        self.assertEqual(decode_cursor(cursor), 42)

    def test_garbage_cursor_is_rejected(self):
        for cursor in ("", "not base64!", encode_cursor(1)[:-2] + "??"):
            with self.assertRaises(InvalidCursorError):
                decode_cursor(cursor)

    def test_cursor_beyond_id_range_is_rejected(self):
        for after in (MAX_ENTITY_ID + 1, 2**70, -1, True, "5"):
            cursor = base64.urlsafe_b64encode(json.dumps({"after": after}).encode("utf-8")).decode("ascii")
            with self.subTest(after=after):
                with self.assertRaises(InvalidCursorError):
                    decode_cursor(cursor)
        self.assertEqual(decode_cursor(encode_cursor(MAX_ENTITY_ID)), MAX_ENTITY_ID)


class DatastoreAdapterTests(ApiTestCase):
    def test_named_and_numeric_ids(self):
        user = create_entity(self.db, "users", {"First Name": "Ada"}, key_name="sub-1")
        gear = create_entity(self.db, "gear", {"category": "Shelter"})
        self.assertEqual(user["id"], "sub-1")
        self.assertIsInstance(gear["id"], int)
        self.assertEqual(get_entity(self.db, "users", "sub-1", named=True)["First Name"], "Ada")
        self.assertEqual(get_entity(self.db, "gear", str(gear["id"]))["category"], "Shelter")
        self.assertIsNone(get_entity(self.db, "gear", "sub-1"))
        self.assertIsNone(get_entity(self.db, "users", gear["id"], named=True))

    def test_ids_outside_column_range_are_not_found(self):
        for entity_id in ("99999999999999999999", 2**70, MAX_ENTITY_ID + 1, "\u00b2", "-1"):
            with self.subTest(entity_id=entity_id):
                self.assertIsNone(get_entity(self.db, "gear", entity_id))
                self.assertFalse(delete_entity(self.db, "gear", entity_id))

    def test_duplicate_key_name_is_rejected(self):
        create_entity(self.db, "users", {}, key_name="sub-1")
        with self.assertRaises(DuplicateKeyError):
            create_entity(self.db, "users", {}, key_name="sub-1")

    def test_unnamed_records_do_not_collide_on_key(self):
        for _ in range(3):
            create_entity(self.db, "gear", {"category": "Shelter"})
        self.assertEqual(len(list_filtered_entities(self.db, "gear", "category", "Shelter")), 3)

    def test_integrity_failure_on_unnamed_record_is_a_storage_error(self):
        failure = IntegrityError("INSERT INTO Entities", {}, Exception("constraint failed"))
        with mock.patch.object(self.db, "commit", side_effect=failure):
            with self.assertRaises(StorageError):
                create_entity(self.db, "gear", {"category": "Shelter"})

        response = self.client.get("/gear")
        self.assertEqual(response.json()["total"], 0)

    def test_key_index_only_covers_named_records(self):
        index = next(index for index in Entity.__table__.indexes if index.name == "uq_entities_kind_keyname")
        self.assertTrue(index.unique)
        for dialect in (mssql.dialect(), postgresql.dialect(), sqlite.dialect()):
            with self.subTest(dialect=dialect.name):
                ddl = str(CreateIndex(index).compile(dialect=dialect))
                self.assertIn("WHERE", ddl)
                self.assertIn("IS NOT NULL", ddl)

    def test_stale_replace_is_refused(self):
        created = create_entity(self.db, "gear", {"category": "Shelter"})
        first = dict(created, category="Camp")
        second = dict(created, category="Kitchen")

        saved = replace_entity(self.db, "gear", first)
        self.assertEqual(saved["_version"], created["_version"] + 1)
        with self.assertRaises(StaleEntityError):
            replace_entity(self.db, "gear", second)
        self.assertEqual(get_entity(self.db, "gear", created["id"])["category"], "Camp")

    def test_replace_strips_reserved_fields_from_payload(self):
        created = create_entity(self.db, "gear", {"category": "Shelter"})
        replace_entity(self.db, "gear", dict(created, category="Camp"))
        stored = get_entity(self.db, "gear", created["id"])
        self.assertEqual(set(stored), {"category", "id", "_version"})

    def test_replace_of_deleted_record(self):
        created = create_entity(self.db, "gear", {"category": "Shelter"})
        delete_entity(self.db, "gear", created["id"])
        with self.assertRaises(EntityMissingError):
            replace_entity(self.db, "gear", created)

    def test_delete_checks_version_and_reports_missing(self):
        created = create_entity(self.db, "gear", {"category": "Shelter"})
        replace_entity(self.db, "gear", dict(created, category="Camp"))
        with self.assertRaises(StaleEntityError):
            delete_entity(self.db, "gear", created["id"], expected_version=created["_version"])
        self.assertTrue(delete_entity(self.db, "gear", created["id"]))
        self.assertFalse(delete_entity(self.db, "gear", created["id"]))
        self.assertFalse(delete_entity(self.db, "gear", "not-a-number"))

    def test_filtered_paging(self):
        for index in range(5):
            create_entity(self.db, "rentals", {"user": "a" if index % 2 == 0 else "b", "name": str(index)})
        first, cursor = page_entities(self.db, "rentals", 2, field="user", value="a")
        self.assertEqual([item["name"] for item in first], ["0", "2"])
        second, cursor = page_entities(self.db, "rentals", 2, cursor=cursor, field="user", value="a")
        self.assertEqual([item["name"] for item in second], ["4"])
        self.assertIsNone(cursor)
        self.assertEqual(len(list_filtered_entities(self.db, "rentals", "user", "b")), 2)

    def test_filters_on_null_and_boolean_values(self):
        create_entity(self.db, "gear", {"available": True, "rental": None})
        create_entity(self.db, "gear", {"available": False, "rental": 7})
        self.assertEqual(len(list_filtered_entities(self.db, "gear", "available", True)), 1)
        self.assertEqual(len(list_filtered_entities(self.db, "gear", "rental", 7)), 1)


class ConcurrentWriteTests(ApiTestCase):
    def test_second_attach_from_stale_read_conflicts(self):
        owner = IdentityClaims(subject=OWNER_SUBJECT, given_name="Ada", family_name="Lovelace")
        first_rental = self.post_rental(name="First")
        second_rental = self.post_rental(name="Second")
        gear = create_gear(self.db, {"item description": "Tent", "category": "Shelter"})

        # Both requests read the gear while it was still free.
        first_ctx = RelationshipContext(owner.subject, get_rental(self.db, first_rental["id"]), get_gear(self.db, gear["id"]))
        second_ctx = RelationshipContext(owner.subject, get_rental(self.db, second_rental["id"]), get_gear(self.db, gear["id"]))

        attach_gear(self.db, first_ctx)
        with self.assertRaises(VersionConflictError):
            attach_gear(self.db, second_ctx)

        self.assertEqual(get_gear(self.db, gear["id"])["rental"], first_rental["id"])
        self.assertEqual(get_rental(self.db, second_rental["id"])["gear"], [])

    def test_rental_update_from_stale_read_conflicts(self):
        rental = self.post_rental(name="Original")
        stale = get_rental(self.db, rental["id"])
        self.client.patch(f"/rentals/{rental['id']}", json={"name": "Fresh"}, headers=self.auth())

        with self.assertRaises(VersionConflictError):
            update_rental(self.db, RelationshipContext(OWNER_SUBJECT, stale), {"name": "Stale"})
        self.assertEqual(get_rental(self.db, rental["id"])["name"], "Fresh")

    def test_attach_after_concurrent_edit_raises_409(self):
        rental = self.post_rental()
        gear = self.post_gear()
        stale = get_gear(self.db, gear["id"])
        self.client.patch(f"/gear/{gear['id']}", json={"category": "Camp"})

        with self.assertRaises(VersionConflictError) as caught:
            attach_gear(self.db, RelationshipContext(OWNER_SUBJECT, get_rental(self.db, rental["id"]), stale))
        self.assertEqual(caught.exception.status_code, 409)
        self.assertTrue(self.fetch_gear(gear["id"])["available"])


if __name__ == "__main__":
    unittest.main()
