import unittest
from unittest import mock

from api_harness import OTHER_TOKEN, OWNER_SUBJECT, ApiTestCase

from services.errors import (
    GEAR_NOT_FOUND_MESSAGE,
    GEAR_NOT_FREE_MESSAGE,
    GEAR_NOT_RELATED_MESSAGE,
    RENTAL_NOT_FOUND_MESSAGE,
    StorageError,
)
from services.relationship_service import find_relationship_drift
from services.repository import GEAR, RENTALS, USERS, get_gear, get_user, save_record


class AttachDetachTests(ApiTestCase):
    def assertConsistent(self):
        self.assertEqual(find_relationship_drift(self.db), [])

    def test_attach_links_both_sides(self):
        rental = self.post_rental()
        gear = self.post_gear("Tent", "Shelter")

        response = self.attach(rental["id"], gear["id"])
        self.assertEqual(response.status_code, 204)

        fetched_gear = self.fetch_gear(gear["id"])
        self.assertFalse(fetched_gear["available"])
        self.assertEqual(fetched_gear["rental"], rental["id"])
        fetched_rental = self.fetch_rental(rental["id"])
        self.assertEqual(fetched_rental["gear"], [{"id": gear["id"], "item description": "Tent"}])
        self.assertConsistent()

    def test_attach_rented_gear_is_rejected(self):
        first = self.post_rental(name="First")
        second = self.post_rental(name="Second")
        gear = self.post_gear()
        self.assertEqual(self.attach(first["id"], gear["id"]).status_code, 204)

        response = self.attach(second["id"], gear["id"])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"Error": GEAR_NOT_FREE_MESSAGE})
        self.assertEqual(self.fetch_rental(second["id"])["gear"], [])
        self.assertEqual(self.fetch_gear(gear["id"])["rental"], first["id"])

    def test_detach_frees_gear(self):
        rental = self.post_rental()
        gear = self.post_gear()
        self.attach(rental["id"], gear["id"])

        response = self.detach(rental["id"], gear["id"])
        self.assertEqual(response.status_code, 204)
        fetched_gear = self.fetch_gear(gear["id"])
        self.assertTrue(fetched_gear["available"])
        self.assertIsNone(fetched_gear["rental"])
        self.assertEqual(self.fetch_rental(rental["id"])["gear"], [])
        self.assertConsistent()

    def test_detach_unrelated_gear_is_rejected(self):
        rental = self.post_rental()
        gear = self.post_gear()
        response = self.detach(rental["id"], gear["id"])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"Error": GEAR_NOT_RELATED_MESSAGE})

    def test_gear_is_checked_before_rental(self):
        response = self.attach(777, 888)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"Error": GEAR_NOT_FOUND_MESSAGE})

        gear = self.post_gear()
        response = self.attach(777, gear["id"])
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"Error": RENTAL_NOT_FOUND_MESSAGE})

    def test_only_the_owner_can_attach(self):
        rental = self.post_rental()
        gear = self.post_gear()
        self.assertEqual(self.attach(rental["id"], gear["id"], token=OTHER_TOKEN).status_code, 403)
        self.assertEqual(self.client.put(f"/rentals/{rental['id']}/gear/{gear['id']}").status_code, 401)
        self.assertTrue(self.fetch_gear(gear["id"])["available"])

    def test_description_change_propagates_to_rental(self):
        rental = self.post_rental()
        gear = self.post_gear("Tent", "Shelter")
        self.attach(rental["id"], gear["id"])

        response = self.client.patch(f"/gear/{gear['id']}", json={"item description": "Dome tent"})
        self.assertEqual(response.status_code, 303)
        self.assertEqual(
            self.fetch_rental(rental["id"])["gear"],
            [{"id": gear["id"], "item description": "Dome tent"}],
        )
        fetched_gear = self.fetch_gear(gear["id"])
        self.assertFalse(fetched_gear["available"])
        self.assertEqual(fetched_gear["rental"], rental["id"])
        self.assertConsistent()


class DeletePropagationTests(ApiTestCase):
    def test_delete_rental_frees_gear_and_unlists_it(self):
        rental = self.post_rental(name="Cascade")
        keep = self.post_rental(name="Keep")
        tent = self.post_gear("Tent", "Shelter")
        stove = self.post_gear("Stove", "Kitchen")
        self.attach(rental["id"], tent["id"])
        self.attach(rental["id"], stove["id"])

        response = self.client.delete(f"/rentals/{rental['id']}", headers=self.auth())
        self.assertEqual(response.status_code, 204)

        for gear_id in (tent["id"], stove["id"]):
            fetched = self.fetch_gear(gear_id)
            self.assertTrue(fetched["available"])
            self.assertIsNone(fetched["rental"])
        user = get_user(self.db, OWNER_SUBJECT)
        self.assertEqual([entry["id"] for entry in user["rentals"]], [keep["id"]])
        self.assertEqual(self.client.get(f"/rentals/{rental['id']}", headers=self.auth()).status_code, 404)
        self.assertEqual(find_relationship_drift(self.db), [])

    def test_second_delete_is_not_found_and_changes_nothing(self):
        rental = self.post_rental()
        gear = self.post_gear()
        self.attach(rental["id"], gear["id"])
        self.assertEqual(self.client.delete(f"/rentals/{rental['id']}", headers=self.auth()).status_code, 204)

        gear_before = self.fetch_gear(gear["id"])
        user_before = get_user(self.db, OWNER_SUBJECT)
        response = self.client.delete(f"/rentals/{rental['id']}", headers=self.auth())
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.fetch_gear(gear["id"]), gear_before)
        self.assertEqual(get_user(self.db, OWNER_SUBJECT), user_before)

    def test_freed_gear_can_join_another_rental(self):
        first = self.post_rental(name="First")
        second = self.post_rental(name="Second")
        gear = self.post_gear()
        self.attach(first["id"], gear["id"])
        self.client.delete(f"/rentals/{first['id']}", headers=self.auth())

        self.assertEqual(self.attach(second["id"], gear["id"]).status_code, 204)
        self.assertEqual(self.fetch_gear(gear["id"])["rental"], second["id"])

    def test_delete_attached_gear_unlists_it(self):
        rental = self.post_rental()
        tent = self.post_gear("Tent", "Shelter")
        stove = self.post_gear("Stove", "Kitchen")
        self.attach(rental["id"], tent["id"])
        self.attach(rental["id"], stove["id"])

        self.assertEqual(self.client.delete(f"/gear/{tent['id']}").status_code, 204)
        self.assertEqual(
            self.fetch_rental(rental["id"])["gear"],
            [{"id": stove["id"], "item description": "Stove"}],
        )
        self.assertEqual(find_relationship_drift(self.db), [])


class PartialWriteTests(ApiTestCase):
    """A datastore failure after the first write leaves that write in place."""

    def failing_writes(self, kind: str):
        def _save(db, record_kind, record):
            if record_kind == kind:
                raise StorageError()
            return save_record(db, record_kind, record)

        return mock.patch("services.relationship_service.save_record", side_effect=_save)

    def assertStorageFailure(self, response):
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"Error": "The datastore could not complete the request."})

    def test_attach_keeps_gear_claim_when_rental_listing_fails(self):
        rental = self.post_rental()
        gear = self.post_gear("Tent", "Shelter")

        with self.failing_writes(RENTALS):
            response = self.attach(rental["id"], gear["id"])
        self.assertStorageFailure(response)

        fetched_gear = self.fetch_gear(gear["id"])
        self.assertFalse(fetched_gear["available"])
        self.assertEqual(fetched_gear["rental"], rental["id"])
        self.assertEqual(self.fetch_rental(rental["id"])["gear"], [])
        self.assertEqual(len(find_relationship_drift(self.db)), 1)

    def test_rename_keeps_new_name_when_owner_summary_fails(self):
        rental = self.post_rental(name="Old name")

        with self.failing_writes(USERS):
            response = self.client.patch(
                f"/rentals/{rental['id']}",
                json={"name": "New name"},
                headers=self.auth(),
            )
        self.assertStorageFailure(response)

        self.assertEqual(self.fetch_rental(rental["id"])["name"], "New name")
        user = get_user(self.db, OWNER_SUBJECT)
        self.assertEqual(user["rentals"], [{"id": rental["id"], "name": "Old name"}])

    def test_delete_keeps_freed_gear_when_owner_summary_fails(self):
        rental = self.post_rental()
        gear = self.post_gear("Tent", "Shelter")
        self.attach(rental["id"], gear["id"])

        with self.failing_writes(USERS):
            response = self.client.delete(f"/rentals/{rental['id']}", headers=self.auth())
        self.assertStorageFailure(response)

        fetched_gear = self.fetch_gear(gear["id"])
        self.assertTrue(fetched_gear["available"])
        self.assertIsNone(fetched_gear["rental"])
        self.assertEqual(self.client.get(f"/rentals/{rental['id']}", headers=self.auth()).status_code, 200)
        user = get_user(self.db, OWNER_SUBJECT)
        self.assertEqual([entry["id"] for entry in user["rentals"]], [rental["id"]])


class DriftReportTests(ApiTestCase):
    def test_reports_gear_missing_from_rental_summary(self):
        rental = self.post_rental()
        gear = self.post_gear()
        stored = get_gear(self.db, gear["id"])
        stored["rental"] = rental["id"]
        stored["available"] = False
        save_record(self.db, GEAR, stored)

        problems = find_relationship_drift(self.db)
        self.assertEqual(problems, [f"gear {gear['id']}: not listed on rental {rental['id']}"])

    def test_reports_availability_mismatch(self):
        gear = self.post_gear()
        stored = get_gear(self.db, gear["id"])
        stored["available"] = False
        save_record(self.db, GEAR, stored)

        problems = find_relationship_drift(self.db)
        self.assertEqual(len(problems), 1)
        self.assertIn("available=False", problems[0])


if __name__ == "__main__":
    unittest.main()
