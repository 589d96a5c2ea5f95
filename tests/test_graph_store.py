"""Tests for the Neo4j store, run against a scripted fake driver."""

from __future__ import annotations

import pytest
from neo4j.exceptions import ServiceUnavailable

from src.services.graph_store import GraphStore, match_rank, rank_medications
from src.services.schedule import ScheduleEntry

VALID_SCHEDULE = {
    "schedule": ["08:00", "20:00"],
    "pillsPerDose": [1, 1],
    "days": ["Everyday"],
    "frequency": 2,
    "dosage": "500mg",
}


def _store(driver) -> GraphStore:
    return GraphStore(driver=driver, database="neo4j")


def _unavailable(*args, **kwargs):
    raise ServiceUnavailable("down")


# ── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    def test_requires_init_before_use(self):
        with pytest.raises(RuntimeError):
            GraphStore().get_user("u1")

    def test_close_closes_driver(self, fake_driver):
        driver = fake_driver()
        store = _store(driver)
        store.close()
        assert driver.closed

    def test_sessions_target_configured_database(self, fake_driver):
        driver = fake_driver([])
        _store(driver).get_user("u1")
        assert driver.session_kwargs == {"database": "neo4j"}

    def test_test_connection_success(self, fake_driver):
        assert _store(fake_driver([{"test": 1}])).test_connection() is True

    def test_test_connection_failure(self, fake_driver):
        driver = fake_driver()
        driver.tx.run = _unavailable
        assert _store(driver).test_connection() is False

    def test_ensure_schema_creates_constraints(self, fake_driver):
        driver = fake_driver()
        _store(driver).ensure_schema()
        statements = [cypher for cypher, _ in driver.calls]
        assert len(statements) == 3
        assert all("IF NOT EXISTS" in s for s in statements)


# ── Users ────────────────────────────────────────────────────────────


class TestCreateUser:
    def test_creates_user_with_first_email_and_phone(self, fake_driver):
        driver = fake_driver([{"n": 0}], [{"u": {"id": "u1"}}])
        user = _store(driver).create_user(
            "u1",
            first_name="Rosa",
            emails=["rosa@example.com", "other@example.com"],
            phones=["+13055550100"],
            role="Elder",
        )
        assert user == {"id": "u1"}
        cypher, params = driver.calls[1]
        assert "SET u:Elder" in cypher
        profile = params["profile"]
        assert profile["email"] == "rosa@example.com"
        assert profile["phone"] == "+13055550100"
        assert profile["pendingPhoneUpdate"] is False
        assert profile["language"] == "en"

    def test_missing_phone_marks_pending(self, fake_driver):
        driver = fake_driver([{"u": {"id": "u1"}}])
        _store(driver).create_user("u1", role="Caretaker")
        # No phone, so no uniqueness check is run
        assert len(driver.calls) == 1
        assert driver.calls[0][1]["profile"]["pendingPhoneUpdate"] is True

    def test_phone_owned_by_another_user_is_refused(self, fake_driver):
        driver = fake_driver([{"n": 1}])
        assert _store(driver).create_user("u2", phones=["+13055550100"]) is None
        assert len(driver.calls) == 1

    def test_unknown_role_is_not_used_as_label(self, fake_driver):
        driver = fake_driver([{"u": {"id": "u1"}}])
        _store(driver).create_user("u1", role="Admin")
        cypher, params = driver.calls[0]
        assert "SET u:Admin" not in cypher
        assert params["profile"]["role"] is None


class TestUserLookups:
    def test_get_user_not_found(self, fake_driver):
        assert _store(fake_driver([])).get_user("missing") is None

    def test_find_user_by_phone(self, fake_driver):
        driver = fake_driver([{"u": {"id": "u1", "phone": "+13055550100"}}])
        assert _store(driver).find_user_by_phone("+13055550100")["id"] == "u1"

    def test_find_user_by_empty_phone_skips_query(self, fake_driver):
        driver = fake_driver()
        assert _store(driver).find_user_by_phone("") is None
        assert driver.calls == []

    def test_duplicate_phone_returns_oldest(self, fake_driver):
        driver = fake_driver([{"u": {"id": "old"}}, {"u": {"id": "new"}}])
        assert _store(driver).find_user_by_phone("+13055550100")["id"] == "old"


class TestUpdateUser:
    def test_filters_unknown_fields_and_clears_pending_flag(self, fake_driver):
        driver = fake_driver([{"n": 0}], [{"u": {"id": "u1"}}])
        _store(driver).update_user("u1", {"phone": "+13055550100", "isAdmin": True})
        changes = driver.calls[1][1]["changes"]
        assert "isAdmin" not in changes
        assert changes["pendingPhoneUpdate"] is False
        assert "updatedAt" in changes

    def test_relabels_from_resulting_role(self, fake_driver):
        driver = fake_driver([{"u": {"id": "u1", "role": "Caretaker"}}])
        _store(driver).update_user("u1", {"role": "Caretaker"})
        cypher = driver.calls[0][0]
        assert "REMOVE u:Elder:Caretaker" in cypher
        assert "SET u:Caretaker" in cypher

    def test_clearing_phone_sets_pending_flag(self, fake_driver):
        driver = fake_driver([{"u": {"id": "u1", "phone": ""}}])
        _store(driver).update_user("u1", {"phone": ""})
        assert len(driver.calls) == 1
        changes = driver.calls[0][1]["changes"]
        assert changes["phone"] == ""
        assert changes["pendingPhoneUpdate"] is True

    def test_profile_update_leaves_pending_flag_alone(self, fake_driver):
        driver = fake_driver([{"u": {"id": "u1"}}])
        _store(driver).update_user("u1", {"firstName": "Rosita"})
        assert "pendingPhoneUpdate" not in driver.calls[0][1]["changes"]

    def test_phone_conflict_returns_none(self, fake_driver):
        driver = fake_driver([{"n": 1}])
        assert _store(driver).update_user("u1", {"phone": "+13055550100"}) is None

    def test_delete_user(self, fake_driver):
        assert _store(fake_driver([{"deleted": 1}])).delete_user("u1") is True
        assert _store(fake_driver([{"deleted": 0}])).delete_user("u1") is False


# ── Medications ──────────────────────────────────────────────────────


MEDICATIONS = [
    {"id": "1", "Name": "Aspirin Plus", "brandName": "", "genericName": ""},
    {"id": "2", "Name": "Baby Aspirin", "brandName": "", "genericName": ""},
    {"id": "3", "Name": "Aspirin", "brandName": "Bayer", "genericName": "acetylsalicylic acid"},
    {"id": "4", "Name": "Ecotrin", "brandName": "Aspirin EC", "genericName": ""},
    {"id": "5", "Name": "Salicylate", "brandName": "", "genericName": "aspirin"},
    {"id": "6", "Name": "Metformin", "brandName": "Glucophage", "genericName": "metformin"},
]


class TestRanking:
    def test_rank_order(self):
        ranked = rank_medications("aspirin", MEDICATIONS, limit=10)
        assert [m["id"] for m in ranked] == ["3", "1", "4", "5", "2"]

    def test_ties_break_alphabetically(self):
        candidates = [
            {"id": "b", "Name": "Zinc B"},
            {"id": "a", "Name": "Zinc A"},
        ]
        assert [m["id"] for m in rank_medications("zinc", candidates)] == ["a", "b"]

    def test_limit(self):
        assert len(rank_medications("aspirin", MEDICATIONS, limit=2)) == 2

    def test_non_matching_and_empty_query(self):
        assert match_rank("ibuprofen", MEDICATIONS[0]) is None
        assert rank_medications("  ", MEDICATIONS) == []


class TestMedications:
    def test_search_ranks_candidates(self, fake_driver):
        driver = fake_driver(MEDICATIONS)
        results = _store(driver).search_medications("Aspirin", limit=1)
        assert results[0]["id"] == "3"
        assert driver.calls[0][1]["q"] == "aspirin"

    def test_search_empty_query_skips_query(self, fake_driver):
        driver = fake_driver()
        assert _store(driver).search_medications("") == []
        assert driver.calls == []

    def test_create_reuses_exact_match(self, fake_driver):
        driver = fake_driver(MEDICATIONS)
        medication = _store(driver).create_medication("aspirin")
        assert medication["id"] == "3"
        assert len(driver.calls) == 1

    def test_create_new_medication(self, fake_driver):
        created = {"id": "new-id", "Name": "Lisinopril", "brandName": None, "genericName": None}
        driver = fake_driver([], [created])
        medication = _store(driver).create_medication("Lisinopril", brand_name="Zestril")
        assert medication["id"] == "new-id"
        assert "MERGE (m:Medication {Name: $name})" in driver.calls[1][0]
        assert driver.calls[1][1]["brandName"] == "Zestril"

    def test_create_rejects_blank_name(self, fake_driver):
        with pytest.raises(ValueError):
            _store(fake_driver()).create_medication("   ")


class TestLinkUserToMedication:
    def test_links_with_validated_schedule(self, fake_driver):
        linked = {"medication": {"id": "m1"}, "schedule": {"frequency": 2}}
        driver = fake_driver([{"userId": "u1"}], [linked])
        assert _store(driver).link_user_to_medication("u1", "m1", VALID_SCHEDULE) == linked
        params = driver.calls[1][1]
        assert params["schedule"]["pillsPerDose"] == [1, 1]
        assert params["schedule"]["dosage"] == "500mg"

    def test_length_mismatch_returns_none_without_query(self, fake_driver):
        driver = fake_driver()
        bad = {**VALID_SCHEDULE, "pillsPerDose": [1, 1, 1]}
        assert _store(driver).link_user_to_medication("u1", "m1", bad) is None
        assert driver.calls == []

    def test_missing_user_or_medication(self, fake_driver):
        driver = fake_driver([])
        assert _store(driver).link_user_to_medication("u1", "m1", VALID_SCHEDULE) is None
        assert len(driver.calls) == 1

    def test_missing_ids_return_none(self, fake_driver):
        driver = fake_driver()
        assert _store(driver).link_user_to_medication("", "m1", VALID_SCHEDULE) is None
        assert driver.calls == []

    def test_update_schedule_validates_first(self, fake_driver):
        driver = fake_driver()
        bad = {**VALID_SCHEDULE, "frequency": 3}
        assert _store(driver).update_medication_schedule("u1", "m1", bad) is None
        assert driver.calls == []

    def test_update_schedule_overwrites(self, fake_driver):
        updated = {"medication": {"id": "m1"}, "schedule": VALID_SCHEDULE}
        driver = fake_driver([updated])
        assert _store(driver).update_medication_schedule("u1", "m1", VALID_SCHEDULE) == updated


class TestDeleteMedication:
    def test_deletes_schedule_history_and_orphan(self, fake_driver):
        driver = fake_driver([{"removed": 1}], [], [])
        assert _store(driver).delete_medication_for_user("u1", "m1") is True
        assert len(driver.calls) == 3
        assert "TOOK_MEDICATION" in driver.calls[1][0]
        assert "NOT (m)<-[:TAKES]-()" in driver.calls[2][0]

    def test_nothing_to_delete(self, fake_driver):
        driver = fake_driver([{"removed": 0}])
        assert _store(driver).delete_medication_for_user("u1", "m1") is False
        assert len(driver.calls) == 1


class TestIntakeHistory:
    def test_records_status(self, fake_driver):
        driver = fake_driver([{"created": 1}])
        assert _store(driver).record_medication_status(
            "u1", "m1", "2026-10-19", "08:00", "08:05", "taken",
        ) is True
        assert driver.calls[0][1]["status"] == "taken"

    def test_rejects_unknown_status(self, fake_driver):
        driver = fake_driver()
        assert _store(driver).record_medication_status(
            "u1", "m1", "2026-10-19", "08:00", None, "skipped",
        ) is False
        assert driver.calls == []

    def test_driver_error_returns_false(self, fake_driver):
        driver = fake_driver()
        driver.tx.run = _unavailable
        assert _store(driver).record_medication_status(
            "u1", "m1", "2026-10-19", "08:00", None, "missed",
        ) is False


# ── Conversations ────────────────────────────────────────────────────


class TestConversations:
    def test_history_is_oldest_first(self, fake_driver):
        rows = [{"c": {"message": "newest"}}, {"c": {"message": "older"}}, {"c": {"message": "oldest"}}]
        history = _store(fake_driver(rows)).get_conversation_history("+13055550100", limit=3)
        assert [c["message"] for c in history] == ["oldest", "older", "newest"]

    def test_store_conversation_flattens_button_response(self, fake_driver):
        driver = fake_driver([{"c": {"id": "c1"}}])
        _store(driver).store_conversation(
            "+13055550100",
            "Yes",
            is_template=True,
            button_response={"text": "Yes", "payload": "INVITE_FAMILY"},
        )
        params = driver.calls[0][1]
        assert params["buttonText"] == "Yes"
        assert params["buttonPayload"] == "INVITE_FAMILY"
        assert params["isTemplate"] is True

    def test_store_conversation_unknown_phone(self, fake_driver):
        assert _store(fake_driver([])).store_conversation("+10000000000", "hi") is None


class TestUserMetadata:
    def test_builds_bundle_and_drops_empty_collections(self, fake_driver):
        row = {
            "u": {"id": "u1", "firstName": "Rosa", "phone": "+13055550100", "role": "Elder"},
            "caretakers": [{"id": "c1", "firstName": "Ana", "lastName": "", "phone": "+1"}],
            "elders": [{"id": None, "firstName": None, "lastName": None, "phone": None}],
            "medications": [
                {"name": "Vitamin D", "schedule": ["08:00"], "days": ["Everyday"],
                 "pillsPerDose": [1], "dosage": ""},
            ],
        }
        metadata = _store(fake_driver([row])).get_user_metadata("+13055550100")
        assert metadata["profile"]["firstName"] == "Rosa"
        assert metadata["profile"]["language"] == "en"
        assert [c["id"] for c in metadata["relationships"]["caretakers"]] == ["c1"]
        assert metadata["relationships"]["elders"] == []
        assert metadata["medications"][0]["name"] == "Vitamin D"

    def test_unknown_phone(self, fake_driver):
        assert _store(fake_driver([])).get_user_metadata("+10000000000") is None


class TestScheduleEntries:
    def test_maps_rows_to_entries(self, fake_driver):
        row = {
            "userId": "u1", "firstName": "Rosa", "phone": "+13055550100",
            "medicationId": "m1", "medicationName": "Vitamin D",
            "schedule": ["08:00"], "pillsPerDose": [1], "days": ["M", "W"],
        }
        entries = _store(fake_driver([row])).list_schedule_entries()
        assert entries == [
            ScheduleEntry(
                user_id="u1", phone="+13055550100", medication_id="m1",
                medication_name="Vitamin D", schedule=["08:00"], pills_per_dose=[1],
                days=["M", "W"], first_name="Rosa",
            )
        ]

    def test_missing_fields_default_to_empty(self, fake_driver):
        row = {
            "userId": "u1", "firstName": None, "phone": None, "medicationId": "m1",
            "medicationName": "X", "schedule": None, "pillsPerDose": None, "days": None,
        }
        entry = _store(fake_driver([row])).list_schedule_entries()[0]
        assert entry.phone == ""
        assert entry.schedule == []


class TestCaretakers:
    def test_link_caretaker(self, fake_driver):
        assert _store(fake_driver([{"linked": 1}])).create_caretaker_relationship("c1", "e1") is True
        assert _store(fake_driver([])).create_caretaker_relationship("c1", "e1") is False

    def test_list_elders(self, fake_driver):
        driver = fake_driver([{"e": {"id": "e1"}}, {"e": {"id": "e2"}}])
        assert [e["id"] for e in _store(driver).get_caretaker_elders("c1")] == ["e1", "e2"]
