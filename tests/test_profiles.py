import json
import threading

import pytest

from app.services.behavior_engine import (
    InMemoryBehaviorStorage,
    JsonFileBehaviorStorage,
    ProfileStore,
    StudentProfile,
    WriteBehindStorage,
)
from app.services.behavior_engine.profiles import LearningPattern, PersonalizedThresholds
from app.services.behavior_engine.storage import PersistenceError, ProfileLoadError


def test_default_profile_is_created_and_persisted(storage):
    profile = ProfileStore(storage).get("student-1")

    assert profile.personalized_thresholds == PersonalizedThresholds()
    assert [s.indicator for s in profile.struggle_indicators] == \
        ["timeStagnation", "performanceDecline", "attentionSpan"]
    assert storage.profiles["student-1"]["user_id"] == "student-1"


def test_one_cached_profile_per_student(storage):
    profiles = ProfileStore(storage)

    assert profiles.get("student-1") is profiles.get("student-1")
    assert profiles.cached_user_ids() == ["student-1"]


def test_profile_survives_json_round_trip(tmp_path):
    backend = JsonFileBehaviorStorage(str(tmp_path))
    profiles = ProfileStore(backend)
    profiles.add_learning_pattern("student-1", LearningPattern("works_better_with_breaks", 0.4, 0.9, ["evening"]))
    profiles.update_thresholds("student-1", help_offer_timing=90.0)

    reloaded = ProfileStore(JsonFileBehaviorStorage(str(tmp_path))).get("student-1")

    assert reloaded == profiles.get("student-1")
    assert reloaded.has_learning_pattern("works_better_with_breaks")
    assert reloaded.personalized_thresholds.help_offer_timing == 90.0


def test_from_dict_accepts_json_encoded_collections():
    document = StudentProfile.default("student-1").to_dict()
    document["struggle_indicators"] = json.dumps(document["struggle_indicators"])
    document["learning_patterns"] = ""

    profile = StudentProfile.from_dict(document)

    assert profile.struggle_indicators == StudentProfile.default("student-1").struggle_indicators
    assert profile.learning_patterns == []


@pytest.mark.parametrize("value", [0, -1.5, "fast", True, float("inf"), float("nan")])
def test_thresholds_must_be_positive_numbers(value):
    with pytest.raises(ValueError):
        PersonalizedThresholds(frustration_threshold=value)


def test_invalid_threshold_update_is_rejected(storage):
    profiles = ProfileStore(storage)

    with pytest.raises(ValueError):
        profiles.update_thresholds("student-1", break_suggestion_timing=-10)
    assert profiles.get("student-1").personalized_thresholds.break_suggestion_timing == 600.0


def test_corrupt_profile_file_falls_back_to_defaults(tmp_path):
    backend = JsonFileBehaviorStorage(str(tmp_path))
    (tmp_path / "profiles" / "student-1.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(ProfileLoadError):
        backend.load_profile("student-1")
    assert ProfileStore(backend).get("student-1") == StudentProfile.default("student-1")


def test_malformed_stored_profile_falls_back_to_defaults(storage):
    storage.profiles["student-1"] = {"user_id": "student-1", "personalized_thresholds": {"help_offer_timing": 0}}

    assert ProfileStore(storage).get("student-1") == StudentProfile.default("student-1")


@pytest.mark.parametrize("document", [
    ["not", "a", "profile"],
    {"user_id": "student-1", "personalized_thresholds": {"help_offer_timing": "soon"}},
    {"user_id": "student-1", "personalized_thresholds": "fast"},
    {"user_id": "student-1", "learning_patterns": [{"pattern": "breaks", "frequency": "often"}]},
    {"user_id": "student-1", "struggle_indicators": ["timeStagnation"]},
])
def test_wrongly_typed_stored_profile_falls_back_to_defaults(storage, document):
    storage.profiles["student-1"] = document

    assert ProfileStore(storage).get("student-1") == StudentProfile.default("student-1")


def test_profile_file_holding_a_list_falls_back_to_defaults(tmp_path):
    backend = JsonFileBehaviorStorage(str(tmp_path))
    (tmp_path / "profiles" / "student-1.json").write_text("[]", encoding="utf-8")

    assert ProfileStore(backend).get("student-1") == StudentProfile.default("student-1")


def test_save_failure_keeps_profile_in_memory():
    class ReadOnlyStorage(InMemoryBehaviorStorage):
        def save_profile(self, user_id, profile):
            raise PersistenceError("read-only")

    profiles = ProfileStore(ReadOnlyStorage())
    updated = profiles.update_thresholds("student-1", encouragement_frequency=0.5)

    assert profiles.get("student-1") is updated


def test_json_storage_session_history_and_logs(tmp_path):
    backend = JsonFileBehaviorStorage(str(tmp_path))
    backend.save_session_history("student/1", [{"session_id": "a"}])
    backend.append_behavior_log("student/1", {"kind": "sample"})
    backend.append_behavior_log("student/1", {"kind": "struggle"})

    assert backend.load_session_history("student/1") == [{"session_id": "a"}]
    assert backend.load_session_history("nobody") == []
    lines = (tmp_path / "behavior_logs" / "student_1.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["kind"] for line in lines] == ["sample", "struggle"]


def test_write_behind_reads_see_queued_writes(tmp_path):
    storage = WriteBehindStorage(JsonFileBehaviorStorage(str(tmp_path)))
    try:
        storage.save_session_history("student-1", [{"session_id": "a"}])
        storage.save_session_history("student-1", [{"session_id": "a"}, {"session_id": "b"}])

        assert [s["session_id"] for s in storage.load_session_history("student-1")] == ["a", "b"]
    finally:
        storage.shutdown()


def test_write_behind_reads_do_not_wait_for_the_queue():
    release = threading.Event()
    saved = threading.Event()

    class SlowStorage(InMemoryBehaviorStorage):
        def save_session_history(self, user_id, sessions):
            release.wait(timeout=5)
            super().save_session_history(user_id, sessions)
            saved.set()

    backend = SlowStorage()
    backend.save_profile("student-2", {"user_id": "student-2"})
    storage = WriteBehindStorage(backend)
    try:
        storage.save_session_history("student-1", [{"session_id": "a"}])
        storage.save_profile("student-1", {"user_id": "student-1"})

        assert storage.load_session_history("student-1") == [{"session_id": "a"}]
        assert storage.load_profile("student-1") == {"user_id": "student-1"}
        assert storage.load_profile("student-2") == {"user_id": "student-2"}
        assert not saved.is_set()
    finally:
        release.set()
        storage.shutdown()

    assert backend.sessions["student-1"] == [{"session_id": "a"}]
    assert storage.load_session_history("student-1") == [{"session_id": "a"}]


def test_write_behind_failures_are_logged(caplog):
    class FailingStorage(InMemoryBehaviorStorage):
        def append_behavior_log(self, user_id, entry):
            raise PersistenceError("disk full")

    storage = WriteBehindStorage(FailingStorage())
    storage.append_behavior_log("student-1", {"kind": "sample"})
    storage.shutdown()

    assert "append_behavior_log failed for student-1" in caplog.text
