import json

import pytest

from app.services.behavior_engine import (
    BehaviorTracker,
    JsonFileBehaviorStorage,
    StrugglePatternType,
    SuggestedAction,
    WriteBehindStorage,
)
from app.services.behavior_engine.interventions import (
    HELP_NEEDED,
    QUESTION_DETECTED,
    STRUGGLE_DETECTED,
    TRACKING_STOPPED,
)
from app.services.behavior_engine.metrics import StrugglePatternEvent
from app.services.behavior_engine.sessions import SessionAnalyzer, SessionStats, apply_retention


def test_samples_are_ignored_unless_tracking(tracker):
    assert tracker.record_sample("student-1", raw_fields={"clicks": 3}) is None
    assert tracker.record_raw_event("student-1", "click", {"x": 1, "y": 1}) == []
    assert tracker.get_current_metrics("student-1") is None


def test_stuck_student_triggers_one_intervention(tracker, storage, stuck_fields):
    help_needed = []
    tracker.events.subscribe(HELP_NEEDED, help_needed.append)
    tracker.start_tracking("student-1", "session-1")

    for _ in range(10):
        tracker.record_sample("student-1", "session-1", stuck_fields)

    # the 5th sample's prediction is not confident enough (0.42)
    assert len(help_needed) == 1
    prediction = help_needed[0]
    assert prediction.suggested_action is SuggestedAction.SUGGEST_BREAK
    assert prediction.confidence == pytest.approx(0.84)
    assert tracker.dispatcher.last_proactive_help("student-1") is not None
    assert len(storage.behavior_logs["student-1"]) == 10
    assert len(storage.interventions["student-1"]) == 1


def test_prediction_uses_recent_window(tracker, stuck_fields):
    tracker.start_tracking("student-1")
    for _ in range(12):
        tracker.record_sample("student-1", raw_fields=stuck_fields)

    assert len(tracker.recent_samples("student-1", tracker.prediction_window)) == 10
    assert tracker.predict("student-1").confidence == pytest.approx(0.84)


def test_predict_without_samples(tracker):
    assert tracker.predict("student-1").reasoning == ("Insufficient data",)


def test_start_tracking_is_idempotent(tracker):
    first = tracker.start_tracking("student-1", "session-1")

    assert tracker.start_tracking("student-1", "session-2") is first


def test_raw_events_update_counters(tracker):
    tracker.start_tracking("student-1")
    tracker.record_raw_event("student-1", "mouse_move", {"x": 5, "y": 5})
    tracker.record_raw_event("student-1", "click", {"x": 5, "y": 5})
    tracker.record_raw_event("student-1", "scroll")
    tracker.record_raw_event("student-1", "keydown", {"key": "a"})
    tracker.record_raw_event("student-1", "window_switch")
    tracker.record_raw_event("student-1", "teleport")

    metrics = tracker.get_current_metrics("student-1")

    assert (metrics["mouse_movements"], metrics["clicks"], metrics["scrolls"],
            metrics["keystrokes"], metrics["window_switches"]) == (1, 1, 1, 1, 1)
    assert metrics["is_tracking"] is True


def test_backspace_spamming(tracker):
    detected = []
    tracker.events.subscribe(STRUGGLE_DETECTED, detected.append)
    tracker.start_tracking("student-1")

    for _ in range(15):
        tracker.record_raw_event("student-1", "keydown", {"key": "Backspace"})

    assert [e.pattern_type for e in detected] == [StrugglePatternType.BACKSPACE_SPAMMING]
    assert len(tracker.get_current_metrics("student-1")["struggling_indicators"]) == 1


def test_rapid_clicking_through_tracker(tracker):
    tracker.start_tracking("student-1")

    fired = []
    for _ in range(12):
        fired.extend(tracker.record_raw_event("student-1", "click", {"x": 200, "y": 300}))

    assert [round(e.intensity, 2) for e in fired] == [1.0, 1.1, 1.2]


def test_tick_reports_idle_once_per_stretch(tracker, clock):
    tracker.start_tracking("student-1")
    clock.advance(35)

    first = tracker.tick("student-1")
    assert [e.pattern_type for e in first] == [StrugglePatternType.LONG_IDLE]
    assert first[0].intensity == pytest.approx(35000 / 30000)

    clock.advance(1)
    assert tracker.tick("student-1") == []

    tracker.record_raw_event("student-1", "mouse_move", {"x": 1, "y": 1})
    clock.advance(31)
    assert [e.pattern_type for e in tracker.tick("student-1")] == [StrugglePatternType.LONG_IDLE]


def test_non_finite_event_values_are_ignored(tracker):
    tracker.start_tracking("student-1")

    assert tracker.record_raw_event("student-1", "idle", {"idle_ms": "nan"}) == []
    assert tracker.record_raw_event("student-1", "idle", {"idle_ms": float("inf")}) == []
    tracker.record_raw_event("student-1", "mouse_move", {"x": float("inf"), "y": "nan"})
    tracker.record_raw_event("student-1", "click", {"x": "-inf", "y": -20})

    metrics = tracker.get_current_metrics("student-1")
    assert metrics["idle_seconds"] == 0.0
    assert metrics["struggling_indicators"] == []
    assert tracker.tick("student-1") == []


def test_malformed_stored_profile_does_not_break_prediction(storage, tracker, stuck_fields):
    storage.profiles["student-1"] = {
        "user_id": "student-1",
        "personalized_thresholds": {"frustration_threshold": "high"},
    }
    tracker.start_tracking("student-1")
    for _ in range(10):
        tracker.record_sample("student-1", raw_fields=stuck_fields)

    prediction = tracker.predict("student-1")

    assert prediction.confidence == pytest.approx(0.84)
    assert tracker.profiles.get("student-1").personalized_thresholds.frustration_threshold == 0.6


def test_failing_listener_does_not_break_ingestion(tracker):
    def broken(_):
        raise RuntimeError("overlay crashed")

    tracker.events.subscribe(STRUGGLE_DETECTED, broken)
    tracker.start_tracking("student-1")

    results = [tracker.record_raw_event("student-1", "window_switch") for _ in range(5)]

    assert results[-1][0].pattern_type is StrugglePatternType.WINDOW_HOPPING


def test_stop_discards_session_state(tracker, storage):
    stopped = []
    tracker.events.subscribe(TRACKING_STOPPED, stopped.append)
    tracker.start_tracking("student-1", "session-1")
    for _ in range(9):
        tracker.record_raw_event("student-1", "click", {"x": 10, "y": 10})
    tracker.record_sample("student-1", raw_fields={"clicks": 9})

    summary = tracker.stop_tracking("student-1")

    assert stopped == [summary]
    assert summary["metrics"]["clicks"] == 9
    assert not tracker.is_tracking("student-1")
    assert tracker.record_sample("student-1", raw_fields={"clicks": 1}) is None

    tracker.start_tracking("student-1", "session-2")
    assert tracker.record_raw_event("student-1", "click", {"x": 10, "y": 10}) == []
    metrics = tracker.get_current_metrics("student-1")
    assert metrics["clicks"] == 1
    assert metrics["buffered_samples"] == 0
    assert metrics["struggling_indicators"] == []


def test_stop_without_persist(tracker, storage):
    tracker.start_tracking("student-1")

    assert tracker.stop_tracking("student-1", persist=False) is not None
    assert tracker.get_session_history("student-1") == []
    assert tracker.stop_tracking("student-1") is None


def test_session_history_keeps_last_ten(tracker, clock):
    for i in range(12):
        tracker.start_tracking("student-1", f"session-{i}")
        clock.advance(60)
        tracker.stop_tracking("student-1")

    history = tracker.get_session_history("student-1")

    assert [s["session_id"] for s in history] == [f"session-{i}" for i in range(2, 12)]


def test_question_detection(tracker):
    questions = []
    tracker.events.subscribe(QUESTION_DETECTED, questions.append)

    assert tracker.report_question_detected("student-1", {"text": "What is x?"}) is False

    tracker.start_tracking("student-1")
    assert tracker.report_question_detected("student-1", {"text": "What is x?"}) is True
    assert questions == [{"user_id": "student-1", "text": "What is x?"}]
    assert tracker.get_current_metrics("student-1")["questions_detected"] == 1


def test_session_assessment_for_silent_struggle(tracker, clock):
    tracker.start_tracking("student-1")
    tracker.report_question_detected("student-1")
    clock.advance(400)
    tracker.record_raw_event("student-1", "idle", {"idle_ms": 65000})

    assessment = tracker.assess_session("student-1")

    # 0.3 recent longIdle + 0.4 idle + 0.3 questions + 0.2 long session
    assert assessment.struggle_score == pytest.approx(1.2)
    assert assessment.urgency == 1.0
    assert assessment.needs_help is True
    assert assessment.suggested_action is SuggestedAction.IMMEDIATE_HELP
    assert assessment.confidence == pytest.approx(1.0)


def test_help_requests_quiet_the_assessment(tracker, clock):
    tracker.start_tracking("student-1")
    tracker.report_question_detected("student-1")
    assert tracker.increment_help_requests("student-1") == 1
    clock.advance(400)

    assessment = tracker.assess_session("student-1")

    assert assessment.struggle_score == 0.0
    assert assessment.suggested_action is SuggestedAction.WAIT
    assert assessment.time_until_intervention == 60.0


def test_session_analyzer_gentle_prompt(clock):
    stats = SessionStats("student-1", "s1", started_at=clock(), last_activity=clock())
    struggles = [
        StrugglePatternEvent("student-1", StrugglePatternType.WINDOW_HOPPING, timestamp=None, intensity=1.0),
    ] * 2

    assessment = SessionAnalyzer().assess(stats, struggles, clock() + 10)

    assert assessment.struggle_score == pytest.approx(0.6)
    assert assessment.needs_help is False

    stats.questions_detected = 1
    assessment = SessionAnalyzer().assess(stats, struggles, clock() + 10)

    assert assessment.suggested_action is SuggestedAction.IMMEDIATE_HELP

    stats.questions_detected = 0
    stats.idle_ms = 61000
    assessment = SessionAnalyzer().assess(stats, struggles[:1], clock() + 10)

    assert assessment.struggle_score == pytest.approx(0.7)
    assert assessment.suggested_action is SuggestedAction.GENTLE_PROMPT
    assert assessment.time_until_intervention == 30.0


def test_apply_retention_orders_by_start_time():
    history = [{"start_time": "2024-01-03"}, {"start_time": "2024-01-01"}, {"start_time": "2024-01-02"}]

    assert apply_retention(history, 2) == [{"start_time": "2024-01-02"}, {"start_time": "2024-01-03"}]
    assert apply_retention(history, 0) == []


def test_write_behind_storage_end_to_end(tmp_path, clock, stuck_fields):
    storage = WriteBehindStorage(JsonFileBehaviorStorage(str(tmp_path)))
    tracker = BehaviorTracker(storage, clock=clock)
    try:
        tracker.start_tracking("student-1", "session-1")
        for _ in range(3):
            tracker.record_sample("student-1", raw_fields=stuck_fields)
        tracker.stop_tracking("student-1")
        storage.flush()
    finally:
        storage.shutdown()

    log_lines = (tmp_path / "behavior_logs" / "student-1.jsonl").read_text(encoding="utf-8").splitlines()
    sessions = json.loads((tmp_path / "sessions" / "student-1.json").read_text(encoding="utf-8"))

    assert len(log_lines) == 3
    assert [s["session_id"] for s in sessions] == ["session-1"]
    assert sessions[0]["final_analysis"]["suggested_action"] == "wait"
