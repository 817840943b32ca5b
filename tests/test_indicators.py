import math
import random

import pytest

from app.services.behavior_engine import IndicatorCalculator, TelemetrySample
from app.services.behavior_engine.metrics import COUNTER_FIELDS, TIMING_FIELDS


@pytest.fixture
def calculator():
    return IndicatorCalculator()


def test_all_zero_sample_gets_neutral_levels(calculator, make_sample):
    processed = calculator.process(make_sample())

    assert processed.frustration_level == 0.0
    assert processed.confidence_level == 0.5
    assert processed.engagement_level == 0.5
    assert processed.is_processed


def test_process_leaves_input_untouched(calculator, make_sample):
    sample = make_sample(time_on_question=200)
    calculator.process(sample)

    assert sample.frustration_level is None
    assert not sample.is_processed


def test_reprocessing_is_idempotent(calculator, make_sample):
    sample = make_sample(mouse_movements=40, keystrokes=12, time_on_question=150,
                         question_attempts=4, correct_answers=1, help_requests=3)
    first = calculator.process(sample)
    again = calculator.process(first)

    assert (first.frustration_level, first.confidence_level, first.engagement_level) == \
        (again.frustration_level, again.confidence_level, again.engagement_level)


def test_stuck_student_is_frustrated(calculator, make_sample):
    processed = calculator.process(make_sample(
        time_on_question=400, question_attempts=5, correct_answers=0, help_requests=3,
    ))

    # 0.3 + 0.4 + 0.4 + 0.2 (no activity) + 0.3, clamped
    assert processed.frustration_level == 1.0
    assert processed.confidence_level == pytest.approx(0.1)
    assert processed.engagement_level == pytest.approx(0.7)


def test_confident_student(calculator, make_sample):
    processed = calculator.process(make_sample(
        mouse_movements=100, keystrokes=100, time_on_question=100,
        question_attempts=5, correct_answers=5, average_response_time=20,
    ))

    assert processed.frustration_level == 0.0
    assert processed.confidence_level == 1.0
    # rate 20 -> +0.3, no focus changes -> +0.2, progress -> +0.3
    assert processed.engagement_level == 1.0


def test_frantic_activity_counts_as_frustration(calculator, make_sample):
    processed = calculator.process(make_sample(mouse_movements=600, time_on_question=60))

    assert processed.frustration_level == pytest.approx(0.2)


def test_levels_always_within_unit_interval(calculator):
    rng = random.Random(1234)
    for _ in range(500):
        raw = {name: rng.choice([0, 1, rng.randint(0, 10_000)]) for name in COUNTER_FIELDS}
        raw.update({name: rng.uniform(0, 5_000) for name in TIMING_FIELDS})
        processed = calculator.process(TelemetrySample.from_raw("u", "s", raw))

        for level in (processed.frustration_level, processed.confidence_level, processed.engagement_level):
            assert 0.0 <= level <= 1.0


@pytest.mark.parametrize("counter, timing", [
    (0, 1e6),
    (1e9, 0),
    (1e9, 1e6),
    (1, 1e15),
    (10**12, 1e-9),
])
def test_extreme_inputs_stay_within_unit_interval(calculator, counter, timing):
    raw = {name: counter for name in COUNTER_FIELDS}
    raw.update({name: timing for name in TIMING_FIELDS})
    processed = calculator.process(TelemetrySample.from_raw("u", "s", raw))

    for level in (processed.frustration_level, processed.confidence_level, processed.engagement_level):
        assert 0.0 <= level <= 1.0


def test_from_raw_coerces_malformed_values():
    sample = TelemetrySample.from_raw("u", "s", {
        "mouseMovements": "abc",
        "keystrokes": -5,
        "timeOnQuestion": math.nan,
        "helpRequests": None,
        "clicks": "7",
        "question_attempts": 2,
        "frustrationLevel": 0.9,
    })

    assert sample.mouse_movements == 0
    assert sample.keystrokes == 0
    assert sample.time_on_question == 0.0
    assert sample.help_requests == 0
    assert sample.clicks == 7
    assert sample.question_attempts == 2
    assert sample.frustration_level is None
