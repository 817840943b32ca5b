import pytest

from app.services.behavior_engine import (
    BehaviorTracker,
    InMemoryBehaviorStorage,
    StrugglePatternDetector,
    TelemetrySample,
)


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return InMemoryBehaviorStorage()


@pytest.fixture
def detector(clock):
    return StrugglePatternDetector(clock=clock)


@pytest.fixture
def tracker(storage, clock):
    return BehaviorTracker(storage, clock=clock)


@pytest.fixture
def make_sample():
    def _make(user_id="student-1", **fields):
        return TelemetrySample(user_id=user_id, session_id="session-1", **fields)
    return _make


@pytest.fixture
def stuck_fields():
    """Raw fields of a student stuck on one question: long time, failed
    attempts, repeated help requests, no input activity."""
    return {
        "timeOnQuestion": 400,
        "questionAttempts": 5,
        "correctAnswers": 0,
        "helpRequests": 3,
    }
